# server/config/settings.py

import  os
from    dataclasses import dataclass
from    datetime    import tzinfo
from    typing      import Optional
from    zoneinfo    import ZoneInfo
from    dotenv      import load_dotenv
from    config      import constants

load_dotenv("variables.env")                                            # load variables from .env file

_base_dir           = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
DEFAULT_DATABASE    = "sqlite:///" + os.path.join(_base_dir, "database", "energy.db")

_TRUE_VALUES        = {"1", "true", "yes", "on"}


def _env_str(name, default=None):
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    return value.strip()


def _env_int(name, default):
    value = _env_str(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {value!r}")


def _env_float(name, default):
    value = _env_str(name)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {value!r}")


def _env_bool(name, default):
    value = _env_str(name)
    if value is None:
        return default
    return value.lower() in _TRUE_VALUES


@dataclass
class Settings:
    mqtt_broker:                str = constants.MQTT_BROKER
    mqtt_port:                  int = constants.MQTT_PORT
    mqtt_keepalive:             int = constants.MQTT_KEEPALIVE
    mqtt_username:              Optional[str] = None
    mqtt_password:              Optional[str] = None
    mqtt_client_id:             Optional[str] = None
    mqtt_ca_cert:               Optional[str] = None
    mqtt_client_cert:           Optional[str] = None
    mqtt_client_key:            Optional[str] = None
    mqtt_subscribe_topic:       str = constants.MQTT_SUBSCRIBE_TOPIC

    database_url:               str = DEFAULT_DATABASE

    price_zone:                 str = constants.PRICE_ZONE
    price_api_url:              str = constants.PRICE_API_URL
    weather_latitude:           str = constants.WEATHER_LATITUDE
    weather_longitude:          str = constants.WEATHER_LONGITUDE
    weather_api_url:            str = constants.WEATHER_API_URL
    feed_timeout_seconds:       float = constants.FEED_TIMEOUT_SECONDS
    weather_max_age_seconds:    int = constants.WEATHER_MAX_AGE_SECONDS
    local_timezone:             str = constants.LOCAL_TIMEZONE

    device_staleness_seconds:   int = constants.DEVICE_STALENESS_SECONDS
    automation_tick_seconds:    int = constants.AUTOMATION_TICK_SECONDS
    price_eq_tolerance:         float = 0.0
    automation_fire_on_boot:    bool = False
    automation_retry_failed:    bool = False
    automation_max_retries:     int = constants.AUTOMATION_MAX_RETRIES

    @property
    def timezone(self) -> tzinfo:
        return ZoneInfo(self.local_timezone)

    @property
    def use_tls(self) -> bool:
        return self.mqtt_ca_cert is not None

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            mqtt_broker                 = _env_str("MQTT_BROKER", constants.MQTT_BROKER),
            mqtt_port                   = _env_int("MQTT_PORT", constants.MQTT_PORT),
            mqtt_keepalive              = _env_int("MQTT_KEEPALIVE", constants.MQTT_KEEPALIVE),
            mqtt_username               = _env_str("MQTT_USERNAME"),
            mqtt_password               = _env_str("MQTT_PASSWORD"),
            mqtt_client_id              = _env_str("MQTT_CLIENT_ID"),
            mqtt_ca_cert                = _env_str("MQTT_CA_CERT"),
            mqtt_client_cert            = _env_str("MQTT_CLIENT_CERT"),
            mqtt_client_key             = _env_str("MQTT_CLIENT_KEY"),
            mqtt_subscribe_topic        = _env_str("MQTT_SUBSCRIBE_TOPIC", constants.MQTT_SUBSCRIBE_TOPIC),
            database_url                = _env_str("DATABASE_URL", DEFAULT_DATABASE),
            price_zone                  = _env_str("PRICE_ZONE", constants.PRICE_ZONE),
            price_api_url               = _env_str("PRICE_API_URL", constants.PRICE_API_URL),
            weather_latitude            = _env_str("WEATHER_LATITUDE", constants.WEATHER_LATITUDE),
            weather_longitude           = _env_str("WEATHER_LONGITUDE", constants.WEATHER_LONGITUDE),
            weather_api_url             = _env_str("WEATHER_API_URL", constants.WEATHER_API_URL),
            feed_timeout_seconds        = _env_float("FEED_TIMEOUT_SECONDS", constants.FEED_TIMEOUT_SECONDS),
            weather_max_age_seconds     = _env_int("WEATHER_MAX_AGE_SECONDS", constants.WEATHER_MAX_AGE_SECONDS),
            local_timezone              = _env_str("LOCAL_TIMEZONE", constants.LOCAL_TIMEZONE),
            device_staleness_seconds    = _env_int("DEVICE_STALENESS_SECONDS", constants.DEVICE_STALENESS_SECONDS),
            automation_tick_seconds     = _env_int("AUTOMATION_TICK_SECONDS", constants.AUTOMATION_TICK_SECONDS),
            price_eq_tolerance          = _env_float("PRICE_EQ_TOLERANCE", 0.0),
            automation_fire_on_boot     = _env_bool("AUTOMATION_FIRE_ON_BOOT", False),
            automation_retry_failed     = _env_bool("AUTOMATION_RETRY_FAILED", False),
            automation_max_retries      = _env_int("AUTOMATION_MAX_RETRIES", constants.AUTOMATION_MAX_RETRIES),
        )
