# server/database/models.py

from    typing      import Any, Dict, Optional
from    datetime    import datetime
from    pydantic    import ConfigDict, field_validator
from    sqlalchemy  import JSON, Column
from    sqlmodel    import SQLModel, Field
from    config      import constants
from    utils.timeutil import to_aware_utc, utcnow


class Device(SQLModel, table=True):
    id:                             Optional[int] = Field(default=None, primary_key=True)
    name:                           str = Field(nullable=False, index=True)
    type:                           str = Field(nullable=False)
    ip_address:                     str = Field(nullable=False)
    mqtt_topic:                     str = Field(nullable=False, index=True, unique=True)
    status:                         str = Field(default=constants.DEVICE_STATUS_OFFLINE)   # Derived from telemetry
    power:                          str = Field(default="0")                               # Decimal text
    is_on:                          bool = Field(default=False)
    last_seen:                      Optional[datetime] = None                              # Last accepted observation (UTC)
    created_at: datetime =          Field(default_factory=utcnow)


class AutomationRule(SQLModel, table=True):
    id:                             Optional[int] = Field(default=None, primary_key=True)
    name:                           str = Field(nullable=False)
    description:                    str = Field(default="")
    device_id:                      int = Field(foreign_key="device.id", index=True)
    condition:                      Dict[str, Any] = Field(sa_column=Column(JSON, nullable=False))
    action:                         Dict[str, Any] = Field(sa_column=Column(JSON, nullable=False))
    is_active:                      bool = Field(default=True)
    created_at: datetime =          Field(default_factory=utcnow)


def _check_topic(value: str) -> str:
    topic = value.strip()
    if not topic:
        raise ValueError("mqttTopic must not be empty")
    if "#" in topic or "+" in topic:
        raise ValueError("mqttTopic must not contain MQTT wildcards")
    if topic.endswith("/"):
        raise ValueError("mqttTopic must not end with '/'")
    return topic


def _check_type(value: str) -> str:
    if value not in constants.DEVICE_TYPES:
        raise ValueError(f"Invalid device type: {value}. Valid: {', '.join(constants.DEVICE_TYPES)}")
    return value


# Pydantic Schemas (used in routes)
class DeviceCreate(SQLModel):
    model_config = ConfigDict(populate_by_name=True)

    name:                           str = Field(min_length=1)
    type:                           str
    ip_address:                     str = Field(alias="ipAddress")
    mqtt_topic:                     str = Field(alias="mqttTopic")

    @field_validator("type")
    @classmethod
    def validate_type(cls, value):
        return _check_type(value)

    @field_validator("mqtt_topic")
    @classmethod
    def validate_topic(cls, value):
        return _check_topic(value)


class DeviceUpdate(SQLModel):
    """Metadata edit. Relay state, power and status are never set through here."""
    model_config = ConfigDict(populate_by_name=True)

    name:                           Optional[str] = Field(default=None, min_length=1)
    type:                           Optional[str] = None
    ip_address:                     Optional[str] = Field(default=None, alias="ipAddress")
    mqtt_topic:                     Optional[str] = Field(default=None, alias="mqttTopic")

    @field_validator("type")
    @classmethod
    def validate_type(cls, value):
        return value if value is None else _check_type(value)

    @field_validator("mqtt_topic")
    @classmethod
    def validate_topic(cls, value):
        return value if value is None else _check_topic(value)


class DeviceRead(SQLModel):
    model_config = ConfigDict(populate_by_name=True, from_attributes=True)

    id:                             int
    name:                           str
    type:                           str
    ip_address:                     str = Field(alias="ipAddress")
    mqtt_topic:                     str = Field(alias="mqttTopic")
    status:                         str
    power:                          str
    is_on:                          bool = Field(alias="isOn")
    last_seen:                      Optional[datetime] = Field(default=None, alias="lastSeen")
    created_at:                     datetime = Field(alias="createdAt")

    @field_validator("last_seen", "created_at")
    @classmethod
    def as_aware_utc(cls, value):
        return value if value is None else to_aware_utc(value)

    @property
    def online(self) -> bool:
        return self.status == constants.DEVICE_STATUS_ONLINE
