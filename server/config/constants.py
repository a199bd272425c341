# Server Configuration
SERVER_VERSION                      = "1.0.0"
SERVER_TITLE                        = "Home Energy Control Server"

# MQTT
MQTT_BROKER                         = "localhost"
MQTT_PORT                           = 1883
MQTT_KEEPALIVE                      = 60
MQTT_SUBSCRIBE_TOPIC                = "shellies/#"
COMMAND_SUBTOPIC                    = "command"                 # <mqttTopic>/command
COMMAND_PAYLOAD_ON                  = "on"
COMMAND_PAYLOAD_OFF                 = "off"

# Devices
DEVICE_TYPES                        = ("shelly1", "shelly1pm", "shelly2", "shellydimmer", "shellyplug")
DEVICE_STATUS_ONLINE                = "online"
DEVICE_STATUS_OFFLINE               = "offline"
DEVICE_STALENESS_SECONDS            = 300

# Automation
AUTOMATION_TICK_SECONDS             = 60
AUTOMATION_MAX_RETRIES              = 3
AUTOMATION_TRACE_SIZE               = 100
WEATHER_STATES                      = (
    "clear-sky",
    "few-clouds",
    "scattered-clouds",
    "broken-clouds",
    "shower-rain",
    "rain",
    "thunderstorm",
    "snow",
    "mist",
)

# Upstream feeds
PRICE_ZONE                          = "SE3"
PRICE_API_URL                       = "https://www.elprisetjustnu.se/api/v1/prices/{year}/{month:02d}-{day:02d}_{zone}.json"
WEATHER_LATITUDE                    = "58.4"
WEATHER_LONGITUDE                   = "12.55"
WEATHER_API_URL                     = "https://opendata-download-metfcst.smhi.se/api/category/pmp3g/version/2/geotype/point/lon/{longitude}/lat/{latitude}/data.json"
FEED_TIMEOUT_SECONDS                = 10
PRICE_REFRESH_SECONDS               = 900
WEATHER_REFRESH_SECONDS             = 1800
WEATHER_MAX_AGE_SECONDS             = 10800
LOCAL_TIMEZONE                      = "Europe/Stockholm"

# API Endpoints (WebApp)
DEVICES_API_ENDPOINT                = "/api/devices"
RULES_API_ENDPOINT                  = "/api/automation-rules"
AUTOMATION_API_ENDPOINT             = "/api/automation"
PRICES_API_ENDPOINT                 = "/api/electricity-prices"
WEATHER_API_ENDPOINT                = "/api/weather"
