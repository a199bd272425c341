# server/automation/conditions.py

import  re
from    datetime    import datetime
from    enum        import Enum
from    typing      import Annotated, Any, Dict, Literal, Optional, Union
from    pydantic    import BaseModel, ConfigDict, Field, TypeAdapter, field_validator, model_validator
from    devices.dispatcher import DeviceAction
from    utils.timeutil import to_aware_utc

_HHMM = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")


class WeatherState(str, Enum):
    clear_sky        = "clear-sky"
    few_clouds       = "few-clouds"
    scattered_clouds = "scattered-clouds"
    broken_clouds    = "broken-clouds"
    shower_rain      = "shower-rain"
    rain             = "rain"
    thunderstorm     = "thunderstorm"
    snow             = "snow"
    mist             = "mist"


class PriceOperator(str, Enum):
    lt = "lt"
    gt = "gt"
    eq = "eq"


class _Wire(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class PriceCondition(_Wire):
    type:       Literal["price"] = "price"
    operator:   PriceOperator
    value:      float


class TimeCondition(_Wire):
    """Local time-of-day window [start, end); end before start spans midnight."""
    type:       Literal["time"] = "time"
    start_time: str = Field(alias="startTime")
    end_time:   str = Field(alias="endTime")

    @field_validator("start_time", "end_time")
    @classmethod
    def validate_hhmm(cls, value):
        if not _HHMM.match(value):
            raise ValueError(f"expected HH:MM, got {value!r}")
        return value


class WeatherCondition(_Wire):
    type:       Literal["weather"] = "weather"
    condition:  WeatherState


Condition = Annotated[Union[PriceCondition, TimeCondition, WeatherCondition], Field(discriminator="type")]

_condition_adapter = TypeAdapter(Condition)


def parse_condition(data: Dict[str, Any]) -> Union[PriceCondition, TimeCondition, WeatherCondition]:
    """Decode a stored condition; raises pydantic.ValidationError on bad data."""
    return _condition_adapter.validate_python(data)


class RuleAction(_Wire):
    type:       DeviceAction
    device_id:  Optional[int] = Field(default=None, alias="deviceId")


class RuleCreate(_Wire):
    name:           str = Field(min_length=1)
    description:    str = ""
    device_id:      int = Field(alias="deviceId")
    condition:      Condition
    action:         RuleAction
    is_active:      bool = Field(default=True, alias="isActive")

    @model_validator(mode="after")
    def check_action_target(self):
        # The rule-level deviceId is authoritative; the action may only repeat it
        if self.action.device_id is None:
            self.action.device_id = self.device_id
        elif self.action.device_id != self.device_id:
            raise ValueError(
                f"action.deviceId ({self.action.device_id}) must match deviceId ({self.device_id})"
            )
        return self


class RuleUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    name:           Optional[str] = Field(default=None, min_length=1)
    description:    Optional[str] = None
    device_id:      Optional[int] = Field(default=None, alias="deviceId")
    condition:      Optional[Dict[str, Any]] = None
    action:         Optional[Dict[str, Any]] = None
    is_active:      Optional[bool] = Field(default=None, alias="isActive")


class RuleRead(BaseModel):
    model_config = ConfigDict(populate_by_name=True, from_attributes=True)

    id:             int
    name:           str
    description:    str
    device_id:      int = Field(alias="deviceId")
    condition:      Dict[str, Any]
    action:         Dict[str, Any]
    is_active:      bool = Field(alias="isActive")
    created_at:     datetime = Field(alias="createdAt")

    @field_validator("created_at")
    @classmethod
    def as_aware_utc(cls, value):
        return to_aware_utc(value)
