# server/automation/snapshot.py

from    dataclasses     import dataclass, field
from    datetime        import date, datetime, tzinfo
from    typing          import List, Optional, Tuple
from    pydantic        import BaseModel, ConfigDict, field_validator
from    automation.conditions import WeatherState
from    database.models import DeviceRead
from    utils.logger    import getLogger
from    utils.timeutil  import to_aware_utc

logger = getLogger("Snapshot")


class PricePoint(BaseModel):
    """One hourly spot price, valid on [time_start, time_end)."""
    model_config = ConfigDict(extra="ignore", frozen=True)

    SEK_per_kWh:    float
    EUR_per_kWh:    Optional[float] = None
    EXR:            Optional[float] = None
    time_start:     datetime
    time_end:       datetime

    @field_validator("time_start", "time_end")
    @classmethod
    def assume_utc(cls, value):
        return to_aware_utc(value)

    def contains(self, moment: datetime) -> bool:
        return self.time_start <= moment < self.time_end


class ForecastDay(BaseModel):
    model_config = ConfigDict(frozen=True)

    day:            date
    condition:      WeatherState
    temperature:    Optional[float] = None


class WeatherSnapshot(BaseModel):
    model_config = ConfigDict(frozen=True)

    condition:      WeatherState
    observed_at:    datetime
    temperature:    Optional[float] = None
    forecast:       Tuple[ForecastDay, ...] = ()


@dataclass(frozen=True)
class WorldSnapshot:
    now:        datetime
    timezone:   tzinfo
    prices:     Tuple[PricePoint, ...] = ()
    weather:    Optional[WeatherSnapshot] = None
    devices:    Tuple[DeviceRead, ...] = field(default_factory=tuple)

    @property
    def local_now(self) -> datetime:
        return to_aware_utc(self.now).astimezone(self.timezone)

    def price_at(self, moment: Optional[datetime] = None) -> Optional[PricePoint]:
        moment = to_aware_utc(moment or self.now)
        for point in self.prices:
            if point.contains(moment):
                return point
        return None

    def device(self, device_id: int) -> Optional[DeviceRead]:
        for device in self.devices:
            if device.id == device_id:
                return device
        return None


class SnapshotBuilder:
    """Collects registry state and the latest feed data for one tick."""

    def __init__(self, registry, price_feed=None, weather_feed=None, timezone: tzinfo = None):
        self.registry = registry
        self.price_feed = price_feed
        self.weather_feed = weather_feed
        self.timezone = timezone

    def __call__(self, now: datetime) -> WorldSnapshot:
        now = to_aware_utc(now)
        prices: List[PricePoint] = []
        weather = None

        if self.price_feed is not None:
            try:
                prices = self.price_feed.points_for(now)
            except Exception as e:
                logger.error(f"Price data unavailable for this tick: {e}")
        if self.weather_feed is not None:
            try:
                weather = self.weather_feed.current(now)
            except Exception as e:
                logger.error(f"Weather data unavailable for this tick: {e}")

        return WorldSnapshot(
            now         = now,
            timezone    = self.timezone or now.tzinfo,
            prices      = tuple(prices),
            weather     = weather,
            devices     = tuple(self.registry.get_snapshot()),
        )
