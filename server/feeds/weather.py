# server/feeds/weather.py

import  threading
import  requests
from    collections     import Counter
from    datetime        import datetime, timedelta
from    typing          import Dict, List, Optional
from    automation.conditions import WeatherState
from    automation.snapshot import ForecastDay, WeatherSnapshot
from    config          import constants
from    utils.errors    import UpstreamFetchError
from    utils.logger    import getLogger
from    utils.timeutil  import to_aware_utc

logger = getLogger("WeatherFeed")

# SMHI Wsymb2 (1-27) folded onto the nine sky states rules can target
SYMBOL_STATES: Dict[int, WeatherState] = {
    1:  WeatherState.clear_sky,
    2:  WeatherState.few_clouds,
    3:  WeatherState.scattered_clouds,
    4:  WeatherState.scattered_clouds,
    5:  WeatherState.broken_clouds,
    6:  WeatherState.broken_clouds,
    7:  WeatherState.mist,
    8:  WeatherState.shower_rain,
    9:  WeatherState.shower_rain,
    10: WeatherState.shower_rain,
    11: WeatherState.thunderstorm,
    12: WeatherState.shower_rain,
    13: WeatherState.shower_rain,
    14: WeatherState.shower_rain,
    15: WeatherState.snow,
    16: WeatherState.snow,
    17: WeatherState.snow,
    18: WeatherState.rain,
    19: WeatherState.rain,
    20: WeatherState.rain,
    21: WeatherState.thunderstorm,
    22: WeatherState.rain,
    23: WeatherState.rain,
    24: WeatherState.rain,
    25: WeatherState.snow,
    26: WeatherState.snow,
    27: WeatherState.snow,
}

FORECAST_DAYS = 5


def symbol_to_state(symbol) -> Optional[WeatherState]:
    try:
        return SYMBOL_STATES.get(int(symbol))
    except (TypeError, ValueError):
        return None


def _parameter(entry: dict, name: str):
    for param in entry.get("parameters", []):
        if param.get("name") == name and param.get("values"):
            return param["values"][0]
    return None


def parse_forecast(data: dict, now: datetime, timezone) -> WeatherSnapshot:
    """Build a WeatherSnapshot from an SMHI pmp3g point forecast."""
    entries = []
    for entry in data.get("timeSeries", []):
        try:
            valid = to_aware_utc(datetime.fromisoformat(entry["validTime"].replace("Z", "+00:00")))
        except (KeyError, ValueError, AttributeError):
            continue
        state = symbol_to_state(_parameter(entry, "Wsymb2"))
        if state is None:
            continue
        entries.append((valid, state, _parameter(entry, "t")))
    if not entries:
        raise UpstreamFetchError("weather", "forecast has no usable time series")

    now = to_aware_utc(now)
    valid, state, temperature = min(entries, key=lambda e: abs(e[0] - now))

    by_day: Dict = {}
    for when, day_state, day_temp in entries:
        by_day.setdefault(when.astimezone(timezone).date(), []).append((day_state, day_temp))
    forecast: List[ForecastDay] = []
    for day in sorted(by_day)[:FORECAST_DAYS]:
        states = Counter(s for s, _ in by_day[day])
        temps = [t for _, t in by_day[day] if t is not None]
        forecast.append(ForecastDay(
            day         = day,
            condition   = states.most_common(1)[0][0],
            temperature = round(sum(temps) / len(temps), 1) if temps else None,
        ))

    return WeatherSnapshot(
        condition   = state,
        observed_at = valid,
        temperature = temperature,
        forecast    = tuple(forecast),
    )


class WeatherFeed:
    """SMHI point forecast, refreshed at most every `refresh_interval`."""

    def __init__(self, url_template: str, latitude: str, longitude: str, timezone,
                 timeout: float = constants.FEED_TIMEOUT_SECONDS,
                 refresh_interval: float = constants.WEATHER_REFRESH_SECONDS,
                 max_age: float = constants.WEATHER_MAX_AGE_SECONDS):
        self.url_template = url_template
        self.latitude = latitude
        self.longitude = longitude
        self.timezone = timezone
        self.timeout = timeout
        self.refresh_interval = timedelta(seconds=refresh_interval)
        self.max_age = timedelta(seconds=max_age)
        self._raw: Optional[dict] = None
        self._fetched_at: Optional[datetime] = None
        self._attempted_at: Optional[datetime] = None
        self._lock = threading.Lock()

    @classmethod
    def from_settings(cls, settings):
        return cls(
            url_template    = settings.weather_api_url,
            latitude        = settings.weather_latitude,
            longitude       = settings.weather_longitude,
            timezone        = settings.timezone,
            timeout         = settings.feed_timeout_seconds,
            max_age         = settings.weather_max_age_seconds,
        )

    def fetch_raw(self, latitude: Optional[str] = None, longitude: Optional[str] = None) -> dict:
        url = self.url_template.format(latitude=latitude or self.latitude, longitude=longitude or self.longitude)
        logger.info(f"Fetching weather data from: {url}")
        try:
            response = requests.get(url, timeout=self.timeout)
            response.raise_for_status()
            data = response.json()
        except (requests.RequestException, ValueError) as e:
            raise UpstreamFetchError("weather", str(e))
        if not isinstance(data, dict):
            raise UpstreamFetchError("weather", "expected a JSON object")
        return data

    def refresh(self, now: datetime) -> dict:
        now = to_aware_utc(now)
        with self._lock:
            self._attempted_at = now
        data = self.fetch_raw()
        with self._lock:
            self._raw = data
            self._fetched_at = now
        return data

    def current(self, now: datetime) -> Optional[WeatherSnapshot]:
        """Snapshot for `now`, or None when no data younger than max_age is available."""
        now = to_aware_utc(now)
        with self._lock:
            attempted = self._attempted_at
        if attempted is None or now - attempted >= self.refresh_interval:
            try:
                self.refresh(now)
            except UpstreamFetchError as e:
                logger.error(f"{e}; keeping previous forecast")

        with self._lock:
            raw, fetched_at = self._raw, self._fetched_at
        if raw is None or fetched_at is None or now - fetched_at > self.max_age:
            return None
        try:
            return parse_forecast(raw, now, self.timezone)
        except UpstreamFetchError as e:
            logger.error(str(e))
            return None
