# server/feeds/prices.py

import  threading
import  time
import  requests
from    datetime        import date, datetime, tzinfo
from    typing          import Dict, List, Optional, Tuple
from    automation.snapshot import PricePoint
from    config          import constants
from    utils.errors    import UpstreamFetchError
from    utils.logger    import getLogger
from    utils.timeutil  import to_aware_utc

logger = getLogger("PriceFeed")


class PriceFeed:
    """Hourly spot prices from elprisetjustnu.se, cached per (day, zone)."""

    def __init__(self, url_template: str, zone: str, timezone: tzinfo,
                 timeout: float = constants.FEED_TIMEOUT_SECONDS,
                 refresh_interval: float = constants.PRICE_REFRESH_SECONDS):
        self.url_template = url_template
        self.zone = zone
        self.timezone = timezone
        self.timeout = timeout
        self.refresh_interval = refresh_interval
        self._cache: Dict[Tuple[date, str], List[PricePoint]] = {}
        self._fetched_at: Dict[Tuple[date, str], float] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_settings(cls, settings):
        return cls(
            url_template    = settings.price_api_url,
            zone            = settings.price_zone,
            timezone        = settings.timezone,
            timeout         = settings.feed_timeout_seconds,
        )

    def url_for(self, day: date, zone: Optional[str] = None) -> str:
        return self.url_template.format(year=day.year, month=day.month, day=day.day, zone=zone or self.zone)

    def fetch_raw(self, day: date, zone: Optional[str] = None) -> list:
        url = self.url_for(day, zone)
        logger.info(f"Fetching electricity prices from: {url}")
        try:
            response = requests.get(url, timeout=self.timeout)
            response.raise_for_status()
            data = response.json()
        except (requests.RequestException, ValueError) as e:
            raise UpstreamFetchError("electricity prices", str(e))
        if not isinstance(data, list):
            raise UpstreamFetchError("electricity prices", "expected a JSON list")
        return data

    def fetch(self, day: date, zone: Optional[str] = None) -> List[PricePoint]:
        zone = zone or self.zone
        try:
            points = [PricePoint.model_validate(item) for item in self.fetch_raw(day, zone)]
        except UpstreamFetchError:
            raise
        except Exception as e:
            raise UpstreamFetchError("electricity prices", f"unexpected payload: {e}")
        points.sort(key=lambda p: p.time_start)
        with self._lock:
            self._cache[(day, zone)] = points
            self._fetched_at[(day, zone)] = time.monotonic()
        return points

    def points_for(self, now: datetime) -> List[PricePoint]:
        """Points for the local day containing `now`; last good data if the refresh fails."""
        day = to_aware_utc(now).astimezone(self.timezone).date()
        key = (day, self.zone)
        with self._lock:
            cached = self._cache.get(key)
            fetched_at = self._fetched_at.get(key)
        fresh = fetched_at is not None and time.monotonic() - fetched_at < self.refresh_interval
        if cached is not None and fresh:
            return cached
        try:
            return self.fetch(day)
        except UpstreamFetchError as e:
            logger.error(f"{e}; using {len(cached or [])} cached price point(s)")
            with self._lock:
                self._fetched_at[key] = time.monotonic()        # back off until the next refresh interval
                self._cache.setdefault(key, [])
            return cached or []
