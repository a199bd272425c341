# server/app/services.py

from    dataclasses             import dataclass
from    datetime                import timedelta
from    typing                  import Optional
from    automation.rules        import RuleStore
from    automation.scheduler    import AutomationScheduler
from    automation.snapshot     import SnapshotBuilder
from    config.settings         import Settings
from    database.db             import create_db_engine, init_db
from    devices.dispatcher      import CommandDispatcher, Transport
from    devices.ingest          import TelemetryIngestor
from    devices.registry        import DeviceRegistry
from    feeds.prices            import PriceFeed
from    feeds.weather           import WeatherFeed


@dataclass
class Services:
    settings:       Settings
    engine:         object
    registry:       DeviceRegistry
    rules:          RuleStore
    ingestor:       TelemetryIngestor
    dispatcher:     CommandDispatcher
    scheduler:      AutomationScheduler
    transport:      Transport
    price_feed:     Optional[PriceFeed] = None
    weather_feed:   Optional[WeatherFeed] = None


def build_services(settings: Settings, transport: Transport = None, engine=None,
                   price_feed: PriceFeed = None, weather_feed: WeatherFeed = None) -> Services:
    """
    Wire the core together. Without an explicit transport an MQTTClient is
    created (but not started) and fed into the telemetry ingestor.
    """
    engine = engine if engine is not None else create_db_engine(settings.database_url)
    init_db(engine)

    staleness = timedelta(seconds=settings.device_staleness_seconds)
    registry = DeviceRegistry(engine, staleness=staleness)
    rules = RuleStore(engine)
    ingestor = TelemetryIngestor(registry)

    if transport is None:
        from app.mqtt_client import MQTTClient
        transport = MQTTClient(
            settings,
            on_telemetry    = ingestor.handle,
            device_topics   = lambda: [d.mqtt_topic for d in registry.get_snapshot()],
        )

    dispatcher = CommandDispatcher(registry, transport)
    price_feed = price_feed if price_feed is not None else PriceFeed.from_settings(settings)
    weather_feed = weather_feed if weather_feed is not None else WeatherFeed.from_settings(settings)

    scheduler = AutomationScheduler(
        rule_source         = rules.list_rules,
        snapshot_provider   = SnapshotBuilder(registry, price_feed, weather_feed, settings.timezone),
        registry            = registry,
        dispatcher          = dispatcher,
        staleness           = staleness,
        price_tolerance     = settings.price_eq_tolerance,
        fire_on_boot        = settings.automation_fire_on_boot,
        retry_failed        = settings.automation_retry_failed,
        max_retries         = settings.automation_max_retries,
    )
    rules.add_listener(scheduler.forget)

    return Services(
        settings        = settings,
        engine          = engine,
        registry        = registry,
        rules           = rules,
        ingestor        = ingestor,
        dispatcher      = dispatcher,
        scheduler       = scheduler,
        transport       = transport,
        price_feed      = price_feed,
        weather_feed    = weather_feed,
    )
