# server/devices/ingest.py

from    datetime        import datetime
from    typing          import Optional, Union
from    config          import constants
from    devices.registry import DeviceRegistry
from    devices.telemetry import normalize
from    utils.errors    import NormalizationError
from    utils.logger    import getLogger

logger = getLogger("TelemetryIngestor")


class TelemetryIngestor:
    """Routes one inbound telemetry message to the registry. Never raises."""

    def __init__(self, registry: DeviceRegistry):
        self.registry = registry
        self.stats = {"received": 0, "applied": 0, "unmatched": 0, "malformed": 0, "ignored": 0, "errors": 0}

    def handle(self, topic: str, payload: Union[bytes, str], now: Optional[datetime] = None) -> bool:
        self.stats["received"] += 1
        try:
            device = self.registry.resolve_topic(topic)
            if device is None:
                self.stats["unmatched"] += 1
                logger.debug(f"No device registered for topic {topic}, message dropped")
                return False

            if topic == f"{device.mqtt_topic}/{constants.COMMAND_SUBTOPIC}":
                # Our own outbound command echoed back by the broker
                self.stats["ignored"] += 1
                return False

            try:
                observation = normalize(topic, payload)
            except NormalizationError as e:
                self.stats["malformed"] += 1
                logger.warning(f"Dropped telemetry for device {device.id}: {e}")
                return False

            applied = self.registry.apply_observation(device.id, observation, now=now)
            if applied is None:
                return False
            self.stats["applied"] += 1
            return True
        except Exception as e:
            self.stats["errors"] += 1
            logger.error(f"Error handling telemetry on {topic}: {e}")
            return False
