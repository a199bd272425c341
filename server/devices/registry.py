# server/devices/registry.py

import  threading
from    datetime        import datetime, timedelta
from    typing          import List, Optional
from    sqlmodel        import select
from    config          import constants
from    database.db     import get_session
from    database.models import AutomationRule, Device, DeviceCreate, DeviceRead, DeviceUpdate
from    devices.telemetry import DeviceObservation
from    utils.errors    import DeviceNotFound, ValidationError
from    utils.logger    import getLogger
from    utils.timeutil  import to_aware_utc, utcnow

logger = getLogger("DeviceRegistry")


def topic_matches(device_topic: str, topic: str) -> bool:
    """True if `topic` is the device topic itself or one of its sub-topics."""
    return topic == device_topic or topic.startswith(device_topic + "/")


class DeviceRegistry:
    """
    Owns the canonical Device records.

    Every write to a device record goes through this class. Writes are
    serialised by a single lock because telemetry arrives from the MQTT
    network thread while automation ticks run on a worker thread.
    """

    def __init__(self, engine, staleness: timedelta = timedelta(seconds=constants.DEVICE_STALENESS_SECONDS)):
        self.engine = engine
        self.staleness = staleness
        self._lock = threading.RLock()

    # Queries

    def get_snapshot(self) -> List[DeviceRead]:
        with get_session(self.engine) as session:
            devices = session.exec(select(Device).order_by(Device.id)).all()
            return [DeviceRead.model_validate(d) for d in devices]

    def find_device(self, device_id: int) -> Optional[DeviceRead]:
        with get_session(self.engine) as session:
            device = session.get(Device, device_id)
            return DeviceRead.model_validate(device) if device else None

    def get_device(self, device_id: int) -> DeviceRead:
        device = self.find_device(device_id)
        if device is None:
            raise DeviceNotFound(device_id)
        return device

    def resolve_topic(self, topic: str) -> Optional[DeviceRead]:
        """Exact topic match first, then the longest registered parent topic."""
        best = None
        for device in self.get_snapshot():
            if device.mqtt_topic == topic:
                return device
            if topic_matches(device.mqtt_topic, topic):
                if best is None or len(device.mqtt_topic) > len(best.mqtt_topic):
                    best = device
        return best

    # Definition writes

    def create_device(self, payload: DeviceCreate) -> DeviceRead:
        with self._lock, get_session(self.engine) as session:
            self._ensure_topic_free(session, payload.mqtt_topic)
            device = Device(
                name        = payload.name,
                type        = payload.type,
                ip_address  = payload.ip_address,
                mqtt_topic  = payload.mqtt_topic,
            )
            session.add(device)
            session.commit()
            session.refresh(device)
            logger.info(f"Registered device {device.id} ({device.name}) on topic {device.mqtt_topic}")
            return DeviceRead.model_validate(device)

    def update_device(self, device_id: int, payload: DeviceUpdate) -> DeviceRead:
        updates = payload.model_dump(exclude_unset=True, by_alias=False)
        with self._lock, get_session(self.engine) as session:
            device = session.get(Device, device_id)
            if not device:
                raise DeviceNotFound(device_id)
            topic = updates.get("mqtt_topic")
            if topic is not None and topic != device.mqtt_topic:
                self._ensure_topic_free(session, topic)
            for field, value in updates.items():
                if value is not None:
                    setattr(device, field, value)
            session.add(device)
            session.commit()
            session.refresh(device)
            logger.info(f"Updated device {device_id}: {sorted(updates)}")
            return DeviceRead.model_validate(device)

    def delete_device(self, device_id: int) -> DeviceRead:
        with self._lock, get_session(self.engine) as session:
            device = session.get(Device, device_id)
            if not device:
                raise DeviceNotFound(device_id)
            removed = DeviceRead.model_validate(device)
            rules = session.exec(select(AutomationRule).where(AutomationRule.device_id == device_id)).all()
            for rule in rules:
                session.delete(rule)
            session.flush()
            session.delete(device)
            session.commit()
            logger.info(f"Deleted device {device_id} and {len(rules)} rule(s) targeting it")
            return removed

    def _ensure_topic_free(self, session, topic: str):
        existing = session.exec(select(Device).where(Device.mqtt_topic == topic)).first()
        if existing:
            raise ValidationError(f"mqttTopic {topic!r} is already used by device {existing.id}")

    # State writes

    def apply_observation(self, device_id: int, observation: DeviceObservation,
                          now: Optional[datetime] = None) -> Optional[DeviceRead]:
        """Merge the fields present in `observation`; mark the device online."""
        seen_at = to_aware_utc(now) if now else utcnow()
        with self._lock, get_session(self.engine) as session:
            device = session.get(Device, device_id)
            if not device:
                logger.warning(f"Observation for unknown device {device_id} dropped ({observation.topic})")
                return None
            if observation.is_on is not None:
                device.is_on = observation.is_on
            if observation.power is not None:
                device.power = observation.power
            if device.status != constants.DEVICE_STATUS_ONLINE:
                logger.info(f"Device {device_id} is back online")
            device.status = constants.DEVICE_STATUS_ONLINE
            device.last_seen = seen_at
            session.add(device)
            session.commit()
            session.refresh(device)
            logger.debug(f"Device {device_id} observed: is_on={device.is_on} power={device.power}")
            return DeviceRead.model_validate(device)

    def apply_command_result(self, device_id: int, requested_is_on: bool) -> DeviceRead:
        """Optimistically record a dispatched relay command until telemetry says otherwise."""
        with self._lock, get_session(self.engine) as session:
            device = session.get(Device, device_id)
            if not device:
                raise DeviceNotFound(device_id)
            device.is_on = requested_is_on
            session.add(device)
            session.commit()
            session.refresh(device)
            return DeviceRead.model_validate(device)

    def is_expired(self, device, now: Optional[datetime] = None,
                   staleness: Optional[timedelta] = None) -> bool:
        """True if `device` has no observation inside the staleness window ending at `now`."""
        window = staleness if staleness is not None else self.staleness
        cutoff = (to_aware_utc(now) if now else utcnow()) - window
        return device.last_seen is None or to_aware_utc(device.last_seen) < cutoff

    def mark_stale_if_expired(self, now: Optional[datetime] = None,
                              staleness: Optional[timedelta] = None) -> List[int]:
        """Flip devices with no observation inside the staleness window to offline."""
        window = staleness if staleness is not None else self.staleness
        flipped = []
        with self._lock, get_session(self.engine) as session:
            devices = session.exec(
                select(Device).where(Device.status == constants.DEVICE_STATUS_ONLINE)
            ).all()
            for device in devices:
                if self.is_expired(device, now, window):
                    device.status = constants.DEVICE_STATUS_OFFLINE
                    session.add(device)
                    flipped.append(device.id)
            if flipped:
                session.commit()
                logger.warning(f"Marked {len(flipped)} device(s) offline after {window}: {flipped}")
        return flipped
