# server/devices/dispatcher.py

from    dataclasses     import dataclass
from    datetime        import datetime
from    enum            import Enum
from    typing          import Optional, Protocol
from    config          import constants
from    devices.registry import DeviceRegistry
from    utils.errors    import DeviceOffline, PublishError
from    utils.logger    import getLogger

logger = getLogger("CommandDispatcher")


class Transport(Protocol):
    def publish(self, topic: str, payload: str) -> bool: ...


class DeviceAction(str, Enum):
    turn_on  = "turnOn"
    turn_off = "turnOff"

    @property
    def is_on(self) -> bool:
        return self is DeviceAction.turn_on

    @property
    def payload(self) -> str:
        return constants.COMMAND_PAYLOAD_ON if self.is_on else constants.COMMAND_PAYLOAD_OFF


def command_topic(mqtt_topic: str) -> str:
    return f"{mqtt_topic}/{constants.COMMAND_SUBTOPIC}"


@dataclass(frozen=True)
class DispatchResult:
    device_id:  int
    action:     DeviceAction
    topic:      str
    payload:    str


class CommandDispatcher:
    """
    Turns an on/off action into a relay command on `<topic>/command`.

    Publishing is fire-and-forget: success means the transport accepted the
    message, after which the registry is updated optimistically. There is no
    retry here.
    """

    def __init__(self, registry: DeviceRegistry, transport: Transport):
        self.registry = registry
        self.transport = transport

    def dispatch(self, device_id: int, action: DeviceAction, now: Optional[datetime] = None) -> DispatchResult:
        action = DeviceAction(action)
        device = self.registry.get_device(device_id)                                # DeviceNotFound
        # Status only flips on the next sweep, so check the staleness window here too
        if not device.online or self.registry.is_expired(device, now):
            logger.warning(f"Refusing {action.value} for device {device_id}: device is offline")
            raise DeviceOffline(device_id)

        topic = command_topic(device.mqtt_topic)
        if not self.transport.publish(topic, action.payload):
            logger.error(f"Failed to publish {action.payload!r} to {topic}")
            raise PublishError(topic)

        self.registry.apply_command_result(device_id, action.is_on)
        logger.info(f"Sent {action.payload!r} to device {device_id} on topic {topic}")
        return DispatchResult(device_id=device_id, action=action, topic=topic, payload=action.payload)
