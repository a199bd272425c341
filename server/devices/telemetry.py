# server/devices/telemetry.py
"""
Telemetry normalisation.

Shelly devices publish status in a handful of JSON shapes depending on the
family and firmware. Each known shape is described by an ordered detection
rule; the first rule whose field is present with a usable value decides the
relay state, and the same goes for power. Unknown fields are ignored.
"""

import  json
import  math
from    dataclasses import dataclass
from    decimal     import Decimal, InvalidOperation
from    enum        import Enum
from    typing      import Any, Callable, Dict, Optional, Tuple
from    utils.errors import NormalizationError


class RelayShape(str, Enum):
    RELAY_STATE_INT = "relay_state"         # {"relay_state": 1}
    NESTED_RELAY    = "relay0"              # {"relay0": {"ison": true}}
    FLAT_ISON       = "ison"                # {"ison": true}
    UNRECOGNIZED    = "unrecognized"


class PowerShape(str, Enum):
    POWER           = "power"
    POWER0          = "power0"
    UNRECOGNIZED    = "unrecognized"


@dataclass(frozen=True)
class DeviceObservation:
    topic:          str
    is_on:          Optional[bool] = None
    power:          Optional[str] = None
    relay_shape:    RelayShape = RelayShape.UNRECOGNIZED
    power_shape:    PowerShape = PowerShape.UNRECOGNIZED

    @property
    def is_empty(self) -> bool:
        return self.is_on is None and self.power is None


def _relay_state_int(data: Dict[str, Any]) -> Optional[bool]:
    value = data.get("relay_state")
    if isinstance(value, bool) or not isinstance(value, int):
        return None
    return value == 1


def _nested_relay(data: Dict[str, Any]) -> Optional[bool]:
    relay = data.get("relay0")
    if not isinstance(relay, dict):
        return None
    value = relay.get("ison")
    return value if isinstance(value, bool) else None


def _flat_ison(data: Dict[str, Any]) -> Optional[bool]:
    value = data.get("ison")
    return value if isinstance(value, bool) else None


def power_text(value: Any) -> Optional[str]:
    """Render a power reading as decimal text, or None if it is not numeric."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        if not math.isfinite(value):
            return None
        return str(Decimal(repr(value)))
    if isinstance(value, str):
        try:
            number = Decimal(value.strip())
        except InvalidOperation:
            return None
        if not number.is_finite():
            return None
        return str(number)
    return None


def _power_field(name: str) -> Callable[[Dict[str, Any]], Optional[str]]:
    def detect(data):
        if name not in data:
            return None
        return power_text(data[name])
    return detect


RELAY_RULES: Tuple[Tuple[RelayShape, Callable[[Dict[str, Any]], Optional[bool]]], ...] = (
    (RelayShape.RELAY_STATE_INT, _relay_state_int),
    (RelayShape.NESTED_RELAY,    _nested_relay),
    (RelayShape.FLAT_ISON,       _flat_ison),
)

POWER_RULES: Tuple[Tuple[PowerShape, Callable[[Dict[str, Any]], Optional[str]]], ...] = (
    (PowerShape.POWER,  _power_field("power")),
    (PowerShape.POWER0, _power_field("power0")),
)


def decode_relay(data: Dict[str, Any]) -> Tuple[RelayShape, Optional[bool]]:
    for shape, detect in RELAY_RULES:
        is_on = detect(data)
        if is_on is not None:
            return shape, is_on
    return RelayShape.UNRECOGNIZED, None


def decode_power(data: Dict[str, Any]) -> Tuple[PowerShape, Optional[str]]:
    for shape, detect in POWER_RULES:
        power = detect(data)
        if power is not None:
            return shape, power
    return PowerShape.UNRECOGNIZED, None


def normalize(topic: str, raw_payload: bytes) -> DeviceObservation:
    """
    Decode a raw telemetry payload into a DeviceObservation.

    Raises NormalizationError when the payload is not UTF-8 JSON. A JSON value
    that carries none of the known fields yields an empty observation, which
    still counts as a sign of life for the device.
    """
    if isinstance(raw_payload, str):
        text = raw_payload
    else:
        try:
            text = bytes(raw_payload).decode("utf-8")
        except UnicodeDecodeError as e:
            raise NormalizationError(topic, f"payload is not UTF-8: {e}")

    try:
        data = json.loads(text)
    except ValueError as e:
        raise NormalizationError(topic, f"malformed JSON: {e}")

    if not isinstance(data, dict):
        return DeviceObservation(topic=topic)

    relay_shape, is_on = decode_relay(data)
    power_shape, power = decode_power(data)
    return DeviceObservation(
        topic       = topic,
        is_on       = is_on,
        power       = power,
        relay_shape = relay_shape,
        power_shape = power_shape,
    )
