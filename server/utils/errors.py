# server/utils/errors.py


class EnergyServerError(Exception):
    """Base class for errors raised by the energy server core."""


class NormalizationError(EnergyServerError):
    """Telemetry payload could not be decoded."""

    def __init__(self, topic: str, reason: str):
        super().__init__(f"{topic}: {reason}")
        self.topic = topic
        self.reason = reason


class DeviceNotFound(EnergyServerError):
    def __init__(self, device_id):
        super().__init__(f"Device not found: {device_id}")
        self.device_id = device_id


class RuleNotFound(EnergyServerError):
    def __init__(self, rule_id):
        super().__init__(f"Automation rule not found: {rule_id}")
        self.rule_id = rule_id


class DeviceOffline(EnergyServerError):
    def __init__(self, device_id):
        super().__init__(f"Device {device_id} is offline")
        self.device_id = device_id


class PublishError(EnergyServerError):
    def __init__(self, topic: str):
        super().__init__(f"Failed to publish command on {topic}")
        self.topic = topic


class ValidationError(EnergyServerError):
    """Device or rule definition rejected before persistence."""


class UpstreamFetchError(EnergyServerError):
    def __init__(self, source: str, reason: str):
        super().__init__(f"Failed to fetch {source}: {reason}")
        self.source = source
        self.reason = reason
