from devices.ingest import TelemetryIngestor

from tests.helpers import T0


def test_applies_observation_to_matching_device(registry, make_device):
    device = make_device(topic="shellies/plug/heater", online=False)
    ingestor = TelemetryIngestor(registry)
    assert ingestor.handle("shellies/plug/heater/status", b'{"relay0": {"ison": true}, "power0": 850.5}', now=T0)
    updated = registry.get_device(device.id)
    assert updated.is_on is True
    assert updated.power == "850.5"
    assert updated.status == "online"


def test_unmatched_topic_dropped(registry, make_device):
    make_device(topic="shellies/plug/heater")
    ingestor = TelemetryIngestor(registry)
    assert ingestor.handle("shellies/other/status", b'{"ison": true}') is False
    assert ingestor.stats["unmatched"] == 1


def test_malformed_message_does_not_block_next(registry, make_device):
    device = make_device(topic="shellies/plug/heater")
    ingestor = TelemetryIngestor(registry)
    assert ingestor.handle("shellies/plug/heater", b"{not json") is False
    assert ingestor.handle("shellies/plug/heater", b'{"relay_state": 1}', now=T0) is True
    assert registry.get_device(device.id).is_on is True
    assert ingestor.stats["malformed"] == 1
    assert ingestor.stats["applied"] >= 1


def test_command_echo_ignored(registry, make_device):
    device = make_device(topic="shellies/plug/heater")
    ingestor = TelemetryIngestor(registry)
    assert ingestor.handle("shellies/plug/heater/command", b"on") is False
    assert ingestor.stats["ignored"] == 1
    assert registry.get_device(device.id).is_on is False


def test_registry_failure_is_contained(registry, make_device, monkeypatch):
    make_device(topic="shellies/plug/heater")
    ingestor = TelemetryIngestor(registry)

    def explode(*args, **kwargs):
        raise RuntimeError("database is locked")

    monkeypatch.setattr(registry, "apply_observation", explode)
    assert ingestor.handle("shellies/plug/heater", b'{"ison": true}') is False
    assert ingestor.stats["errors"] == 1
