from datetime import timedelta

import pytest

from devices.dispatcher import CommandDispatcher, DeviceAction, command_topic
from devices.ingest import TelemetryIngestor
from utils.errors import DeviceNotFound, DeviceOffline, PublishError

from tests.helpers import T0, FakeTransport

NOW = T0 + timedelta(minutes=1)


def test_turn_on_publishes_and_updates_optimistically(registry, dispatcher, transport, make_device):
    device = make_device(topic="shellies/plug/bedroom_heater")
    result = dispatcher.dispatch(device.id, DeviceAction.turn_on, NOW)
    assert transport.published == [("shellies/plug/bedroom_heater/command", "on")]
    assert result.topic == "shellies/plug/bedroom_heater/command"
    assert registry.get_device(device.id).is_on is True


def test_turn_off(registry, dispatcher, transport, make_device):
    device = make_device()
    registry.apply_command_result(device.id, True)
    dispatcher.dispatch(device.id, "turnOff", NOW)
    assert transport.published[-1][1] == "off"
    assert registry.get_device(device.id).is_on is False


def test_offline_device_rejected_without_publish(registry, dispatcher, transport, make_device):
    device = make_device(online=False)
    with pytest.raises(DeviceOffline):
        dispatcher.dispatch(device.id, DeviceAction.turn_on, NOW)
    assert transport.published == []
    assert registry.get_device(device.id).is_on is False


def test_stale_device_rejected(registry, dispatcher, transport, make_device):
    device = make_device(seen_at=T0)
    registry.mark_stale_if_expired(T0 + timedelta(minutes=30))
    with pytest.raises(DeviceOffline):
        dispatcher.dispatch(device.id, DeviceAction.turn_on, T0 + timedelta(minutes=30))
    assert transport.published == []


def test_expired_device_rejected_before_any_sweep(registry, dispatcher, transport, make_device):
    device = make_device(seen_at=T0 - timedelta(hours=2))
    assert registry.get_device(device.id).status == "online"
    with pytest.raises(DeviceOffline):
        dispatcher.dispatch(device.id, DeviceAction.turn_on, T0)
    with pytest.raises(DeviceOffline):
        dispatcher.dispatch(device.id, DeviceAction.turn_on)        # wall clock
    assert transport.published == []
    assert registry.get_device(device.id).is_on is False


def test_unknown_device(dispatcher):
    with pytest.raises(DeviceNotFound):
        dispatcher.dispatch(404, DeviceAction.turn_on, NOW)


def test_rejected_publish_leaves_state_untouched(registry, make_device):
    device = make_device()
    dispatcher = CommandDispatcher(registry, FakeTransport(accept=False))
    with pytest.raises(PublishError):
        dispatcher.dispatch(device.id, DeviceAction.turn_on, NOW)
    assert registry.get_device(device.id).is_on is False


def test_later_observation_overrides_optimistic_state(registry, dispatcher, make_device):
    device = make_device(topic="shellies/plug/kitchen")
    dispatcher.dispatch(device.id, DeviceAction.turn_on, NOW)
    TelemetryIngestor(registry).handle("shellies/plug/kitchen/status", b'{"ison": false}', now=NOW)
    assert registry.get_device(device.id).is_on is False


def test_command_topic():
    assert command_topic("shellies/plug/tv") == "shellies/plug/tv/command"
