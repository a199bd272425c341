from datetime import timedelta, timezone

import pytest
from pydantic import ValidationError as SchemaError
from sqlmodel import select

from automation.conditions import RuleCreate
from database.db import get_session
from database.models import AutomationRule, DeviceCreate, DeviceUpdate
from devices.telemetry import DeviceObservation
from utils.errors import DeviceNotFound, ValidationError

from tests.helpers import T0


class TestDefinitions:
    def test_new_device_starts_offline(self, registry):
        device = registry.create_device(DeviceCreate(
            name="Living Room Light", type="shelly1", ipAddress="192.168.1.100",
            mqttTopic="shellies/light/living_room",
        ))
        assert device.id is not None
        assert device.status == "offline"
        assert device.is_on is False
        assert device.power == "0"
        assert device.last_seen is None

    def test_duplicate_topic_rejected(self, registry, make_device):
        make_device(topic="shellies/plug/tv_outlet")
        with pytest.raises(ValidationError):
            registry.create_device(DeviceCreate(
                name="Other", type="shellyplug", ipAddress="192.168.1.9", mqttTopic="shellies/plug/tv_outlet",
            ))

    def test_invalid_type_rejected_by_schema(self):
        with pytest.raises(SchemaError):
            DeviceCreate(name="x", type="toaster", ipAddress="1.2.3.4", mqttTopic="shellies/x")

    def test_wildcard_topic_rejected_by_schema(self):
        with pytest.raises(SchemaError):
            DeviceCreate(name="x", type="shelly1", ipAddress="1.2.3.4", mqttTopic="shellies/#")

    def test_update_metadata_only(self, registry, make_device):
        device = make_device()
        updated = registry.update_device(device.id, DeviceUpdate(name="Heater"))
        assert updated.name == "Heater"
        assert updated.status == device.status
        assert updated.is_on == device.is_on

    def test_update_unknown_device(self, registry):
        with pytest.raises(DeviceNotFound):
            registry.update_device(999, DeviceUpdate(name="x"))

    def test_delete_removes_rules_targeting_device(self, engine, registry, rule_store, make_device):
        device = make_device()
        rule_store.create_rule(RuleCreate(
            name="Cheap", deviceId=device.id,
            condition={"type": "price", "operator": "lt", "value": 1.0},
            action={"type": "turnOn", "deviceId": device.id},
        ))
        registry.delete_device(device.id)
        assert registry.find_device(device.id) is None
        with get_session(engine) as session:
            assert session.exec(select(AutomationRule)).all() == []


class TestTopicResolution:
    def test_exact_match(self, registry, make_device):
        device = make_device(topic="shellies/plug/kitchen")
        assert registry.resolve_topic("shellies/plug/kitchen").id == device.id

    def test_sub_topic_routes_to_parent(self, registry, make_device):
        device = make_device(topic="shellies/plug/kitchen")
        assert registry.resolve_topic("shellies/plug/kitchen/status").id == device.id

    def test_prefix_must_end_at_segment_boundary(self, registry, make_device):
        make_device(topic="shellies/plug/tv")
        assert registry.resolve_topic("shellies/plug/tv_outlet/status") is None

    def test_longest_prefix_wins(self, registry, make_device):
        make_device(topic="shellies/plug")
        inner = make_device(topic="shellies/plug/kitchen")
        assert registry.resolve_topic("shellies/plug/kitchen/relay/0").id == inner.id

    def test_no_match(self, registry, make_device):
        make_device(topic="shellies/plug/kitchen")
        assert registry.resolve_topic("zigbee/sensor/1") is None


class TestObservations:
    def test_partial_merge(self, registry, make_device):
        device = make_device()
        registry.apply_observation(device.id, DeviceObservation(topic="t", is_on=True, power="15.2"), now=T0)
        updated = registry.apply_observation(device.id, DeviceObservation(topic="t", power="3"), now=T0)
        assert updated.is_on is True
        assert updated.power == "3"

    def test_observation_marks_online_and_stamps_last_seen(self, registry, make_device):
        device = make_device(online=False)
        later = T0 + timedelta(minutes=2)
        updated = registry.apply_observation(device.id, DeviceObservation(topic="t"), now=later)
        assert updated.status == "online"
        assert updated.last_seen == later

    def test_unknown_device_is_noop(self, registry):
        assert registry.apply_observation(42, DeviceObservation(topic="t", is_on=True)) is None

    def test_command_result_is_optimistic(self, registry, make_device):
        device = make_device()
        updated = registry.apply_command_result(device.id, True)
        assert updated.is_on is True
        assert updated.last_seen == device.last_seen

    def test_command_result_unknown_device(self, registry):
        with pytest.raises(DeviceNotFound):
            registry.apply_command_result(42, True)


class TestStaleness:
    def test_expired_device_goes_offline(self, registry, make_device):
        stale = make_device(seen_at=T0)
        fresh = make_device(seen_at=T0 + timedelta(minutes=4))
        flipped = registry.mark_stale_if_expired(T0 + timedelta(minutes=6))
        assert flipped == [stale.id]
        assert registry.get_device(stale.id).status == "offline"
        assert registry.get_device(fresh.id).status == "online"

    def test_within_window_stays_online(self, registry, make_device):
        device = make_device(seen_at=T0)
        assert registry.mark_stale_if_expired(T0 + timedelta(minutes=5)) == []
        assert registry.get_device(device.id).status == "online"

    def test_custom_window(self, registry, make_device):
        device = make_device(seen_at=T0)
        assert registry.mark_stale_if_expired(T0 + timedelta(minutes=2), staleness=timedelta(minutes=1)) == [device.id]

    def test_sweep_is_idempotent(self, registry, make_device):
        make_device(seen_at=T0)
        make_device(seen_at=T0 + timedelta(minutes=10))
        now = T0 + timedelta(minutes=12)
        registry.mark_stale_if_expired(now)
        first = [(d.id, d.status) for d in registry.get_snapshot()]
        assert registry.mark_stale_if_expired(now) == []
        second = [(d.id, d.status) for d in registry.get_snapshot()]
        assert first == second

    def test_new_observation_brings_device_back(self, registry, make_device):
        device = make_device(seen_at=T0)
        registry.mark_stale_if_expired(T0 + timedelta(minutes=10))
        registry.apply_observation(device.id, DeviceObservation(topic="t"), now=T0 + timedelta(minutes=11))
        assert registry.get_device(device.id).online

    def test_is_expired_without_a_sweep(self, registry, make_device):
        device = make_device(seen_at=T0)
        assert registry.is_expired(device, T0 + timedelta(minutes=4)) is False
        assert registry.is_expired(device, T0 + timedelta(minutes=6)) is True
        assert registry.get_device(device.id).status == "online"


class TestTimestamps:
    def test_stored_timestamps_come_back_as_aware_utc(self, registry, make_device):
        device = make_device(seen_at=T0)
        fetched = registry.get_device(device.id)
        assert fetched.last_seen == T0
        assert fetched.last_seen.utcoffset() == timedelta(0)
        assert fetched.created_at.utcoffset() == timedelta(0)

    def test_offset_observation_time_is_stored_in_utc(self, registry, make_device):
        device = make_device(online=False)
        stockholm = timezone(timedelta(hours=2))
        registry.apply_observation(device.id, DeviceObservation(topic="t"), now=T0.astimezone(stockholm))
        assert registry.get_device(device.id).last_seen == T0
        assert registry.mark_stale_if_expired(T0 + timedelta(minutes=4)) == []
