"""Shared fixtures: in-memory database, registry and a recording transport."""

from datetime import timedelta

import pytest

from automation.rules import RuleStore
from database.db import create_db_engine, init_db
from database.models import DeviceCreate
from devices.dispatcher import CommandDispatcher
from devices.registry import DeviceRegistry
from devices.telemetry import DeviceObservation
from tests.helpers import T0, FakeTransport


@pytest.fixture
def engine():
    engine = create_db_engine("sqlite://")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def registry(engine):
    return DeviceRegistry(engine, staleness=timedelta(minutes=5))


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def dispatcher(registry, transport):
    return CommandDispatcher(registry, transport)


@pytest.fixture
def rule_store(engine):
    return RuleStore(engine)


@pytest.fixture
def make_device(registry):
    counter = {"n": 0}

    def _make(topic=None, online=True, seen_at=T0, device_type="shellyplug", name=None):
        counter["n"] += 1
        topic = topic or f"shellies/plug/device_{counter['n']}"
        device = registry.create_device(DeviceCreate(
            name=name or f"Device {counter['n']}",
            type=device_type,
            ipAddress=f"192.168.1.{100 + counter['n']}",
            mqttTopic=topic,
        ))
        if online:
            device = registry.apply_observation(device.id, DeviceObservation(topic=topic), now=seen_at)
        return device

    return _make
