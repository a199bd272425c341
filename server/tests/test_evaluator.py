from datetime import datetime, time, timedelta, timezone
from types import SimpleNamespace
from zoneinfo import ZoneInfo

import pytest
from pydantic import ValidationError as SchemaError

from automation.evaluator import compare_price, evaluate, in_time_window
from automation.snapshot import PricePoint, WeatherSnapshot, WorldSnapshot

from tests.helpers import T0

UTC = timezone.utc


def rule(condition, is_active=True):
    return SimpleNamespace(id=1, device_id=1, is_active=is_active, condition=condition,
                           action={"type": "turnOn", "deviceId": 1})


def price_point(value, start=T0, hours=1):
    return PricePoint(SEK_per_kWh=value, time_start=start, time_end=start + timedelta(hours=hours))


def snapshot(now=T0, prices=(), weather=None, tz=UTC):
    return WorldSnapshot(now=now, timezone=tz, prices=tuple(prices), weather=weather)


def at_local(hour, minute=0):
    return datetime(2025, 5, 19, hour, minute, tzinfo=UTC)


class TestPriceCondition:
    def test_below_threshold_inside_current_hour(self):
        snap = snapshot(now=T0 + timedelta(minutes=30), prices=[price_point(0.8)])
        assert evaluate(rule({"type": "price", "operator": "lt", "value": 1.0}), snap) is True

    def test_no_price_point_for_now_fails_closed(self):
        snap = snapshot(now=T0 + timedelta(hours=2), prices=[price_point(0.8)])
        assert evaluate(rule({"type": "price", "operator": "lt", "value": 1.0}), snap) is False

    def test_no_prices_at_all(self):
        assert evaluate(rule({"type": "price", "operator": "gt", "value": -100}), snapshot()) is False

    def test_interval_is_half_open(self):
        prices = [price_point(0.5, T0), price_point(3.0, T0 + timedelta(hours=1))]
        snap = snapshot(now=T0 + timedelta(hours=1), prices=prices)
        assert evaluate(rule({"type": "price", "operator": "gt", "value": 2.0}), snap) is True
        assert evaluate(rule({"type": "price", "operator": "lt", "value": 1.0}), snap) is False

    def test_strict_comparisons(self):
        snap = snapshot(prices=[price_point(1.0)])
        assert evaluate(rule({"type": "price", "operator": "lt", "value": 1.0}), snap) is False
        assert evaluate(rule({"type": "price", "operator": "gt", "value": 1.0}), snap) is False
        assert evaluate(rule({"type": "price", "operator": "eq", "value": 1.0}), snap) is True

    def test_eq_is_exact_by_default(self):
        snap = snapshot(prices=[price_point(0.1 + 0.2)])
        assert evaluate(rule({"type": "price", "operator": "eq", "value": 0.3}), snap) is False

    def test_eq_with_tolerance(self):
        snap = snapshot(prices=[price_point(0.1 + 0.2)])
        assert evaluate(rule({"type": "price", "operator": "eq", "value": 0.3}), snap, price_tolerance=1e-9) is True

    def test_price_with_offset_timestamps(self):
        stockholm = ZoneInfo("Europe/Stockholm")
        start = datetime(2025, 5, 19, 12, 0, tzinfo=stockholm)
        snap = snapshot(now=datetime(2025, 5, 19, 10, 15, tzinfo=UTC), prices=[price_point(0.4, start)])
        assert evaluate(rule({"type": "price", "operator": "lt", "value": 0.5}), snap) is True


class TestTimeCondition:
    WRAP = {"type": "time", "startTime": "22:00", "endTime": "06:00"}

    @pytest.mark.parametrize("hour, minute, expected", [
        (23, 30, True),
        (2, 0, True),
        (22, 0, True),
        (12, 0, False),
        (6, 0, False),
        (5, 59, True),
    ])
    def test_window_spanning_midnight(self, hour, minute, expected):
        assert evaluate(rule(self.WRAP), snapshot(now=at_local(hour, minute))) is expected

    def test_plain_window(self):
        window = {"type": "time", "startTime": "08:00", "endTime": "17:00"}
        assert evaluate(rule(window), snapshot(now=at_local(8))) is True
        assert evaluate(rule(window), snapshot(now=at_local(16, 59))) is True
        assert evaluate(rule(window), snapshot(now=at_local(17))) is False
        assert evaluate(rule(window), snapshot(now=at_local(7, 59))) is False

    def test_zero_width_never_matches(self):
        window = {"type": "time", "startTime": "10:00", "endTime": "10:00"}
        assert evaluate(rule(window), snapshot(now=at_local(10))) is False

    def test_uses_local_time_of_day(self):
        # 21:30 UTC is 23:30 in Stockholm during summer time
        snap = snapshot(now=at_local(21, 30), tz=ZoneInfo("Europe/Stockholm"))
        assert evaluate(rule({"type": "time", "startTime": "23:00", "endTime": "23:59"}), snap) is True
        assert evaluate(rule({"type": "time", "startTime": "21:00", "endTime": "22:00"}), snap) is False

    def test_in_time_window_helper(self):
        assert in_time_window(time(0, 0), "22:00", "06:00") is True
        assert in_time_window(time(21, 59, 59), "22:00", "06:00") is False


class TestWeatherCondition:
    def weather(self, condition):
        return WeatherSnapshot(condition=condition, observed_at=T0)

    def test_exact_match(self):
        snap = snapshot(weather=self.weather("rain"))
        assert evaluate(rule({"type": "weather", "condition": "rain"}), snap) is True

    def test_no_fuzzy_matching(self):
        snap = snapshot(weather=self.weather("shower-rain"))
        assert evaluate(rule({"type": "weather", "condition": "rain"}), snap) is False

    def test_missing_weather_fails_closed(self):
        assert evaluate(rule({"type": "weather", "condition": "clear-sky"}), snapshot()) is False


class TestRuleLevel:
    def test_inactive_rule_never_satisfied(self):
        snap = snapshot(prices=[price_point(0.1)])
        assert evaluate(rule({"type": "price", "operator": "lt", "value": 1.0}, is_active=False), snap) is False

    def test_inactive_rule_short_circuits_bad_condition(self):
        assert evaluate(rule({"type": "bogus"}, is_active=False), snapshot()) is False

    @pytest.mark.parametrize("condition", [
        {"type": "bogus"},
        {"type": "price", "operator": "between", "value": 1.0},
        {"type": "time", "startTime": "25:00", "endTime": "06:00"},
        {"type": "weather", "condition": "hail"},
    ])
    def test_malformed_condition_raises(self, condition):
        with pytest.raises(SchemaError):
            evaluate(rule(condition), snapshot())

    def test_deterministic(self):
        snap = snapshot(prices=[price_point(0.8)])
        r = rule({"type": "price", "operator": "lt", "value": 1.0})
        assert {evaluate(r, snap) for _ in range(5)} == {True}


def test_compare_price_operators():
    assert compare_price("lt", 1, 2)
    assert compare_price("gt", 3, 2)
    assert not compare_price("eq", 1.0, 1.05)
    assert compare_price("eq", 1.0, 1.05, tolerance=0.1)
