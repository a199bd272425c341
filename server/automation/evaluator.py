# server/automation/evaluator.py
"""
Condition evaluation.

`evaluate` is a pure function of a rule and a WorldSnapshot: no I/O, no
clock reads, no mutation. Missing data (no price for the current hour, no
weather snapshot) never satisfies a condition.
"""

from    datetime    import time
from    typing      import Callable, Dict
from    automation.conditions import (
    PriceCondition,
    PriceOperator,
    TimeCondition,
    WeatherCondition,
    parse_condition,
)
from    automation.snapshot import WorldSnapshot


def _equal(tolerance: float) -> Callable[[float, float], bool]:
    if tolerance and tolerance > 0:
        return lambda a, b: abs(a - b) <= tolerance
    return lambda a, b: a == b


def compare_price(operator: PriceOperator, price: float, threshold: float, tolerance: float = 0.0) -> bool:
    operators: Dict[PriceOperator, Callable[[float, float], bool]] = {
        PriceOperator.lt: lambda a, b: a < b,
        PriceOperator.gt: lambda a, b: a > b,
        PriceOperator.eq: _equal(tolerance),
    }
    return operators[PriceOperator(operator)](float(price), float(threshold))


def _hhmm(text: str) -> time:
    hours, minutes = text.split(":")
    return time(int(hours), int(minutes))


def in_time_window(moment: time, start: str, end: str) -> bool:
    start_t = _hhmm(start)
    end_t = _hhmm(end)
    if start_t == end_t:
        return False                                            # zero-width window
    if start_t < end_t:
        return start_t <= moment < end_t
    return moment >= start_t or moment < end_t                  # spans midnight


def evaluate_price(condition: PriceCondition, snapshot: WorldSnapshot, tolerance: float = 0.0) -> bool:
    point = snapshot.price_at()
    if point is None:
        return False
    return compare_price(condition.operator, point.SEK_per_kWh, condition.value, tolerance)


def evaluate_time(condition: TimeCondition, snapshot: WorldSnapshot) -> bool:
    local = snapshot.local_now
    return in_time_window(local.time(), condition.start_time, condition.end_time)


def evaluate_weather(condition: WeatherCondition, snapshot: WorldSnapshot) -> bool:
    if snapshot.weather is None:
        return False
    return snapshot.weather.condition == condition.condition


def evaluate(rule, snapshot: WorldSnapshot, price_tolerance: float = 0.0) -> bool:
    """
    Is `rule` satisfied in `snapshot`?

    Inactive rules are never satisfied. A condition that cannot be decoded
    raises (pydantic.ValidationError) so the caller can mark the rule failed.
    """
    if not rule.is_active:
        return False

    condition = parse_condition(rule.condition)
    if isinstance(condition, PriceCondition):
        return evaluate_price(condition, snapshot, price_tolerance)
    if isinstance(condition, TimeCondition):
        return evaluate_time(condition, snapshot)
    return evaluate_weather(condition, snapshot)
