"""Unit tests for CRON expression parsing and fire decisions."""

from __future__ import annotations

import random
from datetime import datetime, timedelta

import pytest

from provisioner.runtime.cron import (
    CronExpression,
    ScheduleSet,
    compile_schedule_set,
    cron_weekday,
    parse_field,
    should_fire,
)
from provisioner.runtime.errors import ValidationFailedError

MONDAY_0800 = datetime(2024, 1, 1, 8, 0)  # 2024-01-01 was a Monday


# ---------------------------------------------------------------------------
# Field parsing
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    ("field", "low", "high", "expected"),
    [
        ("*", 0, 59, None),
        ("5", 0, 59, {5}),
        ("1,3,5", 0, 6, {1, 3, 5}),
        ("1-5", 0, 6, {1, 2, 3, 4, 5}),
        ("*/15", 0, 59, {0, 15, 30, 45}),
        ("8-18/5", 0, 23, {8, 13, 18}),
        ("50/5", 0, 59, {50, 55}),
        ("1-2,10", 1, 12, {1, 2, 10}),
    ],
)
def test_parse_field(field: str, low: int, high: int, expected: set[int] | None) -> None:
    result = parse_field(field, low, high)
    if expected is None:
        assert result is None
    else:
        assert result == frozenset(expected)


@pytest.mark.parametrize(
    "expression",
    [
        "60 * * * *",  # minute out of range
        "* 24 * * *",  # hour out of range
        "* * 0 * *",  # day-of-month starts at 1
        "* * * 13 *",  # month out of range
        "* * * * 7",  # Sunday is 0 only
        "5-1 * * * *",  # reversed range
        "*/0 * * * *",  # zero step
        "a * * * *",
        "1,,2 * * * *",
        "* * * *",  # four fields
        "* * * * * *",  # six fields
        "@hourly",  # unsupported special form
    ],
)
def test_parse_rejects_malformed(expression: str) -> None:
    with pytest.raises(ValidationFailedError):
        CronExpression.parse(expression)


def test_error_message_names_field() -> None:
    with pytest.raises(ValidationFailedError, match="hour"):
        CronExpression.parse("0 25 * * *")


# ---------------------------------------------------------------------------
# Matching
# ---------------------------------------------------------------------------


def test_matches_weekday_range() -> None:
    expr = CronExpression.parse("0 8 * * 1-5")
    assert expr.matches(MONDAY_0800)
    assert expr.matches(MONDAY_0800 + timedelta(seconds=45))
    assert not expr.matches(MONDAY_0800 + timedelta(minutes=1))
    assert not expr.matches(MONDAY_0800 + timedelta(days=5))  # Saturday


def test_sunday_is_zero() -> None:
    sunday = datetime(2024, 1, 7, 0, 0)
    assert cron_weekday(sunday) == 0
    assert cron_weekday(MONDAY_0800) == 1
    assert CronExpression.parse("0 0 * * 0").matches(sunday)
    assert not CronExpression.parse("0 0 * * 0").matches(sunday + timedelta(days=1))


def test_all_fields_must_match() -> None:
    """Day-of-month and day-of-week combine with AND, not OR."""
    friday_13th = CronExpression.parse("0 0 13 * 5")
    assert friday_13th.matches(datetime(2024, 9, 13, 0, 0))  # Friday
    assert not friday_13th.matches(datetime(2024, 1, 13, 0, 0))  # Saturday
    assert not friday_13th.matches(datetime(2024, 1, 5, 0, 0))  # Friday the 5th


def test_special_schedule_never_matches() -> None:
    expr = CronExpression.parse("@deployment")
    assert expr.is_special
    assert not expr.matches(MONDAY_0800)
    assert expr.next_fire(MONDAY_0800) is None


# ---------------------------------------------------------------------------
# Next-fire preview
# ---------------------------------------------------------------------------


def test_next_fire_same_day() -> None:
    expr = CronExpression.parse("0 8 * * 1-5")
    assert expr.next_fire(MONDAY_0800 - timedelta(minutes=30)) == MONDAY_0800


def test_next_fire_is_strictly_after() -> None:
    expr = CronExpression.parse("0 8 * * 1-5")
    assert expr.next_fire(MONDAY_0800) == MONDAY_0800 + timedelta(days=1)


def test_next_fire_uses_and_semantics() -> None:
    expr = CronExpression.parse("0 0 13 * 5")
    assert expr.next_fire(datetime(2024, 1, 1)) == datetime(2024, 9, 13, 0, 0)


def test_schedule_set_next_fire_is_earliest() -> None:
    schedule, errors = compile_schedule_set(["0 13 * * *", "0 9 * * *"])
    assert errors == []
    assert schedule.next_fire(MONDAY_0800) == datetime(2024, 1, 1, 9, 0)
    assert ScheduleSet().next_fire(MONDAY_0800) is None


# ---------------------------------------------------------------------------
# Schedule sets and fire decisions
# ---------------------------------------------------------------------------


def test_compile_drops_only_malformed_expressions() -> None:
    schedule, errors = compile_schedule_set(["0 8 * * 1", "bogus", "@deployment"])
    assert schedule.sources == ["0 8 * * 1", "@deployment"]
    assert len(errors) == 1
    assert "bogus" in errors[0]


def test_should_fire_on_match() -> None:
    schedule, _ = compile_schedule_set(["0 8 * * 1-5"])
    fire, minute = should_fire(schedule, MONDAY_0800 + timedelta(seconds=12), None)
    assert fire is True
    assert minute == MONDAY_0800


def test_should_fire_no_match() -> None:
    schedule, _ = compile_schedule_set(["0 8 * * 1-5"])
    assert should_fire(schedule, MONDAY_0800 + timedelta(minutes=1), None) == (False, None)


def test_no_double_fire_within_minute() -> None:
    schedule, _ = compile_schedule_set(["0 8 * * 1-5"])
    fire, minute = should_fire(schedule, MONDAY_0800 + timedelta(seconds=5), None)
    assert fire
    fire_again, same_minute = should_fire(schedule, MONDAY_0800 + timedelta(seconds=35), minute)
    assert fire_again is False
    assert same_minute == minute


def test_overlapping_expressions_fire_once() -> None:
    schedule, _ = compile_schedule_set(["0 8 * * *", "0 8 * * 1"])
    fire, minute = should_fire(schedule, MONDAY_0800, None)
    assert fire
    assert should_fire(schedule, MONDAY_0800, minute)[0] is False


def test_two_expressions_fire_once_each_per_day() -> None:
    """Polling every 20 seconds for a whole day yields one fire per expression."""
    schedule, _ = compile_schedule_set(["0 8 * * *", "0 13 * * *"])
    start = datetime(2024, 1, 1, 0, 0)
    last_fired = None
    fired: list[datetime] = []
    for tick in range(24 * 60 * 3):
        fire, minute = should_fire(schedule, start + timedelta(seconds=20 * tick), last_fired)
        if fire:
            fired.append(minute)
            last_fired = minute
    assert fired == [datetime(2024, 1, 1, 8, 0), datetime(2024, 1, 1, 13, 0)]


def test_empty_schedule_never_fires() -> None:
    assert not ScheduleSet()
    assert should_fire(ScheduleSet(), MONDAY_0800, None) == (False, None)


# ---------------------------------------------------------------------------
# Generated expressions
# ---------------------------------------------------------------------------

_BOUNDS = ((0, 59), (0, 23), (1, 31), (1, 12), (0, 6))


def _random_term(rng: random.Random, low: int, high: int) -> tuple[str, set[int]]:
    """One list element and the values it stands for, built independently of the parser."""
    kind = rng.choice(("literal", "range", "range-step", "start-step", "star-step"))
    a = rng.randint(low, high)
    b = rng.randint(a, high)
    step = rng.randint(1, max(1, (high - low) // 2))
    if kind == "literal":
        return str(a), {a}
    if kind == "range":
        return f"{a}-{b}", set(range(a, b + 1))
    if kind == "range-step":
        return f"{a}-{b}/{step}", set(range(a, b + 1, step))
    if kind == "start-step":
        return f"{a}/{step}", set(range(a, high + 1, step))
    return f"*/{step}", set(range(low, high + 1, step))


def _random_field(rng: random.Random, low: int, high: int, wildcard_odds: float) -> tuple[str, set[int]]:
    if rng.random() < wildcard_odds:
        return "*", set(range(low, high + 1))
    terms = [_random_term(rng, low, high) for _ in range(rng.randint(1, 3))]
    return ",".join(text for text, _ in terms), set().union(*(values for _, values in terms))


def _oracle(allowed: list[set[int]], moment: datetime) -> bool:
    components = (moment.minute, moment.hour, moment.day, moment.month, int(moment.strftime("%w")))
    return all(value in values for value, values in zip(components, allowed, strict=True))


def _random_moment(rng: random.Random) -> datetime:
    start = datetime(2024, 1, 1)
    return start + timedelta(minutes=rng.randrange(3 * 366 * 24 * 60))


def _aligned_moment(rng: random.Random, allowed: list[set[int]]) -> datetime | None:
    """A timestamp whose minute, hour, day and month come from the allowed sets."""
    minute, hour, day, month = (rng.choice(sorted(values)) for values in allowed[:4])
    try:
        return datetime(rng.randint(2024, 2026), month, day, hour, minute)
    except ValueError:
        return None


@pytest.mark.parametrize("seed", range(8))
def test_generated_expressions_match_field_membership(seed: int) -> None:
    rng = random.Random(seed)
    matched = 0
    for _ in range(60):
        fields = [
            _random_field(rng, low, high, wildcard_odds=0.6 if index == 4 else 0.25)
            for index, (low, high) in enumerate(_BOUNDS)
        ]
        expression = CronExpression.parse(" ".join(text for text, _ in fields))
        allowed = [values for _, values in fields]

        moments = [_random_moment(rng) for _ in range(10)]
        aligned = _aligned_moment(rng, allowed)
        if aligned is not None:
            moments.append(aligned)

        for moment in moments:
            expected = _oracle(allowed, moment)
            assert expression.matches(moment) is expected, (expression.source, moment)
            matched += expected

    assert matched > 0
