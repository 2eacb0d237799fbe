"""CRON-style schedule evaluation.

Expressions have five fields -- minute, hour, day-of-month, month,
day-of-week -- each a wildcard (``*``), literal (``5``), list (``1,3,5``),
range (``1-5``) or step (``*/15``, ``8-18/2``).  Day-of-week counts from
Sunday = 0.  An expression matches a timestamp when *every* field matches
the corresponding calendar component, truncated to the minute.

Expressions starting with ``@`` are event triggers (``@deployment`` and
friends).  They parse, but never match on time.

Firing is best-effort: ``should_fire`` only looks at the current minute.  A
minute skipped by a coarse poll cadence is not caught up.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING

from croniter import croniter

from provisioner.runtime.errors import ValidationFailedError

if TYPE_CHECKING:
    from collections.abc import Iterable

FIELD_NAMES = ("minute", "hour", "day-of-month", "month", "day-of-week")
FIELD_BOUNDS = ((0, 59), (0, 23), (1, 31), (1, 12), (0, 6))

SPECIAL_SCHEDULES = frozenset({
    "@deployment",
    "@deployment-failed",
    "@destroy",
    "@destroy-failed",
    "@reboot",
})

# Upper bound on croniter candidates examined when previewing the next fire.
_NEXT_FIRE_SCAN_LIMIT = 2000


def truncate_to_minute(moment: datetime) -> datetime:
    return moment.replace(second=0, microsecond=0)


def cron_weekday(moment: datetime) -> int:
    """Day of week with Sunday = 0 (``datetime.weekday`` has Monday = 0)."""
    return (moment.weekday() + 1) % 7


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


def _parse_int(text: str, what: str) -> int:
    if not text.isdigit():
        msg = f"invalid {what}: '{text}'"
        raise ValidationFailedError(msg)
    return int(text)


def parse_field(field: str, low: int, high: int) -> frozenset[int] | None:
    """Parse one field into the set of allowed values.

    Returns ``None`` for a bare ``*`` (matches everything).  Raises
    ``ValidationFailedError`` on syntax errors or out-of-range values.
    """
    if field == "*":
        return None

    values: set[int] = set()
    for part in field.split(","):
        if not part:
            msg = f"empty list element in '{field}'"
            raise ValidationFailedError(msg)

        base, _, step_text = part.partition("/")
        step = 1
        if step_text or part.endswith("/"):
            step = _parse_int(step_text, "step")
            if step <= 0:
                msg = f"step must be positive: {step}"
                raise ValidationFailedError(msg)

        if base == "*":
            start, end = low, high
        elif "-" in base:
            start_text, _, end_text = base.partition("-")
            start = _parse_int(start_text, "range start")
            end = _parse_int(end_text, "range end")
            if start > end:
                msg = f"invalid range: start > end: {start}-{end}"
                raise ValidationFailedError(msg)
        else:
            start = _parse_int(base, "value")
            # "5/10" means "from 5 to the top of the range, every 10".
            end = high if step_text else start

        if start < low or end > high:
            msg = f"value out of range [{low}-{high}]: {base}"
            raise ValidationFailedError(msg)
        values.update(range(start, end + 1, step))

    return frozenset(values)


@dataclass(frozen=True)
class CronExpression:
    """A parsed five-field expression (or an event-only special form)."""

    source: str
    minute: frozenset[int] | None = None
    hour: frozenset[int] | None = None
    day: frozenset[int] | None = None
    month: frozenset[int] | None = None
    weekday: frozenset[int] | None = None
    special: str | None = None

    @classmethod
    def parse(cls, expression: str) -> CronExpression:
        """Parse and range-check *expression*.  Raises ``ValidationFailedError``."""
        text = expression.strip()
        if text.startswith("@"):
            if text not in SPECIAL_SCHEDULES:
                msg = f"unsupported special schedule: {text}"
                raise ValidationFailedError(msg)
            return cls(source=text, special=text)

        fields = text.split()
        if len(fields) != 5:
            msg = f"invalid cron expression '{expression}': expected 5 fields, got {len(fields)}"
            raise ValidationFailedError(msg)

        parsed: list[frozenset[int] | None] = []
        for name, field, (low, high) in zip(FIELD_NAMES, fields, FIELD_BOUNDS, strict=True):
            try:
                parsed.append(parse_field(field, low, high))
            except ValidationFailedError as exc:
                msg = f"invalid {name} field '{field}' in '{expression}': {exc}"
                raise ValidationFailedError(msg) from None

        minute, hour, day, month, weekday = parsed
        return cls(source=text, minute=minute, hour=hour, day=day, month=month, weekday=weekday)

    @property
    def is_special(self) -> bool:
        return self.special is not None

    def matches(self, moment: datetime) -> bool:
        if self.special is not None:
            return False
        checks = (
            (self.minute, moment.minute),
            (self.hour, moment.hour),
            (self.day, moment.day),
            (self.month, moment.month),
            (self.weekday, cron_weekday(moment)),
        )
        return all(allowed is None or value in allowed for allowed, value in checks)

    def next_fire(self, after: datetime) -> datetime | None:
        """Earliest minute strictly after *after* that this expression matches.

        croniter treats a restricted day-of-month *and* day-of-week as OR;
        its candidates are filtered through ``matches`` so the AND semantics
        used for firing also apply here.
        """
        if self.special is not None:
            return None
        it = croniter(self.source, truncate_to_minute(after))
        for _ in range(_NEXT_FIRE_SCAN_LIMIT):
            candidate: datetime = it.get_next(datetime)
            if self.matches(candidate):
                return candidate
        return None


# ---------------------------------------------------------------------------
# Schedule sets
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ScheduleSet:
    """Ordered set of expressions; any one matching triggers the action."""

    expressions: tuple[CronExpression, ...] = ()

    def __bool__(self) -> bool:
        return bool(self.expressions)

    @property
    def sources(self) -> list[str]:
        return [e.source for e in self.expressions]

    def matches(self, moment: datetime) -> bool:
        return any(e.matches(moment) for e in self.expressions)

    def next_fire(self, after: datetime) -> datetime | None:
        candidates = [t for t in (e.next_fire(after) for e in self.expressions) if t is not None]
        return min(candidates, default=None)


def compile_schedule_set(expressions: Iterable[str]) -> tuple[ScheduleSet, list[str]]:
    """Parse every expression, dropping malformed ones.

    Returns the set of valid expressions plus one error message per rejected
    expression, so a single bad schedule disables only itself.
    """
    parsed: list[CronExpression] = []
    errors: list[str] = []
    for expression in expressions:
        try:
            parsed.append(CronExpression.parse(expression))
        except ValidationFailedError as exc:
            errors.append(str(exc))
    return ScheduleSet(tuple(parsed)), errors


def should_fire(
    schedule: ScheduleSet,
    now: datetime,
    last_fired_minute: datetime | None,
) -> tuple[bool, datetime | None]:
    """Decide whether *schedule* fires at *now*.

    Returns ``(fire, matched_minute)``.  ``matched_minute`` is the truncated
    minute when any expression matches (``None`` otherwise); ``fire`` is true
    only if that minute differs from ``last_fired_minute``.  Several
    expressions matching the same minute still produce a single fire.
    """
    minute = truncate_to_minute(now)
    if not schedule.matches(minute):
        return False, None
    if last_fired_minute is not None and truncate_to_minute(last_fired_minute) == minute:
        return False, minute
    return True, minute
