"""
Schedule Expressions

Parses 5-field schedule expressions (minute hour day month weekday) and
decides whether a job is due.

The trigger rule is deliberately narrow:
- no previous run: due
- minute field ``*/n``: due once n whole minutes have elapsed since the last run
- any other valid expression: due once 60 minutes have elapsed
- invalid expression: never due

Usage:
    from parcelflow.core.schedule import parse_schedule, should_trigger

    expr = parse_schedule("*/15  * * * *")
    expr.expression                     # "*/15 * * * *"
    should_trigger(expr, last_run_at, now)
    expr.next_run_at(last_run_at, now)  # last_run_at + 15 minutes
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Tuple, Union

from parcelflow.core.errors import ScheduleParseError

DEFAULT_INTERVAL_MINUTES = 60

FIELD_NAMES = ("minute", "hour", "day", "month", "weekday")
FIELD_BOUNDS = {
    "minute": (0, 59),
    "hour": (0, 23),
    "day": (1, 31),
    "month": (1, 12),
    "weekday": (0, 7),
}

_STEP_RE = re.compile(r"^\*/(\d+)$")
_ITEM_RE = re.compile(r"^(\*|\d+(?:-\d+)?)(?:/(\d+))?$")


@dataclass(frozen=True)
class ScheduleExpression:
    """A parsed, whitespace-normalized schedule expression."""
    expression: str
    fields: Tuple[str, str, str, str, str]
    minute_interval: Optional[int] = None

    @property
    def interval_minutes(self) -> int:
        """Minutes that must elapse between two triggers."""
        return self.minute_interval or DEFAULT_INTERVAL_MINUTES

    def should_trigger(self, last_run_at: Optional[datetime], now: datetime) -> bool:
        if last_run_at is None:
            return True
        elapsed_minutes = int((now - last_run_at).total_seconds() // 60)
        return elapsed_minutes >= self.interval_minutes

    def next_run_at(self, last_run_at: Optional[datetime], now: datetime) -> datetime:
        """When should_trigger first becomes true: now when the job never ran."""
        if last_run_at is None:
            return now
        return last_run_at + timedelta(minutes=self.interval_minutes)

    def __str__(self) -> str:
        return self.expression


def _validate_field(name: str, value: str, expression: str):
    low, high = FIELD_BOUNDS[name]
    for item in value.split(","):
        match = _ITEM_RE.match(item)
        if not match:
            raise ScheduleParseError(expression, f"invalid {name} field '{value}'")
        base, step = match.groups()
        if step is not None and int(step) < 1:
            raise ScheduleParseError(expression, f"{name} step must be at least 1")
        if base == "*":
            continue
        bounds = [int(part) for part in base.split("-")]
        for number in bounds:
            if not low <= number <= high:
                raise ScheduleParseError(
                    expression, f"{name} value {number} outside {low}-{high}"
                )
        if len(bounds) == 2 and bounds[0] > bounds[1]:
            raise ScheduleParseError(expression, f"{name} range {base} is reversed")


def parse_schedule(expression: str) -> ScheduleExpression:
    """
    Parse and normalize a schedule expression.

    Raises:
        ScheduleParseError: the expression is not 5 valid fields
    """
    if not isinstance(expression, str) or not expression.strip():
        raise ScheduleParseError(str(expression), "expression is empty")

    parts = expression.split()
    if len(parts) != len(FIELD_NAMES):
        raise ScheduleParseError(
            expression, f"expected {len(FIELD_NAMES)} fields, got {len(parts)}"
        )

    for name, value in zip(FIELD_NAMES, parts):
        _validate_field(name, value, expression)

    step = _STEP_RE.match(parts[0])
    return ScheduleExpression(
        expression=" ".join(parts),
        fields=tuple(parts),
        minute_interval=int(step.group(1)) if step else None,
    )


def is_valid_schedule(expression: str) -> bool:
    try:
        parse_schedule(expression)
    except ScheduleParseError:
        return False
    return True


def should_trigger(
    expression: Union[str, ScheduleExpression],
    last_run_at: Optional[datetime],
    now: datetime,
) -> bool:
    """True when a job with this schedule is due. Invalid expressions never are."""
    if not isinstance(expression, ScheduleExpression):
        try:
            expression = parse_schedule(expression)
        except ScheduleParseError:
            return False
    return expression.should_trigger(last_run_at, now)
