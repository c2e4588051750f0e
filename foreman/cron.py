"""
Five-field cron expression parsing and matching.

Parsing and matching are pure and done here; next-run arithmetic is delegated
to croniter using the canonical numeric form of the expression.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime
from functools import lru_cache
from typing import Dict, FrozenSet, List, Optional, Set, Tuple

from croniter import croniter

from foreman.errors import InvalidExpressionError

FIELD_NAMES = ("minute", "hour", "day_of_month", "month", "day_of_week")
FIELD_RANGES: Dict[str, Tuple[int, int]] = {
    "minute": (0, 59),
    "hour": (0, 23),
    "day_of_month": (1, 31),
    "month": (1, 12),
    "day_of_week": (0, 7),
}

DAY_NAME_TO_CRON = {
    "sunday": 0,
    "monday": 1,
    "tuesday": 2,
    "wednesday": 3,
    "thursday": 4,
    "friday": 5,
    "saturday": 6,
}
MONTH_NAME_TO_NUM = {
    "january": 1,
    "february": 2,
    "march": 3,
    "april": 4,
    "may": 5,
    "june": 6,
    "july": 7,
    "august": 8,
    "september": 9,
    "october": 10,
    "november": 11,
    "december": 12,
}
CRON_TO_DAY_NAME = {v: k for k, v in DAY_NAME_TO_CRON.items()}
NUM_TO_MONTH_NAME = {v: k for k, v in MONTH_NAME_TO_NUM.items()}

NAMED_TOKENS: Dict[str, Dict[str, int]] = {
    "month": {
        **MONTH_NAME_TO_NUM,
        **{name[:3]: num for name, num in MONTH_NAME_TO_NUM.items()},
    },
    "day_of_week": {
        **DAY_NAME_TO_CRON,
        **{name[:3]: num for name, num in DAY_NAME_TO_CRON.items()},
    },
}
CRON_FIELD_RE = re.compile(r"^[0-9*,/\-]+$")


@dataclass(frozen=True)
class CronExpression:
    expression: str
    canonical: str
    minutes: FrozenSet[int]
    hours: FrozenSet[int]
    days_of_month: FrozenSet[int]
    months: FrozenSet[int]
    days_of_week: FrozenSet[int]
    dom_restricted: bool
    dow_restricted: bool

    def matches(self, at: datetime) -> bool:
        if at.minute not in self.minutes:
            return False
        if at.hour not in self.hours:
            return False
        if at.month not in self.months:
            return False
        # datetime.weekday() is Monday=0; cron is Sunday=0.
        cron_weekday = (at.weekday() + 1) % 7
        dom_match = at.day in self.days_of_month
        dow_match = cron_weekday in self.days_of_week
        if self.dom_restricted and self.dow_restricted:
            return dom_match or dow_match
        return dom_match and dow_match

    def next_run_after(self, after: datetime) -> datetime:
        iterator = croniter(self.canonical, after)
        return iterator.get_next(datetime)

    def upcoming_runs(self, count: int, after: datetime) -> List[datetime]:
        iterator = croniter(self.canonical, after)
        return [iterator.get_next(datetime) for _ in range(count)]

    def describe(self) -> str:
        return describe(self.expression)


@lru_cache(maxsize=512)
def parse(expression: str) -> CronExpression:
    if not isinstance(expression, str):
        raise InvalidExpressionError(str(expression), "expression must be a string")
    parts = expression.split()
    if len(parts) != 5:
        raise InvalidExpressionError(
            expression,
            f"expected 5 fields (minute hour day-of-month month day-of-week), got {len(parts)}",
        )

    canonical_parts: List[str] = []
    value_sets: List[FrozenSet[int]] = []
    for field_name, raw in zip(FIELD_NAMES, parts):
        token = _replace_named_tokens(expression, raw.lower(), field_name)
        values = _expand_field(expression, token, field_name)
        if field_name == "day_of_week" and 7 in values:
            values = (values - {7}) | {0}
        canonical_parts.append(token)
        value_sets.append(frozenset(values))

    return CronExpression(
        expression=expression,
        canonical=" ".join(canonical_parts),
        minutes=value_sets[0],
        hours=value_sets[1],
        days_of_month=value_sets[2],
        months=value_sets[3],
        days_of_week=value_sets[4],
        dom_restricted=parts[2] != "*",
        dow_restricted=parts[4] != "*",
    )


def matches(expression: str, at: datetime) -> bool:
    return parse(expression).matches(at)


def is_valid(expression: str) -> bool:
    try:
        parse(expression)
    except InvalidExpressionError:
        return False
    return True


def next_run_after(expression: str, after: datetime) -> datetime:
    return parse(expression).next_run_after(after)


def upcoming_runs(expression: str, count: int, after: Optional[datetime] = None) -> List[datetime]:
    start = after or datetime.now().astimezone()
    return parse(expression).upcoming_runs(count, start)


def describe(expression: str) -> str:
    special = {
        "* * * * *": "Every minute",
        "0 * * * *": "Every hour",
        "0 0 * * *": "Daily at midnight",
        "0 0 * * 0": "Weekly on Sunday at midnight",
        "0 0 1 * *": "Monthly on the 1st at midnight",
    }
    normalized = " ".join(expression.split())
    if normalized in special:
        return special[normalized]

    minute, hour, day_of_month, month, day_of_week = normalized.split()
    pieces: List[str] = []
    if minute.isdigit() and hour.isdigit():
        pieces.append(f"At {int(hour):02d}:{int(minute):02d}")
    else:
        if minute.startswith("*/"):
            pieces.append(f"Every {minute[2:]} minute(s)")
        elif minute != "*":
            pieces.append(f"At minute {minute}")
        if hour.startswith("*/"):
            pieces.append(f"every {hour[2:]} hour(s)")
        elif hour != "*":
            pieces.append(f"during hour {hour}")
    if day_of_month != "*":
        pieces.append(f"on day {day_of_month} of the month")
    if month != "*":
        if month.isdigit() and int(month) in NUM_TO_MONTH_NAME:
            pieces.append(f"in {NUM_TO_MONTH_NAME[int(month)].capitalize()}")
        else:
            pieces.append(f"in month {month}")
    if day_of_week != "*":
        if day_of_week.isdigit() and int(day_of_week) % 7 in CRON_TO_DAY_NAME:
            pieces.append(f"on {CRON_TO_DAY_NAME[int(day_of_week) % 7].capitalize()}")
        else:
            pieces.append(f"on weekday {day_of_week}")
    return " ".join(pieces) if pieces else "Custom schedule"


def _replace_named_tokens(expression: str, raw: str, field_name: str) -> str:
    mapping = NAMED_TOKENS.get(field_name)

    def repl(match: re.Match[str]) -> str:
        token = match.group(0)
        if mapping is None or token not in mapping:
            raise InvalidExpressionError(expression, f'invalid token "{token}" in {field_name}')
        return str(mapping[token])

    return re.sub(r"[a-z]+", repl, raw)


def _expand_field(expression: str, token: str, field_name: str) -> Set[int]:
    min_value, max_value = FIELD_RANGES[field_name]
    if not CRON_FIELD_RE.match(token):
        raise InvalidExpressionError(expression, f'invalid token "{token}" in {field_name}')

    values: Set[int] = set()
    for part in token.split(","):
        if not part:
            raise InvalidExpressionError(expression, f'empty list element in {field_name}')
        if "/" in part:
            base, step_str = part.split("/", 1)
            if not step_str.isdigit() or int(step_str) <= 0:
                raise InvalidExpressionError(expression, f'invalid step "{part}" in {field_name}')
            step = int(step_str)
            if step > (max_value - min_value + 1):
                raise InvalidExpressionError(expression, f'step "{step}" too large in {field_name}')
            if base == "*":
                start, end = min_value, max_value
            elif "-" in base:
                start, end = _parse_range(expression, base, field_name, min_value, max_value)
            else:
                start = _parse_value(expression, base, field_name, min_value, max_value)
                end = max_value
            values.update(range(start, end + 1, step))
            continue
        if part == "*":
            values.update(range(min_value, max_value + 1))
            continue
        if "-" in part:
            start, end = _parse_range(expression, part, field_name, min_value, max_value)
            values.update(range(start, end + 1))
            continue
        values.add(_parse_value(expression, part, field_name, min_value, max_value))
    return values


def _parse_range(
    expression: str, token: str, field_name: str, min_value: int, max_value: int
) -> Tuple[int, int]:
    left, right = token.split("-", 1)
    start = _parse_value(expression, left, field_name, min_value, max_value)
    end = _parse_value(expression, right, field_name, min_value, max_value)
    if start > end:
        raise InvalidExpressionError(expression, f'invalid range "{token}" in {field_name}')
    return start, end


def _parse_value(expression: str, token: str, field_name: str, min_value: int, max_value: int) -> int:
    if not token.isdigit():
        raise InvalidExpressionError(expression, f'invalid value "{token}" in {field_name}')
    value = int(token)
    if value < min_value or value > max_value:
        raise InvalidExpressionError(
            expression,
            f'value "{value}" out of bounds {min_value}-{max_value} in {field_name}',
        )
    return value
