"""
Cron Expression Parser
======================

Parses and evaluates cron expressions without any scheduling library.

Supported syntax:
    minute hour day_of_month month day_of_week [second]

Special characters:
- * : any value
- , : value list separator
- - : range of values
- / : step values (``*/15``, ``0-30/10``, ``5/20``)
- month names (JAN-DEC) and weekday names (SUN-SAT); weekday 7 is Sunday

When both day-of-month and day-of-week are restricted, a date matches if
either field matches (classic cron semantics).

Examples:
- "0 * * * *"        : every hour
- "*/15 * * * *"     : every 15 minutes
- "0 9-17 * * 1-5"   : on the hour, 9am-5pm weekdays
- "0 0 1 * *"        : first of month
- "0 0 * * * 30"     : 30 seconds past midnight
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone as dt_timezone
from functools import lru_cache
from typing import Dict, FrozenSet, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from amoeba_core.scheduling.errors import CronExpressionError

MONTH_NAMES = {
    "JAN": 1, "FEB": 2, "MAR": 3, "APR": 4, "MAY": 5, "JUN": 6,
    "JUL": 7, "AUG": 8, "SEP": 9, "OCT": 10, "NOV": 11, "DEC": 12,
}
WEEKDAY_NAMES = {
    "SUN": 0, "MON": 1, "TUE": 2, "WED": 3, "THU": 4, "FRI": 5, "SAT": 6,
}

# Search horizon for next_occurrence
MAX_YEARS_AHEAD = 5


def resolve_timezone(name: str) -> ZoneInfo:
    """Look up an IANA timezone, raising CronExpressionError when unknown"""
    try:
        return ZoneInfo(name or "UTC")
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise CronExpressionError(f"Unknown timezone: {name!r}") from e


class CronExpression:
    """
    A parsed cron expression.

    Instances are immutable; use `parse_cron` to share parsed expressions.
    """

    def __init__(self, expression: str):
        self.expression = " ".join(str(expression).split())
        parts = self.expression.split(" ") if self.expression else []

        if len(parts) not in (5, 6):
            raise CronExpressionError(
                f"Invalid cron expression: {expression!r}. "
                "Expected 5 fields (minute hour day month weekday) "
                "or 6 with a trailing second field"
            )

        self.has_seconds = len(parts) == 6
        self.minutes = self._parse_field(parts[0], 0, 59, "minute")
        self.hours = self._parse_field(parts[1], 0, 23, "hour")
        self.days = self._parse_field(parts[2], 1, 31, "day of month")
        self.months = self._parse_field(parts[3], 1, 12, "month", MONTH_NAMES)
        weekdays = self._parse_field(parts[4], 0, 7, "day of week", WEEKDAY_NAMES)
        self.weekdays = frozenset(0 if d == 7 else d for d in weekdays)
        self.seconds = (
            self._parse_field(parts[5], 0, 59, "second")
            if self.has_seconds
            else frozenset({0})
        )

        self._day_restricted = parts[2][0] not in "*?"
        self._weekday_restricted = parts[4][0] not in "*?"

    def __repr__(self) -> str:
        return f"CronExpression({self.expression!r})"

    def __eq__(self, other: object) -> bool:
        return isinstance(other, CronExpression) and other.expression == self.expression

    def __hash__(self) -> int:
        return hash(self.expression)

    # -------------------------------------------------------------------------
    # Parsing
    # -------------------------------------------------------------------------

    def _parse_field(
        self,
        field: str,
        min_val: int,
        max_val: int,
        label: str,
        names: Optional[Dict[str, int]] = None,
    ) -> FrozenSet[int]:
        values = set()

        for part in field.split(","):
            if not part:
                raise CronExpressionError(f"Empty value in {label} field: {field!r}")

            step = 1
            base = part
            if "/" in part:
                base, step_text = part.split("/", 1)
                step = self._to_int(step_text, label, None)
                if step < 1:
                    raise CronExpressionError(f"Step must be positive in {label} field: {part!r}")

            if base in ("*", "?"):
                start, end = min_val, max_val
            elif "-" in base:
                low, high = base.split("-", 1)
                start = self._to_int(low, label, names)
                end = self._to_int(high, label, names)
            else:
                start = self._to_int(base, label, names)
                end = max_val if "/" in part else start

            if not (min_val <= start <= max_val and min_val <= end <= max_val):
                raise CronExpressionError(
                    f"Value out of range in {label} field: {part!r} "
                    f"(allowed {min_val}-{max_val})"
                )
            if start > end:
                raise CronExpressionError(f"Descending range in {label} field: {part!r}")

            values.update(range(start, end + 1, step))

        return frozenset(values)

    @staticmethod
    def _to_int(token: str, label: str, names: Optional[Dict[str, int]]) -> int:
        if names and token.upper() in names:
            return names[token.upper()]
        try:
            return int(token)
        except ValueError:
            raise CronExpressionError(f"Invalid {label} value: {token!r}") from None

    # -------------------------------------------------------------------------
    # Evaluation
    # -------------------------------------------------------------------------

    def _day_matches(self, dt: datetime) -> bool:
        day_ok = dt.day in self.days
        # datetime.weekday() is Monday=0; cron counts Sunday=0
        weekday_ok = (dt.weekday() + 1) % 7 in self.weekdays
        if self._day_restricted and self._weekday_restricted:
            return day_ok or weekday_ok
        return day_ok and weekday_ok

    def matches(self, dt: datetime) -> bool:
        """Check if a wall-clock datetime matches the expression"""
        return (
            (not self.has_seconds or dt.second in self.seconds)
            and dt.minute in self.minutes
            and dt.hour in self.hours
            and dt.month in self.months
            and self._day_matches(dt)
        )

    def next_occurrence(
        self,
        after: Optional[datetime] = None,
        timezone: str = "UTC",
    ) -> datetime:
        """
        First instant strictly after `after` that matches, evaluated on the
        wall clock of `timezone`. Naive inputs are taken as UTC; the result
        is an aware UTC datetime.
        """
        zone = resolve_timezone(timezone)
        if after is None:
            after = datetime.now(dt_timezone.utc)
        elif after.tzinfo is None:
            after = after.replace(tzinfo=dt_timezone.utc)

        unit = timedelta(seconds=1) if self.has_seconds else timedelta(minutes=1)
        local = after.astimezone(zone).replace(tzinfo=None, microsecond=0)
        if not self.has_seconds:
            local = local.replace(second=0)
        candidate = local + unit
        horizon = candidate.year + MAX_YEARS_AHEAD

        while candidate.year <= horizon:
            if candidate.month not in self.months:
                if candidate.month == 12:
                    candidate = datetime(candidate.year + 1, 1, 1)
                else:
                    candidate = datetime(candidate.year, candidate.month + 1, 1)
                continue

            if not self._day_matches(candidate):
                candidate = datetime(candidate.year, candidate.month, candidate.day) + timedelta(days=1)
                continue

            if candidate.hour not in self.hours:
                candidate = candidate.replace(minute=0, second=0) + timedelta(hours=1)
                continue

            if candidate.minute not in self.minutes:
                candidate = candidate.replace(second=0) + timedelta(minutes=1)
                continue

            if self.has_seconds and candidate.second not in self.seconds:
                candidate += timedelta(seconds=1)
                continue

            result = candidate.replace(tzinfo=zone).astimezone(dt_timezone.utc)
            if result <= after:
                # Repeated wall-clock hour when DST ends
                candidate += unit
                continue
            return result

        raise CronExpressionError(
            f"No occurrence of {self.expression!r} within {MAX_YEARS_AHEAD} years"
        )


@lru_cache(maxsize=256)
def parse_cron(expression: str) -> CronExpression:
    """Parse an expression, reusing previously parsed instances"""
    return CronExpression(expression)


def validate_cron(expression: str) -> bool:
    try:
        parse_cron(expression)
    except CronExpressionError:
        return False
    return True


def next_due_time(expression: str, timezone: str, now: datetime) -> datetime:
    """Pure form: next time `expression` fires after `now` in `timezone`."""
    return parse_cron(expression).next_occurrence(now, timezone)


__all__ = [
    "CronExpression",
    "parse_cron",
    "validate_cron",
    "next_due_time",
    "resolve_timezone",
]
