"""Lightweight 5-field cron parser, validator and matcher.

Fields: minute hour day-of-month month day-of-week (0=Sunday).

Supports ``*``, single values, ``a-b`` ranges, comma lists and ``/step``
suffixes. No named months/weekdays and no ``@yearly`` style macros.
"""

import re
from datetime import datetime, timedelta, timezone

# [min, max] for each of the 5 fields
FIELD_LIMITS: list[tuple[int, int]] = [
    (0, 59),  # minute
    (0, 23),  # hour
    (1, 31),  # day of month
    (1, 12),  # month
    (0, 6),  # day of week
]

FIELD_NAMES = ["minute", "hour", "day-of-month", "month", "day-of-week"]

# 14 days of minutes
DEFAULT_MAX_ITERATIONS = 20160

PRESETS = [
    {"label": "Every 5 min", "cron_expression": "*/5 * * * *"},
    {"label": "Every hour", "cron_expression": "0 * * * *"},
    {"label": "Every 2 hours", "cron_expression": "0 */2 * * *"},
    {"label": "Daily at 6 AM", "cron_expression": "0 6 * * *"},
    {"label": "Every Monday", "cron_expression": "0 9 * * 1"},
    {"label": "Saturday at noon", "cron_expression": "0 12 * * 6"},
]

_STEP_RE = re.compile(r"^(.+)/([0-9]+)$")


def _to_int(text: str) -> int | None:
    # ASCII digits only; int() also takes other scripts and underscores
    if not (text.isascii() and text.lstrip("+-").isdigit()):
        return None
    try:
        return int(text)
    except ValueError:
        return None


def _split_part(part: str) -> tuple[str, str | None]:
    """Split ``range/step`` into its range text and step text."""
    match = _STEP_RE.match(part)
    if match:
        return match.group(1), match.group(2)
    return part, None


def parse_field(field: str, minimum: int, maximum: int) -> set[int]:
    """Expand a single cron field into the set of integers it selects.

    Never raises. Tokens that do not parse contribute nothing, so callers must
    run ``validate_cron_expression`` before trusting the result.
    """
    values: set[int] = set()
    for part in field.split(","):
        range_text, step_text = _split_part(part)
        step = int(step_text) if step_text is not None else 1
        if step <= 0:
            continue

        if range_text == "*":
            start, end = minimum, maximum
        elif "-" in range_text:
            bounds = range_text.split("-")
            if len(bounds) != 2:
                continue
            start, end = _to_int(bounds[0]), _to_int(bounds[1])
        else:
            start = end = _to_int(range_text)

        if start is None or end is None:
            continue

        start = max(minimum, min(maximum, start))
        end = max(minimum, min(maximum, end))
        values.update(range(start, end + 1, step))
    return values


def validate_cron_expression(expression: str) -> str | None:
    """Return a human-readable error for a malformed expression, or None."""
    fields = expression.split()
    if len(fields) != 5:
        return f"Expected 5 fields, got {len(fields)}"

    for field, (minimum, maximum), name in zip(fields, FIELD_LIMITS, FIELD_NAMES):
        for part in field.split(","):
            range_text, step_text = _split_part(part)

            if step_text is not None and int(step_text) <= 0:
                return f"Invalid step value {int(step_text)} in {name} field"

            if range_text == "*":
                continue

            if "-" in range_text:
                bounds = range_text.split("-")
                if len(bounds) != 2:
                    return f'Invalid range "{range_text}" in {name} field'
                start, end = _to_int(bounds[0]), _to_int(bounds[1])
                if start is None or end is None:
                    return f'Non-numeric range "{range_text}" in {name} field'
                if not (minimum <= start <= maximum and minimum <= end <= maximum):
                    return f"Value out of range ({minimum}-{maximum}) in {name} field"
                if start > end:
                    return f'Invalid range "{range_text}" in {name} field (start > end)'
                continue

            value = _to_int(range_text)
            if value is None:
                return f'Non-numeric value "{range_text}" in {name} field'
            if not minimum <= value <= maximum:
                return f"Value {value} out of range ({minimum}-{maximum}) in {name} field"

    return None


def _parse_expression(expression: str) -> list[set[int]] | None:
    fields = expression.split()
    if len(fields) != 5:
        return None
    return [
        parse_field(field, minimum, maximum)
        for field, (minimum, maximum) in zip(fields, FIELD_LIMITS)
    ]


def _matches_fields(parsed: list[set[int]], instant: datetime) -> bool:
    minutes, hours, days, months, weekdays = parsed
    return (
        instant.minute in minutes
        and instant.hour in hours
        and instant.day in days
        and instant.month in months
        # isoweekday: Monday=1 .. Sunday=7
        and instant.isoweekday() % 7 in weekdays
    )


def matches_cron(expression: str, instant: datetime) -> bool:
    """Whether ``instant`` (in its own wall-clock time) satisfies the expression."""
    parsed = _parse_expression(expression)
    if parsed is None:
        return False
    return _matches_fields(parsed, instant)


def count_missed_fire_times(
    expression: str,
    start: datetime,
    end: datetime,
    max_iterations: int = DEFAULT_MAX_ITERATIONS,
) -> int:
    """Count fire instants in ``(start, end]`` by stepping one minute at a time.

    The walk begins at the first whole minute strictly after ``start`` and
    checks at most ``max_iterations`` minutes, so an arbitrarily old ``start``
    only costs a bounded scan.

    Aware datetimes are stepped in UTC and each candidate is matched in
    ``end``'s timezone, so DST shifts neither skip nor repeat minutes.
    """
    if end <= start:
        return 0
    parsed = _parse_expression(expression)
    if parsed is None:
        return 0

    tz = end.tzinfo
    if tz is not None:
        start = start.astimezone(timezone.utc)
        end = end.astimezone(timezone.utc)

    cursor = start.replace(second=0, microsecond=0) + timedelta(minutes=1)
    count = 0
    for _ in range(max_iterations):
        if cursor > end:
            break
        local = cursor.astimezone(tz) if tz is not None else cursor
        if _matches_fields(parsed, local):
            count += 1
        cursor += timedelta(minutes=1)
    return count
