from __future__ import annotations

from typing import Any

from auditsync.core.errors import ConfigError


# (name, lowest, highest) for the five standard cron fields.
_FIELDS = (
    ("minute", 0, 59),
    ("hour", 0, 23),
    ("day", 1, 31),
    ("month", 1, 12),
    ("weekday", 0, 7),
)

_WEEKDAY_NAMES = ("Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday")


def _parse_number(token: str, name: str, low: int, high: int) -> int:
    try:
        value = int(token)
    except ValueError as exc:
        raise ConfigError(f"invalid cron {name} value {token!r}") from exc
    if value < low or value > high:
        raise ConfigError(f"cron {name} value {value} outside {low}-{high}")
    return value


def _parse_field(expr: str, name: str, low: int, high: int) -> set[int] | None:
    # None means "every value", which arq expresses by omitting the argument.
    if expr == "*":
        return None
    values: set[int] = set()
    for part in expr.split(","):
        if not part:
            raise ConfigError(f"empty cron {name} list entry in {expr!r}")
        base, _, step_text = part.partition("/")
        step = _parse_number(step_text, f"{name} step", 1, high) if step_text else 1
        if base == "*":
            start, end = low, high
        elif "-" in base:
            start_text, _, end_text = base.partition("-")
            start = _parse_number(start_text, name, low, high)
            end = _parse_number(end_text, name, low, high)
            if start > end:
                raise ConfigError(f"cron {name} range {base!r} is inverted")
        else:
            start = _parse_number(base, name, low, high)
            end = high if step_text else start
        values.update(range(start, end + 1, step))
    return values


def _to_arq_weekdays(values: set[int]) -> set[int]:
    # cron counts Sunday as 0 (or 7); arq follows datetime.weekday() with Monday as 0.
    return {6 if value in (0, 7) else value - 1 for value in values}


def parse_cron_expression(expr: str) -> dict[str, Any]:
    parts = expr.split()
    if len(parts) != 5:
        raise ConfigError(f"cron expression {expr!r} must have 5 fields")
    kwargs: dict[str, Any] = {}
    for text, (name, low, high) in zip(parts, _FIELDS):
        values = _parse_field(text, name, low, high)
        if values is None:
            continue
        if name == "weekday":
            values = _to_arq_weekdays(values)
        kwargs[name] = next(iter(values)) if len(values) == 1 else values
    return kwargs


def describe_cron(expr: str) -> str:
    # Human-readable schedule for startup logs; falls back to the raw expression.
    kwargs = parse_cron_expression(expr)
    minute = kwargs.get("minute")
    hour = kwargs.get("hour")
    if not isinstance(minute, int) or not isinstance(hour, int):
        return f"Cron schedule '{expr}'"
    at = f"{hour:02d}:{minute:02d}"
    if set(kwargs) == {"minute", "hour"}:
        return f"Daily at {at} server time"
    weekday = kwargs.get("weekday")
    if set(kwargs) == {"minute", "hour", "weekday"} and isinstance(weekday, int):
        return f"Weekly on {_WEEKDAY_NAMES[weekday]} at {at} server time"
    return f"Cron schedule '{expr}'"
