from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Iterable


class ReservationValidationError(ValueError):
    pass


class ReservationConflictError(ValueError):
    pass


class ReservationNotFoundError(ValueError):
    pass


def to_utc(value: datetime) -> datetime:
    """Place an instant on the absolute UTC axis. Naive values are read as UTC."""
    if value.tzinfo is None or value.tzinfo.utcoffset(value) is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_instant(text: str) -> datetime:
    raw = str(text).strip()
    if not raw:
        raise ReservationValidationError("timestamp must not be empty")
    try:
        return to_utc(datetime.fromisoformat(raw))
    except ValueError as error:
        raise ReservationValidationError(f"Invalid ISO 8601 timestamp: {raw}") from error


def validate_group_size(value: Any, required: bool = True) -> int | None:
    if value is None or (isinstance(value, str) and not value.strip()):
        if required:
            raise ReservationValidationError("groupSize is required")
        return None
    if isinstance(value, bool):
        raise ReservationValidationError("groupSize must be a positive integer")

    if isinstance(value, int):
        size = value
    elif isinstance(value, float) and value.is_integer():
        size = int(value)
    elif isinstance(value, str):
        try:
            size = int(value.strip())
        except ValueError:
            raise ReservationValidationError("groupSize must be a positive integer") from None
    else:
        raise ReservationValidationError("groupSize must be a positive integer")

    if size <= 0:
        raise ReservationValidationError("groupSize must be a positive integer")
    return size


def normalize_equipment(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, (list, tuple)):
        value = ", ".join(str(item).strip() for item in value if str(item).strip())
    text = str(value).strip()
    return text or None


@dataclass(frozen=True)
class TimeWindow:
    start: datetime
    end: datetime

    def __post_init__(self) -> None:
        object.__setattr__(self, "start", to_utc(self.start))
        object.__setattr__(self, "end", to_utc(self.end))
        if self.start >= self.end:
            raise ReservationValidationError("Reservation start time must be earlier than end time.")


def conflicts(a: TimeWindow, b: TimeWindow) -> bool:
    """Return True when two windows share at least one instant.

    Windows are half-open ranges [start, end), so 10:00-11:00 and
    11:00-12:00 do not conflict.
    """
    return a.start < b.end and b.start < a.end


def has_time_overlap(new_start: datetime, new_end: datetime, exist_start: datetime, exist_end: datetime) -> bool:
    return conflicts(TimeWindow(new_start, new_end), TimeWindow(exist_start, exist_end))


def can_reserve(window: TimeWindow, existing_windows: Iterable[TimeWindow]) -> bool:
    """Return True if the requested window does not overlap any existing one."""
    for existing in existing_windows:
        if conflicts(window, existing):
            return False
    return True
