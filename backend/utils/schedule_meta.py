"""Schedule metadata embedded in an expense's notes column.

Stored format: the user-visible notes, a newline, then META_MARKER directly
followed by a JSON object. Only non-default metadata is written. Reading
uses the last marker occurrence; if the JSON after it is unreadable the whole
string is treated as plain notes with default metadata.
"""

import json
from datetime import date, timedelta
from dataclasses import dataclass, asdict, replace
from typing import Optional, Tuple

from fastapi import HTTPException

META_MARKER = "[HOUSEMATE_META]"

RECURRENCE_NONE = "NONE"
RECURRENCE_MONTHLY = "MONTHLY"
STATUS_OPEN = "OPEN"
STATUS_CLOSED = "CLOSED"


@dataclass(frozen=True)
class ScheduleMeta:
    recurrence_type: str = RECURRENCE_NONE
    recurrence_interval_months: int = 1
    reminder_days_before: int = 0
    account_status: str = STATUS_OPEN

    def is_default(self) -> bool:
        return self == DEFAULT_SCHEDULE_META

    def to_public(self) -> dict:
        return asdict(self)

    def to_stored(self) -> dict:
        return {
            "recurrenceType": self.recurrence_type,
            "recurrenceIntervalMonths": self.recurrence_interval_months,
            "reminderDaysBefore": self.reminder_days_before,
            "accountStatus": self.account_status,
        }


DEFAULT_SCHEDULE_META = ScheduleMeta()


def clamp_int(value, low: int, high: int, fallback: int) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return fallback
    if value != value or value in (float("inf"), float("-inf")):
        return fallback
    return max(low, min(high, int(value)))


def normalize_meta(raw: dict) -> ScheduleMeta:
    """Build metadata from a stored JSON object, clamping anything out of range."""
    recurrence_type = RECURRENCE_MONTHLY if raw.get("recurrenceType") == RECURRENCE_MONTHLY else RECURRENCE_NONE
    interval = (
        clamp_int(raw.get("recurrenceIntervalMonths"), 1, 12, 1)
        if recurrence_type == RECURRENCE_MONTHLY
        else DEFAULT_SCHEDULE_META.recurrence_interval_months
    )
    return ScheduleMeta(
        recurrence_type=recurrence_type,
        recurrence_interval_months=interval,
        reminder_days_before=clamp_int(raw.get("reminderDaysBefore"), 0, 30, 0),
        account_status=STATUS_CLOSED if raw.get("accountStatus") == STATUS_CLOSED else STATUS_OPEN,
    )


def encode_notes(notes: Optional[str], meta: ScheduleMeta) -> Optional[str]:
    """Combine user notes and metadata into the stored column value."""
    notes = (notes or "").strip()
    if meta.is_default():
        return notes or None

    block = META_MARKER + json.dumps(meta.to_stored(), separators=(",", ":"))
    return f"{notes}\n{block}" if notes else block


def decode_notes(stored: Optional[str]) -> Tuple[Optional[str], ScheduleMeta]:
    """Split a stored column value into (user notes, metadata). Never raises."""
    if not stored:
        return None, DEFAULT_SCHEDULE_META

    marker_index = stored.rfind(META_MARKER)
    if marker_index < 0:
        return stored, DEFAULT_SCHEDULE_META

    raw_meta = stored[marker_index + len(META_MARKER):].strip()
    try:
        parsed = json.loads(raw_meta)
    except ValueError:
        return stored, DEFAULT_SCHEDULE_META
    if not isinstance(parsed, dict):
        return stored, DEFAULT_SCHEDULE_META

    notes = stored[:marker_index].strip()
    return notes or None, normalize_meta(parsed)


def strip_meta(stored: Optional[str]) -> Optional[str]:
    return decode_notes(stored)[0]


def set_account_status(stored: Optional[str], account_status: str) -> Optional[str]:
    notes, meta = decode_notes(stored)
    return encode_notes(notes, replace(meta, account_status=account_status))


def resolve_schedule_meta(
    due_date: Optional[date],
    reminder_enabled: bool = False,
    recurrence_type: Optional[str] = None,
    recurrence_interval_months: Optional[int] = None,
    reminder_days_before: Optional[int] = None
) -> ScheduleMeta:
    """Validate the schedule options of a new expense, raise 400 on inconsistent input."""
    if reminder_enabled and not due_date:
        raise HTTPException(status_code=400, detail="A reminder can only be enabled when the expense has a due date")

    recurrence_type = RECURRENCE_MONTHLY if recurrence_type == RECURRENCE_MONTHLY else RECURRENCE_NONE
    if recurrence_type != RECURRENCE_NONE and not due_date:
        raise HTTPException(status_code=400, detail="Set a due date to configure recurrence")

    interval = (
        clamp_int(recurrence_interval_months, 1, 12, 1)
        if recurrence_type == RECURRENCE_MONTHLY
        else DEFAULT_SCHEDULE_META.recurrence_interval_months
    )

    days_before = clamp_int(reminder_days_before, 0, 30, 0)
    if not reminder_enabled and days_before > 0:
        raise HTTPException(status_code=400, detail="Enable the due date reminder to choose how many days before to be alerted")

    return ScheduleMeta(
        recurrence_type=recurrence_type,
        recurrence_interval_months=interval,
        reminder_days_before=days_before,
    )


def reminder_date(due_date: date, days_before: int) -> date:
    return due_date - timedelta(days=clamp_int(days_before, 0, 30, 0))
