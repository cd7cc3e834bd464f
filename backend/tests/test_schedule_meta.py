from datetime import date

import pytest
from fastapi import HTTPException

from utils.schedule_meta import (
    META_MARKER, DEFAULT_SCHEDULE_META, ScheduleMeta, decode_notes, encode_notes,
    resolve_schedule_meta, reminder_date, set_account_status, strip_meta
)


def test_default_meta_is_not_embedded():
    assert encode_notes("  pay by friday ", DEFAULT_SCHEDULE_META) == "pay by friday"
    assert encode_notes("", DEFAULT_SCHEDULE_META) is None
    assert encode_notes(None, DEFAULT_SCHEDULE_META) is None


def test_meta_is_appended_after_notes():
    meta = ScheduleMeta(recurrence_type="MONTHLY", recurrence_interval_months=2, reminder_days_before=3)
    stored = encode_notes("Rent", meta)

    assert stored.startswith("Rent\n" + META_MARKER + "{")
    assert '"recurrenceType":"MONTHLY"' in stored
    assert decode_notes(stored) == ("Rent", meta)


def test_meta_only_has_no_leading_newline():
    stored = encode_notes(None, ScheduleMeta(account_status="CLOSED"))

    assert stored.startswith(META_MARKER)
    assert decode_notes(stored) == (None, ScheduleMeta(account_status="CLOSED"))


def test_decode_uses_last_marker():
    stored = f'note mentioning {META_MARKER} literally\n{META_MARKER}{{"accountStatus":"CLOSED"}}'

    notes, meta = decode_notes(stored)
    assert notes == f"note mentioning {META_MARKER} literally"
    assert meta.account_status == "CLOSED"


def test_malformed_json_falls_back_to_plain_notes():
    stored = f"Internet bill\n{META_MARKER}{{not json"

    assert decode_notes(stored) == (stored, DEFAULT_SCHEDULE_META)


def test_non_object_json_falls_back_to_plain_notes():
    stored = f"Water\n{META_MARKER}[1, 2]"

    assert decode_notes(stored) == (stored, DEFAULT_SCHEDULE_META)


def test_stored_values_are_clamped():
    stored = (
        META_MARKER + '{"recurrenceType":"MONTHLY","recurrenceIntervalMonths":40,'
        '"reminderDaysBefore":-5,"accountStatus":"WHATEVER"}'
    )

    _, meta = decode_notes(stored)
    assert meta == ScheduleMeta(
        recurrence_type="MONTHLY", recurrence_interval_months=12, reminder_days_before=0, account_status="OPEN"
    )


def test_set_account_status_keeps_notes_and_schedule():
    stored = encode_notes("Gas", ScheduleMeta(recurrence_type="MONTHLY", reminder_days_before=2))

    closed = set_account_status(stored, "CLOSED")
    notes, meta = decode_notes(closed)
    assert notes == "Gas"
    assert meta.account_status == "CLOSED"
    assert meta.recurrence_type == "MONTHLY"
    assert meta.reminder_days_before == 2

    reopened = set_account_status(closed, "OPEN")
    assert decode_notes(reopened)[1].account_status == "OPEN"


def test_reopening_default_meta_drops_the_block():
    closed = set_account_status("Just notes", "CLOSED")

    assert set_account_status(closed, "OPEN") == "Just notes"
    assert strip_meta(closed) == "Just notes"


def test_reminder_requires_due_date():
    with pytest.raises(HTTPException) as exc:
        resolve_schedule_meta(None, reminder_enabled=True)
    assert exc.value.status_code == 400


def test_monthly_recurrence_requires_due_date():
    with pytest.raises(HTTPException) as exc:
        resolve_schedule_meta(None, recurrence_type="MONTHLY")
    assert exc.value.status_code == 400


def test_days_before_requires_reminder():
    with pytest.raises(HTTPException) as exc:
        resolve_schedule_meta(date(2026, 5, 10), reminder_days_before=3)
    assert exc.value.status_code == 400


def test_valid_schedule_is_resolved():
    meta = resolve_schedule_meta(
        date(2026, 5, 10), reminder_enabled=True, recurrence_type="MONTHLY",
        recurrence_interval_months=3, reminder_days_before=5
    )

    assert meta == ScheduleMeta(recurrence_type="MONTHLY", recurrence_interval_months=3, reminder_days_before=5)
    assert reminder_date(date(2026, 5, 10), meta.reminder_days_before) == date(2026, 5, 5)


def test_interval_ignored_without_monthly_recurrence():
    meta = resolve_schedule_meta(date(2026, 5, 10), recurrence_interval_months=6)

    assert meta.recurrence_interval_months == 1
    assert meta.is_default()
