from datetime import date, datetime, timedelta
from unittest.mock import Mock, patch

import fakeredis
import pytest
import redis

import models
from jobs.reminder import LOCK_KEY, REMINDER_EVENT, ReminderJob, parse_positive_int
from routers.jobs import get_reminder_job, get_trigger_token
from main import app
from utils.locks import DistributedLock

WEBHOOK_URL = "https://automation.example.com/hook"


def make_lock(client=None):
    return DistributedLock(client or fakeredis.FakeRedis(decode_responses=True), LOCK_KEY, 60_000)


def make_job(session_factory, lock=None, **overrides):
    options = {"webhook_url": WEBHOOK_URL, "webhook_token": "secret", "inactivity_days": 3, "concurrency": 2}
    options.update(overrides)
    return ReminderJob(session_factory=session_factory, lock=lock or make_lock(), **options)


def mark_inactive(db, user, days=5, reminded_days_ago=None):
    now = datetime.utcnow()
    user.last_seen_at = now - timedelta(days=days)
    user.last_inactivity_reminder_at = (
        now - timedelta(days=reminded_days_ago) if reminded_days_ago is not None else None
    )
    db.commit()


def add_debt(db, payer, debtor, category, amount=1500):
    expense = models.Expense(
        description="Internet", amount=amount * 2, date=date(2026, 3, 1), split_type="EQUAL",
        notes="March bill\n[HOUSEMATE_META]{\"accountStatus\":\"CLOSED\"}",
        category_id=category.id, home_id=payer.home_id, paid_by_id=payer.id
    )
    db.add(expense)
    db.flush()
    db.add(models.ExpenseShare(expense_id=expense.id, user_id=payer.id, amount=amount, split_percent=50, is_paid=True))
    db.add(models.ExpenseShare(expense_id=expense.id, user_id=debtor.id, amount=amount, split_percent=50))
    db.commit()
    return expense


def test_parse_positive_int():
    assert parse_positive_int("7", 3) == 7
    assert parse_positive_int("2.9", 3) == 2
    assert parse_positive_int("0", 3) == 3
    assert parse_positive_int("-4", 3) == 3
    assert parse_positive_int("abc", 3) == 3
    assert parse_positive_int(None, 3) == 3


def test_lock_is_exclusive_and_released_by_owner_only():
    client = fakeredis.FakeRedis(decode_responses=True)
    first = make_lock(client)
    second = make_lock(client)

    assert first.acquire("a") is True
    assert second.acquire("b") is False
    assert 0 < client.pttl(LOCK_KEY) <= 60_000

    assert second.release("b") is False
    assert client.get(LOCK_KEY) == "a"

    assert first.release("a") is True
    assert second.acquire("b") is True


def test_lock_proceeds_when_store_is_down():
    client = Mock()
    client.set.side_effect = redis.exceptions.ConnectionError("down")
    client.get.side_effect = redis.exceptions.ConnectionError("down")
    lock = DistributedLock(client, LOCK_KEY, 1000)

    assert lock.acquire("t") is True
    assert lock.release("t") is False
    assert DistributedLock(None, LOCK_KEY, 1000).acquire("t") is True


def test_skipped_without_webhook():
    factory = Mock()
    summary = ReminderJob(session_factory=factory, lock=make_lock(), webhook_url=None).run()

    assert summary["skipped"] is True
    assert summary["reason"] == "webhook not configured"
    factory.assert_not_called()


def test_skipped_when_lock_is_held():
    client = fakeredis.FakeRedis(decode_responses=True)
    client.set(LOCK_KEY, "other-worker")
    factory = Mock()

    summary = make_job(factory, lock=make_lock(client)).run(trigger="cron")

    assert summary == {
        "trigger": "cron", "skipped": True, "reason": "lock held", "selected": 0, "sent": 0, "failed": 0
    }
    factory.assert_not_called()
    assert client.get(LOCK_KEY) == "other-worker"


@patch("jobs.reminder.post_webhook", return_value=True)
def test_selects_only_due_users(mock_post, db_session, session_factory, test_user, second_user, third_user):
    mark_inactive(db_session, test_user, days=1)
    mark_inactive(db_session, second_user, days=5, reminded_days_ago=1)
    mark_inactive(db_session, third_user, days=5, reminded_days_ago=4)

    outsider = models.User(name="No Home", email="nohome@example.com", hashed_password="x",
                           last_seen_at=datetime.utcnow() - timedelta(days=10))
    db_session.add(outsider)
    db_session.commit()

    summary = make_job(session_factory).run()

    assert summary["selected"] == 1
    assert summary["sent"] == 1
    payload = mock_post.call_args[0][1]
    assert payload["user"]["id"] == third_user.id
    assert mock_post.call_args[1]["token"] == "secret"


@patch("jobs.reminder.post_webhook", return_value=True)
def test_payload_lists_unpaid_shares(mock_post, db_session, session_factory, test_user, second_user, category):
    test_user.pix_key = "pix-test-user"
    db_session.commit()
    add_debt(db_session, test_user, second_user, category)
    mark_inactive(db_session, second_user, days=4)

    make_job(session_factory).run()

    assert mock_post.call_args[0][0] == WEBHOOK_URL
    payload = mock_post.call_args[0][1]
    assert payload["event"] == REMINDER_EVENT
    assert payload["inactivity_days_threshold"] == 3
    assert payload["user"]["days_inactive"] == 4
    assert payload["debts_summary"] == {"total_debt": 1500, "pending_shares": 1}
    debt = payload["debts"][0]
    assert debt["expense"]["notes"] == "March bill"
    assert debt["creditor"]["pix_key"] == "pix-test-user"


def test_failed_delivery_is_isolated_and_not_stamped(db_session, session_factory, test_user, second_user, third_user):
    for user in (test_user, second_user, third_user):
        mark_inactive(db_session, user, days=5)

    def deliver(url, payload, token=None):
        return payload["user"]["id"] != second_user.id

    with patch("jobs.reminder.post_webhook", side_effect=deliver):
        summary = make_job(session_factory).run()

    assert summary["selected"] == 3
    assert summary["sent"] == 2
    assert summary["failed"] == 1

    db_session.expire_all()
    assert db_session.get(models.User, test_user.id).last_inactivity_reminder_at is not None
    assert db_session.get(models.User, second_user.id).last_inactivity_reminder_at is None
    assert db_session.get(models.User, third_user.id).last_inactivity_reminder_at is not None


@patch("jobs.reminder.post_webhook", return_value=True)
def test_batch_size_and_lock_release(mock_post, db_session, session_factory, test_user, second_user, third_user):
    mark_inactive(db_session, test_user, days=4)
    mark_inactive(db_session, second_user, days=6)
    mark_inactive(db_session, third_user, days=5)
    client = fakeredis.FakeRedis(decode_responses=True)

    summary = make_job(session_factory, lock=make_lock(client), batch_size=2).run()

    assert summary["selected"] == 2
    reminded = {call[0][1]["user"]["id"] for call in mock_post.call_args_list}
    assert reminded == {second_user.id, third_user.id}
    assert client.exists(LOCK_KEY) == 0

    # Reminded users are not picked again until another inactivity window passes
    again = make_job(session_factory, lock=make_lock(client), batch_size=2).run()
    assert again["selected"] == 1


def test_trigger_endpoint_disabled_without_token(client):
    app.dependency_overrides[get_trigger_token] = lambda: ""
    try:
        response = client.post("/jobs/reminders/inactive-users/run", headers={"X-Job-Token": "anything"})
    finally:
        app.dependency_overrides.pop(get_trigger_token, None)
    assert response.status_code == 403


def test_trigger_endpoint_checks_token(client):
    job = Mock()
    job.run.return_value = {"trigger": "http", "skipped": False, "reason": None, "selected": 0, "sent": 0, "failed": 0}
    app.dependency_overrides[get_trigger_token] = lambda: "job-secret"
    app.dependency_overrides[get_reminder_job] = lambda: job
    try:
        wrong = client.post("/jobs/reminders/inactive-users/run", headers={"X-Job-Token": "nope"})
        missing = client.post("/jobs/reminders/inactive-users/run")
        by_header = client.post("/jobs/reminders/inactive-users/run", headers={"X-Job-Token": "job-secret"})
        by_bearer = client.post(
            "/jobs/reminders/inactive-users/run", headers={"Authorization": "Bearer job-secret"}
        )
    finally:
        app.dependency_overrides.pop(get_trigger_token, None)
        app.dependency_overrides.pop(get_reminder_job, None)

    assert wrong.status_code == 401
    assert missing.status_code == 401
    assert by_header.status_code == 200
    assert by_header.json()["trigger"] == "http"
    assert by_bearer.status_code == 200
    job.run.assert_called_with(trigger="http")


def test_lock_released_when_session_cannot_open():
    client = fakeredis.FakeRedis(decode_responses=True)
    factory = Mock(side_effect=RuntimeError("database unavailable"))

    with pytest.raises(RuntimeError):
        make_job(factory, lock=make_lock(client)).run()

    factory.assert_called_once()
    assert client.exists(LOCK_KEY) == 0
