"""Inactivity reminder job.

Finds home members who have not been seen for INACTIVITY_REMINDER_DAYS and
have not been reminded since, gathers their unpaid shares, and posts one
webhook payload per user to an automation workflow. Only one replica runs
the job at a time, guarded by a distributed lock.
"""

import os
import time
import logging
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from sqlalchemy import or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

import models
from database import SessionLocal
from utils.locks import DistributedLock
from utils.redis_client import get_redis
from utils.schedule_meta import strip_meta
from utils.webhooks import post_webhook

logger = logging.getLogger(__name__)


def parse_positive_int(value: Optional[str], fallback: int) -> int:
    try:
        parsed = int(float(value))
    except (TypeError, ValueError):
        return fallback
    return parsed if parsed > 0 else fallback


INACTIVITY_REMINDER_DAYS = parse_positive_int(os.getenv("INACTIVITY_REMINDER_DAYS"), 3)
REMINDER_WEBHOOK_URL = os.getenv("REMINDER_WEBHOOK_URL")
REMINDER_WEBHOOK_TOKEN = os.getenv("REMINDER_WEBHOOK_TOKEN")
REMINDER_BATCH_SIZE = parse_positive_int(os.getenv("REMINDER_BATCH_SIZE"), 100)
REMINDER_CONCURRENCY = parse_positive_int(os.getenv("REMINDER_CONCURRENCY"), 5)
JOB_REMINDER_LOCK_TTL_MS = parse_positive_int(os.getenv("JOB_REMINDER_LOCK_TTL_MS"), 5 * 60 * 1000)
LOCK_KEY = "jobs:reminder:inactive-users:lock"

REMINDER_EVENT = "user.inactive.debt_reminder"


class ReminderJob:
    def __init__(
        self,
        session_factory: Callable[[], Session] = SessionLocal,
        lock: Optional[DistributedLock] = None,
        webhook_url: Optional[str] = REMINDER_WEBHOOK_URL,
        webhook_token: Optional[str] = REMINDER_WEBHOOK_TOKEN,
        inactivity_days: int = INACTIVITY_REMINDER_DAYS,
        batch_size: int = REMINDER_BATCH_SIZE,
        concurrency: int = REMINDER_CONCURRENCY
    ):
        self.session_factory = session_factory
        self.lock = lock if lock is not None else DistributedLock(get_redis(), LOCK_KEY, JOB_REMINDER_LOCK_TTL_MS)
        self.webhook_url = webhook_url
        self.webhook_token = webhook_token
        self.inactivity_days = inactivity_days
        self.batch_size = batch_size
        self.concurrency = max(1, concurrency)

    def run(self, trigger: str = "manual") -> dict:
        """
        Run one reminder pass.

        Returns a summary dict: skipped (with a reason) when there is no
        webhook or another worker holds the lock, otherwise the number of
        users selected, sent and failed.
        """
        summary = {"trigger": trigger, "skipped": False, "reason": None, "selected": 0, "sent": 0, "failed": 0}

        if not self.webhook_url:
            summary.update(skipped=True, reason="webhook not configured")
            return summary

        lock_token = f"{os.getpid()}:{int(time.time() * 1000)}"
        if not self.lock.acquire(lock_token):
            logger.info(f"Reminder job skipped because another worker holds the lock (trigger={trigger})")
            summary.update(skipped=True, reason="lock held")
            return summary

        db = None
        try:
            db = self.session_factory()
            now = datetime.utcnow()
            cutoff = now - timedelta(days=self.inactivity_days)
            users = self._select_users(db, cutoff)
            summary["selected"] = len(users)
            if not users:
                return summary

            debts_by_user = self._debts_by_user(db, [user.id for user in users])

            with ThreadPoolExecutor(max_workers=self.concurrency) as pool:
                for start in range(0, len(users), self.concurrency):
                    chunk = users[start:start + self.concurrency]
                    payloads = [self._build_payload(user, now, debts_by_user.get(user.id, [])) for user in chunk]
                    results = list(pool.map(self._deliver, payloads))

                    for user, delivered in zip(chunk, results):
                        if delivered and self._stamp(db, user, now):
                            summary["sent"] += 1
                        else:
                            summary["failed"] += 1

            logger.info(
                f"Reminder job finished (trigger={trigger}): "
                f"{summary['sent']} sent, {summary['failed']} failed of {summary['selected']}"
            )
            return summary
        finally:
            if db is not None:
                db.close()
            self.lock.release(lock_token)

    def _select_users(self, db: Session, cutoff: datetime) -> List[models.User]:
        return db.query(models.User).filter(
            models.User.home_id.isnot(None),
            models.User.last_seen_at <= cutoff,
            or_(
                models.User.last_inactivity_reminder_at.is_(None),
                models.User.last_inactivity_reminder_at <= cutoff
            )
        ).order_by(models.User.last_seen_at.asc()).limit(self.batch_size).all()

    def _debts_by_user(self, db: Session, user_ids: List[int]) -> Dict[int, List[dict]]:
        rows = db.query(models.ExpenseShare, models.Expense, models.User).join(
            models.Expense, models.Expense.id == models.ExpenseShare.expense_id
        ).join(
            models.User, models.User.id == models.Expense.paid_by_id
        ).filter(
            models.ExpenseShare.user_id.in_(user_ids),
            models.ExpenseShare.is_paid == False  # noqa: E712
        ).order_by(models.Expense.date.desc()).all()

        debts_by_user: Dict[int, List[dict]] = {}
        for share, expense, creditor in rows:
            debts_by_user.setdefault(share.user_id, []).append({
                "share_id": share.id,
                "amount": share.amount,
                "split_percent": share.split_percent,
                "proof_url": share.proof_url,
                "proof_description": share.proof_description,
                "expense": {
                    "id": expense.id,
                    "description": expense.description,
                    "total_amount": expense.amount,
                    "date": expense.date.isoformat(),
                    "notes": strip_meta(expense.notes),
                    "receipt": expense.receipt,
                    "split_type": expense.split_type,
                },
                "creditor": {
                    "id": creditor.id,
                    "name": creditor.name,
                    "email": creditor.email,
                    "phone": creditor.phone,
                    "pix_key": creditor.pix_key,
                },
            })
        return debts_by_user

    def _build_payload(self, user: models.User, now: datetime, debts: List[dict]) -> dict:
        return {
            "event": REMINDER_EVENT,
            "generated_at": now.isoformat(),
            "inactivity_days_threshold": self.inactivity_days,
            "user": {
                "id": user.id,
                "name": user.name,
                "email": user.email,
                "phone": user.phone,
                "last_seen_at": user.last_seen_at.isoformat(),
                "days_inactive": (now - user.last_seen_at).days,
            },
            "debts_summary": {
                "total_debt": sum(debt["amount"] for debt in debts),
                "pending_shares": len(debts),
            },
            "debts": debts,
        }

    def _deliver(self, payload: dict) -> bool:
        delivered = post_webhook(self.webhook_url, payload, token=self.webhook_token)
        if not delivered:
            logger.warning(f"Reminder webhook failed for user {payload['user']['id']}")
        return delivered

    def _stamp(self, db: Session, user: models.User, now: datetime) -> bool:
        try:
            user.last_inactivity_reminder_at = now
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Failed to record reminder for user {user.id}: {e}")
            return False
        return True
