"""Expenses router: create, list, settle, close and delete home expenses."""

import os
import logging
from datetime import date, datetime, timedelta
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

import models
import schemas
from database import get_db
from dependencies import CurrentPrincipal, Principal
from utils.audit import write_audit_log
from utils.balances import get_cached_home_balances
from utils.cache import get_cache, categories_key, invalidate_expense_cache
from utils.homes import ROLE_ADMIN, get_role
from utils.notifications import notify_user, notify_home_members
from utils.schedule_meta import decode_notes, encode_notes, resolve_schedule_meta, reminder_date, set_account_status
from utils.splits import build_shares, resolve_split_type
from utils.validation import get_member_ids, require_active_home
from utils.webhooks import post_webhook

logger = logging.getLogger(__name__)

EXPENSE_ALERT_WEBHOOK_URL = os.getenv("EXPENSE_ALERT_WEBHOOK_URL") or os.getenv("REMINDER_WEBHOOK_URL")
EXPENSE_ALERT_WEBHOOK_TOKEN = os.getenv("EXPENSE_ALERT_WEBHOOK_TOKEN") or os.getenv("REMINDER_WEBHOOK_TOKEN")
DELETE_WINDOW = timedelta(hours=24)

DEFAULT_CATEGORIES = [
    {"name": "Rent/Mortgage", "icon": "🏠", "color": "#6366F1", "type": "FIXED", "is_recurring": True, "recurring_day": 10},
    {"name": "Internet", "icon": "📡", "color": "#8B5CF6", "type": "FIXED", "is_recurring": True, "recurring_day": 15},
    {"name": "Electricity", "icon": "💡", "color": "#F59E0B", "type": "VARIABLE", "is_recurring": True, "recurring_day": 20},
    {"name": "Water", "icon": "💧", "color": "#3B82F6", "type": "VARIABLE", "is_recurring": True, "recurring_day": 20},
    {"name": "Gas", "icon": "🔥", "color": "#EF4444", "type": "VARIABLE", "is_recurring": True, "recurring_day": 25},
    {"name": "Groceries", "icon": "🛒", "color": "#10B981", "type": "VARIABLE", "is_recurring": False},
    {"name": "Furniture", "icon": "🛋️", "color": "#78716C", "type": "ONETIME", "is_recurring": False},
    {"name": "Cleaning", "icon": "🧹", "color": "#06B6D4", "type": "VARIABLE", "is_recurring": False},
    {"name": "Other", "icon": "📦", "color": "#64748B", "type": "ONETIME", "is_recurring": False},
]


router = APIRouter(prefix="/expenses", tags=["expenses"])


def format_cents(amount: int) -> str:
    return f"{amount / 100:.2f}"


def can_manage_expense(expense: models.Expense, actor_id: int, is_global_admin: bool, home_role: Optional[str]) -> bool:
    """Payer, home admin or global admin may change an expense."""
    return expense.paid_by_id == actor_id or is_global_admin or home_role == ROLE_ADMIN


def delete_window_ends_at(expense: models.Expense) -> datetime:
    return expense.created_at + DELETE_WINDOW


def expense_response(db: Session, expense: models.Expense, principal: Principal, home_role: Optional[str],
                     shares: Optional[list] = None) -> dict:
    """Public view of an expense: user notes split from schedule metadata, plus permissions."""
    if shares is None:
        shares = db.query(models.ExpenseShare).filter(
            models.ExpenseShare.expense_id == expense.id
        ).order_by(models.ExpenseShare.id).all()

    notes, meta = decode_notes(expense.notes)
    can_manage = can_manage_expense(expense, principal.id, principal.is_admin, home_role)
    window_ends_at = delete_window_ends_at(expense)

    return {
        "id": expense.id,
        "description": expense.description,
        "amount": expense.amount,
        "date": expense.date,
        "due_date": expense.due_date,
        "split_type": expense.split_type,
        "notes": notes,
        "receipt": expense.receipt,
        "category_id": expense.category_id,
        "home_id": expense.home_id,
        "paid_by_id": expense.paid_by_id,
        "created_at": expense.created_at,
        **meta.to_public(),
        "shares": [schemas.ExpenseShare.model_validate(share) for share in shares],
        "can_manage": can_manage,
        "can_delete": can_manage and datetime.utcnow() <= window_ends_at,
        "delete_window_ends_at": window_ends_at,
    }


def load_manageable_expense(db: Session, principal: Principal, expense_id: int):
    """Load an expense of the caller's home that the caller may change."""
    user = require_active_home(db, principal.id)
    expense = db.query(models.Expense).filter(models.Expense.id == expense_id).first()
    if not expense or expense.home_id != user.home_id:
        raise HTTPException(status_code=404, detail="Expense not found")

    home_role = get_role(db, user.home_id, principal.id)
    if not can_manage_expense(expense, principal.id, bool(user.is_admin), home_role):
        raise HTTPException(status_code=403, detail="You are not allowed to change this expense")
    return expense, home_role


def dispatch_expense_alert(payload: dict) -> None:
    if not EXPENSE_ALERT_WEBHOOK_URL:
        return
    if not post_webhook(EXPENSE_ALERT_WEBHOOK_URL, payload, token=EXPENSE_ALERT_WEBHOOK_TOKEN):
        logger.warning(f"Expense alert webhook failed for expense {payload['expense']['id']}")


@router.post("", response_model=schemas.Expense, status_code=201)
def create_expense(expense: schemas.ExpenseCreate, principal: CurrentPrincipal, db: Session = Depends(get_db)):
    user = require_active_home(db, principal.id)
    home_id = user.home_id

    member_ids = get_member_ids(db, home_id)
    if not member_ids:
        raise HTTPException(status_code=404, detail="This home has no members to split with")

    split_type = resolve_split_type(expense.split_type, expense.custom_splits)
    expense_date = expense.date or date.today()
    meta = resolve_schedule_meta(
        expense.due_date,
        reminder_enabled=expense.reminder_enabled,
        recurrence_type=expense.recurrence_type,
        recurrence_interval_months=expense.recurrence_interval_months,
        reminder_days_before=expense.reminder_days_before,
    )
    shares = build_shares(expense.amount, split_type, principal.id, member_ids, expense.custom_splits)

    category = db.query(models.Category).filter(
        models.Category.id == expense.category_id,
        models.Category.home_id == home_id
    ).first()
    if not category:
        raise HTTPException(status_code=400, detail="Invalid category for this home")

    now = datetime.utcnow()
    try:
        db_expense = models.Expense(
            description=expense.description,
            amount=expense.amount,
            date=expense_date,
            due_date=expense.due_date,
            split_type=split_type,
            notes=encode_notes(expense.notes, meta),
            receipt=expense.receipt,
            category_id=category.id,
            home_id=home_id,
            paid_by_id=principal.id,
            created_at=now
        )
        db.add(db_expense)
        db.flush()

        for share in shares:
            db.add(models.ExpenseShare(
                expense_id=db_expense.id,
                user_id=share.user_id,
                amount=share.amount,
                split_percent=share.split_percent,
                is_paid=share.is_paid,
                paid_at=now if share.is_paid else None
            ))
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        raise
    db.refresh(db_expense)

    invalidate_expense_cache(home_id)

    event_data = {
        "expense_id": db_expense.id,
        "amount": expense.amount,
        "split_type": split_type,
        "date": expense_date.isoformat(),
        "due_date": expense.due_date.isoformat() if expense.due_date else None,
        "reminder_enabled": expense.reminder_enabled,
        "reminder_days_before": meta.reminder_days_before,
        "recurrence_type": meta.recurrence_type,
        "recurrence_interval_months": meta.recurrence_interval_months,
    }
    write_audit_log(db, "EXPENSE_CREATED", user_id=principal.id, home_id=home_id, details={
        **event_data, "shares_count": len(shares),
    })
    notify_home_members(
        db, home_id, "EXPENSE_CREATED", "New expense added",
        f"{expense.description} - {format_cents(expense.amount)}",
        exclude_user_ids=[principal.id], data=event_data
    )

    if expense.reminder_enabled and expense.due_date:
        alert_date = reminder_date(expense.due_date, meta.reminder_days_before)
        notify_user(
            db, principal.id, "EXPENSE_REMINDER_CONFIGURED", "Due date reminder enabled",
            f'Reminder set for "{expense.description}" on {alert_date.isoformat()} '
            f"({meta.reminder_days_before} day(s) before the due date).",
            home_id=home_id,
            data={
                "expense_id": db_expense.id,
                "due_date": expense.due_date.isoformat(),
                "reminder_date": alert_date.isoformat(),
                "reminder_days_before": meta.reminder_days_before,
            }
        )
        dispatch_expense_alert({
            "event": "expense.due_date.reminder_configured",
            "generated_at": now.isoformat(),
            "home_id": home_id,
            "user_id": principal.id,
            "expense": {
                "id": db_expense.id,
                "description": expense.description,
                "amount": expense.amount,
                "category_id": category.id,
                "date": expense_date.isoformat(),
                "due_date": expense.due_date.isoformat(),
                "reminder_days_before": meta.reminder_days_before,
                "reminder_date": alert_date.isoformat(),
                "recurrence_type": meta.recurrence_type,
                "recurrence_interval_months": meta.recurrence_interval_months,
            },
        })

    return expense_response(db, db_expense, principal, get_role(db, home_id, principal.id))


@router.get("", response_model=list[schemas.Expense])
def list_expenses(
    principal: CurrentPrincipal,
    category_id: Optional[int] = None,
    date_from: Optional[date] = Query(default=None, alias="from"),
    date_to: Optional[date] = Query(default=None, alias="to"),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    db: Session = Depends(get_db)
):
    user = db.query(models.User).filter(models.User.id == principal.id).first()
    if not user or not user.home_id:
        return []
    if date_from and date_to and date_from > date_to:
        raise HTTPException(status_code=400, detail="'from' must be on or before 'to'")

    query = db.query(models.Expense).filter(models.Expense.home_id == user.home_id)
    if category_id:
        query = query.filter(models.Expense.category_id == category_id)
    if date_from:
        query = query.filter(models.Expense.date >= date_from)
    if date_to:
        query = query.filter(models.Expense.date <= date_to)

    expenses = query.order_by(
        models.Expense.date.desc(), models.Expense.id.desc()
    ).offset((page - 1) * limit).limit(limit).all()

    # Load all shares in one query
    shares_by_expense = {expense.id: [] for expense in expenses}
    if expenses:
        shares = db.query(models.ExpenseShare).filter(
            models.ExpenseShare.expense_id.in_(list(shares_by_expense))
        ).order_by(models.ExpenseShare.id).all()
        for share in shares:
            shares_by_expense[share.expense_id].append(share)

    home_role = get_role(db, user.home_id, principal.id)
    return [
        expense_response(db, expense, principal, home_role, shares_by_expense[expense.id])
        for expense in expenses
    ]


@router.get("/balances", response_model=list[schemas.Balance])
def get_balances(principal: CurrentPrincipal, db: Session = Depends(get_db)):
    user = db.query(models.User).filter(models.User.id == principal.id).first()
    if not user or not user.home_id:
        return []
    return get_cached_home_balances(db, user.home_id)


@router.get("/my-debts", response_model=list[schemas.Debt])
def get_my_debts(principal: CurrentPrincipal, db: Session = Depends(get_db)):
    """The caller's unpaid shares with who to pay and how."""
    user = db.query(models.User).filter(models.User.id == principal.id).first()
    if not user or not user.home_id:
        return []

    rows = db.query(models.ExpenseShare, models.Expense, models.User).join(
        models.Expense, models.Expense.id == models.ExpenseShare.expense_id
    ).join(
        models.User, models.User.id == models.Expense.paid_by_id
    ).filter(
        models.ExpenseShare.user_id == principal.id,
        models.ExpenseShare.is_paid == False,  # noqa: E712
        models.Expense.home_id == user.home_id
    ).order_by(models.Expense.date.desc()).all()

    debts = []
    for share, expense, creditor in rows:
        notes, meta = decode_notes(expense.notes)
        debts.append({
            "share_id": share.id,
            "amount": share.amount,
            "split_percent": share.split_percent,
            "proof_url": share.proof_url,
            "proof_description": share.proof_description,
            "expense": {
                "id": expense.id,
                "description": expense.description,
                "total_amount": expense.amount,
                "date": expense.date,
                "notes": notes,
                "receipt": expense.receipt,
                "split_type": expense.split_type,
                **meta.to_public(),
            },
            "creditor": {
                "id": creditor.id,
                "name": creditor.name,
                "email": creditor.email,
                "phone": creditor.phone,
                "pix_key": creditor.pix_key,
            },
        })
    return debts


@router.get("/categories", response_model=list[schemas.Category])
def get_categories(principal: CurrentPrincipal, db: Session = Depends(get_db)):
    user = db.query(models.User).filter(models.User.id == principal.id).first()
    if not user or not user.home_id:
        return []

    cache = get_cache()
    key = categories_key(user.home_id)
    cached = cache.get(key)
    if cached is not None:
        return cached

    query = db.query(models.Category).filter(models.Category.home_id == user.home_id).order_by(models.Category.id)
    categories = query.all()
    if not categories:
        for category in DEFAULT_CATEGORIES:
            db.add(models.Category(home_id=user.home_id, **category))
        db.commit()
        categories = query.all()

    result = [schemas.Category.model_validate(category).model_dump() for category in categories]
    cache.set(key, result)
    return result


@router.post("/shares/{share_id}/settle", response_model=schemas.ExpenseShare)
def settle_share(
    share_id: int,
    principal: CurrentPrincipal,
    body: Optional[schemas.SettleShareRequest] = None,
    db: Session = Depends(get_db)
):
    """Mark the caller's own share as paid. Settling a paid share changes nothing."""
    share = db.query(models.ExpenseShare).filter(models.ExpenseShare.id == share_id).first()
    if not share:
        raise HTTPException(status_code=404, detail="Expense share not found")
    if share.user_id != principal.id:
        raise HTTPException(status_code=403, detail="You can only settle your own shares")
    if share.is_paid:
        return share

    expense = db.query(models.Expense).filter(models.Expense.id == share.expense_id).first()
    body = body or schemas.SettleShareRequest()

    share.is_paid = True
    share.paid_at = datetime.utcnow()
    share.proof_url = body.proof_url
    share.proof_description = body.proof_description
    db.commit()
    db.refresh(share)

    invalidate_expense_cache(expense.home_id)
    write_audit_log(db, "EXPENSE_SHARE_SETTLED", user_id=principal.id, home_id=expense.home_id, details={
        "share_id": share.id,
    })
    if expense.paid_by_id != principal.id:
        notify_user(
            db, expense.paid_by_id, "EXPENSE_SHARE_SETTLED", "Share settled",
            f'A share of "{expense.description}" was settled.',
            home_id=expense.home_id,
            data={"share_id": share.id, "settled_by": principal.id, "total_amount": expense.amount}
        )
    return share


@router.patch("/{expense_id}/status", response_model=schemas.Expense)
def update_status(
    expense_id: int,
    body: schemas.ExpenseStatusUpdate,
    principal: CurrentPrincipal,
    db: Session = Depends(get_db)
):
    """Open or close an expense. The status lives in the notes metadata."""
    expense, home_role = load_manageable_expense(db, principal, expense_id)
    previous_status = decode_notes(expense.notes)[1].account_status
    if previous_status == body.status:
        return expense_response(db, expense, principal, home_role)

    expense.notes = set_account_status(expense.notes, body.status)
    db.commit()
    db.refresh(expense)

    write_audit_log(db, "EXPENSE_STATUS_UPDATED", user_id=principal.id, home_id=expense.home_id, details={
        "expense_id": expense.id,
        "previous_status": previous_status,
        "next_status": body.status,
    })
    return expense_response(db, expense, principal, home_role)


@router.delete("/{expense_id}")
def delete_expense(expense_id: int, principal: CurrentPrincipal, db: Session = Depends(get_db)):
    expense, _ = load_manageable_expense(db, principal, expense_id)

    now = datetime.utcnow()
    window_ends_at = delete_window_ends_at(expense)
    if now > window_ends_at:
        raise HTTPException(
            status_code=400,
            detail=f"This expense is now part of the history and can no longer be deleted "
                   f"(deadline: {window_ends_at.strftime('%Y-%m-%d %H:%M')} UTC)"
        )

    home_id = expense.home_id
    details = {
        "expense_id": expense.id,
        "amount": expense.amount,
        "description": expense.description,
        "deleted_at": now.isoformat(),
    }
    try:
        db.query(models.ExpenseShare).filter(
            models.ExpenseShare.expense_id == expense.id
        ).delete(synchronize_session=False)
        db.delete(expense)
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        raise

    invalidate_expense_cache(home_id)
    write_audit_log(db, "EXPENSE_DELETED", user_id=principal.id, home_id=home_id, details=details)
    return {"success": True, "expense_id": expense_id}
