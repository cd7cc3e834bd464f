"""Net balance calculation across a home's unpaid expense shares."""

from typing import Dict, List

from sqlalchemy.orm import Session

import models
from utils.cache import get_cache, balances_key


def calculate_home_balances(db: Session, home_id: int) -> List[dict]:
    """
    Calculate the net balance of every member of a home from unpaid shares.

    For each unpaid share the debtor's balance decreases by the share amount
    and the payer's balance increases by the same amount. Shares the payer
    owes to themselves are ignored.

    Returns:
        List of {user_id, name, amount} in membership order, amounts in cents.
        Positive means the member is owed money.
    """
    members = db.query(models.HomeMember.user_id, models.User.name).join(
        models.User, models.User.id == models.HomeMember.user_id
    ).filter(
        models.HomeMember.home_id == home_id
    ).order_by(models.HomeMember.id).all()

    net_balances: Dict[int, int] = {member.user_id: 0 for member in members}

    # Single query for all unpaid shares with their payer
    unpaid = db.query(models.ExpenseShare.user_id, models.ExpenseShare.amount, models.Expense.paid_by_id).join(
        models.Expense, models.Expense.id == models.ExpenseShare.expense_id
    ).filter(
        models.Expense.home_id == home_id,
        models.ExpenseShare.is_paid == False  # noqa: E712
    ).all()

    for debtor_id, amount, creditor_id in unpaid:
        if debtor_id == creditor_id:
            continue
        net_balances[debtor_id] = net_balances.get(debtor_id, 0) - amount
        net_balances[creditor_id] = net_balances.get(creditor_id, 0) + amount

    return [
        {"user_id": member.user_id, "name": member.name, "amount": net_balances[member.user_id]}
        for member in members
    ]


def get_cached_home_balances(db: Session, home_id: int) -> List[dict]:
    cache = get_cache()
    key = balances_key(home_id)
    cached = cache.get(key)
    if cached is not None:
        return cached

    balances = calculate_home_balances(db, home_id)
    cache.set(key, balances)
    return balances
