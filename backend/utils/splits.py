"""Split calculation for home expenses."""

from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, Sequence

from fastapi import HTTPException

import schemas

SPLIT_EQUAL = "EQUAL"
SPLIT_CUSTOM = "CUSTOM"
SPLIT_INDIVIDUAL = "INDIVIDUAL"

PERCENT_TOLERANCE = Decimal("0.01")
HUNDRED = Decimal(100)


def _round_cents(value: Decimal) -> int:
    return int(value.quantize(Decimal(1), rounding=ROUND_HALF_UP))


def _round_percent(value: Decimal) -> float:
    return float(value.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


def resolve_split_type(requested: Optional[str], custom_splits: Optional[Sequence]) -> str:
    """Custom splits win; INDIVIDUAL only when asked for; EQUAL otherwise."""
    if custom_splits:
        return SPLIT_CUSTOM
    if requested == SPLIT_INDIVIDUAL:
        return SPLIT_INDIVIDUAL
    return SPLIT_EQUAL


def build_shares(
    amount: int,
    split_type: str,
    payer_id: int,
    member_ids: Sequence[int],
    custom_splits: Optional[Sequence[schemas.CustomSplit]] = None
) -> list[schemas.ShareDraft]:
    """
    Divide an amount (in cents) between home members.

    Algorithm:
    1. Homes with fewer than 2 members and INDIVIDUAL expenses: payer owns 100%
    2. CUSTOM: validated percentages, amount per entry in the given order
    3. EQUAL: even division across members in membership order
    In 2 and 3 the last entry absorbs the rounding remainder so the shares
    add up to the amount exactly. The payer's own share is marked paid.
    """
    if len(member_ids) < 2 or split_type == SPLIT_INDIVIDUAL:
        return [schemas.ShareDraft(user_id=payer_id, amount=amount, split_percent=100.0, is_paid=True)]

    if split_type == SPLIT_CUSTOM:
        entries = _custom_entries(amount, member_ids, custom_splits or [])
    else:
        entries = _equal_entries(amount, member_ids)

    return [
        schemas.ShareDraft(user_id=user_id, amount=share_amount, split_percent=percent, is_paid=user_id == payer_id)
        for user_id, share_amount, percent in entries
    ]


def _custom_entries(amount: int, member_ids: Sequence[int], custom_splits: Sequence[schemas.CustomSplit]):
    if not custom_splits:
        raise HTTPException(status_code=400, detail="A custom split requires custom_splits")

    members = set(member_ids)
    seen = set()
    percent_total = Decimal(0)
    for split in custom_splits:
        if split.user_id in seen:
            raise HTTPException(status_code=400, detail="custom_splits contains a duplicate user")
        if split.user_id not in members:
            raise HTTPException(status_code=400, detail="custom_splits contains a user outside the home")
        seen.add(split.user_id)
        percent_total += Decimal(str(split.percent))

    if abs(percent_total - HUNDRED) > PERCENT_TOLERANCE:
        raise HTTPException(status_code=400, detail="Split percentages must add up to 100%")

    entries = []
    allocated = 0
    for index, split in enumerate(custom_splits):
        percent = Decimal(str(split.percent))
        if index == len(custom_splits) - 1:
            share_amount = amount - allocated
        else:
            # Rounding up within the tolerance must not leave the last share negative
            share_amount = min(_round_cents(Decimal(amount) * percent / HUNDRED), amount - allocated)
        allocated += share_amount
        entries.append((split.user_id, share_amount, _round_percent(percent)))
    return entries


def _equal_entries(amount: int, member_ids: Sequence[int]):
    count = len(member_ids)
    percent = Decimal("0.01") * _round_cents(HUNDRED * 100 / count)
    # Never let the last share go negative on tiny amounts
    base_amount = min(_round_cents(Decimal(amount) / count), amount // (count - 1))

    entries = []
    allocated = 0
    for index, user_id in enumerate(member_ids):
        if index == count - 1:
            entries.append((user_id, amount - allocated, _round_percent(HUNDRED - percent * (count - 1))))
        else:
            allocated += base_amount
            entries.append((user_id, base_amount, _round_percent(percent)))
    return entries
