"""Lookup and validation helpers for users, identifiers and home membership."""

import re
from typing import Optional

from sqlalchemy.orm import Session
from fastapi import HTTPException

import models

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


def looks_like_email(value: str) -> bool:
    return bool(EMAIL_PATTERN.match(value))


def normalize_email(email: str) -> str:
    return email.strip().lower()


def normalize_phone_number(value: str) -> str:
    """Normalize a phone number to +<digits> (E.164 style, 8 to 15 digits)."""
    digits = re.sub(r"\D", "", value)
    if not digits:
        raise HTTPException(status_code=400, detail="Phone number is required")
    if len(digits) < 8 or len(digits) > 15:
        raise HTTPException(status_code=400, detail="Invalid phone number. Include the area code.")
    return f"+{digits}"


def rate_limit_identifier(identifier: str) -> str:
    """Key used to rate limit an account: lowercase email or phone digits."""
    raw = identifier.strip().lower()
    if "@" in raw:
        return raw
    return re.sub(r"\D", "", raw)


def get_user_by_email(db: Session, email: str):
    """Get a user by their email address."""
    return db.query(models.User).filter(models.User.email == normalize_email(email)).first()


def get_user_by_identifier(db: Session, identifier: str) -> Optional[models.User]:
    """Get a user by email or phone number, whichever the identifier looks like."""
    identifier = identifier.strip()
    if not identifier:
        raise HTTPException(status_code=400, detail="Enter an email or phone number")
    if looks_like_email(identifier):
        return get_user_by_email(db, identifier)
    phone = normalize_phone_number(identifier)
    return db.query(models.User).filter(models.User.phone == phone).first()


def get_home_or_404(db: Session, home_id: int):
    """Get a home by ID or raise 404 if not found."""
    home = db.query(models.Home).filter(models.Home.id == home_id).first()
    if not home:
        raise HTTPException(status_code=404, detail="Home not found")
    return home


def require_active_home(db: Session, user_id: int) -> models.User:
    """Load the user and make sure they belong to a home, raise 404 if not."""
    user = db.query(models.User).filter(models.User.id == user_id).first()
    if not user or not user.home_id:
        raise HTTPException(status_code=404, detail="You do not belong to a home")
    return user


def get_membership(db: Session, home_id: int, user_id: int) -> Optional[models.HomeMember]:
    return db.query(models.HomeMember).filter(
        models.HomeMember.home_id == home_id,
        models.HomeMember.user_id == user_id
    ).first()


def verify_home_membership(db: Session, home_id: int, user_id: int):
    """Verify that a user is a member of a home, raise 403 if not."""
    member = get_membership(db, home_id, user_id)
    if not member:
        raise HTTPException(status_code=403, detail="You are not a member of this home")
    return member


def get_member_ids(db: Session, home_id: int) -> list[int]:
    """Member user IDs in membership creation order."""
    members = db.query(models.HomeMember.user_id).filter(
        models.HomeMember.home_id == home_id
    ).order_by(models.HomeMember.id).all()
    return [member.user_id for member in members]
