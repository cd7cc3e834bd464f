"""Home membership helpers shared by registration and the homes router."""

import secrets
from typing import Optional

from fastapi import HTTPException
from sqlalchemy.orm import Session

import models
from utils.validation import get_membership

ROLE_ADMIN = "ADMIN"
ROLE_MEMBER = "MEMBER"


def generate_invite_code(db: Session) -> str:
    """Generate an invite code not used by any other home."""
    while True:
        code = secrets.token_hex(4).upper()
        if not db.query(models.Home).filter(models.Home.invite_code == code).first():
            return code


def activate_membership(user: models.User, membership: models.HomeMember) -> None:
    """Make the membership's home the user's active home. Caller commits."""
    user.home_id = membership.home_id
    user.is_admin = membership.role == ROLE_ADMIN


def create_home(db: Session, user: models.User, name: str) -> models.Home:
    """Create a home with the user as its admin, and switch the user to it."""
    home = models.Home(name=name.strip(), invite_code=generate_invite_code(db))
    db.add(home)
    db.flush()

    membership = models.HomeMember(home_id=home.id, user_id=user.id, role=ROLE_ADMIN)
    db.add(membership)
    activate_membership(user, membership)
    db.commit()
    db.refresh(home)
    return home


def join_home(db: Session, user: models.User, invite_code: str, commit: bool = True) -> models.Home:
    """Join a home by invite code as MEMBER (or reactivate an existing membership)."""
    code = (invite_code or "").strip().upper()
    if not code:
        raise HTTPException(status_code=400, detail="Enter the home invite code")

    home = db.query(models.Home).filter(models.Home.invite_code == code).first()
    if not home:
        raise HTTPException(status_code=404, detail="Home not found or invalid invite code")

    membership = get_membership(db, home.id, user.id) if user.id else None
    if not membership:
        membership = models.HomeMember(home_id=home.id, user_id=user.id, role=ROLE_MEMBER)
        db.add(membership)
    activate_membership(user, membership)
    if commit:
        db.commit()
    return home


def get_role(db: Session, home_id: Optional[int], user_id: int) -> Optional[str]:
    if not home_id:
        return None
    membership = get_membership(db, home_id, user_id)
    return membership.role if membership else None


def home_detail(db: Session, home: models.Home) -> dict:
    members = db.query(models.HomeMember, models.User).join(
        models.User, models.User.id == models.HomeMember.user_id
    ).filter(
        models.HomeMember.home_id == home.id
    ).order_by(models.HomeMember.id).all()

    return {
        "id": home.id,
        "name": home.name,
        "invite_code": home.invite_code,
        "created_at": home.created_at,
        "members": [
            {"user_id": user.id, "name": user.name, "email": user.email, "role": membership.role}
            for membership, user in members
        ],
    }
