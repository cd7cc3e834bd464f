"""Homes router: create, join, switch and view the active home."""

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

import models
import schemas
from database import get_db
from dependencies import CurrentPrincipal
from utils.audit import write_audit_log
from utils.homes import create_home, join_home, activate_membership, home_detail
from utils.validation import get_home_or_404, require_active_home, verify_home_membership


router = APIRouter(prefix="/homes", tags=["homes"])


def _load_user(db: Session, user_id: int) -> models.User:
    return db.query(models.User).filter(models.User.id == user_id).first()


@router.post("", response_model=schemas.Home, status_code=201)
def create(body: schemas.HomeCreate, principal: CurrentPrincipal, db: Session = Depends(get_db)):
    user = _load_user(db, principal.id)
    home = create_home(db, user, body.name)
    write_audit_log(db, "HOME_CREATED", user_id=user.id, home_id=home.id)
    return home_detail(db, home)


@router.post("/join", response_model=schemas.Home)
def join(body: schemas.JoinHomeRequest, principal: CurrentPrincipal, db: Session = Depends(get_db)):
    user = _load_user(db, principal.id)
    home = join_home(db, user, body.invite_code)
    write_audit_log(db, "HOME_JOINED", user_id=user.id, home_id=home.id)
    return home_detail(db, home)


@router.post("/switch", response_model=schemas.Home)
def switch(body: schemas.SwitchHomeRequest, principal: CurrentPrincipal, db: Session = Depends(get_db)):
    """Make another home the user belongs to their active home."""
    home = get_home_or_404(db, body.home_id)
    membership = verify_home_membership(db, home.id, principal.id)

    user = _load_user(db, principal.id)
    activate_membership(user, membership)
    db.commit()
    return home_detail(db, home)


@router.get("/current", response_model=schemas.Home)
def current(principal: CurrentPrincipal, db: Session = Depends(get_db)):
    user = require_active_home(db, principal.id)
    return home_detail(db, get_home_or_404(db, user.home_id))
