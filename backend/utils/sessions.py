"""Refresh session ledger: issue, rotate, revoke and list refresh sessions.

Every refresh token belongs to exactly one RefreshSession row. Rotation
revokes the presented session and creates its successor in one commit.
Presenting a token whose session was already rotated or revoked (or whose
hash no longer matches) is treated as theft and revokes every active session
of the user.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional

from fastapi import HTTPException, status
from jose import JWTError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

import auth
import models
from utils.audit import write_audit_log

logger = logging.getLogger(__name__)

INVALID_REFRESH_DETAIL = "Invalid or expired refresh token"


class SessionStatus(str, Enum):
    ACTIVE = "ACTIVE"
    REVOKED = "REVOKED"
    EXPIRED = "EXPIRED"


@dataclass(frozen=True)
class SessionState:
    status: SessionStatus
    at: Optional[datetime] = None  # When it was revoked / when it expired

    @property
    def is_active(self) -> bool:
        return self.status == SessionStatus.ACTIVE


def session_state(session: models.RefreshSession, now: Optional[datetime] = None) -> SessionState:
    """Derive the state of a session from its stored timestamps. Revocation wins over expiry."""
    now = now or datetime.utcnow()
    if session.revoked_at is not None:
        return SessionState(SessionStatus.REVOKED, session.revoked_at)
    if session.expires_at <= now:
        return SessionState(SessionStatus.EXPIRED, session.expires_at)
    return SessionState(SessionStatus.ACTIVE)


@dataclass
class SessionContext:
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None

    def normalized(self) -> "SessionContext":
        ip = (self.ip_address or "").strip()
        user_agent = (self.user_agent or "").strip()
        return SessionContext(
            ip_address=ip[:120] or None,
            user_agent=user_agent[:500] or None,
        )


def _unauthorized() -> HTTPException:
    return HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=INVALID_REFRESH_DETAIL)


def _active_sessions_query(db: Session, user_id: int, now: datetime):
    return db.query(models.RefreshSession).filter(
        models.RefreshSession.user_id == user_id,
        models.RefreshSession.revoked_at.is_(None),
        models.RefreshSession.expires_at > now
    )


def _sign_tokens(user: models.User, session_id: str, expires_at: datetime) -> dict:
    claims = auth.build_token_claims(user, session_id)
    return {
        "access_token": auth.create_access_token(claims),
        "refresh_token": auth.create_refresh_token(claims, expires_at),
        "token_type": "bearer",
    }


def _new_session(user: models.User, context: Optional[SessionContext], now: datetime):
    """Build an unsaved session row and the tokens bound to it."""
    session_id = auth.generate_session_id()
    expires_at = auth.get_refresh_token_expiry()
    tokens = _sign_tokens(user, session_id, expires_at)
    context = (context or SessionContext()).normalized()
    row = models.RefreshSession(
        id=session_id,
        user_id=user.id,
        token_hash=auth.hash_token(tokens["refresh_token"]),
        expires_at=expires_at,
        ip_address=context.ip_address,
        user_agent=context.user_agent,
        last_used_at=now,
        created_at=now
    )
    return row, tokens


def issue_session_tokens(db: Session, user: models.User, context: Optional[SessionContext] = None) -> dict:
    """Start a new session lineage for the user and return its token pair."""
    row, tokens = _new_session(user, context, datetime.utcnow())
    db.add(row)
    db.commit()
    return tokens


def revoke_all_sessions(db: Session, user_id: int, except_session_id: Optional[str] = None, commit: bool = True) -> int:
    """Revoke every active session of a user, optionally keeping one. Returns the count."""
    now = datetime.utcnow()
    query = _active_sessions_query(db, user_id, now)
    if except_session_id:
        query = query.filter(models.RefreshSession.id != except_session_id)
    count = query.update({"revoked_at": now}, synchronize_session=False)
    if commit:
        db.commit()
    return count


def _handle_reuse(db: Session, session: models.RefreshSession, user: models.User, reason: str) -> None:
    revoked = revoke_all_sessions(db, session.user_id)
    logger.warning(f"Refresh token reuse detected for user {session.user_id} ({reason}); revoked {revoked} sessions")
    write_audit_log(db, "AUTH_REFRESH_REUSE_DETECTED", user_id=user.id, home_id=user.home_id, details={
        "reason": reason,
        "offending_session_id": session.id,
        "replaced_by_session_id": session.replaced_by_session_id,
        "revoked_sessions": revoked,
    })


def rotate_refresh_token(db: Session, refresh_token: str, context: Optional[SessionContext] = None) -> dict:
    """
    Exchange a refresh token for a new token pair bound to a new session.

    Raises 401 for bad signatures, wrong token types, unknown or expired
    sessions and detected reuse. The message is the same in every case.
    """
    refresh_token = (refresh_token or "").strip()
    if not refresh_token:
        raise _unauthorized()

    try:
        payload = auth.decode_refresh_token(refresh_token)
    except JWTError:
        raise _unauthorized()

    now = datetime.utcnow()
    session = db.query(models.RefreshSession).filter(models.RefreshSession.id == payload["sid"]).first()
    if not session or str(session.user_id) != payload["sub"]:
        raise _unauthorized()

    user = db.query(models.User).filter(models.User.id == session.user_id).first()
    if not user:
        raise _unauthorized()

    if session.expires_at <= now:
        raise _unauthorized()
    if session.token_hash != auth.hash_token(refresh_token):
        _handle_reuse(db, session, user, "refresh hash mismatch")
        raise _unauthorized()
    if session_state(session, now).status == SessionStatus.REVOKED:
        _handle_reuse(db, session, user, "refresh token reused after revoke")
        raise _unauthorized()

    next_session, tokens = _new_session(user, context, now)

    # Conditional revoke: only one concurrent rotation can win this row
    revoked = db.query(models.RefreshSession).filter(
        models.RefreshSession.id == session.id,
        models.RefreshSession.revoked_at.is_(None)
    ).update({
        "revoked_at": now,
        "last_used_at": now,
        "replaced_by_session_id": next_session.id,
    }, synchronize_session=False)

    if revoked != 1:
        db.rollback()
        _handle_reuse(db, session, user, "concurrent rotation")
        raise _unauthorized()

    try:
        db.add(next_session)
        user.last_seen_at = now
        user.last_inactivity_reminder_at = None
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        raise

    write_audit_log(db, "AUTH_REFRESH_ROTATED", user_id=user.id, home_id=user.home_id, details={
        "previous_session_id": session.id,
        "next_session_id": next_session.id,
    })
    return tokens


def end_session(db: Session, user_id: int, session_id: str) -> bool:
    """Revoke one active session owned by the user. Returns False if it was not active."""
    now = datetime.utcnow()
    count = _active_sessions_query(db, user_id, now).filter(
        models.RefreshSession.id == session_id
    ).update({"revoked_at": now}, synchronize_session=False)
    db.commit()
    return count == 1


def revoke_session(db: Session, user_id: int, session_id: str) -> dict:
    """Revoke one active session owned by the user, raise 404 if there is none."""
    if not end_session(db, user_id, session_id):
        raise HTTPException(status_code=404, detail="Session not found or already ended")
    return {"ok": True, "revoked_session_id": session_id}


def list_sessions(db: Session, user_id: int, current_session_id: Optional[str] = None) -> list[dict]:
    """Active sessions of a user, newest first, flagging the caller's own."""
    sessions = _active_sessions_query(db, user_id, datetime.utcnow()).order_by(
        models.RefreshSession.created_at.desc()
    ).all()

    return [
        {
            "id": s.id,
            "created_at": s.created_at,
            "last_used_at": s.last_used_at,
            "expires_at": s.expires_at,
            "ip_address": s.ip_address,
            "user_agent": s.user_agent,
            "current": bool(current_session_id) and s.id == current_session_id,
        }
        for s in sessions
    ]
