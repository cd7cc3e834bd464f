"""Authentication router: register, login, refresh rotation, sessions, password reset."""

import os
import logging
from datetime import datetime
from typing import Callable

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

import models
import schemas
import auth
from database import get_db
from dependencies import CurrentPrincipal, get_client_ip, get_session_context, extract_bearer_token
from utils.audit import write_audit_log
from utils.email import send_password_reset_email
from utils.homes import join_home
from utils.rate_limiter import AuthRateLimiter, get_auth_rate_limiter
from utils.sessions import (
    issue_session_tokens, rotate_refresh_token, revoke_all_sessions,
    revoke_session, end_session, list_sessions
)
from utils.validation import (
    get_user_by_email, get_user_by_identifier, normalize_email,
    normalize_phone_number, rate_limit_identifier
)

logger = logging.getLogger(__name__)

ENVIRONMENT = os.getenv("ENVIRONMENT", "development")
FORGOT_PASSWORD_MESSAGE = "If the email is registered, you will receive instructions to reset your password."


router = APIRouter(prefix="/auth", tags=["auth"])


def run_rate_limited(limiter: AuthRateLimiter, keys: list[str], operation: Callable):
    """Run an auth operation, counting any HTTP error against the keys and clearing them on success."""
    limiter.assert_allowed(keys)
    try:
        result = operation()
    except HTTPException:
        limiter.register_failure(keys)
        raise
    limiter.register_success(keys)
    return result


def _user_response(user: models.User, tokens: dict) -> dict:
    return {**tokens, "user": schemas.User.model_validate(user)}


@router.post("/register", response_model=schemas.AuthResponse, status_code=201)
def register_user(
    user: schemas.UserCreate,
    request: Request,
    db: Session = Depends(get_db),
    limiter: AuthRateLimiter = Depends(get_auth_rate_limiter)
):
    keys = [f"register:ip:{get_client_ip(request)}"]

    def register():
        email = normalize_email(user.email)
        phone = normalize_phone_number(user.phone)
        if get_user_by_email(db, email):
            raise HTTPException(status_code=409, detail="Email already registered")
        if db.query(models.User).filter(models.User.phone == phone).first():
            raise HTTPException(status_code=409, detail="Phone number already registered")

        db_user = models.User(
            name=user.name,
            email=email,
            phone=phone,
            hashed_password=auth.get_password_hash(user.password),
            last_seen_at=datetime.utcnow()
        )
        db.add(db_user)
        try:
            db.flush()
            if user.invite_code:
                join_home(db, db_user, user.invite_code, commit=False)
            db.commit()
        except HTTPException:
            db.rollback()
            raise
        except SQLAlchemyError:
            db.rollback()
            raise HTTPException(status_code=409, detail="Email or phone number already registered")
        db.refresh(db_user)
        return db_user

    db_user = run_rate_limited(limiter, keys, register)
    tokens = issue_session_tokens(db, db_user, get_session_context(request))
    write_audit_log(db, "AUTH_REGISTER", user_id=db_user.id, home_id=db_user.home_id)
    return _user_response(db_user, tokens)


@router.post("/login", response_model=schemas.AuthResponse)
def login(
    credentials: schemas.LoginRequest,
    request: Request,
    db: Session = Depends(get_db),
    limiter: AuthRateLimiter = Depends(get_auth_rate_limiter)
):
    keys = [
        f"login:ip:{get_client_ip(request)}",
        f"login:identifier:{rate_limit_identifier(credentials.identifier)}",
    ]

    def authenticate():
        user = get_user_by_identifier(db, credentials.identifier)
        if not user or not auth.verify_password(credentials.password, user.hashed_password):
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Incorrect email, phone or password",
                headers={"WWW-Authenticate": "Bearer"},
            )
        return user

    user = run_rate_limited(limiter, keys, authenticate)

    user.last_seen_at = datetime.utcnow()
    user.last_inactivity_reminder_at = None
    db.commit()

    tokens = issue_session_tokens(db, user, get_session_context(request))
    write_audit_log(db, "AUTH_LOGIN", user_id=user.id, home_id=user.home_id)
    return _user_response(user, tokens)


@router.post("/refresh", response_model=schemas.Token)
def refresh(
    request: Request,
    db: Session = Depends(get_db),
    limiter: AuthRateLimiter = Depends(get_auth_rate_limiter)
):
    """Exchange the refresh token in the Authorization header for a new token pair."""
    keys = [f"refresh:ip:{get_client_ip(request)}"]
    context = get_session_context(request)
    return run_rate_limited(
        limiter, keys,
        lambda: rotate_refresh_token(db, extract_bearer_token(request), context)
    )


@router.post("/logout")
def logout(principal: CurrentPrincipal, db: Session = Depends(get_db)):
    """End the session the access token belongs to."""
    revoked = False
    if principal.session_id:
        revoked = end_session(db, principal.id, principal.session_id)
    write_audit_log(db, "AUTH_LOGOUT", user_id=principal.id, home_id=principal.home_id, details={
        "session_id": principal.session_id,
    })
    return {"ok": True, "revoked": revoked}


@router.post("/logout-all")
def logout_all(body: schemas.LogoutAllRequest, principal: CurrentPrincipal, db: Session = Depends(get_db)):
    keep = principal.session_id if body.keep_current else None
    revoked = revoke_all_sessions(db, principal.id, except_session_id=keep)
    write_audit_log(db, "AUTH_LOGOUT_ALL", user_id=principal.id, home_id=principal.home_id, details={
        "keep_current": body.keep_current,
        "revoked_sessions": revoked,
    })
    return {"ok": True, "revoked_sessions": revoked}


@router.get("/sessions", response_model=list[schemas.SessionInfo])
def get_sessions(principal: CurrentPrincipal, db: Session = Depends(get_db)):
    return list_sessions(db, principal.id, principal.session_id)


@router.delete("/sessions/{session_id}")
def delete_session(session_id: str, principal: CurrentPrincipal, db: Session = Depends(get_db)):
    result = revoke_session(db, principal.id, session_id)
    write_audit_log(db, "AUTH_SESSION_REVOKED", user_id=principal.id, home_id=principal.home_id, details={
        "session_id": session_id,
    })
    return result


@router.get("/me", response_model=schemas.User)
def read_me(principal: CurrentPrincipal, db: Session = Depends(get_db)):
    return db.query(models.User).filter(models.User.id == principal.id).first()


@router.post("/activity")
def touch_activity(principal: CurrentPrincipal, db: Session = Depends(get_db)):
    """Record that the user is active, which also re-arms the inactivity reminder."""
    now = datetime.utcnow()
    db.query(models.User).filter(models.User.id == principal.id).update({
        "last_seen_at": now,
        "last_inactivity_reminder_at": None,
    }, synchronize_session=False)
    db.commit()
    return {"ok": True, "last_seen_at": now}


@router.post("/forgot-password")
async def forgot_password(
    body: schemas.ForgotPasswordRequest,
    request: Request,
    db: Session = Depends(get_db),
    limiter: AuthRateLimiter = Depends(get_auth_rate_limiter)
):
    """
    Start a password reset.

    The response is the same whether or not the email is registered. Outside
    production the raw token is included so the flow can be exercised without
    an email provider.
    """
    keys = [f"forgot:ip:{get_client_ip(request)}"]
    limiter.assert_allowed(keys)
    limiter.register_failure(keys)  # Every request counts, successful or not

    response = {"message": FORGOT_PASSWORD_MESSAGE}
    user = get_user_by_email(db, body.email)
    if not user:
        return response

    now = datetime.utcnow()
    reset_token = auth.create_password_reset_token()
    expires_at = auth.get_password_reset_token_expiry()

    # Only the newest token stays valid
    db.query(models.PasswordResetToken).filter(
        models.PasswordResetToken.user_id == user.id,
        models.PasswordResetToken.used_at.is_(None)
    ).update({"used_at": now}, synchronize_session=False)
    db.add(models.PasswordResetToken(
        user_id=user.id,
        token_hash=auth.hash_token(reset_token),
        expires_at=expires_at
    ))
    db.commit()

    write_audit_log(db, "AUTH_PASSWORD_RESET_REQUESTED", user_id=user.id, home_id=user.home_id)

    if not await send_password_reset_email(user.email, user.name, reset_token, expires_at):
        logger.warning(f"Password reset email not delivered for user {user.id}")

    if ENVIRONMENT != "production":
        response["reset_token"] = reset_token
        response["expires_at"] = expires_at
    return response


@router.post("/reset-password")
def reset_password(
    body: schemas.ResetPasswordRequest,
    request: Request,
    db: Session = Depends(get_db),
    limiter: AuthRateLimiter = Depends(get_auth_rate_limiter)
):
    keys = [f"reset:ip:{get_client_ip(request)}"]

    def reset():
        now = datetime.utcnow()
        token = db.query(models.PasswordResetToken).filter(
            models.PasswordResetToken.token_hash == auth.hash_token(body.token.strip())
        ).first()
        if not token or token.used_at is not None or token.expires_at <= now:
            raise HTTPException(status_code=400, detail="Invalid or expired reset token")

        user = db.query(models.User).filter(models.User.id == token.user_id).first()
        if not user:
            raise HTTPException(status_code=400, detail="Invalid or expired reset token")

        try:
            user.hashed_password = auth.get_password_hash(body.password)
            db.query(models.PasswordResetToken).filter(
                models.PasswordResetToken.user_id == user.id,
                models.PasswordResetToken.used_at.is_(None)
            ).update({"used_at": now}, synchronize_session=False)
            revoked = revoke_all_sessions(db, user.id, commit=False)
            db.commit()
        except SQLAlchemyError:
            db.rollback()
            raise
        return user, revoked

    user, revoked = run_rate_limited(limiter, keys, reset)
    write_audit_log(db, "AUTH_PASSWORD_RESET_COMPLETED", user_id=user.id, home_id=user.home_id, details={
        "revoked_sessions": revoked,
    })
    return {"message": "Password updated. Sign in again on every device."}
