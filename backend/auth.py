import os
from datetime import datetime, timedelta
from typing import Optional
from jose import JWTError, jwt
import bcrypt
import secrets
import hashlib

SECRET_KEY = os.environ.get("SECRET_KEY", "dev-only-secret-change-me-before-production")
REFRESH_SECRET_KEY = os.environ.get("REFRESH_SECRET_KEY") or SECRET_KEY
ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.environ.get("ACCESS_TOKEN_EXPIRE_MINUTES", "15"))  # Short-lived access token
REFRESH_TOKEN_EXPIRE_DAYS = int(os.environ.get("REFRESH_TOKEN_EXPIRE_DAYS", "30"))  # Long-lived refresh token
PASSWORD_RESET_EXPIRE_MINUTES = 30
BCRYPT_ROUNDS = int(os.environ.get("BCRYPT_ROUNDS", "12"))

TOKEN_TYPE_ACCESS = "access"
TOKEN_TYPE_REFRESH = "refresh"


def verify_password(plain_password: str, hashed_password: str) -> bool:
    return bcrypt.checkpw(plain_password.encode('utf-8'), hashed_password.encode('utf-8'))

def get_password_hash(password: str) -> str:
    return bcrypt.hashpw(password.encode('utf-8'), bcrypt.gensalt(rounds=BCRYPT_ROUNDS)).decode('utf-8')

def build_token_claims(user, session_id: str) -> dict:
    """Claims shared by the access and refresh token of one session"""
    claims = {
        "sub": str(user.id),
        "email": user.email,
        "sid": session_id,
    }
    if user.home_id is not None:
        claims["homeId"] = user.home_id
    return claims

def create_access_token(data: dict, expires_delta: Optional[timedelta] = None):
    """Create short-lived JWT access token"""
    to_encode = data.copy()
    now = datetime.utcnow()
    if expires_delta:
        expire = now + expires_delta
    else:
        expire = now + timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)
    to_encode.update({"iat": now, "exp": expire, "typ": TOKEN_TYPE_ACCESS})
    encoded_jwt = jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)
    return encoded_jwt

def create_refresh_token(data: dict, expires_at: datetime) -> str:
    """Create signed refresh token that expires together with its session row"""
    to_encode = data.copy()
    to_encode.update({"iat": datetime.utcnow(), "exp": expires_at, "typ": TOKEN_TYPE_REFRESH})
    return jwt.encode(to_encode, REFRESH_SECRET_KEY, algorithm=ALGORITHM)

def decode_access_token(token: str) -> dict:
    """Decode an access token, raising JWTError on a bad signature, expiry or token type"""
    payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    if payload.get("typ") != TOKEN_TYPE_ACCESS:
        raise JWTError("Token type not accepted for this endpoint")
    return payload

def decode_refresh_token(token: str) -> dict:
    """Decode a refresh token, raising JWTError unless it carries the refresh claims"""
    payload = jwt.decode(token, REFRESH_SECRET_KEY, algorithms=[ALGORITHM])
    if payload.get("typ") != TOKEN_TYPE_REFRESH:
        raise JWTError("Not a refresh token")
    if not payload.get("sid") or not payload.get("sub") or not payload.get("email"):
        raise JWTError("Refresh token is missing claims")
    return payload

def generate_session_id() -> str:
    """144 random bits, hex encoded"""
    return secrets.token_hex(18)

def create_password_reset_token() -> str:
    """Create cryptographically secure password reset token"""
    return secrets.token_hex(32)

def hash_token(token: str) -> str:
    """Hash token for secure storage"""
    return hashlib.sha256(token.encode()).hexdigest()

def get_refresh_token_expiry() -> datetime:
    """Get expiry time for refresh token"""
    return datetime.utcnow() + timedelta(days=REFRESH_TOKEN_EXPIRE_DAYS)

def get_password_reset_token_expiry() -> datetime:
    return datetime.utcnow() + timedelta(minutes=PASSWORD_RESET_EXPIRE_MINUTES)
