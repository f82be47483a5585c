from __future__ import annotations

"""Authentication utilities: registration, password login and JWT sessions.

This module provides:
- Pydantic models for registration, login and the current user
- bcrypt password hashing over the user store
- JWT encode/decode helpers
- FastAPI dependency resolving the current user (401 otherwise)

Env vars (for production readiness):
- JWT_SECRET (required in prod; default for dev)
- JWT_EXPIRES_MIN (default 60)
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

import os
import logging
import bcrypt
import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, EmailStr, Field

from ..infrastructure.user_store import DuplicateEmail, UserRecord, get_user_store


logger = logging.getLogger(__name__)
bearer_scheme = HTTPBearer(auto_error=False)

# bcrypt only looks at the first 72 bytes of a password
_BCRYPT_MAX_BYTES = 72


def _get_env(name: str, default: Optional[str] = None) -> str:
    val = os.getenv(name, default)
    if val is None:
        raise RuntimeError(f"Missing required environment variable: {name}")
    return val


@dataclass
class JwtConfig:
    secret: str
    algorithm: str = "HS256"
    expires_min: int = 60

    @staticmethod
    def from_env() -> "JwtConfig":
        secret = _get_env("JWT_SECRET", "dev-secret-change-me")
        expires = int(os.getenv("JWT_EXPIRES_MIN", "60"))
        return JwtConfig(secret=secret, expires_min=expires)


class User(BaseModel):
    user_id: str
    email: EmailStr
    name: str


class RegisterRequest(BaseModel):
    name: str = Field(min_length=2)
    email: EmailStr
    password: str = Field(min_length=6)


class LoginRequest(BaseModel):
    email: EmailStr
    password: str = Field(min_length=1)


class RegisterResponse(BaseModel):
    message: str
    user: User


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    expires_in: int
    user: User


class EmailAlreadyRegistered(Exception):
    pass


class InvalidCredentials(Exception):
    pass


def _unauthorized() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Unauthorized",
        headers={"WWW-Authenticate": "Bearer"},
    )


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8")[:_BCRYPT_MAX_BYTES], bcrypt.gensalt()).decode("utf-8")


def verify_password(password: str, stored_hash: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode("utf-8")[:_BCRYPT_MAX_BYTES], stored_hash.encode("utf-8"))
    except ValueError:
        # Malformed hash in the store
        logger.warning("Stored password hash could not be parsed")
        return False


def _to_user(rec: UserRecord) -> User:
    return User(user_id=rec.user_id, email=rec.email, name=rec.name)


def register_user(name: str, email: str, password: str) -> User:
    store = get_user_store()
    try:
        rec = store.create_user(name=name, email=email, password_hash=hash_password(password))
    except DuplicateEmail as exc:
        raise EmailAlreadyRegistered(str(exc)) from exc
    logger.info("Registered user %s", rec.email)
    return _to_user(rec)


def authenticate(email: str, password: str) -> User:
    rec = get_user_store().get_by_email(email)
    if rec is None or not verify_password(password, rec.password_hash):
        raise InvalidCredentials("Invalid email or password")
    return _to_user(rec)


def create_access_token(user: User, cfg: Optional[JwtConfig] = None) -> str:
    cfg = cfg or JwtConfig.from_env()
    now = datetime.now(timezone.utc)
    exp = now + timedelta(minutes=cfg.expires_min)
    payload = {
        "sub": user.user_id,
        "email": user.email,
        "name": user.name,
        "iat": int(now.timestamp()),
        "exp": int(exp.timestamp()),
    }
    return jwt.encode(payload, cfg.secret, algorithm=cfg.algorithm)


def decode_token(token: str, cfg: Optional[JwtConfig] = None) -> User:
    cfg = cfg or JwtConfig.from_env()
    try:
        data = jwt.decode(token, cfg.secret, algorithms=[cfg.algorithm])
        return User(user_id=data["sub"], email=data["email"], name=data.get("name", ""))
    except jwt.ExpiredSignatureError:
        logger.debug("Rejected expired token")
        raise _unauthorized()
    except Exception:
        logger.debug("Rejected malformed token")
        raise _unauthorized()


def get_current_user(creds: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme)) -> User:
    """Resolve the current user from a bearer token.

    Runs before the request body is used, so an unauthenticated call is
    rejected before any store or provider is touched.
    """
    if creds is None or not creds.scheme or creds.scheme.lower() != "bearer":
        raise _unauthorized()
    user = decode_token(creds.credentials)
    if get_user_store().get_by_id(user.user_id) is None:
        logger.debug("Token subject %s no longer exists", user.user_id)
        raise _unauthorized()
    return user
