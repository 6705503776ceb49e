"""
Password hashing, bearer tokens and the FastAPI dependency that guards
authenticated routes.
"""

from __future__ import annotations

import time
from typing import Optional

import bcrypt
import jwt
from fastapi import Depends, Header, HTTPException

from glowchat.config import Settings, get_settings

BCRYPT_ROUNDS = 10


class AuthError(Exception):
    """Raised when a bearer token is missing, malformed or expired."""


def hash_password(password: str) -> str:
    salt = bcrypt.gensalt(rounds=BCRYPT_ROUNDS)
    return bcrypt.hashpw(password.encode("utf-8"), salt).decode("utf-8")


def verify_password(password: str, password_hash: Optional[str]) -> bool:
    if not password_hash:
        return False
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        # Stored value is not a bcrypt hash.
        return False


def issue_token(claims: dict, settings: Settings | None = None) -> str:
    settings = settings or get_settings()
    payload = dict(claims)
    if settings.token_ttl_seconds:
        payload["exp"] = int(time.time()) + settings.token_ttl_seconds
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def verify_token(token: Optional[str], settings: Settings | None = None) -> dict:
    """Decode a token issued by :func:`issue_token` and return its claims."""
    if not token or not isinstance(token, str):
        raise AuthError("missing token")
    settings = settings or get_settings()
    try:
        claims = jwt.decode(
            token, settings.jwt_secret, algorithms=[settings.jwt_algorithm]
        )
    except jwt.PyJWTError as exc:
        raise AuthError(str(exc)) from exc
    if "id" not in claims:
        raise AuthError("token has no subject")
    return claims


def get_current_user(
    authorization: Optional[str] = Header(default=None),
    settings: Settings = Depends(get_settings),
) -> dict:
    if not authorization:
        raise HTTPException(status_code=401, detail="noauth")
    parts = authorization.split(" ")
    if len(parts) != 2:
        raise HTTPException(status_code=401, detail="noauth")
    try:
        return verify_token(parts[1], settings)
    except AuthError:
        raise HTTPException(status_code=401, detail="invalid")
