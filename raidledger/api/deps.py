"""
raidledger.api.deps — FastAPI dependency injection
===================================================

Callers are services (the chat bot, the auto-end poller), not end users.
Each presents a bearer token signed with ``JWT_SECRET``; the acting member
and their roles travel in the request body.  Tokens carrying
``is_system: true`` may additionally use the system auto-end path.
"""

from __future__ import annotations

import os
from functools import lru_cache
from typing import Annotated

import jwt
from fastapi import Depends, Header, HTTPException, status
from jwt.exceptions import InvalidTokenError
from sqlalchemy import Engine
from sqlalchemy.orm import Session

from raidledger.config import RaidLedgerConfig, load_config
from raidledger.database.engine import create_db_engine

_WEAK_SECRETS = frozenset({
    "raidledger-dev-secret-change-me",
    "change-me",
    "secret",
    "dev",
    "",
})

_MIN_SECRET_LENGTH = 32

JWT_ALGORITHM = "HS256"


def _load_jwt_secret() -> str:
    """Load and validate JWT_SECRET from the environment.

    Raises RuntimeError at import time if the secret is missing, blank,
    too short (< 32 chars), or a known weak default.
    """
    secret = os.getenv("JWT_SECRET", "")
    if not secret:
        raise RuntimeError(
            "JWT_SECRET environment variable is not set. "
            "Generate one with: python -c \"import secrets; print(secrets.token_urlsafe(48))\""
        )
    if secret in _WEAK_SECRETS:
        raise RuntimeError(
            f"JWT_SECRET is set to a known weak default ('{secret}'). "
            "Please set a strong, unique secret."
        )
    if len(secret) < _MIN_SECRET_LENGTH:
        raise RuntimeError(
            f"JWT_SECRET is too short ({len(secret)} chars). "
            f"Minimum length is {_MIN_SECRET_LENGTH} characters."
        )
    return secret


JWT_SECRET: str = _load_jwt_secret()


@lru_cache(maxsize=1)
def get_engine() -> Engine:
    return create_db_engine()


@lru_cache(maxsize=1)
def get_config() -> RaidLedgerConfig:
    return load_config(os.getenv("RAIDLEDGER_CONFIG", "config.yaml"))


def get_session(engine: Annotated[Engine, Depends(get_engine)]):
    with Session(engine) as session:
        yield session


def get_caller(
    authorization: Annotated[str | None, Header()] = None,
) -> dict:
    """Validate the service token and return its payload. Raises 401 if invalid."""
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Missing token")
    token = authorization.split(" ", 1)[1]
    try:
        payload = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except InvalidTokenError:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Invalid token")
    if not payload.get("sub"):
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Token has no subject")
    return payload


def is_system_caller(caller: dict) -> bool:
    return bool(caller.get("is_system"))


def require_system(caller: dict = Depends(get_caller)) -> dict:
    """Only trusted system callers (the auto-end poller) pass."""
    if not is_system_caller(caller):
        raise HTTPException(status.HTTP_403_FORBIDDEN, "System token required")
    return caller
