"""
safevoice.api.deps — FastAPI dependency injection
===================================================
"""

from __future__ import annotations

import os
from functools import lru_cache
from typing import Annotated

import jwt
from fastapi import Depends, Header, HTTPException, Request, status
from jwt.exceptions import InvalidTokenError
from sqlalchemy import Engine

from safevoice.config import SafeVoiceConfig, load_config
from safevoice.database.engine import create_db_engine
from safevoice.services.setup_service import SafeVoiceRuntime

_WEAK_SECRETS = frozenset({
    "safevoice-dev-secret-change-me",
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
            "Generate one with: python -c \"import secrets; print(secrets.token_urlsafe(64))\""
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
def get_config() -> SafeVoiceConfig:
    return load_config(os.getenv("SAFEVOICE_CONFIG", "config.yaml"))


def issue_token(student_id: str, **claims) -> str:
    """Sign a bearer token for *student_id* (tests and local tooling)."""
    return jwt.encode({"sub": student_id, **claims}, JWT_SECRET, algorithm=JWT_ALGORITHM)


def get_runtime(request: Request) -> SafeVoiceRuntime:
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None:
        raise HTTPException(status.HTTP_503_SERVICE_UNAVAILABLE, "Store not loaded")
    return runtime


def get_current_student(
    authorization: Annotated[str | None, Header()] = None,
) -> str:
    """Validate the bearer JWT and return the student id. Raises 401 if invalid."""
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Missing token")
    token = authorization.split(" ", 1)[1]
    try:
        payload = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except InvalidTokenError:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Invalid token")
    student_id = payload.get("sub")
    if not isinstance(student_id, str) or not student_id:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Token has no subject")
    return student_id


Runtime = Annotated[SafeVoiceRuntime, Depends(get_runtime)]
StudentId = Annotated[str, Depends(get_current_student)]
