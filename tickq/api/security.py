from __future__ import annotations

import secrets

from fastapi import Header, HTTPException, status

from tickq.core.config import get_settings


def require_trigger_token(authorization: str | None = Header(default=None)) -> None:
    """Guard trigger endpoints with ``Authorization: Bearer <token>`` when a token is configured."""
    expected = get_settings().trigger_token
    if expected is None:
        return
    scheme, _, supplied = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not secrets.compare_digest(
        supplied.strip().encode("utf-8"), expected.encode("utf-8")
    ):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing trigger token",
            headers={"WWW-Authenticate": "Bearer"},
        )
