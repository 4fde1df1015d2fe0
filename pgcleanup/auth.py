# pgcleanup/auth.py
"""Shared authentication dependencies."""

import secrets

from fastapi import Depends, Header, HTTPException

from pgcleanup.config import Settings, get_settings


def require_admin_key(
    x_api_key: str | None = Header(default=None, alias="X-API-Key"),
    settings: Settings = Depends(get_settings),
) -> None:
    """Validate admin API key. Fails closed if ADMIN_API_KEY is not configured."""
    expected_key = settings.ADMIN_API_KEY

    if not expected_key:
        raise HTTPException(
            status_code=500,
            detail="Server misconfiguration: admin authentication not configured",
        )

    if not x_api_key or not secrets.compare_digest(x_api_key, expected_key):
        raise HTTPException(
            status_code=401,
            detail="Invalid or missing API key",
        )
