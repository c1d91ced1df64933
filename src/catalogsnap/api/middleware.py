"""Middleware: API key authentication."""

from __future__ import annotations

import secrets
from typing import TYPE_CHECKING, Annotated

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import APIKeyHeader, HTTPAuthorizationCredentials, HTTPBearer

if TYPE_CHECKING:
    from catalogsnap.config import Settings

_bearer_scheme = HTTPBearer(auto_error=False)
_api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


def _get_settings_from_request(request: Request) -> Settings:
    settings: Settings = request.app.state.settings
    return settings


def _matches(candidate: str | None, expected: str) -> bool:
    return candidate is not None and secrets.compare_digest(candidate.encode(), expected.encode())


async def verify_api_key(
    request: Request,
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(_bearer_scheme)],
    header_key: Annotated[str | None, Depends(_api_key_header)],
) -> None:
    """Check the caller's key against the configured API key.

    If no API key is configured (CATALOGSNAP_API_KEY not set), all requests pass.
    Otherwise the key must arrive as 'Authorization: Bearer <key>' or 'X-API-Key: <key>'.
    """
    settings = _get_settings_from_request(request)
    if settings.api_key is None:
        return

    bearer = credentials.credentials if credentials is not None else None
    if not (_matches(bearer, settings.api_key) or _matches(header_key, settings.api_key)):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing API key",
            headers={"WWW-Authenticate": "Bearer"},
        )
