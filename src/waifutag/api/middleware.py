"""Middleware: API key authentication."""

from __future__ import annotations

import secrets
from typing import TYPE_CHECKING, Annotated

from fastapi import Depends, HTTPException, Request, Security, status
from fastapi.security import APIKeyHeader, HTTPAuthorizationCredentials, HTTPBearer

if TYPE_CHECKING:
    from waifutag.config import Settings

_bearer_scheme = HTTPBearer(auto_error=False)
_header_scheme = APIKeyHeader(name="X-API-Key", auto_error=False)


def _get_settings_from_request(request: Request) -> Settings:
    settings: Settings = request.app.state.settings
    return settings


async def verify_api_key(
    request: Request,
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(_bearer_scheme)],
    header_key: Annotated[str | None, Security(_header_scheme)],
) -> None:
    """Check the request's key against the configured API key.

    With no key configured (WAIFUTAG_API_KEY unset) every request passes.
    Otherwise the key may come as 'Authorization: Bearer <key>' or as
    'X-API-Key: <key>'.
    """
    settings = _get_settings_from_request(request)
    if settings.api_key is None:
        return

    supplied = credentials.credentials if credentials is not None else header_key
    if supplied is None or not secrets.compare_digest(supplied.encode(), settings.api_key.encode()):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing API key",
            headers={"WWW-Authenticate": "Bearer"},
        )
