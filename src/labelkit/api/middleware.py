"""Middleware: optional Bearer API key check for every /api/v1 route."""

from __future__ import annotations

import logging
import secrets
from typing import Annotated

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

logger = logging.getLogger(__name__)

_bearer_scheme = HTTPBearer(auto_error=False)

BearerCredentials = Annotated[HTTPAuthorizationCredentials | None, Depends(_bearer_scheme)]


def _key_matches(credentials: HTTPAuthorizationCredentials | None, expected: str) -> bool:
    if credentials is None:
        return False
    return secrets.compare_digest(credentials.credentials.encode(), expected.encode())


async def require_api_key(request: Request, credentials: BearerCredentials) -> None:
    """Reject the request unless it carries the configured LABELKIT_API_KEY.

    Authentication is disabled while no key is configured.
    """
    expected: str | None = request.app.state.settings.api_key
    if expected is None or _key_matches(credentials, expected):
        return

    logger.warning("Rejected request to %s: invalid or missing API key", request.url.path)
    raise HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Invalid or missing API key",
        headers={"WWW-Authenticate": "Bearer"},
    )
