"""Bearer-token guard for the admin session endpoints.

With ADMIN_API_KEY set, requests must send ``Authorization: Bearer <key>``
(401 otherwise).  Without a key the admin API is open only when DEBUG is
on, and answers 403 in every other case.
"""

from __future__ import annotations

import logging
import secrets

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from jokeline.config import settings

log = logging.getLogger("jokeline.auth")

_bearer = HTTPBearer(auto_error=False)


def _token_matches(credentials: HTTPAuthorizationCredentials | None, key: str) -> bool:
    if credentials is None:
        return False
    return secrets.compare_digest(credentials.credentials.encode(), key.encode())


async def require_admin_token(
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer),
) -> None:
    """FastAPI dependency for the /api/sessions routes."""
    key = settings.admin_api_key

    if not key:
        if settings.debug:
            return
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Session API disabled: ADMIN_API_KEY is not set.",
        )

    if not _token_matches(credentials, key):
        log.warning("Rejected admin request (%s token)",
                    "missing" if credentials is None else "bad")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Admin token required.",
            headers={"WWW-Authenticate": "Bearer"},
        )
