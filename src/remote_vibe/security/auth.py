from __future__ import annotations

"""Bearer-token gate in front of the session API.

The gate is pass/fail: a request either carries the configured shared token or
is rejected with 401. When public mode is enabled (no token configured, or
REMOTE_VIBE_PUBLIC_MODE=1) every request passes.
"""

import logging
import secrets
from typing import Optional

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from ..core.config import Settings
from ..core.errors import Unauthorized


logger = logging.getLogger(__name__)
bearer_scheme = HTTPBearer(auto_error=False)


def token_matches(settings: Settings, token: Optional[str]) -> bool:
    if settings.public_mode:
        return True
    if not token or not settings.auth_token:
        return False
    return secrets.compare_digest(token.encode("utf-8"), settings.auth_token.encode("utf-8"))


def require_token(
    request: Request,
    creds: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> None:
    """FastAPI dependency enforcing the shared bearer token."""
    settings: Settings = request.app.state.settings
    if settings.public_mode:
        return
    if creds is None or not creds.scheme or creds.scheme.lower() != "bearer":
        raise Unauthorized("Missing bearer token")
    if not token_matches(settings, creds.credentials):
        logger.warning("Rejected request to %s with invalid token", request.url.path)
        raise Unauthorized("Invalid authentication token")
