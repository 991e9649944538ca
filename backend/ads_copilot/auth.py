"""
Authentication — API-key bearer auth for the context and chat endpoints.

User login and sessions live in the frontend's auth provider; callers pass the
user id they resolved along with each request. Programmatic access uses
Authorization: Bearer <API_KEY>.

In development with no API_KEY set, auth is skipped for local dev.
"""

import hmac
import logging
from fastapi import Depends, HTTPException
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from ads_copilot.config import get_settings

logger = logging.getLogger(__name__)

_bearer_scheme = HTTPBearer(auto_error=False)


async def require_auth(
    credentials: HTTPAuthorizationCredentials = Depends(_bearer_scheme),
) -> str:
    """Require the configured API key. Returns the key, or "dev-no-auth" when auth is disabled."""
    settings = get_settings()
    api_key = settings.api_key

    # Dev convenience: skip auth when no key is configured
    if not api_key:
        if settings.is_production:
            raise HTTPException(
                status_code=500,
                detail="Server misconfiguration: API_KEY must be set in production.",
            )
        return "dev-no-auth"

    if not credentials:
        raise HTTPException(
            status_code=401,
            detail="Missing authorization. Include header: Authorization: Bearer <token>",
        )

    if hmac.compare_digest(credentials.credentials, api_key):
        return credentials.credentials

    logger.warning("Rejected request with invalid API key")
    raise HTTPException(status_code=401, detail="Invalid API key.")
