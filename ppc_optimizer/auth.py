"""
Authentication: resolves the caller's user id for queue operations.

- Users: JWT issued by the identity service. Include: Authorization: Bearer <jwt>
- Programmatic/cron: API_KEY. Include: Authorization: Bearer <API_KEY>

In development with no API_KEY set, auth is skipped and the caller is "dev-user".
"""

import logging
from typing import Optional

from fastapi import Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import JWTError, jwt

from ppc_optimizer.config import get_settings
from ppc_optimizer.errors import UnauthorizedError

logger = logging.getLogger(__name__)

ALGORITHM = "HS256"
DEV_USER_ID = "dev-user"
API_KEY_USER_ID = "api-key"

_bearer_scheme = HTTPBearer(auto_error=False)


def decode_access_token(token: str) -> Optional[dict]:
    settings = get_settings()
    try:
        return jwt.decode(token, settings.secret_key, algorithms=[ALGORITHM])
    except JWTError:
        return None


async def get_current_user_id(
    credentials: HTTPAuthorizationCredentials = Depends(_bearer_scheme),
) -> str:
    """Accept either a JWT (returns its subject) or the API key."""
    settings = get_settings()

    # Dev convenience: skip auth when no key is configured
    if not settings.api_key and not settings.is_production:
        return DEV_USER_ID

    if not credentials:
        raise UnauthorizedError("Missing authorization. Include header: Authorization: Bearer <token>")

    token = credentials.credentials

    payload = decode_access_token(token)
    if payload and payload.get("sub"):
        return str(payload["sub"])

    if settings.api_key and token == settings.api_key:
        return API_KEY_USER_ID

    logger.warning("Rejected request with invalid bearer token")
    raise UnauthorizedError("Invalid or expired token")
