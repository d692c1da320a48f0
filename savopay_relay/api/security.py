"""HTTP Basic authentication for admin endpoints."""
import hmac
from typing import Optional

import structlog
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPBasic, HTTPBasicCredentials

logger = structlog.get_logger(__name__)

basic_auth = HTTPBasic(auto_error=False)


def _matches(given: str, expected: str) -> bool:
    return hmac.compare_digest(given.encode("utf-8"), expected.encode("utf-8"))


async def require_admin(
    request: Request,
    credentials: Optional[HTTPBasicCredentials] = Depends(basic_auth),
) -> str:
    """
    Require admin Basic credentials.

    Missing credentials get 401 with a Basic challenge; wrong credentials,
    or an admin account that was never configured, get 403.

    Returns:
        str: Authenticated admin user name
    """
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="auth required",
            headers={"WWW-Authenticate": "Basic"},
        )

    settings = request.app.state.settings
    if not settings.admin_user or not settings.admin_pass:
        logger.warning("admin_auth_not_configured", path=request.url.path)
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="forbidden")

    # evaluate both so timing does not reveal which one was wrong
    user_ok = _matches(credentials.username, settings.admin_user)
    pass_ok = _matches(credentials.password, settings.admin_pass)
    if not (user_ok and pass_ok):
        logger.warning("admin_auth_failed", path=request.url.path, username=credentials.username)
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="forbidden")

    return credentials.username
