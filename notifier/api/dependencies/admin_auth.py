"""
Admin API key check for operator endpoints.

Usage:
    @router.get("/webhooks")
    async def list_webhooks(
        _: None = Depends(require_admin_api_key),
    ):
        ...
"""
from fastapi import Depends, HTTPException, status
from fastapi.security import APIKeyHeader

from notifier.core.config import settings
from notifier.core.logging import get_logger

logger = get_logger(__name__)

_api_key_header = APIKeyHeader(name="X-Admin-API-Key", auto_error=False)


async def require_admin_api_key(
    api_key: str | None = Depends(_api_key_header),
) -> None:
    """
    Validate the admin API key.

    401 when the header is missing, 403 when it does not match.
    With ADMIN_API_KEY unset every request is refused.
    """
    if not settings.ADMIN_API_KEY:
        logger.warning("Operator endpoint refused - ADMIN_API_KEY is not configured")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="ADMIN_API_KEY is not configured",
        )

    if not api_key:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing API key - header required: X-Admin-API-Key",
        )

    if api_key != settings.ADMIN_API_KEY:
        logger.warning("Operator endpoint refused - wrong API key")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid API key",
        )
