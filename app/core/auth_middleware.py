"""Operator authentication for the pipeline API."""

import hmac
import logging
from typing import Optional

from fastapi import Header, HTTPException, status

from app.core.config import get_settings

logger = logging.getLogger(__name__)


class OperatorContext:
    """Context object for an authenticated studio operator.

    Produced per request by ``require_operator`` and consumed by routes only;
    the orchestrator never sees it.
    """

    def __init__(self, operator_id: str, method: str):
        self.operator_id = operator_id
        self.method = method

    def __repr__(self) -> str:
        return f"OperatorContext(operator_id={self.operator_id!r}, method={self.method!r})"


async def require_operator(
    x_api_key: Optional[str] = Header(None, alias="X-API-Key"),
) -> OperatorContext:
    """
    Require a valid admin API key (X-API-Key header).

    Raises:
        HTTPException 401: If the key is missing, unconfigured or wrong
    """
    expected = get_settings().ADMIN_API_KEY
    if not expected:
        logger.warning("ADMIN_API_KEY is not configured; rejecting request")
    if not x_api_key or not expected or not hmac.compare_digest(x_api_key, expected):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
            headers={"WWW-Authenticate": "ApiKey"},
        )

    logger.debug("Authenticated via admin API key")
    return OperatorContext(operator_id="admin", method="api-key")
