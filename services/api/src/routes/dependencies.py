from typing import Optional

from fastapi import Header, HTTPException, status

import conf
from utils import log

logger = log.get_logger(__name__)


async def require_user(x_user_id: Optional[str] = Header(None, alias="X-User-Id")) -> str:
    """Caller id, set by the upstream auth gateway after it has verified the session."""
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing X-User-Id header")
    return x_user_id.strip()


async def require_internal_api_key(
    x_internal_api_key: Optional[str] = Header(None, alias="X-Internal-API-Key"),
):
    expected = conf.get_internal_api_key()
    if not expected:
        # No key configured, allow all internal callers (local development)
        return
    if x_internal_api_key != expected:
        logger.warning("Rejected internal call with invalid API key")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid internal API key",
        )
