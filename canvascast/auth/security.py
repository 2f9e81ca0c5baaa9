import hmac
import logging
from typing import Optional

from fastapi import HTTPException, Security
from fastapi.security import APIKeyHeader

from canvascast.settings import settings

logger = logging.getLogger(__name__)

ADMIN_KEY_HEADER = APIKeyHeader(name="X-Admin-Key", auto_error=False)

async def require_admin_key(api_key: Optional[str] = Security(ADMIN_KEY_HEADER)) -> None:
    """
    Guards the admin router. With no ADMIN_API_KEY configured the admin
    endpoints are open, which is only meant for local development.
    """
    expected = settings.ADMIN_API_KEY
    if expected is None:
        return

    if not api_key:
        raise HTTPException(status_code=403, detail="Missing admin key")

    if not hmac.compare_digest(api_key.encode(), expected.encode()):
        logger.warning("Rejected admin request with an invalid key")
        raise HTTPException(status_code=403, detail="Invalid admin key")
