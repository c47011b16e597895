"""
Shared route dependencies: the request clock and the privileged-actor check
"""

import hmac
from datetime import datetime
from typing import Optional

from fastapi import Header, HTTPException

from config import settings
from timezone_utils import utc_now


def get_now() -> datetime:
    """Request time as naive UTC; overridden in tests to pin the clock"""
    return utc_now()


async def require_admin(x_admin_key: Optional[str] = Header(None)) -> str:
    """Privileged endpoints (withdrawal processing, settings, subscription start)"""
    if not settings.ADMIN_API_KEY:
        raise HTTPException(status_code=403, detail="Admin access is not configured")
    if not x_admin_key or not hmac.compare_digest(x_admin_key.encode(), settings.ADMIN_API_KEY.encode()):
        raise HTTPException(status_code=403, detail="Admin access required")
    return "admin"
