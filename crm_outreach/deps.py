# crm_outreach/deps.py
from typing import Optional

from fastapi import Header, HTTPException

from crm_outreach import config


def require_admin_key(
    x_admin_key: Optional[str] = Header(default=None, alias="X-Admin-Key"),
) -> None:
    expected = (config.settings.ADMIN_KEY or "").strip()
    got = (x_admin_key or "").strip()

    if not expected:
        raise HTTPException(status_code=500, detail="Server misconfigured: ADMIN_KEY not set")
    if got != expected:
        raise HTTPException(status_code=401, detail="Unauthorized: missing or invalid admin key")
