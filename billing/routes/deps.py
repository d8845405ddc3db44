"""
Qontax Recurrence — Shared route dependencies.
"""

from fastapi import Header, HTTPException


async def get_current_tenant(x_user_id: str | None = Header(None)) -> str:
    """Tenant id as asserted by the identity provider in front of the API."""
    if not x_user_id:
        raise HTTPException(401, "Missing X-User-Id header")
    return x_user_id
