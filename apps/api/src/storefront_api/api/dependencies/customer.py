"""Customer context forwarded by the storefront gateway."""

from __future__ import annotations

from fastapi import Header, HTTPException, status


async def require_customer_id(
    customer_id: str | None = Header(None, alias="X-Customer-Id"),
) -> str:
    """Resolve the authenticated customer from the forwarded header."""

    if not customer_id or not customer_id.strip():
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing customer context",
        )
    return customer_id.strip()
