"""FastAPI dependencies."""

from typing import Annotated
from uuid import UUID

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_db
from app.schemas.voice_minutes import CallerContext


async def get_tenant_id(
    x_tenant_id: Annotated[str | None, Header()] = None,
) -> UUID:
    """Extract tenant ID from header."""
    if not x_tenant_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="X-Tenant-ID header is required",
        )
    try:
        return UUID(x_tenant_id)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid tenant ID format",
        )


async def get_caller(
    tenant_id: Annotated[UUID, Depends(get_tenant_id)],
    x_caller_role: Annotated[str | None, Header()] = None,
    x_user_id: Annotated[str | None, Header()] = None,
) -> CallerContext:
    """Caller identity as resolved by the upstream gateway.

    Credentials are verified before the request reaches this service; the
    headers only carry the outcome.
    """
    if not x_caller_role:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="X-Caller-Role header is required",
        )
    return CallerContext(tenant_id=tenant_id, role=x_caller_role.lower(), user_id=x_user_id)


# Type aliases for dependency injection
TenantId = Annotated[UUID, Depends(get_tenant_id)]
CurrentCaller = Annotated[CallerContext, Depends(get_caller)]
DbSession = Annotated[AsyncSession, Depends(get_db)]
