# backend/app/api/dependencies.py
from fastapi import Depends, Header, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession
from typing import Optional

from app.db.database import get_db
from app.db.repositories.organization_repository import OrganizationRepository
from app.services.billing_actions import Actor, BillingActionDispatcher
from app.services.payment_processor import PaymentProcessorService


def get_processor() -> PaymentProcessorService:
    """Payment processor client; overridden in tests"""
    return PaymentProcessorService()


async def get_actor(
    request: Request,
    x_user_id: Optional[str] = Header(None),
    x_organization_id: Optional[str] = Header(None),
    x_organization_role: Optional[str] = Header(None),
    x_user_email: Optional[str] = Header(None),
    db: AsyncSession = Depends(get_db),
) -> Actor:
    """
    Caller identity forwarded by the authenticating gateway.

    The organization header is optional; when present it must name an
    organization that still exists.
    """
    if not x_user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required"
        )

    if x_organization_id:
        organization = await OrganizationRepository(db).get_active(x_organization_id)
        if organization is None:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail="Organization not found"
            )

    return Actor(
        user_id=x_user_id,
        organization_id=x_organization_id,
        organization_role=x_organization_role,
        email=x_user_email,
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
    )


async def get_dispatcher(
    actor: Actor = Depends(get_actor),
    processor: PaymentProcessorService = Depends(get_processor),
    db: AsyncSession = Depends(get_db),
) -> BillingActionDispatcher:
    return BillingActionDispatcher(db, actor, processor=processor)
