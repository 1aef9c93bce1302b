"""
Administrative and service-to-service endpoints.

License code minting and machine transfers are admin only. Payment events
arrive from the webhook receiver, which authenticates with a service token
after verifying the provider signature.
"""

from datetime import datetime
from typing import Any, Dict, Optional
from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, Field

from entitlements.api.auth import User, UserRole, require_role
from entitlements.models.payment import PaymentEvent, PaymentEventType
from entitlements.models.subscription import BillingCycle, PaymentMethod, PlanTier
from entitlements.services.factory import ServiceContainer, get_services
from entitlements.utils.logging import get_logger

logger = get_logger(__name__)

router = APIRouter(prefix="/api/v1/admin", tags=["admin"])


class IssueLicenseCodeRequest(BaseModel):
    """Request model for minting license codes."""
    plan_tier: PlanTier
    billing_cycle: BillingCycle = BillingCycle.MONTHLY
    count: int = Field(1, ge=1, le=100)


class PaymentEventRequest(BaseModel):
    """Confirmed payment-provider event."""
    event_type: PaymentEventType
    user_id: Optional[str] = None
    customer_id: Optional[str] = None
    provider_subscription_id: Optional[str] = None
    plan_tier: Optional[PlanTier] = None
    billing_cycle: Optional[BillingCycle] = None
    wallet_address: Optional[str] = None
    payment_method: PaymentMethod = PaymentMethod.STRIPE
    provider_status: Optional[str] = None
    period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    billing_reason: Optional[str] = None

    def to_event(self) -> PaymentEvent:
        return PaymentEvent(**self.model_dump())


@router.post("/license-codes", status_code=status.HTTP_201_CREATED)
async def issue_license_codes(
    request: IssueLicenseCodeRequest,
    current_user: User = Depends(require_role(UserRole.ADMIN)),
    services: ServiceContainer = Depends(get_services)
) -> Dict[str, Any]:
    codes = []
    for _ in range(request.count):
        record = await services.license_service.issue_license_code(request.plan_tier, request.billing_cycle)
        codes.append(record.to_dict())

    logger.info(f"Admin {current_user.id} issued {len(codes)} {request.plan_tier.value} license codes")
    return {"codes": codes}


@router.delete("/license-codes/{code}/binding")
async def clear_machine_binding(
    code: str,
    current_user: User = Depends(require_role(UserRole.ADMIN)),
    services: ServiceContainer = Depends(get_services)
) -> Dict[str, Any]:
    """Release a desktop code from its machine so it can be moved."""
    record = await services.license_service.clear_machine_binding(code)
    logger.info(f"Admin {current_user.id} cleared machine binding for {record.code}")
    return {"success": True, "license": record.to_dict()}


@router.post("/payment-events")
async def apply_payment_event(
    request: PaymentEventRequest,
    current_user: User = Depends(require_role(UserRole.SERVICE, UserRole.ADMIN)),
    services: ServiceContainer = Depends(get_services)
) -> Dict[str, Any]:
    subscription = await services.subscription_service.apply_payment_event(request.to_event())
    return {
        "applied": subscription is not None,
        "subscription": subscription.to_dict() if subscription else None
    }
