"""
API endpoints for subscriptions and trade entitlement.

Entitlement answers keep the ``{allowed, reason?, remainingTrades?}``
shape: ``remainingTrades`` is ``-1`` for unlimited and absent when the
check never reached the quota.
"""

from typing import Any, Dict, Optional
from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field

from entitlements.api.auth import User, UserRole, get_current_user, require_role
from entitlements.models.subscription import BillingCycle, PlanTier
from entitlements.services.factory import ServiceContainer, get_services
from entitlements.services.plan_catalog import format_price
from entitlements.utils.logging import get_logger

logger = get_logger(__name__)

router = APIRouter(prefix="/api/v1/subscription", tags=["subscription"])
plans_router = APIRouter(prefix="/api/v1/plans", tags=["plans"])


class CreateSubscriptionRequest(BaseModel):
    """Request model for first sign-up."""
    wallet_address: Optional[str] = None
    timezone: Optional[str] = Field(None, description="IANA zone used for daily resets")


class VerifyTradeRequest(BaseModel):
    """Request model for a concrete order check."""
    chain_id: Optional[int] = None
    is_paper_trade: bool = False


class VerifyBotTradeRequest(BaseModel):
    """Request model for a bot order check keyed by wallet."""
    wallet_address: str = Field(..., min_length=1)
    chain_id: int


class ActivateLicenseRequest(BaseModel):
    """Request model for license code redemption."""
    license_code: str = Field(..., min_length=1)
    wallet_address: Optional[str] = None
    machine_id: Optional[str] = None


@router.get("")
async def get_subscription_status(
    current_user: User = Depends(get_current_user),
    services: ServiceContainer = Depends(get_services)
) -> Dict[str, Any]:
    """Subscription, plan, quota and upgrade summary for the current user."""
    return await services.subscription_service.get_status(current_user.id)


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_subscription(
    request: CreateSubscriptionRequest,
    current_user: User = Depends(get_current_user),
    services: ServiceContainer = Depends(get_services)
) -> Dict[str, Any]:
    """Create the free subscription on first sign-up; existing rows are returned unchanged."""
    subscription = await services.subscription_service.create_free_subscription(
        current_user.id,
        wallet_address=request.wallet_address or current_user.wallet_address,
        timezone=request.timezone
    )
    return subscription.to_dict()


@router.post("/check")
async def check_trade_permission(
    current_user: User = Depends(get_current_user),
    services: ServiceContainer = Depends(get_services)
) -> Dict[str, Any]:
    """Whether the current user may place a trade right now."""
    permission = await services.subscription_service.check_trade_permission(current_user.id)
    return permission.to_dict()


@router.post("/verify-trade")
async def verify_trade(
    request: VerifyTradeRequest,
    current_user: User = Depends(get_current_user),
    services: ServiceContainer = Depends(get_services)
) -> Dict[str, Any]:
    """Permission for a specific order, including chain and paper-trading rules."""
    permission = await services.subscription_service.verify_trade(
        current_user.id, request.chain_id, request.is_paper_trade
    )
    return permission.to_dict()


@router.post("/verify-bot-trade")
async def verify_bot_trade(
    request: VerifyBotTradeRequest,
    current_user: User = Depends(require_role(UserRole.SERVICE, UserRole.ADMIN)),
    services: ServiceContainer = Depends(get_services)
) -> Dict[str, Any]:
    """Permission for an order the trading bot wants to place for a wallet."""
    return await services.subscription_service.verify_bot_trade(request.wallet_address, request.chain_id)


@router.post("/record-trade")
async def record_trade(
    current_user: User = Depends(get_current_user),
    services: ServiceContainer = Depends(get_services)
) -> Dict[str, Any]:
    """Count an executed trade against the user's quota."""
    result = await services.subscription_service.record_trade(current_user.id)
    if not result.success:
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail=result.permission.to_dict()
        )
    return result.to_dict()


@router.post("/cancel")
async def cancel_subscription(
    current_user: User = Depends(get_current_user),
    services: ServiceContainer = Depends(get_services)
) -> Dict[str, Any]:
    subscription = await services.subscription_service.cancel_subscription(current_user.id)
    return {
        "success": True,
        "message": "Subscription will cancel at the end of the billing period",
        "subscription": subscription.to_dict()
    }


@router.post("/resume")
async def resume_subscription(
    current_user: User = Depends(get_current_user),
    services: ServiceContainer = Depends(get_services)
) -> Dict[str, Any]:
    subscription = await services.subscription_service.resume_subscription(current_user.id)
    return {
        "success": True,
        "message": "Subscription has been resumed",
        "subscription": subscription.to_dict()
    }


@router.post("/activate-license")
async def activate_license(
    request: ActivateLicenseRequest,
    current_user: User = Depends(get_current_user),
    services: ServiceContainer = Depends(get_services)
) -> Dict[str, Any]:
    """Redeem a license code for the current user."""
    subscription = await services.subscription_service.activate_license(
        current_user.id,
        request.license_code,
        wallet_address=request.wallet_address or current_user.wallet_address,
        machine_id=request.machine_id
    )
    return {
        "success": True,
        "subscription": subscription.to_dict()
    }


@plans_router.get("")
async def list_plans(services: ServiceContainer = Depends(get_services)) -> Dict[str, Any]:
    """Current plan catalog with display prices and savings."""
    catalog = services.catalog
    result = catalog.to_dict()
    for plan in result["plans"]:
        tier = PlanTier(plan["id"])
        plan["display"] = {
            "monthly": format_price(plan["monthlyPrice"]),
            "yearly": format_price(plan["yearlyPrice"]),
            "lifetime": format_price(plan["lifetimePrice"]),
        }
        plan["savings"] = {
            "yearly": catalog.calculate_savings(tier, BillingCycle.YEARLY),
            "lifetime": catalog.calculate_savings(tier, BillingCycle.LIFETIME),
        }
    return result


@plans_router.get("/{tier}")
async def get_plan(tier: PlanTier, services: ServiceContainer = Depends(get_services)) -> Dict[str, Any]:
    plan = services.catalog.get_plan(tier)
    result = plan.to_dict()
    result["upgrade"] = services.catalog.get_upgrade_recommendation(tier)
    return result
