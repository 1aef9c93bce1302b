"""
API endpoints for forex EA licenses and desktop license codes.

Validation endpoints are called by installed clients, so they are rate
limited per key.
"""

from typing import Any, Dict, List, Optional
from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field

from entitlements.api.auth import User, UserRole, get_current_user, require_role
from entitlements.models.license import ForexPlanType
from entitlements.services.factory import ServiceContainer, get_services
from entitlements.services.license_codec import normalize_forex_key
from entitlements.utils.logging import get_logger

logger = get_logger(__name__)

router = APIRouter(prefix="/api/v1/licenses", tags=["licenses"])


class ForexKeyRequest(BaseModel):
    """Request model carrying a forex license key."""
    license_key: str = Field(..., min_length=1)


class CreateForexLicenseRequest(BaseModel):
    """Request model for issuing a forex license after payment."""
    user_id: str = Field(..., min_length=1)
    plan_type: ForexPlanType
    payment_id: Optional[str] = None


class DesktopValidationRequest(BaseModel):
    """Request model for desktop activation."""
    license_code: str = Field(..., min_length=1)
    machine_id: str = Field(..., min_length=1)


async def _enforce_rate_limit(services: ServiceContainer, key: str) -> None:
    if not await services.rate_limiter.hit(key.strip().upper()):
        logger.warning(f"Validation rate limit exceeded for {key}")
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="Too many validation requests. Please slow down."
        )


@router.post("/forex/validate")
async def validate_forex_license(
    request: ForexKeyRequest,
    services: ServiceContainer = Depends(get_services)
) -> Dict[str, Any]:
    """Check a forex key from the EA client."""
    await _enforce_rate_limit(services, request.license_key)
    result = await services.license_service.validate_forex_license(request.license_key)
    return result.to_dict()


@router.post("/forex/record-trade")
async def record_forex_trade(
    request: ForexKeyRequest,
    services: ServiceContainer = Depends(get_services)
) -> Dict[str, Any]:
    """Count one EA trade against a forex license."""
    await _enforce_rate_limit(services, request.license_key)
    result = await services.counter.record_forex_trade(request.license_key)
    return result.to_dict()


@router.get("/forex")
async def list_forex_licenses(
    current_user: User = Depends(get_current_user),
    services: ServiceContainer = Depends(get_services)
) -> List[Dict[str, Any]]:
    licenses = await services.license_service.get_licenses(current_user.id)
    return [forex_license.to_dict() for forex_license in licenses]


@router.post("/forex", status_code=status.HTTP_201_CREATED)
async def create_forex_license(
    request: CreateForexLicenseRequest,
    current_user: User = Depends(require_role(UserRole.SERVICE, UserRole.ADMIN)),
    services: ServiceContainer = Depends(get_services)
) -> Dict[str, Any]:
    """Issue a forex license; called by the payment flow once payment clears."""
    forex_license = await services.license_service.create_license(
        request.user_id, request.plan_type, request.payment_id
    )
    return forex_license.to_dict()


@router.post("/forex/{license_key}/renew")
async def renew_forex_license(
    license_key: str,
    current_user: User = Depends(require_role(UserRole.SERVICE, UserRole.ADMIN)),
    services: ServiceContainer = Depends(get_services)
) -> Dict[str, Any]:
    new_expiry = await services.license_service.renew_license(license_key)
    return {
        "success": True,
        "licenseKey": normalize_forex_key(license_key),
        "expiresAt": new_expiry.isoformat()
    }


@router.post("/desktop/validate")
async def validate_desktop_license(
    request: DesktopValidationRequest,
    services: ServiceContainer = Depends(get_services)
) -> Dict[str, Any]:
    """Check a desktop code and bind it to the machine on first use."""
    await _enforce_rate_limit(services, request.license_code)
    result = await services.license_service.validate_desktop_license(
        request.license_code, request.machine_id
    )
    return result.to_dict()
