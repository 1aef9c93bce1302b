"""License data models.

Two unrelated credential schemes live here: checksummed license codes that
unlock a subscription tier (and bind desktop installs to a machine), and
forex EA license keys sold as a separate product.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from .subscription import BillingCycle, PlanTier


class ForexPlanType(str, Enum):
    """Forex EA license plans."""

    MONTHLY = "monthly"
    LIFETIME = "lifetime"


class LicenseStatus(str, Enum):
    ACTIVE = "active"
    EXPIRED = "expired"
    CANCELLED = "cancelled"
    PENDING = "pending"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class CredentialKind(str, Enum):
    """Tag for the two credential schemes."""

    LICENSE_CODE = "license_code"
    FOREX_KEY = "forex_key"


@dataclass(frozen=True, slots=True)
class Credential:
    """A raw credential tagged with the scheme its shape matches."""

    kind: CredentialKind
    value: str


@dataclass(slots=True)
class ForexLicense:
    """Forex EA license. The key is immutable once issued."""

    license_key: str
    user_id: str
    plan_type: ForexPlanType
    status: LicenseStatus
    payment_status: PaymentStatus
    created_at: datetime
    trades_used_today: int = 0
    last_trade_date: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    payment_id: Optional[str] = None

    @property
    def is_lifetime(self) -> bool:
        return self.plan_type == ForexPlanType.LIFETIME

    def to_dict(self) -> Dict[str, Any]:
        return {
            "licenseKey": self.license_key,
            "userId": self.user_id,
            "planType": self.plan_type.value,
            "status": self.status.value,
            "paymentStatus": self.payment_status.value,
            "tradesUsedToday": self.trades_used_today,
            "lastTradeDate": self.last_trade_date.isoformat() if self.last_trade_date else None,
            "expiresAt": self.expires_at.isoformat() if self.expires_at else None,
            "createdAt": self.created_at.isoformat(),
        }


@dataclass(slots=True)
class LicenseCode:
    """Checksummed activation code for a subscription tier.

    ``activated_by`` holds the activating user id and ``activated_wallet``
    the wallet it was linked from. Desktop codes stay bound to
    ``machine_id`` once set.
    """

    code: str
    plan_tier: PlanTier
    billing_cycle: BillingCycle
    created_at: datetime
    expires_at: Optional[datetime] = None
    activated_at: Optional[datetime] = None
    activated_by: Optional[str] = None
    activated_wallet: Optional[str] = None
    machine_id: Optional[str] = None
    is_active: bool = False

    @property
    def is_bound(self) -> bool:
        return self.activated_at is not None and self.machine_id is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "planTier": self.plan_tier.value,
            "billingCycle": self.billing_cycle.value,
            "createdAt": self.created_at.isoformat(),
            "expiresAt": self.expires_at.isoformat() if self.expires_at else None,
            "activatedAt": self.activated_at.isoformat() if self.activated_at else None,
            "activatedBy": self.activated_by,
            "machineId": self.machine_id,
            "isActive": self.is_active,
        }


@dataclass(frozen=True, slots=True)
class CodeValidation:
    """Result of validating a license code's shape and checksum."""

    valid: bool
    plan_tier: Optional[PlanTier] = None
    error: Optional[str] = None
    code: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {"valid": self.valid}
        if self.plan_tier is not None:
            result["planTier"] = self.plan_tier.value
        if self.error is not None:
            result["error"] = self.error
        return result


@dataclass(slots=True)
class LicenseValidationResult:
    """Result of checking whether a forex license may trade.

    ``trades_remaining`` of ``None`` on a tradeable license means unlimited.
    """

    is_valid: bool
    can_trade: bool
    reason: Optional[str] = None
    trades_remaining: Optional[int] = None
    license: Optional[ForexLicense] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "isValid": self.is_valid,
            "canTrade": self.can_trade,
            "tradesRemaining": self.trades_remaining,
            "reason": self.reason,
            "license": self.license.to_dict() if self.license else None,
        }


@dataclass(frozen=True, slots=True)
class ActivationResult:
    """Desktop activation decision."""

    allowed: bool
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {"allowed": self.allowed}
        if self.reason is not None:
            result["reason"] = self.reason
        return result


@dataclass(slots=True)
class ForexTradeResult:
    """Outcome of recording a forex trade."""

    success: bool
    reason: Optional[str] = None
    trades_remaining: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "reason": self.reason,
            "tradesRemaining": self.trades_remaining,
        }
