"""Normalized payment-provider events.

The payment provider's webhook is verified and parsed elsewhere; the
entitlement engine only consumes the resulting event.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional

from .subscription import BillingCycle, PaymentMethod, PlanTier


class PaymentEventType(str, Enum):
    CHECKOUT_COMPLETED = "checkout_completed"
    SUBSCRIPTION_UPDATED = "subscription_updated"
    SUBSCRIPTION_DELETED = "subscription_deleted"
    INVOICE_PAYMENT_SUCCEEDED = "invoice_payment_succeeded"
    INVOICE_PAYMENT_FAILED = "invoice_payment_failed"


@dataclass(slots=True)
class PaymentEvent:
    """A confirmed payment-provider event."""

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
