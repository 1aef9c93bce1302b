"""
Subscription lifecycle service.

Creates free subscriptions, upgrades them through license codes and
payment events, and toggles renewal. Trade checks and counting are
delegated to the :class:`TradeCounter`.
"""

import uuid
from datetime import datetime
from typing import Any, Dict, Optional

from entitlements.common.exceptions import (
    LicenseNotFoundError, LicenseOperationError, SubscriptionNotFoundError
)
from entitlements.models.license import LicenseCode
from entitlements.models.payment import PaymentEvent, PaymentEventType
from entitlements.models.subscription import (
    BillingCycle, PaymentMethod, PlanTier, SubscriptionStatus, TradePermission,
    TradeRecordResult, UserSubscription
)
from entitlements.repositories.license_repository import LicenseRepository
from entitlements.repositories.subscription_repository import SubscriptionRepository
from entitlements.repositories.unit_of_work import UnitOfWork
from entitlements.services.entitlement_evaluator import EntitlementEvaluator
from entitlements.services.license_codec import parse_license_code
from entitlements.services.license_service import LicenseService, activate_desktop_license
from entitlements.services.reset_policy import next_reset_boundary, resolve_timezone
from entitlements.services.trade_counter import NO_SUBSCRIPTION, TradeCounter
from entitlements.utils.logging import get_logger
from entitlements.utils.time_utils import Clock, add_months, add_years, ensure_utc, utc_now

logger = get_logger(__name__)

LIFETIME_YEARS = 100

PROVIDER_STATUS_MAP = {
    "active": SubscriptionStatus.ACTIVE,
    "trialing": SubscriptionStatus.ACTIVE,
    "past_due": SubscriptionStatus.EXPIRED,
    "unpaid": SubscriptionStatus.EXPIRED,
    "canceled": SubscriptionStatus.CANCELLED,
    "cancelled": SubscriptionStatus.CANCELLED,
}


def period_end(start: datetime, billing_cycle: BillingCycle) -> datetime:
    if billing_cycle == BillingCycle.MONTHLY:
        return add_months(start, 1)
    if billing_cycle == BillingCycle.YEARLY:
        return add_years(start, 1)
    return add_years(start, LIFETIME_YEARS)


class SubscriptionService:
    """
    Service for subscription state changes.
    """

    def __init__(
        self,
        subscriptions: SubscriptionRepository,
        licenses: LicenseRepository,
        evaluator: EntitlementEvaluator,
        counter: TradeCounter,
        license_service: LicenseService,
        unit_of_work: UnitOfWork,
        default_timezone: str = "UTC",
        renewal_reminder_days=(30, 7, 1),
        clock: Clock = utc_now
    ):
        self.subscriptions = subscriptions
        self.licenses = licenses
        self.evaluator = evaluator
        self.counter = counter
        self.license_service = license_service
        self.unit_of_work = unit_of_work
        self.default_timezone = default_timezone
        self.renewal_reminder_days = tuple(renewal_reminder_days)
        self.clock = clock

    @property
    def catalog(self):
        return self.evaluator.catalog

    def _new_free_subscription(self, user_id: str, wallet_address: Optional[str], tz_name: str) -> UserSubscription:
        now = self.clock()
        return UserSubscription(
            id=f"sub_{uuid.uuid4().hex}",
            user_id=user_id,
            wallet_address=wallet_address,
            plan_tier=PlanTier.FREE,
            billing_cycle=BillingCycle.LIFETIME,
            status=SubscriptionStatus.ACTIVE,
            start_date=now,
            end_date=add_years(now, LIFETIME_YEARS),
            daily_trades_reset_at=next_reset_boundary(now, tz_name),
            timezone=tz_name,
            plan_version=self.catalog.current_version,
            created_at=now,
            updated_at=now
        )

    async def create_free_subscription(
        self,
        user_id: str,
        wallet_address: Optional[str] = None,
        timezone: Optional[str] = None
    ) -> UserSubscription:
        """
        Create the free subscription a new user starts on.

        Returns the existing subscription if the user already has one.
        """
        tz_name = timezone or self.default_timezone
        # Unknown zones are stored as UTC so every later reset agrees
        tz_name = resolve_timezone(tz_name).key

        subscription = self._new_free_subscription(user_id, wallet_address, tz_name)
        stored = await self.subscriptions.create(subscription)
        if stored.id == subscription.id:
            logger.info(f"Created free subscription for user {user_id}")
        return stored

    async def get_subscription(self, user_id: str) -> UserSubscription:
        subscription = await self.subscriptions.get(user_id)
        if subscription is None:
            raise SubscriptionNotFoundError(user_id)
        return subscription

    async def check_trade_permission(self, user_id: str) -> TradePermission:
        return await self.counter.check_trade(user_id)

    async def verify_trade(
        self,
        user_id: str,
        chain_id: Optional[int] = None,
        is_paper_trade: bool = False
    ) -> TradePermission:
        """Permission for one concrete order, including chain and paper gating."""
        async with self.subscriptions.locked(user_id) as subscription:
            if subscription is None:
                return TradePermission.deny(NO_SUBSCRIPTION)
            return self.evaluator.verify_trade(subscription, chain_id, is_paper_trade, self.clock())

    async def verify_bot_trade(self, wallet_address: str, chain_id: Optional[int] = None) -> Dict[str, Any]:
        """
        Permission for a bot order identified by wallet instead of user.

        The answer carries ``planTier`` so the bot can explain a refusal;
        it is ``"none"`` when the wallet is not linked to any subscription.
        """
        found = await self.subscriptions.get_by_wallet(wallet_address)
        if found is None:
            logger.info(f"Bot trade refused for unknown wallet {wallet_address}")
            return {**TradePermission.deny(NO_SUBSCRIPTION, remaining_trades=0).to_dict(), "planTier": "none"}

        async with self.subscriptions.locked(found.user_id) as subscription:
            if subscription is None:
                return {**TradePermission.deny(NO_SUBSCRIPTION, remaining_trades=0).to_dict(), "planTier": "none"}
            permission = self.evaluator.verify_bot_trade(subscription, chain_id, self.clock())
        return {**permission.to_dict(), "planTier": subscription.plan_tier.value}

    async def record_trade(self, user_id: str) -> TradeRecordResult:
        return await self.counter.record_trade(user_id)

    async def get_status(self, user_id: str) -> Dict[str, Any]:
        """Read-only summary for display; counters may be slightly stale."""
        subscription = await self.get_subscription(user_id)
        now = self.clock()
        plan = self.evaluator.plan_for(subscription)
        return {
            "subscription": subscription.to_dict(),
            "plan": plan.to_dict(),
            "daysRemaining": self.evaluator.days_remaining(subscription, now),
            "remainingDailyTrades": self.evaluator.remaining_daily_trades(subscription),
            "upgrade": self.catalog.get_upgrade_recommendation(subscription.plan_tier),
            "renewalReminders": [
                reminder.isoformat()
                for reminder in self.evaluator.renewal_reminders(subscription, self.renewal_reminder_days, now)
            ],
        }

    async def cancel_subscription(self, user_id: str) -> UserSubscription:
        """Stop auto-renewal; access continues until the period ends."""
        async with self.subscriptions.locked(user_id) as subscription:
            if subscription is None or subscription.status != SubscriptionStatus.ACTIVE:
                raise LicenseOperationError(
                    "No active subscription to cancel", context={'user_id': user_id}
                )
            subscription.auto_renew = False
        logger.info(f"Subscription for user {user_id} will cancel at the end of the billing period")
        return subscription

    async def resume_subscription(self, user_id: str) -> UserSubscription:
        async with self.subscriptions.locked(user_id) as subscription:
            if subscription is None:
                raise LicenseOperationError("No subscription to resume", context={'user_id': user_id})
            subscription.auto_renew = True
        logger.info(f"Subscription for user {user_id} resumed")
        return subscription

    async def activate_license(
        self,
        user_id: str,
        code: str,
        wallet_address: Optional[str] = None,
        machine_id: Optional[str] = None
    ) -> UserSubscription:
        """
        Redeem a license code and move the user onto its plan.

        Raises:
            CredentialFormatError: Malformed code or bad checksum
            LicenseNotFoundError: Code was never issued
            LicenseOperationError: Code cannot be used by this user
        """
        validation = parse_license_code(code)
        if validation.plan_tier == PlanTier.FREE:
            raise LicenseOperationError("Free tier does not require a license code")

        now = self.clock()
        # Code and plan commit together or not at all
        async with self.unit_of_work.atomic() as session:
            async with self.licenses.locked_code(validation.code, session=session) as record:
                if record is None:
                    raise LicenseNotFoundError(validation.code, message="License code not found")
                self._check_redeemable(record, user_id, machine_id, now)

                if record.activated_at is None:
                    record.activated_at = now
                record.activated_by = user_id
                record.activated_wallet = wallet_address or record.activated_wallet
                if machine_id and record.machine_id is None:
                    record.machine_id = machine_id
                record.is_active = True

            subscription = await self._apply_plan(
                session,
                user_id,
                wallet_address,
                record.plan_tier,
                record.billing_cycle,
                now,
                license_code=record.code
            )

        logger.info(f"User {user_id} activated license {validation.code} ({record.plan_tier.value})")
        return subscription

    @staticmethod
    def _check_redeemable(record: LicenseCode, user_id: str, machine_id: Optional[str], now: datetime) -> None:
        if record.activated_by and record.activated_by != user_id:
            raise LicenseOperationError("License already activated by another user")
        if record.expires_at is not None and ensure_utc(record.expires_at) < now:
            raise LicenseOperationError("License has expired")
        if record.plan_tier == PlanTier.DESKTOP and machine_id:
            result = activate_desktop_license(record, machine_id)
            if not result.allowed:
                raise LicenseOperationError(result.reason)

    async def _apply_plan(
        self,
        session,
        user_id: str,
        wallet_address: Optional[str],
        plan_tier: PlanTier,
        billing_cycle: BillingCycle,
        now: datetime,
        license_code: Optional[str] = None,
        payment_method: Optional[PaymentMethod] = None,
        customer_id: Optional[str] = None,
        provider_subscription_id: Optional[str] = None,
        end_date: Optional[datetime] = None
    ) -> UserSubscription:
        """Put ``user_id`` on an active paid plan within ``session``, creating the row if needed."""
        fallback = self._new_free_subscription(user_id, wallet_address, self.default_timezone)
        async with self.subscriptions.locked(user_id, session=session, create=fallback) as subscription:
            subscription.plan_tier = plan_tier
            subscription.billing_cycle = billing_cycle
            subscription.status = SubscriptionStatus.ACTIVE
            subscription.start_date = now
            subscription.end_date = end_date or period_end(now, billing_cycle)
            subscription.auto_renew = billing_cycle != BillingCycle.LIFETIME and payment_method is not None
            subscription.daily_trades_used = 0
            subscription.daily_trades_reset_at = next_reset_boundary(now, subscription.timezone)
            subscription.plan_version = self.catalog.current_version
            subscription.wallet_address = wallet_address or subscription.wallet_address
            subscription.license_code = license_code or subscription.license_code
            subscription.payment_method = payment_method or subscription.payment_method
            subscription.customer_id = customer_id or subscription.customer_id
            subscription.provider_subscription_id = provider_subscription_id or subscription.provider_subscription_id
            if payment_method is not None:
                subscription.last_payment_date = now
                subscription.next_payment_date = (
                    None if billing_cycle == BillingCycle.LIFETIME else subscription.end_date
                )
        return subscription

    # Payment events

    async def apply_payment_event(self, event: PaymentEvent) -> Optional[UserSubscription]:
        """
        Apply a confirmed payment-provider event.

        Returns the updated subscription, or None when the event does not
        match any subscription.
        """
        handlers = {
            PaymentEventType.CHECKOUT_COMPLETED: self._on_checkout_completed,
            PaymentEventType.SUBSCRIPTION_UPDATED: self._on_subscription_updated,
            PaymentEventType.SUBSCRIPTION_DELETED: self._on_subscription_deleted,
            PaymentEventType.INVOICE_PAYMENT_SUCCEEDED: self._on_invoice_paid,
            PaymentEventType.INVOICE_PAYMENT_FAILED: self._on_invoice_failed,
        }
        logger.info(f"Applying payment event {event.event_type.value}")
        return await handlers[event.event_type](event)

    async def _resolve_user_id(self, event: PaymentEvent) -> Optional[str]:
        if event.user_id:
            return event.user_id
        if event.customer_id:
            subscription = await self.subscriptions.get_by_customer_id(event.customer_id)
            if subscription is not None:
                return subscription.user_id
        logger.warning(f"Payment event {event.event_type.value} matches no subscription")
        return None

    async def _on_checkout_completed(self, event: PaymentEvent) -> Optional[UserSubscription]:
        if not event.user_id or event.plan_tier is None or event.billing_cycle is None:
            logger.warning("Checkout event without user, tier or billing cycle ignored")
            return None

        now = self.clock()
        license_code = await self.license_service.issue_license_code(event.plan_tier, event.billing_cycle)
        async with self.unit_of_work.atomic() as session:
            async with self.licenses.locked_code(license_code.code, session=session) as record:
                record.activated_at = now
                record.activated_by = event.user_id
                record.activated_wallet = event.wallet_address
                record.is_active = True

            return await self._apply_plan(
                session,
                event.user_id,
                event.wallet_address,
                event.plan_tier,
                license_code.billing_cycle,
                now,
                license_code=license_code.code,
                payment_method=event.payment_method,
                customer_id=event.customer_id,
                provider_subscription_id=event.provider_subscription_id
            )

    async def _on_subscription_updated(self, event: PaymentEvent) -> Optional[UserSubscription]:
        user_id = await self._resolve_user_id(event)
        if user_id is None:
            return None
        async with self.subscriptions.locked(user_id) as subscription:
            if subscription is None:
                return None
            subscription.status = PROVIDER_STATUS_MAP.get(
                (event.provider_status or "").lower(), SubscriptionStatus.PENDING
            )
            if event.period_end is not None:
                subscription.end_date = ensure_utc(event.period_end)
                subscription.next_payment_date = subscription.end_date
            subscription.auto_renew = not event.cancel_at_period_end
        return subscription

    async def _on_subscription_deleted(self, event: PaymentEvent) -> Optional[UserSubscription]:
        user_id = await self._resolve_user_id(event)
        if user_id is None:
            return None
        async with self.subscriptions.locked(user_id) as subscription:
            if subscription is None:
                return None
            subscription.status = SubscriptionStatus.CANCELLED
            subscription.auto_renew = False
        return subscription

    async def _on_invoice_paid(self, event: PaymentEvent) -> Optional[UserSubscription]:
        # The first invoice is covered by checkout; only renewals extend the period
        if event.billing_reason != "subscription_cycle":
            return None
        user_id = await self._resolve_user_id(event)
        if user_id is None:
            return None

        now = self.clock()
        async with self.subscriptions.locked(user_id) as subscription:
            if subscription is None:
                return None
            subscription.status = SubscriptionStatus.ACTIVE
            subscription.end_date = (
                ensure_utc(event.period_end) if event.period_end
                else period_end(max(now, ensure_utc(subscription.end_date)), subscription.billing_cycle)
            )
            subscription.last_payment_date = now
            subscription.next_payment_date = subscription.end_date
            subscription.daily_trades_used = 0
            subscription.daily_trades_reset_at = next_reset_boundary(now, subscription.timezone)
        return subscription

    async def _on_invoice_failed(self, event: PaymentEvent) -> Optional[UserSubscription]:
        user_id = await self._resolve_user_id(event)
        if user_id is None:
            return None
        async with self.subscriptions.locked(user_id) as subscription:
            if subscription is None:
                return None
            subscription.status = SubscriptionStatus.EXPIRED
        return subscription
