"""
License lifecycle service.

Issues, validates, renews and binds externally sold licenses: forex EA keys
and the checksummed license codes used for paid tiers and desktop installs.
"""

from datetime import datetime, timedelta
from typing import List, Optional

from entitlements.common.exceptions import (
    LicenseNotFoundError, LicenseOperationError, PersistenceError
)
from entitlements.models.license import (
    ActivationResult, ForexLicense, ForexPlanType, LicenseCode, LicenseStatus,
    LicenseValidationResult, PaymentStatus
)
from entitlements.models.subscription import BillingCycle, PlanTier
from entitlements.repositories.license_repository import LicenseRepository
from entitlements.services.entitlement_evaluator import LICENSE_EXPIRED, EntitlementEvaluator
from entitlements.services.license_codec import (
    generate_forex_license_key, generate_license_code, normalize_forex_key, parse_license_code
)
from entitlements.utils.logging import get_logger
from entitlements.utils.time_utils import Clock, add_months, add_years, ensure_utc, utc_now

logger = get_logger(__name__)

MAX_KEY_ATTEMPTS = 5

NOT_DESKTOP = "Not a desktop license"
MACHINE_CONFLICT = "License already activated on another machine. Contact support to transfer."


def activate_desktop_license(record: LicenseCode, machine_id: str) -> ActivationResult:
    """Check whether ``record`` may run on ``machine_id``.

    Pure check; the caller persists the binding. Repeating it on the bound
    machine is allowed.
    """
    if record.plan_tier != PlanTier.DESKTOP:
        return ActivationResult(False, NOT_DESKTOP)

    if record.activated_at is not None and record.machine_id and record.machine_id != machine_id:
        return ActivationResult(False, MACHINE_CONFLICT)

    return ActivationResult(True)


def code_expiry(created_at: datetime, billing_cycle: BillingCycle) -> Optional[datetime]:
    if billing_cycle == BillingCycle.MONTHLY:
        return add_months(created_at, 1)
    if billing_cycle == BillingCycle.YEARLY:
        return add_years(created_at, 1)
    return None


class LicenseService:
    """
    Service for forex licenses and license codes.
    """

    def __init__(
        self,
        repository: LicenseRepository,
        evaluator: EntitlementEvaluator,
        license_days: int = 30,
        clock: Clock = utc_now
    ):
        self.repository = repository
        self.evaluator = evaluator
        self.license_days = license_days
        self.clock = clock

    # Forex licenses

    async def create_license(
        self,
        user_id: str,
        plan_type: ForexPlanType,
        payment_id: Optional[str] = None
    ) -> ForexLicense:
        """
        Issue a forex license after the payment has been confirmed.

        Args:
            user_id: Purchasing user
            plan_type: Monthly or lifetime
            payment_id: Provider payment reference

        Returns:
            The stored license
        """
        plan_type = ForexPlanType(plan_type)
        now = self.clock()
        expires_at = now + timedelta(days=self.license_days) if plan_type == ForexPlanType.MONTHLY else None

        for _ in range(MAX_KEY_ATTEMPTS):
            forex_license = ForexLicense(
                license_key=generate_forex_license_key(user_id, plan_type, now),
                user_id=user_id,
                plan_type=plan_type,
                status=LicenseStatus.ACTIVE,
                payment_status=PaymentStatus.COMPLETED,
                created_at=now,
                expires_at=expires_at,
                payment_id=payment_id
            )
            if await self.repository.insert_license(forex_license):
                logger.info(f"Created {plan_type.value} forex license {forex_license.license_key} for user {user_id}")
                return forex_license
            logger.warning(f"Forex license key collision for user {user_id}, retrying")

        raise PersistenceError("create_license")

    async def get_licenses(self, user_id: str) -> List[ForexLicense]:
        return await self.repository.list_licenses(user_id)

    async def validate_forex_license(self, license_key: str) -> LicenseValidationResult:
        """Validate a forex key for the EA client.

        A monthly license found past its expiry is marked expired.
        """
        key = normalize_forex_key(license_key)

        async with self.repository.locked_license(key) as forex_license:
            if forex_license is None:
                return LicenseValidationResult(False, False, "License not found")

            result = self.evaluator.evaluate_forex_license(forex_license, self.clock())
            if result.reason == LICENSE_EXPIRED and forex_license.status == LicenseStatus.ACTIVE:
                forex_license.status = LicenseStatus.EXPIRED
                logger.info(f"Forex license {key} marked expired")
            return result

    async def renew_license(self, license_key: str) -> datetime:
        """
        Extend a monthly license by one period.

        The new expiry is counted from the later of the current expiry and
        now, so early renewals keep their remaining days and late renewals
        are not backdated.

        Returns:
            The new expiry
        """
        key = normalize_forex_key(license_key)

        async with self.repository.locked_license(key) as forex_license:
            if forex_license is None:
                raise LicenseNotFoundError(key)
            if forex_license.plan_type != ForexPlanType.MONTHLY:
                raise LicenseOperationError(
                    "Only monthly licenses can be renewed", context={'license_key': key}
                )

            now = self.clock()
            base = now
            if forex_license.expires_at is not None and ensure_utc(forex_license.expires_at) > now:
                base = ensure_utc(forex_license.expires_at)

            forex_license.expires_at = base + timedelta(days=self.license_days)
            forex_license.status = LicenseStatus.ACTIVE
            new_expiry = forex_license.expires_at

        logger.info(f"Renewed forex license {key} until {new_expiry.isoformat()}")
        return new_expiry

    async def update_license_payment_status(self, license_key: str, payment_status: PaymentStatus) -> ForexLicense:
        key = normalize_forex_key(license_key)
        async with self.repository.locked_license(key) as forex_license:
            if forex_license is None:
                raise LicenseNotFoundError(key)
            forex_license.payment_status = PaymentStatus(payment_status)
            return forex_license

    # License codes

    async def issue_license_code(
        self,
        plan_tier: PlanTier,
        billing_cycle: BillingCycle = BillingCycle.MONTHLY
    ) -> LicenseCode:
        """Mint and store an unactivated license code."""
        plan_tier = PlanTier(plan_tier)
        billing_cycle = BillingCycle(billing_cycle)
        if plan_tier == PlanTier.DESKTOP:
            billing_cycle = BillingCycle.LIFETIME

        now = self.clock()
        for _ in range(MAX_KEY_ATTEMPTS):
            record = LicenseCode(
                code=generate_license_code(plan_tier, billing_cycle),
                plan_tier=plan_tier,
                billing_cycle=billing_cycle,
                created_at=now,
                expires_at=code_expiry(now, billing_cycle)
            )
            if await self.repository.insert_code(record):
                logger.info(f"Issued {plan_tier.value}/{billing_cycle.value} license code {record.code}")
                return record

        raise PersistenceError("issue_license_code")

    async def get_license_code(self, code: str) -> LicenseCode:
        normalized = parse_license_code(code).code
        record = await self.repository.get_code(normalized)
        if record is None:
            raise LicenseNotFoundError(normalized, message="License code not found")
        return record

    async def validate_desktop_license(self, code: str, machine_id: str) -> ActivationResult:
        """Check a desktop code on ``machine_id`` and bind it on first use."""
        normalized = parse_license_code(code).code

        async with self.repository.locked_code(normalized) as record:
            if record is None:
                return ActivationResult(False, "Invalid license code")

            result = activate_desktop_license(record, machine_id)
            if not result.allowed:
                logger.warning(f"Desktop activation rejected for {normalized}: {result.reason}")
                return result

            if record.machine_id is None:
                record.machine_id = machine_id
                record.activated_at = record.activated_at or self.clock()
                record.is_active = True
                logger.info(f"Bound desktop license {normalized} to machine {machine_id}")
            return result

    async def clear_machine_binding(self, code: str) -> LicenseCode:
        """Support transfer: release a desktop code from its machine."""
        normalized = parse_license_code(code).code
        async with self.repository.locked_code(normalized) as record:
            if record is None:
                raise LicenseNotFoundError(normalized, message="License code not found")
            record.machine_id = None
            logger.info(f"Cleared machine binding for license {normalized}")
            return record
