"""
Tests for forex license and license code lifecycle.
"""

from datetime import timedelta

import pytest

from entitlements.common.exceptions import (
    ChecksumMismatchError, LicenseNotFoundError, LicenseOperationError
)
from entitlements.models.license import (
    ForexPlanType, LicenseCode, LicenseStatus, PaymentStatus
)
from entitlements.models.subscription import BillingCycle, PlanTier
from entitlements.repositories.license_repository import InMemoryLicenseRepository
from entitlements.services.entitlement_evaluator import LICENSE_EXPIRED, EntitlementEvaluator
from entitlements.services.license_codec import FOREX_KEY_PATTERN, validate_license_code
from entitlements.services.license_service import (
    MACHINE_CONFLICT, NOT_DESKTOP, LicenseService, activate_desktop_license
)


@pytest.fixture
def repository():
    return InMemoryLicenseRepository()


@pytest.fixture
def service(repository, catalog, clock):
    return LicenseService(repository, EntitlementEvaluator(catalog), license_days=30, clock=clock)


class TestForexLicenseLifecycle:
    """Test forex license creation, validation and renewal."""

    @pytest.mark.asyncio
    async def test_create_monthly(self, service, repository, clock):
        forex_license = await service.create_license("user_1", ForexPlanType.MONTHLY, payment_id="pi_1")

        assert FOREX_KEY_PATTERN.match(forex_license.license_key)
        assert forex_license.status == LicenseStatus.ACTIVE
        assert forex_license.payment_status == PaymentStatus.COMPLETED
        assert forex_license.expires_at == clock() + timedelta(days=30)
        assert await repository.get_license(forex_license.license_key) == forex_license

    @pytest.mark.asyncio
    async def test_create_lifetime_has_no_expiry(self, service):
        forex_license = await service.create_license("user_1", ForexPlanType.LIFETIME)

        assert forex_license.expires_at is None
        assert forex_license.license_key.startswith("FX-LT-")

    @pytest.mark.asyncio
    async def test_list_licenses(self, service):
        await service.create_license("user_1", ForexPlanType.MONTHLY)
        await service.create_license("user_1", ForexPlanType.LIFETIME)
        await service.create_license("user_2", ForexPlanType.LIFETIME)

        assert len(await service.get_licenses("user_1")) == 2

    @pytest.mark.asyncio
    async def test_validate(self, service):
        forex_license = await service.create_license("user_1", ForexPlanType.MONTHLY)

        result = await service.validate_forex_license(forex_license.license_key.lower())

        assert result.is_valid
        assert result.can_trade
        assert result.trades_remaining == 5

    @pytest.mark.asyncio
    async def test_validate_unknown(self, service):
        result = await service.validate_forex_license("FX-MO-ABCDEFGH-ABC123-ZZ99")

        assert not result.is_valid
        assert result.reason == "License not found"

    @pytest.mark.asyncio
    async def test_validate_marks_expired(self, service, repository, clock):
        forex_license = await service.create_license("user_1", ForexPlanType.MONTHLY)
        clock.advance(days=31)

        result = await service.validate_forex_license(forex_license.license_key)

        assert result.reason == LICENSE_EXPIRED
        stored = await repository.get_license(forex_license.license_key)
        assert stored.status == LicenseStatus.EXPIRED

    @pytest.mark.asyncio
    async def test_early_renewal_keeps_remaining_days(self, service, clock):
        forex_license = await service.create_license("user_1", ForexPlanType.MONTHLY)
        clock.advance(days=20)

        new_expiry = await service.renew_license(forex_license.license_key)

        assert new_expiry == forex_license.expires_at + timedelta(days=30)

    @pytest.mark.asyncio
    async def test_late_renewal_counts_from_now(self, service, repository, clock):
        forex_license = await service.create_license("user_1", ForexPlanType.MONTHLY)
        clock.advance(days=35)
        await service.validate_forex_license(forex_license.license_key)

        new_expiry = await service.renew_license(forex_license.license_key)

        assert new_expiry == clock() + timedelta(days=30)
        stored = await repository.get_license(forex_license.license_key)
        assert stored.status == LicenseStatus.ACTIVE
        assert (await service.validate_forex_license(forex_license.license_key)).can_trade

    @pytest.mark.asyncio
    async def test_lifetime_cannot_be_renewed(self, service):
        forex_license = await service.create_license("user_1", ForexPlanType.LIFETIME)

        with pytest.raises(LicenseOperationError):
            await service.renew_license(forex_license.license_key)

    @pytest.mark.asyncio
    async def test_renew_unknown(self, service):
        with pytest.raises(LicenseNotFoundError):
            await service.renew_license("FX-MO-ABCDEFGH-ABC123-ZZ99")

    @pytest.mark.asyncio
    async def test_payment_status_update(self, service):
        forex_license = await service.create_license("user_1", ForexPlanType.MONTHLY)

        await service.update_license_payment_status(forex_license.license_key, PaymentStatus.FAILED)
        result = await service.validate_forex_license(forex_license.license_key)

        assert not result.is_valid
        assert "Payment failed" in result.reason


class TestLicenseCodes:
    """Test license code issuance and desktop binding."""

    @pytest.mark.asyncio
    async def test_issue_monthly_code(self, service, clock):
        record = await service.issue_license_code(PlanTier.PRO, BillingCycle.MONTHLY)

        assert validate_license_code(record.code).plan_tier == PlanTier.PRO
        assert record.expires_at == clock().replace(month=4)
        assert not record.is_active

    @pytest.mark.asyncio
    async def test_desktop_code_is_lifetime(self, service):
        record = await service.issue_license_code(PlanTier.DESKTOP, BillingCycle.MONTHLY)

        assert record.billing_cycle == BillingCycle.LIFETIME
        assert record.expires_at is None

    @pytest.mark.asyncio
    async def test_get_unknown_code(self, service):
        with pytest.raises(LicenseNotFoundError):
            await service.get_license_code("PRO-AAAA-BBBB-CCCC-DDDD-305")

    @pytest.mark.asyncio
    async def test_get_code_with_bad_checksum(self, service):
        with pytest.raises(ChecksumMismatchError):
            await service.get_license_code("PRO-AAAA-BBBB-CCCC-DDDD-306")

    @pytest.mark.asyncio
    async def test_machine_binding(self, service):
        record = await service.issue_license_code(PlanTier.DESKTOP)

        first = await service.validate_desktop_license(record.code, "machine-a")
        other = await service.validate_desktop_license(record.code, "machine-b")
        again = await service.validate_desktop_license(record.code, "machine-a")

        assert first.allowed
        assert not other.allowed
        assert other.reason == MACHINE_CONFLICT
        assert again.allowed
        stored = await service.get_license_code(record.code)
        assert stored.machine_id == "machine-a"
        assert stored.is_bound

    @pytest.mark.asyncio
    async def test_clear_binding_allows_transfer(self, service):
        record = await service.issue_license_code(PlanTier.DESKTOP)
        await service.validate_desktop_license(record.code, "machine-a")

        cleared = await service.clear_machine_binding(record.code)
        moved = await service.validate_desktop_license(record.code, "machine-b")

        assert cleared.machine_id is None
        assert moved.allowed
        assert (await service.get_license_code(record.code)).machine_id == "machine-b"

    @pytest.mark.asyncio
    async def test_non_desktop_code(self, service):
        record = await service.issue_license_code(PlanTier.ELITE)

        result = await service.validate_desktop_license(record.code, "machine-a")

        assert result.reason == NOT_DESKTOP

    @pytest.mark.asyncio
    async def test_unknown_desktop_code(self, service):
        result = await service.validate_desktop_license("PRO-AAAA-BBBB-CCCC-DDDD-305", "machine-a")

        assert not result.allowed
        assert result.reason == "Invalid license code"


class TestActivateDesktopLicense:
    """The pure activation check."""

    def _record(self, clock, **overrides):
        fields = dict(
            code="DSK-AAAA-BBBB-CCCC-DDDD-305",
            plan_tier=PlanTier.DESKTOP,
            billing_cycle=BillingCycle.LIFETIME,
            created_at=clock()
        )
        fields.update(overrides)
        return LicenseCode(**fields)

    def test_unbound(self, clock):
        assert activate_desktop_license(self._record(clock), "m1").allowed

    def test_same_machine_is_idempotent(self, clock):
        record = self._record(clock, activated_at=clock(), machine_id="m1")

        assert activate_desktop_license(record, "m1").allowed
        assert activate_desktop_license(record, "m1").allowed

    def test_other_machine(self, clock):
        record = self._record(clock, activated_at=clock(), machine_id="m1")

        assert activate_desktop_license(record, "m2").reason == MACHINE_CONFLICT

    def test_wrong_tier(self, clock):
        record = self._record(clock, plan_tier=PlanTier.PRO)

        assert activate_desktop_license(record, "m1").reason == NOT_DESKTOP

    def test_does_not_mutate(self, clock):
        record = self._record(clock)

        activate_desktop_license(record, "m1")

        assert record.machine_id is None
        assert record.activated_at is None
