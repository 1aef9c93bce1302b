"""
Tests for the plan catalog.
"""

import pytest

from entitlements.common.exceptions import ConfigurationError
from entitlements.models.subscription import UNLIMITED, BillingCycle, PlanTier
from entitlements.services.plan_catalog import (
    DEFAULT_CATALOG_VERSION, PlanCatalog, _default_plans, format_price
)

CATALOG_YAML = """
current_version: "2026-02"
versions:
  "2026-01":
{old_plans}
  "2026-02":
{new_plans}
"""


def _plans_yaml(starter_daily: int) -> str:
    lines = []
    for tier in PlanTier:
        daily = starter_daily if tier == PlanTier.STARTER else 10
        total = 2 if tier == PlanTier.FREE else -1
        lines.extend([
            f"    {tier.value}:",
            f"      name: {tier.value.title()}",
            "      monthly_price: 10",
            "      yearly_price: 100",
            "      lifetime_price: 200",
            "      features:",
            f"        daily_trade_limit: {daily}",
            f"        total_trade_limit: {total}",
            "        max_active_strategies: 1",
            "        allowed_strategies: [spot]",
            "        allowed_chains: [8453]",
            "        max_wallets: 1",
        ])
    return "\n".join(lines)


class TestDefaultCatalog:
    """Test the built-in plan table."""

    @pytest.fixture
    def catalog(self):
        return PlanCatalog.default()

    def test_all_tiers_present(self, catalog):
        assert catalog.current_version == DEFAULT_CATALOG_VERSION
        assert set(catalog.plans()) == set(PlanTier)

    def test_free_tier_is_trial(self, catalog):
        features = catalog.get_plan(PlanTier.FREE).features

        assert features.is_trial
        assert features.total_trade_limit == 2
        assert features.paper_trading
        assert features.allowed_chains == frozenset({8453, 137})

    def test_paid_limits(self, catalog):
        assert catalog.get_plan(PlanTier.STARTER).features.daily_trade_limit == 25
        assert catalog.get_plan(PlanTier.PRO).features.daily_trade_limit == 100
        assert catalog.get_plan(PlanTier.ELITE).features.daily_trade_limit == UNLIMITED
        assert not catalog.get_plan(PlanTier.PRO).features.is_trial

    def test_badges(self, catalog):
        assert catalog.get_plan(PlanTier.PRO).badge == "Most Popular"
        assert catalog.get_plan(PlanTier.DESKTOP).badge == "Best Value"

    def test_has_feature(self, catalog):
        assert catalog.has_feature(PlanTier.ELITE, "arbitrage")
        assert not catalog.has_feature(PlanTier.PRO, "arbitrage")
        assert catalog.has_feature(PlanTier.PRO, "autoTrading")
        assert catalog.has_feature(PlanTier.ELITE, "dailyTradeLimit")
        assert catalog.has_feature(PlanTier.FREE, "strategies")
        assert not catalog.has_feature(PlanTier.ELITE, "teleportation")

    def test_strategy_and_chain_gating(self, catalog):
        assert catalog.is_strategy_allowed(PlanTier.PRO, "grid")
        assert not catalog.is_strategy_allowed(PlanTier.STARTER, "grid")
        assert catalog.is_chain_allowed(PlanTier.STARTER, 1)
        assert not catalog.is_chain_allowed(PlanTier.FREE, 1)

    def test_savings(self, catalog):
        assert catalog.calculate_savings(PlanTier.PRO, BillingCycle.YEARLY) == 79 * 12 - 790
        assert catalog.calculate_savings(PlanTier.STARTER, BillingCycle.LIFETIME) == 29 * 12 - 299
        assert catalog.calculate_savings(PlanTier.PRO, BillingCycle.MONTHLY) == 0

    def test_upgrade_path(self, catalog):
        assert catalog.get_upgrade_recommendation(PlanTier.FREE)["nextTier"] == "starter"
        assert catalog.get_upgrade_recommendation(PlanTier.ELITE)["nextTier"] == "desktop"
        assert catalog.get_upgrade_recommendation(PlanTier.DESKTOP) is None

    def test_plan_is_immutable(self, catalog):
        plan = catalog.get_plan(PlanTier.PRO)

        with pytest.raises(AttributeError):
            plan.monthly_price = 1
        with pytest.raises(TypeError):
            catalog.plans()[PlanTier.PRO] = plan

    def test_to_dict(self, catalog):
        data = catalog.to_dict()

        assert data["version"] == DEFAULT_CATALOG_VERSION
        pro = next(plan for plan in data["plans"] if plan["id"] == "pro")
        assert pro["features"]["dailyTradeLimit"] == 100
        assert pro["features"]["strategies"] == ["dca", "grid", "spot"]


class TestCatalogVersions:
    """Test versioned catalogs and file loading."""

    def test_unknown_version_falls_back_to_current(self):
        catalog = PlanCatalog.default()

        assert catalog.get_plan(PlanTier.PRO, "1999-01") == catalog.get_plan(PlanTier.PRO)

    def test_missing_current_version(self):
        with pytest.raises(ConfigurationError):
            PlanCatalog({"a": _default_plans()}, "b")

    def test_missing_tier(self):
        plans = _default_plans()
        del plans[PlanTier.DESKTOP]

        with pytest.raises(ConfigurationError):
            PlanCatalog({"a": plans}, "a")

    def test_from_file_keeps_old_terms(self, tmp_path):
        path = tmp_path / "catalog.yaml"
        path.write_text(CATALOG_YAML.format(old_plans=_plans_yaml(25), new_plans=_plans_yaml(40)))

        catalog = PlanCatalog.from_file(str(path))

        assert catalog.current_version == "2026-02"
        assert set(catalog.versions) == {"2026-01", "2026-02"}
        assert catalog.get_plan(PlanTier.STARTER).features.daily_trade_limit == 40
        assert catalog.get_plan(PlanTier.STARTER, "2026-01").features.daily_trade_limit == 25
        assert catalog.get_plan(PlanTier.FREE).features.allowed_chains == frozenset({8453})

    def test_from_file_missing(self, tmp_path):
        with pytest.raises(ConfigurationError):
            PlanCatalog.from_file(str(tmp_path / "nope.yaml"))

    def test_from_file_malformed(self, tmp_path):
        path = tmp_path / "catalog.yaml"
        path.write_text("current_version: x\n")

        with pytest.raises(ConfigurationError):
            PlanCatalog.from_file(str(path))


class TestFormatPrice:

    def test_free(self):
        assert format_price(0) == "Free"

    def test_thousands_separator(self):
        assert format_price(1990) == "$1,990"
        assert format_price(29) == "$29"

    def test_other_currency(self):
        assert format_price(50, "eur") == "EUR 50"
