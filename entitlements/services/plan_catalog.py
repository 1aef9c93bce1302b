"""
Plan catalog.

Read-only mapping from plan tier to pricing and feature set. Catalog
versions are immutable once loaded; subscriptions carry the version they
were sold under so later price or limit changes do not alter terms a user
already agreed to.
"""

from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional, Tuple

import yaml

from entitlements.common.exceptions import ConfigurationError
from entitlements.config.settings import get_settings
from entitlements.models.subscription import (
    UNLIMITED, BillingCycle, PlanFeatures, PlanTier, SubscriptionPlan
)
from entitlements.utils.logging import get_logger

logger = get_logger(__name__)

DEFAULT_CATALOG_VERSION = "2026-01"

ALL_CHAINS = frozenset({1, 56, 42161, 8453, 137})
ALL_STRATEGIES = frozenset({"spot", "grid", "dca", "arbitrage", "custom"})

UPGRADE_PATH: Dict[PlanTier, Tuple[PlanTier, str]] = {
    PlanTier.FREE: (
        PlanTier.STARTER,
        "Upgrade to Starter for real trading with 25 trades/day - only $29/month!"
    ),
    PlanTier.STARTER: (
        PlanTier.PRO,
        "Upgrade to Pro for Grid trading, Auto-trade, and 100 trades/day"
    ),
    PlanTier.PRO: (
        PlanTier.ELITE,
        "Upgrade to Elite for Arbitrage, Custom strategies, and unlimited trades"
    ),
    PlanTier.ELITE: (
        PlanTier.DESKTOP,
        "Get Desktop for $499 one-time - no more recurring fees!"
    ),
}

# Camel-case feature names accepted by has_feature, mapped to PlanFeatures fields
FEATURE_ALIASES = {
    "dailyTradeLimit": "daily_trade_limit",
    "totalTradeLimit": "total_trade_limit",
    "maxActiveStrategies": "max_active_strategies",
    "strategies": "allowed_strategies",
    "allowedStrategies": "allowed_strategies",
    "chains": "allowed_chains",
    "allowedChains": "allowed_chains",
    "maxWallets": "max_wallets",
    "autoTrading": "auto_trading",
    "arbitrage": "arbitrage",
    "customStrategies": "custom_strategies",
    "prioritySupport": "priority_support",
    "apiAccess": "api_access",
    "webhooks": "webhooks",
    "multiWallet": "multi_wallet",
    "performanceAnalytics": "performance_analytics",
    "whiteLabel": "white_label",
    "paperTrading": "paper_trading",
}


def _default_plans() -> Dict[PlanTier, SubscriptionPlan]:
    plans = [
        SubscriptionPlan(
            tier=PlanTier.FREE,
            name="Free",
            description="Try before you buy - paper trading only",
            monthly_price=0,
            yearly_price=0,
            lifetime_price=0,
            yearly_discount=0,
            features=PlanFeatures(
                daily_trade_limit=5,
                total_trade_limit=2,
                max_active_strategies=1,
                allowed_strategies=frozenset({"spot"}),
                allowed_chains=frozenset({8453, 137}),
                max_wallets=1,
                paper_trading=True
            )
        ),
        SubscriptionPlan(
            tier=PlanTier.STARTER,
            name="Starter",
            description="Real trading for beginners",
            monthly_price=29,
            yearly_price=290,
            lifetime_price=299,
            yearly_discount=17,
            features=PlanFeatures(
                daily_trade_limit=25,
                total_trade_limit=UNLIMITED,
                max_active_strategies=2,
                allowed_strategies=frozenset({"spot", "dca"}),
                allowed_chains=ALL_CHAINS,
                max_wallets=3,
                multi_wallet=True
            )
        ),
        SubscriptionPlan(
            tier=PlanTier.PRO,
            name="Pro",
            description="For active traders who want automation",
            monthly_price=79,
            yearly_price=790,
            lifetime_price=799,
            yearly_discount=17,
            badge="Most Popular",
            features=PlanFeatures(
                daily_trade_limit=100,
                total_trade_limit=UNLIMITED,
                max_active_strategies=5,
                allowed_strategies=frozenset({"spot", "grid", "dca"}),
                allowed_chains=ALL_CHAINS,
                max_wallets=10,
                auto_trading=True,
                priority_support=True,
                multi_wallet=True,
                performance_analytics=True
            )
        ),
        SubscriptionPlan(
            tier=PlanTier.ELITE,
            name="Elite",
            description="Full power for professional traders",
            monthly_price=199,
            yearly_price=1990,
            lifetime_price=1999,
            yearly_discount=17,
            features=PlanFeatures(
                daily_trade_limit=UNLIMITED,
                total_trade_limit=UNLIMITED,
                max_active_strategies=UNLIMITED,
                allowed_strategies=ALL_STRATEGIES,
                allowed_chains=ALL_CHAINS,
                max_wallets=UNLIMITED,
                auto_trading=True,
                arbitrage=True,
                custom_strategies=True,
                priority_support=True,
                api_access=True,
                webhooks=True,
                multi_wallet=True,
                performance_analytics=True,
                white_label=True
            )
        ),
        SubscriptionPlan(
            tier=PlanTier.DESKTOP,
            name="Desktop",
            description="One-time purchase - run locally forever",
            monthly_price=0,
            yearly_price=0,
            lifetime_price=499,
            yearly_discount=0,
            badge="Best Value",
            features=PlanFeatures(
                daily_trade_limit=UNLIMITED,
                total_trade_limit=UNLIMITED,
                max_active_strategies=UNLIMITED,
                allowed_strategies=ALL_STRATEGIES,
                allowed_chains=ALL_CHAINS,
                max_wallets=UNLIMITED,
                auto_trading=True,
                arbitrage=True,
                custom_strategies=True,
                priority_support=True,
                api_access=True,
                webhooks=True,
                multi_wallet=True,
                performance_analytics=True
            )
        ),
    ]
    return {plan.tier: plan for plan in plans}


class PlanCatalog:
    """Immutable, versioned set of plan definitions."""

    def __init__(
        self,
        versions: Mapping[str, Mapping[PlanTier, SubscriptionPlan]],
        current_version: str
    ):
        if current_version not in versions:
            raise ConfigurationError(
                f"Current catalog version '{current_version}' is not defined",
                context={'versions': sorted(versions)}
            )

        frozen = {}
        for version, plans in versions.items():
            missing = [tier.value for tier in PlanTier if tier not in plans]
            if missing:
                raise ConfigurationError(
                    f"Catalog version '{version}' is missing tiers: {', '.join(missing)}"
                )
            frozen[version] = MappingProxyType(dict(plans))

        self._versions = MappingProxyType(frozen)
        self._current_version = current_version

    @classmethod
    def default(cls) -> "PlanCatalog":
        return cls({DEFAULT_CATALOG_VERSION: _default_plans()}, DEFAULT_CATALOG_VERSION)

    @classmethod
    def from_file(cls, path: str) -> "PlanCatalog":
        """Load a catalog from YAML.

        Expected layout::

            current_version: "2026-02"
            versions:
              "2026-02":
                free:
                  name: Free
                  monthly_price: 0
                  ...
                  features:
                    daily_trade_limit: 5
                    allowed_chains: [8453, 137]
        """
        catalog_file = Path(path)
        if not catalog_file.exists():
            raise ConfigurationError(f"Plan catalog file not found: {path}")

        try:
            with open(catalog_file, "r") as f:
                data = yaml.safe_load(f) or {}
            versions = {
                str(version): {
                    PlanTier(tier): _plan_from_dict(PlanTier(tier), plan_data)
                    for tier, plan_data in plans.items()
                }
                for version, plans in data["versions"].items()
            }
            current_version = str(data["current_version"])
        except (KeyError, TypeError, ValueError, AttributeError, yaml.YAMLError) as e:
            raise ConfigurationError(f"Invalid plan catalog file: {path}", cause=e)

        logger.info(f"Loaded plan catalog from {path} (current version {current_version})")
        return cls(versions, current_version)

    @property
    def current_version(self) -> str:
        return self._current_version

    @property
    def versions(self) -> Tuple[str, ...]:
        return tuple(self._versions)

    def plans(self, version: Optional[str] = None) -> Mapping[PlanTier, SubscriptionPlan]:
        if version is None:
            return self._versions[self._current_version]
        plans = self._versions.get(version)
        if plans is None:
            logger.warning(
                f"Unknown plan catalog version '{version}', using {self._current_version}"
            )
            return self._versions[self._current_version]
        return plans

    def get_plan(self, tier: PlanTier, version: Optional[str] = None) -> SubscriptionPlan:
        return self.plans(version)[PlanTier(tier)]

    def has_feature(self, tier: PlanTier, feature: str, version: Optional[str] = None) -> bool:
        """Whether the tier has ``feature``.

        Flags count when true, numbers when non-zero (``-1`` is unlimited and
        counts), sets when non-empty. Unknown names are not features.
        """
        field_name = FEATURE_ALIASES.get(feature, feature)
        features = self.get_plan(tier, version).features
        if field_name not in PlanFeatures.__dataclass_fields__:
            return False

        value = getattr(features, field_name)
        if isinstance(value, bool):
            return value
        if isinstance(value, int):
            return value != 0
        if isinstance(value, (frozenset, set, list, tuple)):
            return len(value) > 0
        return False

    def is_strategy_allowed(self, tier: PlanTier, strategy: str, version: Optional[str] = None) -> bool:
        return strategy in self.get_plan(tier, version).features.allowed_strategies

    def is_chain_allowed(self, tier: PlanTier, chain_id: int, version: Optional[str] = None) -> bool:
        return chain_id in self.get_plan(tier, version).features.allowed_chains

    def calculate_savings(self, tier: PlanTier, billing_cycle: BillingCycle) -> int:
        """Dollars saved against twelve monthly payments."""
        plan = self.get_plan(tier)
        monthly_total = plan.monthly_price * 12
        if billing_cycle == BillingCycle.YEARLY:
            return monthly_total - plan.yearly_price
        if billing_cycle == BillingCycle.LIFETIME:
            return monthly_total - plan.lifetime_price
        return 0

    def get_upgrade_recommendation(self, tier: PlanTier) -> Optional[Dict[str, str]]:
        upgrade = UPGRADE_PATH.get(PlanTier(tier))
        if upgrade is None:
            return None
        next_tier, reason = upgrade
        return {"nextTier": next_tier.value, "reason": reason}

    def to_dict(self, version: Optional[str] = None) -> Dict[str, Any]:
        return {
            "version": version or self._current_version,
            "plans": [plan.to_dict() for plan in self.plans(version).values()],
        }


def _plan_from_dict(tier: PlanTier, data: Dict[str, Any]) -> SubscriptionPlan:
    features = dict(data["features"])
    features["allowed_strategies"] = frozenset(features.get("allowed_strategies", ()))
    features["allowed_chains"] = frozenset(int(c) for c in features.get("allowed_chains", ()))
    features.setdefault("total_trade_limit", UNLIMITED)
    return SubscriptionPlan(
        tier=tier,
        name=data["name"],
        description=data.get("description", ""),
        monthly_price=int(data.get("monthly_price", 0)),
        yearly_price=int(data.get("yearly_price", 0)),
        lifetime_price=int(data.get("lifetime_price", 0)),
        yearly_discount=int(data.get("yearly_discount", 0)),
        badge=data.get("badge"),
        features=PlanFeatures(**features)
    )


def format_price(amount: int, currency: str = "USD") -> str:
    """Whole-unit price for display; zero renders as ``Free``."""
    if amount == 0:
        return "Free"
    symbol = "$" if currency.upper() == "USD" else f"{currency.upper()} "
    return f"{symbol}{amount:,.0f}"


# Loaded once per process
_plan_catalog: Optional[PlanCatalog] = None


def get_plan_catalog() -> PlanCatalog:
    """Get the process-wide plan catalog."""
    global _plan_catalog
    if _plan_catalog is None:
        catalog_file = get_settings().entitlements.plan_catalog_file
        _plan_catalog = PlanCatalog.from_file(catalog_file) if catalog_file else PlanCatalog.default()
    return _plan_catalog


def set_plan_catalog(catalog: Optional[PlanCatalog]) -> None:
    global _plan_catalog
    _plan_catalog = catalog
