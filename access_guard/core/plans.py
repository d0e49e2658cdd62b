"""
Plan catalog and feature cost table.

Static configuration shared by every user: plan tiers, per-feature token
costs, plan gates and purchasable token packages.
"""

from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from types import MappingProxyType
from typing import Dict, Mapping, Optional, Tuple


class SubscriptionPlan(Enum):
    """Subscription tiers in ascending order."""
    FREE = "free"
    STARTER = "starter"
    PRO = "pro"

    @property
    def rank(self) -> int:
        return _PLAN_ORDER.index(self)

    @property
    def details(self) -> "PlanDetails":
        return PLAN_CATALOG.get_plan(self)

    @property
    def total_tokens(self) -> int:
        return self.details.total_tokens


_PLAN_ORDER = (SubscriptionPlan.FREE, SubscriptionPlan.STARTER, SubscriptionPlan.PRO)


class Feature(Enum):
    """Metered features that debit tokens."""
    DOCUMENT_ANALYSIS = "DOCUMENT_ANALYSIS"
    DEEP_SEARCH = "DEEP_SEARCH"
    CLAUSE_EXPLANATION = "CLAUSE_EXPLANATION"
    REDACTION_REVIEW = "REDACTION_REVIEW"


@dataclass(frozen=True)
class PlanDetails:
    """Display and allotment data for one plan."""
    name: str
    monthly_price: Decimal
    total_tokens: int
    features: Tuple[str, ...]


@dataclass(frozen=True)
class PlanCatalog:
    """Fixed catalog of supported plans."""
    plans: Mapping[SubscriptionPlan, PlanDetails]

    def get_plan(self, plan: SubscriptionPlan) -> PlanDetails:
        """Get details for a specific plan.

        Args:
            plan: Plan identifier

        Returns:
            PlanDetails for the plan

        Raises:
            ValueError: If plan is not in the catalog
        """
        if plan not in self.plans:
            raise ValueError(f"Unsupported plan: {plan}")
        return self.plans[plan]


# Fixed catalog - no dynamic fetching
PLAN_CATALOG = PlanCatalog(MappingProxyType({
    SubscriptionPlan.FREE: PlanDetails(
        name="Free",
        monthly_price=Decimal("0.00"),
        total_tokens=50,
        features=(
            "Basic document analysis",
            "Limited legal questions",
            "50 tokens per month",
            "No credit card required",
        ),
    ),
    SubscriptionPlan.STARTER: PlanDetails(
        name="Starter",
        monthly_price=Decimal("19.99"),
        total_tokens=500,
        features=(
            "Full document analysis",
            "Unlimited legal questions",
            "DeepSearch access",
            "500 tokens per month",
            "Email support",
        ),
    ),
    SubscriptionPlan.PRO: PlanDetails(
        name="Professional",
        monthly_price=Decimal("49.99"),
        total_tokens=2000,
        features=(
            "All Starter features",
            "Redaction review",
            "Batch document analysis",
            "2000 tokens per month",
            "Priority support",
        ),
    ),
}))


@dataclass(frozen=True)
class TokenCostTable:
    """Immutable feature -> token cost mapping."""
    costs: Mapping[Feature, int]

    def __post_init__(self):
        """Validate every feature has a positive cost."""
        missing = set(Feature) - set(self.costs)
        if missing:
            raise ValueError(f"Missing token costs for: {sorted(f.value for f in missing)}")
        for feature, cost in self.costs.items():
            if not isinstance(cost, int) or isinstance(cost, bool) or cost <= 0:
                raise ValueError(f"Token cost for {feature.value} must be a positive integer")
        object.__setattr__(self, "costs", MappingProxyType(dict(self.costs)))

    def cost_of(self, feature: Feature) -> int:
        return self.costs[feature]

    def with_overrides(self, overrides: Dict[Feature, int]) -> "TokenCostTable":
        """Return a new table with some costs replaced."""
        merged = dict(self.costs)
        merged.update(overrides)
        return TokenCostTable(merged)


TOKEN_COSTS = TokenCostTable({
    Feature.DOCUMENT_ANALYSIS: 15,
    Feature.DEEP_SEARCH: 10,
    Feature.CLAUSE_EXPLANATION: 5,
    Feature.REDACTION_REVIEW: 7,
})

# Lowest plan on which each gated feature is available
FEATURE_MIN_PLAN: Mapping[Feature, SubscriptionPlan] = MappingProxyType({
    Feature.REDACTION_REVIEW: SubscriptionPlan.STARTER,
})


def is_feature_enabled(plan: SubscriptionPlan, feature: Feature) -> bool:
    """Plan gate for a feature, independent of the token balance."""
    required = FEATURE_MIN_PLAN.get(feature)
    if required is None:
        return True
    return plan.rank >= required.rank


@dataclass(frozen=True)
class TokenPackage:
    """A purchasable one-off token top-up."""
    id: str
    name: str
    tokens: int
    price: Decimal


TOKEN_PACKAGES: Mapping[str, TokenPackage] = MappingProxyType({
    package.id: package
    for package in (
        TokenPackage("tokens_50", "50 Tokens", 50, Decimal("4.99")),
        TokenPackage("tokens_100", "100 Tokens", 100, Decimal("8.99")),
        TokenPackage("tokens_500", "500 Tokens", 500, Decimal("39.99")),
        TokenPackage("tokens_1000", "1000 Tokens", 1000, Decimal("69.99")),
    )
})


def get_token_package(package_id: str) -> Optional[TokenPackage]:
    return TOKEN_PACKAGES.get(package_id)


def parse_feature(value: str) -> Feature:
    """Parse a feature identifier, accepting any letter case.

    Raises:
        ValueError: If the identifier is not a known feature
    """
    try:
        return Feature(value.strip().upper())
    except ValueError:
        valid = [feature.value for feature in Feature]
        raise ValueError(f"Unknown feature '{value}', must be one of: {valid}")
