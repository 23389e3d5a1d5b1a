from app.core.config import settings
from app.models import PlanFeatures, PlanPrice, PricingPlan, UserTier


def pricing_plans() -> list[PricingPlan]:
    return [
        PricingPlan(
            tier=UserTier.FREE,
            name="Free",
            price=PlanPrice(monthly=0, annual=0, currency=settings.BILLING_CURRENCY),
            features=PlanFeatures(
                queries=f"{settings.FREE_TIER_QUERY_LIMIT}/month",
                advanced_queries=False,
                widgets="Unlimited",
                csv_import=settings.ENABLE_CSV_IMPORT,
                public_profile=settings.ENABLE_SOCIAL_FEATURES,
                priority_support=False,
            ),
        ),
        PricingPlan(
            tier=UserTier.PRO,
            name="Pro",
            price=PlanPrice(
                monthly=settings.PRO_MONTHLY_PRICE_CENTS,
                annual=settings.PRO_ANNUAL_PRICE_CENTS,
                currency=settings.BILLING_CURRENCY,
            ),
            features=PlanFeatures(
                queries="Unlimited",
                advanced_queries=True,
                widgets="Unlimited",
                csv_import=settings.ENABLE_CSV_IMPORT,
                public_profile=settings.ENABLE_SOCIAL_FEATURES,
                priority_support=True,
            ),
        ),
    ]
