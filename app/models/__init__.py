from app.models.affiliate import (
    Affiliate,
    AffiliateClick,
    AffiliateCommission,
    AffiliateCommissionRule,
    AffiliateLink,
    AffiliatePayout,
    AffiliatePayoutItem,
    AffiliateProgram,
)

__all__ = [
    "Affiliate",
    "AffiliateClick",
    "AffiliateCommission",
    "AffiliateCommissionRule",
    "AffiliateLink",
    "AffiliatePayout",
    "AffiliatePayoutItem",
    "AffiliateProgram",
]
