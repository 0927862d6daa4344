# Services module
from app.services.affiliate_service import AffiliateService
from app.services.program_service import ProgramService
from app.services.referral_resolver import ReferralResolver
from app.services.click_service import ClickRecorder
from app.services.order_event_service import OrderEventService
from app.services.commission_ledger import CommissionLedger
from app.services.payout_service import PayoutBatcher

# Reporting
from app.services.analytics_service import AnalyticsService
from app.services.fraud_service import FraudHeuristics

__all__ = [
    "AffiliateService",
    "ProgramService",
    "ReferralResolver",
    "ClickRecorder",
    "OrderEventService",
    "CommissionLedger",
    "PayoutBatcher",
    # Reporting
    "AnalyticsService",
    "FraudHeuristics",
]
