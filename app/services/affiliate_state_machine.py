"""
Affiliate State Machine

Single place that defines the allowed status transitions for affiliates,
commission ledger entries and payouts.
"""

from typing import Dict, List

from app.models.affiliate import AffiliateStatus, CommissionStatus, PayoutStatus
from app.services.affiliate_errors import InvalidTransitionError


# =============================================================================
# TRANSITION RULES
# =============================================================================

AFFILIATE_TRANSITIONS: Dict[str, List[str]] = {
    AffiliateStatus.PENDING.value: [
        AffiliateStatus.APPROVED.value,     # Vendor approves
        AffiliateStatus.REJECTED.value,     # Vendor rejects
    ],
    AffiliateStatus.APPROVED.value: [
        AffiliateStatus.BANNED.value,       # Admin bans
    ],
    AffiliateStatus.REJECTED.value: [],     # Terminal state
    AffiliateStatus.BANNED.value: [],       # Terminal state
}

COMMISSION_TRANSITIONS: Dict[str, List[str]] = {
    CommissionStatus.PENDING.value: [
        CommissionStatus.APPROVED.value,    # Included in a payout
        CommissionStatus.CANCELLED.value,   # Refund / chargeback
    ],
    CommissionStatus.APPROVED.value: [
        CommissionStatus.PAID.value,        # Payment confirmed
        CommissionStatus.PENDING.value,     # Payout rejected
        CommissionStatus.CANCELLED.value,   # Refund / chargeback
    ],
    CommissionStatus.PAID.value: [],
    CommissionStatus.CANCELLED.value: [],
}

PAYOUT_TRANSITIONS: Dict[str, List[str]] = {
    PayoutStatus.PENDING.value: [
        PayoutStatus.APPROVED.value,
        PayoutStatus.REJECTED.value,
    ],
    PayoutStatus.APPROVED.value: [
        PayoutStatus.PAID.value,
    ],
    PayoutStatus.REJECTED.value: [],
    PayoutStatus.PAID.value: [],
}

_MACHINES = {
    "affiliate": AFFILIATE_TRANSITIONS,
    "commission": COMMISSION_TRANSITIONS,
    "payout": PAYOUT_TRANSITIONS,
}


# =============================================================================
# HELPER FUNCTIONS
# =============================================================================

def can_transition(entity: str, current_status: str, new_status: str) -> bool:
    """Check if a transition is allowed."""
    return new_status in _MACHINES[entity].get(current_status, [])


def get_allowed_transitions(entity: str, current_status: str) -> List[str]:
    return _MACHINES[entity].get(current_status, [])


def validate_transition(entity: str, current_status: str, new_status: str) -> None:
    """
    Validate a status transition. Raises InvalidTransitionError if invalid.
    """
    if can_transition(entity, current_status, new_status):
        return

    allowed = get_allowed_transitions(entity, current_status)
    if not allowed:
        raise InvalidTransitionError(
            f"{entity.capitalize()} in '{current_status}' status cannot be modified. "
            f"This is a terminal state.",
            {"entity": entity, "from": current_status, "to": new_status},
        )
    raise InvalidTransitionError(
        f"Cannot change {entity} from '{current_status}' to '{new_status}'. "
        f"Allowed transitions: {', '.join(allowed)}",
        {"entity": entity, "from": current_status, "to": new_status},
    )
