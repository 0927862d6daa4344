"""
Affiliate engine errors.

Every error carries a human-readable ``message`` (returned to the caller as
the HTTP detail) and an optional ``details`` dict for logging.
"""

from typing import Dict, Optional


class AffiliateError(Exception):
    """Base exception for affiliate engine errors."""
    status_code = 400

    def __init__(self, message: str, details: Optional[Dict] = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)


class NotFoundError(AffiliateError):
    """Unknown affiliate, program, payout, or commission."""
    status_code = 404


class ReferralNotFoundError(NotFoundError):
    """Unknown referral code."""


class ReferralNotApprovedError(AffiliateError):
    """Valid code whose affiliate is not in a trackable status."""
    status_code = 403

    def __init__(self, message: str, status: str, details: Optional[Dict] = None):
        self.status = status
        super().__init__(message, {**(details or {}), "status": status})


class InvalidTransitionError(AffiliateError):
    """Status change not allowed from the current status."""
    status_code = 400


class CommissionAlreadyPaidError(AffiliateError):
    """Paid commissions can no longer be cancelled."""
    status_code = 409


class PayoutConflictError(AffiliateError):
    """A concurrent payout claimed some of the selected commissions."""
    status_code = 409


class RegistrationError(AffiliateError):
    """Affiliate registration rejected."""
    status_code = 400
