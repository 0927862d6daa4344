"""
Background Jobs Module

Handles scheduled tasks for:
- Suspicious-affiliate scans
- Ledger reconciliation of affiliate aggregates
"""

from app.jobs.scheduler import scheduler, start_scheduler, shutdown_scheduler, get_job_status
from app.jobs.affiliate_jobs import scan_suspicious_affiliates, reconcile_affiliate_aggregates

__all__ = [
    "scheduler",
    "start_scheduler",
    "shutdown_scheduler",
    "get_job_status",
    "scan_suspicious_affiliates",
    "reconcile_affiliate_aggregates",
]
