"""Reconciliation of database state with the on-chain ledger."""

from .job import ReconciliationJob, ReconciliationReport
from .scheduler import ReconciliationScheduler


__all__ = ["ReconciliationJob", "ReconciliationReport", "ReconciliationScheduler"]
