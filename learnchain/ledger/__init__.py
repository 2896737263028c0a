"""Ledger module for mirroring enrollment and completion facts on-chain."""

from .base import AbstractLedger, CompleteCourseRequest, EnrollRequest, SubmittedTx, TxStatus
from .evm import EVMLedger
from .exceptions import LedgerError, LedgerSetupError, LedgerSubmissionError, LedgerUnavailableError
from .factory import create_ledger
from .local import LocalLedger


__all__ = [
    "AbstractLedger",
    "CompleteCourseRequest",
    "EVMLedger",
    "EnrollRequest",
    "LedgerError",
    "LedgerSetupError",
    "LedgerSubmissionError",
    "LedgerUnavailableError",
    "LocalLedger",
    "SubmittedTx",
    "TxStatus",
    "create_ledger",
]
