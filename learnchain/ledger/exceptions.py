"""Custom exceptions for the ledger module."""


class LedgerError(Exception):
    """Base exception for ledger operations."""


class LedgerUnavailableError(LedgerError):
    """Raised when the RPC endpoint times out or cannot be reached (transient)."""


class LedgerSubmissionError(LedgerError):
    """Raised when a transaction cannot be built, signed or broadcast (e.g. a revert)."""


class LedgerSetupError(LedgerError):
    """Raised when the relayer setup is unusable. Fatal at startup."""
