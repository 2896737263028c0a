"""Abstract ledger interface for different chain providers."""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum


@dataclass(frozen=True)
class EnrollRequest:
    """Record ``wallet`` as enrolled in ``course_id`` on-chain."""

    course_id: int
    wallet: str


@dataclass(frozen=True)
class CompleteCourseRequest:
    """Record ``wallet`` as having completed ``course_id`` with its current balance."""

    course_id: int
    wallet: str
    total_points: int


LedgerTxRequest = EnrollRequest | CompleteCourseRequest


@dataclass(frozen=True)
class SubmittedTx:
    """A broadcast (not necessarily mined) relayer transaction."""

    tx_hash: str


class TxStatus(str, Enum):
    CONFIRMED = "confirmed"
    REVERTED = "reverted"
    PENDING = "pending"
    UNKNOWN = "unknown"


class AbstractLedger(ABC):
    """Abstract base class for ledger providers.

    Reads are side-effect free and safe to call concurrently. ``submit`` goes
    through the single relayer identity and must be serialized by the provider.
    """

    @abstractmethod
    async def is_enrolled(self, wallet: str, course_id: int) -> bool:
        """Return whether ``wallet`` is enrolled in ``course_id`` on-chain.

        Raises
        ------
            LedgerUnavailableError: If the RPC endpoint cannot be reached.
        """
        raise NotImplementedError

    @abstractmethod
    async def has_completed(self, wallet: str, course_id: int) -> bool:
        """Return whether ``wallet`` has completed ``course_id`` on-chain.

        Raises
        ------
            LedgerUnavailableError: If the RPC endpoint cannot be reached.
        """
        raise NotImplementedError

    @abstractmethod
    async def points_of(self, wallet: str) -> int:
        """Return the on-chain points balance of ``wallet``.

        Raises
        ------
            LedgerUnavailableError: If the RPC endpoint cannot be reached.
        """
        raise NotImplementedError

    @abstractmethod
    async def submit(self, request: LedgerTxRequest) -> SubmittedTx:
        """Sign with the relayer key and broadcast; do not wait for a receipt.

        Raises
        ------
            LedgerUnavailableError: If the RPC endpoint cannot be reached.
            LedgerSubmissionError: If the transaction is rejected.
        """
        raise NotImplementedError

    @abstractmethod
    async def transaction_status(self, tx_hash: str) -> TxStatus:
        """Return the mining status of a previously submitted transaction."""
        raise NotImplementedError

    @abstractmethod
    async def verify_setup(self) -> None:
        """Check connectivity, relayer registration and relayer balance.

        Raises
        ------
            LedgerSetupError: If the relayer cannot be used.
        """
        raise NotImplementedError

    async def close(self) -> None:  # noqa: B027
        """Release provider resources."""
