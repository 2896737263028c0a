"""In-process ledger that mirrors the course contract's rules.

Used for development (``LEDGER_PROVIDER=local``) and as the chain in tests.
Transactions are mined as soon as they are submitted.
"""

import asyncio
import hashlib
import logging

from .base import (
    AbstractLedger,
    CompleteCourseRequest,
    EnrollRequest,
    LedgerTxRequest,
    SubmittedTx,
    TxStatus,
)
from .exceptions import LedgerSubmissionError


logger = logging.getLogger(__name__)


class LocalLedger(AbstractLedger):
    """Ledger state held in memory by a single owner (the application)."""

    def __init__(self, relayer_address: str = "0x" + "00" * 20) -> None:
        self.relayer_address = relayer_address
        self.enrollments: set[tuple[str, int]] = set()
        self.completions: set[tuple[str, int]] = set()
        self.points: dict[str, int] = {}
        self.receipts: dict[str, TxStatus] = {}
        self.submitted: list[LedgerTxRequest] = []
        self._nonce = 0
        self._submit_lock = asyncio.Lock()

    async def is_enrolled(self, wallet: str, course_id: int) -> bool:
        return (wallet.lower(), course_id) in self.enrollments

    async def has_completed(self, wallet: str, course_id: int) -> bool:
        return (wallet.lower(), course_id) in self.completions

    async def points_of(self, wallet: str) -> int:
        return self.points.get(wallet.lower(), 0)

    async def submit(self, request: LedgerTxRequest) -> SubmittedTx:
        async with self._submit_lock:
            self._apply(request)
            tx_hash = self._hash(request, self._nonce)
            self._nonce += 1
            self.submitted.append(request)
            self.receipts[tx_hash] = TxStatus.CONFIRMED

        logger.info(f"Local ledger mined {type(request).__name__} for course {request.course_id}: {tx_hash}")
        return SubmittedTx(tx_hash=tx_hash)

    async def transaction_status(self, tx_hash: str) -> TxStatus:
        return self.receipts.get(tx_hash, TxStatus.UNKNOWN)

    async def verify_setup(self) -> None:
        logger.info(f"Local ledger ready (relayer {self.relayer_address})")

    def _apply(self, request: LedgerTxRequest) -> None:
        key = (request.wallet.lower(), request.course_id)
        if isinstance(request, EnrollRequest):
            if key in self.enrollments:
                msg = f"AlreadyEnrolled: {request.wallet} in course {request.course_id}"
                raise LedgerSubmissionError(msg)
            self.enrollments.add(key)
        elif isinstance(request, CompleteCourseRequest):
            if key not in self.enrollments:
                msg = f"NotEnrolled: {request.wallet} in course {request.course_id}"
                raise LedgerSubmissionError(msg)
            if key in self.completions:
                msg = f"AlreadyCompleted: {request.wallet} in course {request.course_id}"
                raise LedgerSubmissionError(msg)
            self.completions.add(key)
            self.points[key[0]] = request.total_points

    @staticmethod
    def _hash(request: LedgerTxRequest, nonce: int) -> str:
        digest = hashlib.sha256(f"{nonce}:{request!r}".encode()).hexdigest()
        return f"0x{digest}"
