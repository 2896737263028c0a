"""Durable outbox for enrollment and completion facts mirrored on-chain.

Rows are written in the same commit as the fact they mirror and are dispatched
from two places: right after that commit (best-effort, on the request path) and
by the reconciliation sweep. A dispatch first claims the row with a
compare-and-set on ``attempts`` so that two dispatchers never broadcast the same
row concurrently.
"""

import logging
from datetime import UTC, datetime, timedelta
from uuid import UUID

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from learnchain.config import Settings, get_settings
from learnchain.progress.models import UserCourse
from learnchain.user.models import User

from .base import AbstractLedger, CompleteCourseRequest, EnrollRequest, LedgerTxRequest
from .exceptions import LedgerError
from .models import ChainTransaction, ChainTxKind, ChainTxStatus


logger = logging.getLogger(__name__)
alert_logger = logging.getLogger("learnchain.alerts")

MAX_ERROR_LENGTH = 1000


def backoff_delay(attempts: int, base_seconds: int, max_seconds: int) -> timedelta:
    """Delay before the next try after ``attempts`` failed tries: base * 2^(attempts-1), capped."""
    exponent = max(attempts - 1, 0)
    return timedelta(seconds=min(base_seconds * 2**exponent, max_seconds))


class ChainOutbox:
    """Persists and dispatches ``ChainTransaction`` rows through one ledger."""

    def __init__(self, session: AsyncSession, ledger: AbstractLedger, settings: Settings | None = None) -> None:
        self.session = session
        self.ledger = ledger
        self.settings = settings or get_settings()

    async def get(self, user_id: UUID, course_id: int, kind: ChainTxKind) -> ChainTransaction | None:
        result = await self.session.execute(
            select(ChainTransaction).where(
                ChainTransaction.user_id == user_id,
                ChainTransaction.course_id == course_id,
                ChainTransaction.kind == kind.value,
            )
        )
        return result.scalar_one_or_none()

    async def enqueue(self, user_id: UUID, course_id: int, kind: ChainTxKind, wallet: str) -> ChainTransaction:
        """Add a pending row for the fact unless one already exists. Does not commit."""
        existing = await self.get(user_id, course_id, kind)
        if existing is not None:
            return existing

        row = ChainTransaction(
            user_id=user_id,
            course_id=course_id,
            kind=kind.value,
            wallet_address=wallet.lower(),
            status=ChainTxStatus.PENDING.value,
            attempts=0,
        )
        self.session.add(row)
        await self.session.flush()
        return row

    async def list_for_user(self, user_id: UUID) -> list[ChainTransaction]:
        result = await self.session.execute(
            select(ChainTransaction)
            .where(ChainTransaction.user_id == user_id)
            .order_by(ChainTransaction.created_at, ChainTransaction.kind)
        )
        return list(result.scalars().all())

    async def _build_request(self, row: ChainTransaction) -> LedgerTxRequest:
        if row.kind == ChainTxKind.ENROLL.value:
            return EnrollRequest(course_id=row.course_id, wallet=row.wallet_address)

        # Completion carries the off-chain balance as of dispatch
        total_points = await self.session.scalar(select(User.total_points).where(User.id == row.user_id))
        return CompleteCourseRequest(course_id=row.course_id, wallet=row.wallet_address, total_points=total_points or 0)

    async def _claim(self, row: ChainTransaction) -> bool:
        """Take the row for one submission attempt and commit the claim.

        Fails while another dispatcher holds the row or its retry backoff has
        not elapsed, so no caller can spend attempts faster than the schedule.
        """
        seen_attempts = row.attempts
        now = datetime.now(UTC)
        lease_until = now + backoff_delay(
            seen_attempts + 1,
            self.settings.RECONCILE_BACKOFF_BASE_SECONDS,
            self.settings.RECONCILE_BACKOFF_MAX_SECONDS,
        )
        result = await self.session.execute(
            update(ChainTransaction)
            .where(
                ChainTransaction.id == row.id,
                ChainTransaction.status == ChainTxStatus.PENDING.value,
                ChainTransaction.attempts == seen_attempts,
                or_(ChainTransaction.next_attempt_at.is_(None), ChainTransaction.next_attempt_at <= now),
            )
            .values(attempts=seen_attempts + 1, next_attempt_at=lease_until)
            .execution_options(synchronize_session=False)
        )
        await self.session.commit()
        await self.session.refresh(row)
        return result.rowcount == 1

    async def dispatch(self, row: ChainTransaction) -> str | None:
        """Submit the row's fact to the ledger and record the outcome.

        Returns the tx hash on a successful broadcast, ``None`` otherwise. Ledger
        failures are recorded on the row and logged, never raised.
        """
        if row.status != ChainTxStatus.PENDING.value:
            return row.tx_hash if row.status != ChainTxStatus.FAILED.value else None

        if not await self._claim(row):
            logger.info(f"Outbox row {row.id} is claimed by another dispatcher or waiting out its backoff")
            return None

        request = await self._build_request(row)
        try:
            submitted = await self.ledger.submit(request)
        except LedgerError as e:
            await self.record_failure(row, e)
            return None

        now = datetime.now(UTC)
        row.status = ChainTxStatus.SUBMITTED.value
        row.tx_hash = submitted.tx_hash
        row.submitted_at = now
        row.next_attempt_at = None
        row.last_error = None
        await self._set_mirrored(row, synced=True, tx_hash=submitted.tx_hash)
        await self.session.commit()

        logger.info(
            f"Dispatched {row.kind} for user {row.user_id} course {row.course_id} "
            f"(attempt {row.attempts}): {submitted.tx_hash}"
        )
        return submitted.tx_hash

    async def record_failure(self, row: ChainTransaction, error: Exception) -> None:
        """Schedule a retry with backoff, or mark the row failed once attempts run out."""
        row.last_error = f"{type(error).__name__}: {error}"[:MAX_ERROR_LENGTH]

        if row.attempts >= self.settings.RECONCILE_MAX_ATTEMPTS:
            row.status = ChainTxStatus.FAILED.value
            row.next_attempt_at = None
            await self.session.commit()
            alert_logger.error(
                f"Chain sync for {row.kind} of user {row.user_id} in course {row.course_id} "
                f"failed after {row.attempts} attempts: {row.last_error}"
            )
            return

        row.status = ChainTxStatus.PENDING.value
        row.next_attempt_at = datetime.now(UTC) + backoff_delay(
            row.attempts,
            self.settings.RECONCILE_BACKOFF_BASE_SECONDS,
            self.settings.RECONCILE_BACKOFF_MAX_SECONDS,
        )
        await self.session.commit()
        logger.warning(
            f"Chain sync for {row.kind} of user {row.user_id} in course {row.course_id} "
            f"failed (attempt {row.attempts}), retry scheduled: {row.last_error}"
        )

    async def mark_reflected(self, row: ChainTransaction) -> None:
        """The chain already shows the fact: confirm the row without resubmitting."""
        row.status = ChainTxStatus.CONFIRMED.value
        row.confirmed_at = datetime.now(UTC)
        row.next_attempt_at = None
        row.last_error = None
        await self._set_mirrored(row, synced=True, tx_hash=row.tx_hash)
        await self.session.commit()

    async def mark_confirmed(self, row: ChainTransaction) -> None:
        row.status = ChainTxStatus.CONFIRMED.value
        row.confirmed_at = datetime.now(UTC)
        await self.session.commit()

    async def requeue(self, row: ChainTransaction, reason: str) -> None:
        """Return a lost submission to pending and clear the mirrored flag."""
        if row.attempts >= self.settings.RECONCILE_MAX_ATTEMPTS:
            await self._set_mirrored(row, synced=False, tx_hash=None)
            await self.record_failure(row, LedgerError(reason))
            return

        logger.warning(f"Requeueing {row.kind} for user {row.user_id} course {row.course_id}: {reason}")
        row.status = ChainTxStatus.PENDING.value
        row.last_error = reason
        row.tx_hash = None
        row.submitted_at = None
        row.next_attempt_at = None
        await self._set_mirrored(row, synced=False, tx_hash=None)
        await self.session.commit()

    async def _set_mirrored(self, row: ChainTransaction, synced: bool, tx_hash: str | None) -> None:
        if row.kind == ChainTxKind.ENROLL.value:
            values = {"enroll_on_chain_synced": synced, "enroll_tx_hash": tx_hash}
        else:
            values = {"on_chain_synced": synced, "completion_tx_hash": tx_hash}
        await self.session.execute(
            update(UserCourse)
            .where(UserCourse.user_id == row.user_id, UserCourse.course_id == row.course_id)
            .values(**values)
        )
