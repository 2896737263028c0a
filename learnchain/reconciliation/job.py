"""Periodic repair of divergence between the database and the chain.

Each run sweeps, in order:

1. enrollments not yet mirrored on-chain,
2. completed courses not yet mirrored on-chain,
3. submissions that were broadcast but never confirmed.

A fact the chain already reflects is marked synced without resubmitting.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta

from sqlalchemy import ColumnElement, and_, or_, select, text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from learnchain.config import Settings, get_settings
from learnchain.ledger.base import AbstractLedger, TxStatus
from learnchain.ledger.exceptions import LedgerError
from learnchain.ledger.models import ChainTransaction, ChainTxKind, ChainTxStatus
from learnchain.ledger.outbox import ChainOutbox
from learnchain.progress.models import UserCourse
from learnchain.progress.service import ProgressService
from learnchain.user.models import User


logger = logging.getLogger(__name__)

# Cluster-wide advisory lock id for the sweep
RECONCILE_LOCK_KEY = 7_301_946_118


@dataclass
class ReconciliationReport:
    skipped: bool = False
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    enrollments_checked: int = 0
    enrollments_reflected: int = 0
    enrollments_resubmitted: int = 0
    completions_checked: int = 0
    completions_reflected: int = 0
    completions_resubmitted: int = 0
    unconfirmed_checked: int = 0
    confirmed: int = 0
    requeued: int = 0
    ledger_read_failures: int = 0

    @property
    def resubmitted(self) -> int:
        return self.enrollments_resubmitted + self.completions_resubmitted


class ReconciliationJob:
    """One sweep at a time per process, and per database on PostgreSQL."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        ledger: AbstractLedger,
        settings: Settings | None = None,
        engine: AsyncEngine | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.ledger = ledger
        self.settings = settings or get_settings()
        self.engine = engine or session_factory.kw.get("bind")
        self._run_lock = asyncio.Lock()

    async def run_once(self) -> ReconciliationReport:
        """Run all three sweeps, or return a skipped report if a sweep is already running."""
        if self._run_lock.locked():
            logger.info("Reconciliation already running in this process; skipping")
            return ReconciliationReport(skipped=True)

        async with self._run_lock:
            if self.engine is not None and self.engine.dialect.name == "postgresql":
                async with self.engine.connect() as lock_conn:
                    acquired = await lock_conn.scalar(
                        text("SELECT pg_try_advisory_lock(:key)"), {"key": RECONCILE_LOCK_KEY}
                    )
                    await lock_conn.commit()
                    if not acquired:
                        logger.info("Reconciliation running in another process; skipping")
                        return ReconciliationReport(skipped=True)
                    try:
                        return await self._sweep()
                    finally:
                        await lock_conn.execute(text("SELECT pg_advisory_unlock(:key)"), {"key": RECONCILE_LOCK_KEY})
                        await lock_conn.commit()
            return await self._sweep()

    async def _sweep(self) -> ReconciliationReport:
        report = ReconciliationReport()
        async with self.session_factory() as session:
            await self._sweep_enrollments(session, report)
            await self._sweep_completions(session, report)
            await self._sweep_unconfirmed(session, report)

        logger.info(
            f"Reconciliation done: enrollments {report.enrollments_reflected} reflected / "
            f"{report.enrollments_resubmitted} resubmitted, completions {report.completions_reflected} reflected / "
            f"{report.completions_resubmitted} resubmitted, {report.confirmed} confirmed, "
            f"{report.requeued} requeued, {report.ledger_read_failures} ledger read failures"
        )
        return report

    def _due(self, kind: ChainTxKind, now: datetime) -> tuple[ColumnElement[bool], ColumnElement[bool]]:
        """Outbox join and filter: no row yet, or a pending row whose backoff has elapsed."""
        join_on = and_(
            ChainTransaction.user_id == UserCourse.user_id,
            ChainTransaction.course_id == UserCourse.course_id,
            ChainTransaction.kind == kind.value,
        )
        due = or_(
            ChainTransaction.id.is_(None),
            and_(
                ChainTransaction.status == ChainTxStatus.PENDING.value,
                or_(ChainTransaction.next_attempt_at.is_(None), ChainTransaction.next_attempt_at <= now),
            ),
        )
        return join_on, due

    async def _outbox_row(
        self,
        outbox: ChainOutbox,
        user_course: UserCourse,
        row: ChainTransaction | None,
        wallet: str,
        kind: ChainTxKind,
    ) -> ChainTransaction:
        if row is not None:
            return row
        row = await outbox.enqueue(user_course.user_id, user_course.course_id, kind, wallet)
        await outbox.session.commit()
        return row

    async def _sweep_enrollments(self, session: AsyncSession, report: ReconciliationReport) -> None:
        outbox = ChainOutbox(session, self.ledger, self.settings)
        join_on, due = self._due(ChainTxKind.ENROLL, datetime.now(UTC))
        result = await session.execute(
            select(UserCourse, ChainTransaction, User.wallet_address)
            .join(User, User.id == UserCourse.user_id)
            .outerjoin(ChainTransaction, join_on)
            .where(UserCourse.enroll_on_chain_synced.is_(False), due)
            .order_by(UserCourse.enrolled_at)
            .limit(self.settings.RECONCILE_BATCH_SIZE)
        )

        for user_course, existing_row, user_wallet in result.all():
            report.enrollments_checked += 1
            row = await self._outbox_row(outbox, user_course, existing_row, user_wallet, ChainTxKind.ENROLL)
            try:
                on_chain = await self.ledger.is_enrolled(row.wallet_address, row.course_id)
            except LedgerError as e:
                report.ledger_read_failures += 1
                logger.warning(f"Skipping enrollment check for user {row.user_id} course {row.course_id}: {e}")
                continue

            if on_chain:
                await outbox.mark_reflected(row)
                report.enrollments_reflected += 1
            elif await outbox.dispatch(row):
                report.enrollments_resubmitted += 1

    async def _sweep_completions(self, session: AsyncSession, report: ReconciliationReport) -> None:
        outbox = ChainOutbox(session, self.ledger, self.settings)
        progress = ProgressService(session, self.ledger, self.settings)
        join_on, due = self._due(ChainTxKind.COMPLETE, datetime.now(UTC))
        result = await session.execute(
            select(UserCourse, ChainTransaction, User.wallet_address)
            .join(User, User.id == UserCourse.user_id)
            .outerjoin(ChainTransaction, join_on)
            .where(UserCourse.completed.is_(True), UserCourse.on_chain_synced.is_(False), due)
            .order_by(UserCourse.completed_at)
            .limit(self.settings.RECONCILE_BATCH_SIZE)
        )

        for user_course, existing_row, user_wallet in result.all():
            report.completions_checked += 1
            row = await self._outbox_row(outbox, user_course, existing_row, user_wallet, ChainTxKind.COMPLETE)
            try:
                on_chain = await self.ledger.has_completed(row.wallet_address, row.course_id)
            except LedgerError as e:
                report.ledger_read_failures += 1
                logger.warning(f"Skipping completion check for user {row.user_id} course {row.course_id}: {e}")
                continue

            if on_chain:
                await outbox.mark_reflected(row)
                report.completions_reflected += 1
                continue

            sync = await progress.sync_to_chain(row.user_id, row.course_id)
            if sync.synced:
                report.completions_resubmitted += 1

    async def _sweep_unconfirmed(self, session: AsyncSession, report: ReconciliationReport) -> None:
        outbox = ChainOutbox(session, self.ledger, self.settings)
        cutoff = datetime.now(UTC) - timedelta(seconds=self.settings.RECONCILE_UNCONFIRMED_TIMEOUT_SECONDS)
        result = await session.execute(
            select(ChainTransaction)
            .where(ChainTransaction.status == ChainTxStatus.SUBMITTED.value, ChainTransaction.submitted_at <= cutoff)
            .order_by(ChainTransaction.submitted_at)
            .limit(self.settings.RECONCILE_BATCH_SIZE)
        )

        for row in result.scalars().all():
            report.unconfirmed_checked += 1
            try:
                status = await self.ledger.transaction_status(row.tx_hash)
                if status == TxStatus.CONFIRMED:
                    await outbox.mark_confirmed(row)
                    report.confirmed += 1
                    continue
                if status == TxStatus.PENDING:
                    continue

                if row.kind == ChainTxKind.ENROLL.value:
                    on_chain = await self.ledger.is_enrolled(row.wallet_address, row.course_id)
                else:
                    on_chain = await self.ledger.has_completed(row.wallet_address, row.course_id)
            except LedgerError as e:
                report.ledger_read_failures += 1
                logger.warning(f"Skipping unconfirmed tx {row.tx_hash}: {e}")
                continue

            if on_chain:
                await outbox.mark_reflected(row)
                report.confirmed += 1
            else:
                await outbox.requeue(row, f"Transaction {row.tx_hash} {status.value}")
                report.requeued += 1
