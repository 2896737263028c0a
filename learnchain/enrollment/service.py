"""Course enrollment: eligibility, point spend and the on-chain enrollment record."""

import logging
from dataclasses import dataclass, field
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from learnchain.config import Settings, get_settings
from learnchain.courses.models import Course
from learnchain.exceptions import InsufficientPointsError, ResourceNotFoundError, ValidationError, WalletMismatchError
from learnchain.ledger.base import AbstractLedger
from learnchain.ledger.models import ChainTxKind
from learnchain.ledger.outbox import ChainOutbox
from learnchain.progress.models import RewardKind, UserCourse
from learnchain.progress.store import ProgressStore


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EnrollmentResult:
    user_course: UserCourse
    already_enrolled: bool
    points_spent: int
    new_balance: int
    enroll_on_chain_synced: bool = False
    tx_hash: str | None = None


@dataclass(frozen=True)
class EnrollmentStatus:
    course_id: int
    enrolled: bool
    completed: bool
    eligible: bool
    balance: int
    enrollment_cost: int
    min_points_to_access: int
    reasons: list[str] = field(default_factory=list)


class EnrollmentService:
    """Creates enrollments and mirrors them on-chain through the outbox."""

    def __init__(self, session: AsyncSession, ledger: AbstractLedger, settings: Settings | None = None) -> None:
        self.session = session
        self.ledger = ledger
        self.store = ProgressStore(session)
        self.outbox = ChainOutbox(session, ledger, settings or get_settings())

    async def _require_published_course(self, course_id: int) -> Course:
        course = await self.store.get_course(course_id)
        if course is None:
            raise ResourceNotFoundError("Course", course_id)
        if not course.is_published:
            msg = f"Course {course_id} is not open for enrollment"
            raise ValidationError(msg)
        return course

    async def _already_enrolled(self, user_course: UserCourse, user_id: UUID) -> EnrollmentResult:
        return EnrollmentResult(
            user_course=user_course,
            already_enrolled=True,
            points_spent=0,
            new_balance=await self.store.get_balance(user_id),
            enroll_on_chain_synced=user_course.enroll_on_chain_synced,
            tx_hash=user_course.enroll_tx_hash,
        )

    async def enroll(self, user_id: UUID, wallet: str, course_id: int) -> EnrollmentResult:
        """Enroll the user, spending the course's enrollment cost.

        Idempotent: an existing enrollment is returned unchanged. The deduction,
        its history event, the enrollment row and the pending on-chain record are
        committed together; the chain submission follows and may fail without
        affecting the enrollment.

        Raises
        ------
            ResourceNotFoundError: Unknown course or user.
            ValidationError: The course is not published.
            WalletMismatchError: ``wallet`` is not the wallet registered for the user.
            InsufficientPointsError: The balance is below the access floor or the cost.
        """
        course = await self._require_published_course(course_id)
        cost = course.enrollment_cost
        min_points = course.min_points_to_access

        existing = await self.store.get_user_course(user_id, course_id)
        if existing is not None:
            return await self._already_enrolled(existing, user_id)

        user = await self.store.get_user(user_id)
        if user is None:
            raise ResourceNotFoundError("User", user_id)
        # Every on-chain record for the user is written against the registered wallet
        registered_wallet = user.wallet_address.lower()
        if wallet.lower() != registered_wallet:
            raise WalletMismatchError(user_id, wallet)
        balance = await self.store.get_balance(user_id)
        if balance < min_points:
            raise InsufficientPointsError(required=min_points, available=balance, reason="course access")
        if balance < cost:
            raise InsufficientPointsError(required=cost, available=balance)

        user_course = UserCourse(user_id=user_id, course_id=course_id, points_spent=cost)
        try:
            if cost > 0:
                if not await self.store.debit_if_sufficient(user_id, cost, required_balance=min_points):
                    await self.session.rollback()
                    available = await self.store.get_balance(user_id)
                    raise InsufficientPointsError(required=max(cost, min_points), available=available)
                self.store.add_point_event(user_id, RewardKind.ENROLLMENT_SPEND, -cost, str(course_id))
            self.session.add(user_course)
            row = await self.outbox.enqueue(user_id, course_id, ChainTxKind.ENROLL, registered_wallet)
            await self.session.commit()
        except IntegrityError:
            await self.session.rollback()
            existing = await self.store.get_user_course(user_id, course_id)
            if existing is None:
                raise
            logger.info(f"Concurrent enrollment of user {user_id} in course {course_id}; using existing row")
            return await self._already_enrolled(existing, user_id)

        logger.info(f"User {user_id} enrolled in course {course_id} (spent {cost} points)")

        tx_hash = await self.outbox.dispatch(row)
        await self.session.refresh(user_course)
        return EnrollmentResult(
            user_course=user_course,
            already_enrolled=False,
            points_spent=cost,
            new_balance=await self.store.get_balance(user_id),
            enroll_on_chain_synced=user_course.enroll_on_chain_synced,
            tx_hash=tx_hash,
        )

    async def enrollment_status(self, user_id: UUID, course_id: int) -> EnrollmentStatus:
        course = await self.store.get_course(course_id)
        if course is None:
            raise ResourceNotFoundError("Course", course_id)

        user_course = await self.store.get_user_course(user_id, course_id)
        balance = await self.store.get_balance(user_id)

        reasons = []
        if user_course is None:
            if not course.is_published:
                reasons.append("Course is not published")
            if balance < course.min_points_to_access:
                reasons.append(f"Requires at least {course.min_points_to_access} points to access")
            if balance < course.enrollment_cost:
                reasons.append(f"Enrollment costs {course.enrollment_cost} points")

        return EnrollmentStatus(
            course_id=course_id,
            enrolled=user_course is not None,
            completed=bool(user_course and user_course.completed),
            eligible=user_course is None and not reasons,
            balance=balance,
            enrollment_cost=course.enrollment_cost,
            min_points_to_access=course.min_points_to_access,
            reasons=reasons,
        )

    async def list_enrollments(self, user_id: UUID) -> list[UserCourse]:
        return await self.store.list_user_courses(user_id)
