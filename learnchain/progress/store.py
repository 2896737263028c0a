"""Persistence for progress entities on top of an ``AsyncSession``.

The store only reads and stages rows; committing is left to the caller so that
related writes land in one transaction.
"""

import logging
from datetime import UTC, datetime
from typing import Any
from uuid import UUID

from sqlalchemy import case, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from learnchain.courses.models import Course, Lesson, Quiz
from learnchain.user.models import User

from .models import PointEvent, QuizAttempt, RewardKind, UserCourse, UserLesson


logger = logging.getLogger(__name__)


class ProgressStore:
    """Reads and writes users' lesson, quiz and course progress."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    # Catalog

    async def get_user(self, user_id: UUID) -> User | None:
        return await self.session.get(User, user_id)

    async def get_balance(self, user_id: UUID) -> int:
        balance = await self.session.scalar(select(User.total_points).where(User.id == user_id))
        return balance or 0

    async def get_course(self, course_id: int) -> Course | None:
        return await self.session.get(Course, course_id)

    async def get_lesson(self, lesson_id: UUID) -> Lesson | None:
        return await self.session.get(Lesson, lesson_id)

    async def get_quiz(self, quiz_id: UUID) -> Quiz | None:
        return await self.session.get(Quiz, quiz_id)

    async def get_quiz_for_lesson(self, lesson_id: UUID) -> Quiz | None:
        result = await self.session.execute(select(Quiz).where(Quiz.lesson_id == lesson_id))
        return result.scalar_one_or_none()

    async def count_lessons(self, course_id: int) -> int:
        count = await self.session.scalar(select(func.count(Lesson.id)).where(Lesson.course_id == course_id))
        return count or 0

    async def list_lessons(self, course_id: int) -> list[Lesson]:
        result = await self.session.execute(
            select(Lesson).where(Lesson.course_id == course_id).order_by(Lesson.order_index)
        )
        return list(result.scalars().all())

    async def count_quizzes(self, course_id: int) -> int:
        count = await self.session.scalar(
            select(func.count(Quiz.id)).join(Lesson, Quiz.lesson_id == Lesson.id).where(Lesson.course_id == course_id)
        )
        return count or 0

    # Enrollment

    async def get_user_course(self, user_id: UUID, course_id: int) -> UserCourse | None:
        result = await self.session.execute(
            select(UserCourse).where(UserCourse.user_id == user_id, UserCourse.course_id == course_id)
        )
        return result.scalar_one_or_none()

    async def list_user_courses(self, user_id: UUID) -> list[UserCourse]:
        result = await self.session.execute(
            select(UserCourse).where(UserCourse.user_id == user_id).order_by(UserCourse.enrolled_at)
        )
        return list(result.scalars().all())

    # Lessons

    async def get_user_lesson(self, user_id: UUID, lesson_id: UUID) -> UserLesson | None:
        result = await self.session.execute(
            select(UserLesson).where(UserLesson.user_id == user_id, UserLesson.lesson_id == lesson_id)
        )
        return result.scalar_one_or_none()

    async def get_or_create_user_lesson(self, user_id: UUID, lesson_id: UUID) -> tuple[UserLesson, bool]:
        """Return the (user, lesson) row, creating and committing it on first use.

        A concurrent first ping that wins the insert is resolved by re-reading
        the winner's row.
        """
        existing = await self.get_user_lesson(user_id, lesson_id)
        if existing is not None:
            return existing, False

        user_lesson = UserLesson(user_id=user_id, lesson_id=lesson_id)
        self.session.add(user_lesson)
        try:
            await self.session.commit()
        except IntegrityError:
            await self.session.rollback()
            logger.info(f"Concurrent start of lesson {lesson_id} for user {user_id}; using existing row")
            existing = await self.get_user_lesson(user_id, lesson_id)
            if existing is None:
                raise
            return existing, False
        return user_lesson, True

    async def raise_watch_progress(self, user_lesson: UserLesson, percent: int) -> None:
        """Keep the highest reported percent; lower values only touch ``last_watched_at``."""
        column = UserLesson.watch_progress_percent
        await self.session.execute(
            update(UserLesson)
            .where(UserLesson.id == user_lesson.id)
            .values(
                watch_progress_percent=case((column < percent, percent), else_=column),
                last_watched_at=datetime.now(UTC),
            )
            .execution_options(synchronize_session=False)
        )

    async def mark_watched(self, user_lesson: UserLesson) -> bool:
        """Flip ``watched`` once. Returns whether this call flipped it."""
        result = await self.session.execute(
            update(UserLesson)
            .where(UserLesson.id == user_lesson.id, UserLesson.watched.is_(False))
            .values(watched=True, watched_at=datetime.now(UTC))
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def count_watched(self, user_id: UUID, course_id: int) -> int:
        count = await self.session.scalar(
            select(func.count(UserLesson.id))
            .join(Lesson, UserLesson.lesson_id == Lesson.id)
            .where(UserLesson.user_id == user_id, Lesson.course_id == course_id, UserLesson.watched.is_(True))
        )
        return count or 0

    async def list_user_lessons(self, user_id: UUID, course_id: int) -> list[UserLesson]:
        result = await self.session.execute(
            select(UserLesson)
            .join(Lesson, UserLesson.lesson_id == Lesson.id)
            .where(UserLesson.user_id == user_id, Lesson.course_id == course_id)
        )
        return list(result.scalars().all())

    # Quizzes

    async def count_attempts(self, user_id: UUID, quiz_id: UUID) -> int:
        count = await self.session.scalar(
            select(func.count(QuizAttempt.id)).where(QuizAttempt.user_id == user_id, QuizAttempt.quiz_id == quiz_id)
        )
        return count or 0

    async def add_attempt(
        self,
        user_id: UUID,
        quiz_id: UUID,
        answers: list[Any],
        score_percent: int,
        passed: bool,
    ) -> QuizAttempt:
        """Stage the next numbered attempt for the pair."""
        attempt = QuizAttempt(
            user_id=user_id,
            quiz_id=quiz_id,
            answers=list(answers),
            score_percent=score_percent,
            passed=passed,
            attempt_number=await self.count_attempts(user_id, quiz_id) + 1,
        )
        self.session.add(attempt)
        await self.session.flush()
        return attempt

    async def earliest_passing_attempt(self, user_id: UUID, quiz_id: UUID) -> QuizAttempt | None:
        result = await self.session.execute(
            select(QuizAttempt)
            .where(QuizAttempt.user_id == user_id, QuizAttempt.quiz_id == quiz_id, QuizAttempt.passed.is_(True))
            .order_by(QuizAttempt.created_at, QuizAttempt.attempt_number)
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def has_awarded_attempt(self, user_id: UUID, quiz_id: UUID) -> bool:
        awarded = await self.session.scalar(
            select(func.count(QuizAttempt.id)).where(
                QuizAttempt.user_id == user_id,
                QuizAttempt.quiz_id == quiz_id,
                QuizAttempt.points_awarded.is_(True),
            )
        )
        return bool(awarded)

    async def passed_quiz_ids(self, user_id: UUID, course_id: int) -> set[UUID]:
        result = await self.session.execute(
            select(QuizAttempt.quiz_id)
            .join(Quiz, QuizAttempt.quiz_id == Quiz.id)
            .join(Lesson, Quiz.lesson_id == Lesson.id)
            .where(QuizAttempt.user_id == user_id, Lesson.course_id == course_id, QuizAttempt.passed.is_(True))
            .distinct()
        )
        return set(result.scalars().all())

    # Balance

    async def credit(self, user_id: UUID, amount: int, kind: RewardKind, subject_id: str) -> None:
        """Stage a balance increment together with its history event."""
        await self.session.execute(
            update(User).where(User.id == user_id).values(total_points=User.total_points + amount)
            .execution_options(synchronize_session=False)
        )
        if amount:
            self.add_point_event(user_id, kind, amount, subject_id)

    async def debit_if_sufficient(self, user_id: UUID, amount: int, required_balance: int | None = None) -> bool:
        """Stage a balance decrement only if the balance covers ``required_balance`` (default ``amount``).

        Returns whether it applied. The check and the decrement are one statement,
        so concurrent spends can never take the balance below zero.
        """
        required = amount if required_balance is None else max(amount, required_balance)
        result = await self.session.execute(
            update(User)
            .where(User.id == user_id, User.total_points >= required)
            .values(total_points=User.total_points - amount)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def list_point_events(self, user_id: UUID, limit: int = 100) -> list[PointEvent]:
        result = await self.session.execute(
            select(PointEvent)
            .where(PointEvent.user_id == user_id)
            .order_by(PointEvent.created_at.desc(), PointEvent.id.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    def add_point_event(self, user_id: UUID, kind: RewardKind, delta: int, subject_id: str) -> PointEvent:
        event = PointEvent(user_id=user_id, kind=kind.value, delta=delta, subject_id=subject_id)
        self.session.add(event)
        return event
