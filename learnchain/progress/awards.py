"""At-most-once point awards.

Every upward balance change goes through ``AwardCoordinator``. Each award is a
compare-and-set on its flag (``UPDATE ... WHERE flag = false``) followed by the
balance increment and its ``PointEvent``, all in one commit. The flag update
row-locks on PostgreSQL, so a concurrent duplicate waits, re-evaluates the
predicate and updates nothing.
"""

import logging
from dataclasses import dataclass
from uuid import UUID

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from learnchain.exceptions import ResourceNotFoundError

from .models import QuizAttempt, RewardKind, UserCourse, UserLesson
from .store import ProgressStore


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AwardResult:
    awarded: bool
    new_balance: int
    kind: RewardKind


class AwardCoordinator:
    """Credits watch, quiz-pass and completion points at most once each."""

    def __init__(self, session: AsyncSession, store: ProgressStore | None = None) -> None:
        self.session = session
        self.store = store or ProgressStore(session)

    async def _not_awarded(self, user_id: UUID, kind: RewardKind) -> AwardResult:
        return AwardResult(awarded=False, new_balance=await self.store.get_balance(user_id), kind=kind)

    async def award_watch_points(self, user_id: UUID, lesson_id: UUID) -> AwardResult:
        lesson = await self.store.get_lesson(lesson_id)
        if lesson is None:
            raise ResourceNotFoundError("Lesson", lesson_id)

        try:
            result = await self.session.execute(
                update(UserLesson)
                .where(
                    UserLesson.user_id == user_id,
                    UserLesson.lesson_id == lesson_id,
                    UserLesson.watch_points_awarded.is_(False),
                )
                .values(watch_points_awarded=True)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                await self.session.commit()
                return await self._not_awarded(user_id, RewardKind.WATCH)

            await self.store.credit(user_id, lesson.watch_points, RewardKind.WATCH, str(lesson_id))
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise

        logger.info(f"Awarded {lesson.watch_points} watch points to user {user_id} for lesson {lesson_id}")
        return AwardResult(awarded=True, new_balance=await self.store.get_balance(user_id), kind=RewardKind.WATCH)

    async def award_quiz_points(self, user_id: UUID, quiz_id: UUID, attempt_id: UUID) -> AwardResult:
        """Credit the quiz's pass points for ``attempt_id`` if it is the first pass.

        No-op unless ``attempt_id`` is the earliest passing attempt for the pair
        and no attempt already carries the award marker.
        """
        quiz = await self.store.get_quiz(quiz_id)
        if quiz is None:
            raise ResourceNotFoundError("Quiz", quiz_id)

        earliest = await self.store.earliest_passing_attempt(user_id, quiz_id)
        if earliest is None or earliest.id != attempt_id:
            return await self._not_awarded(user_id, RewardKind.QUIZ_PASS)
        if await self.store.has_awarded_attempt(user_id, quiz_id):
            return await self._not_awarded(user_id, RewardKind.QUIZ_PASS)

        try:
            result = await self.session.execute(
                update(UserLesson)
                .where(
                    UserLesson.user_id == user_id,
                    UserLesson.lesson_id == quiz.lesson_id,
                    UserLesson.quiz_points_awarded.is_(False),
                )
                .values(quiz_points_awarded=True)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                await self.session.commit()
                return await self._not_awarded(user_id, RewardKind.QUIZ_PASS)

            await self.session.execute(
                update(QuizAttempt)
                .where(QuizAttempt.id == attempt_id)
                .values(points_awarded=True)
                .execution_options(synchronize_session=False)
            )
            await self.store.credit(user_id, quiz.pass_points, RewardKind.QUIZ_PASS, str(quiz_id))
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise

        logger.info(f"Awarded {quiz.pass_points} quiz points to user {user_id} for attempt {attempt_id}")
        return AwardResult(awarded=True, new_balance=await self.store.get_balance(user_id), kind=RewardKind.QUIZ_PASS)

    async def award_completion_points(self, user_id: UUID, course_id: int) -> AwardResult:
        course = await self.store.get_course(course_id)
        if course is None:
            raise ResourceNotFoundError("Course", course_id)

        try:
            result = await self.session.execute(
                update(UserCourse)
                .where(
                    UserCourse.user_id == user_id,
                    UserCourse.course_id == course_id,
                    UserCourse.completed.is_(True),
                    UserCourse.completion_points_awarded.is_(False),
                )
                .values(completion_points_awarded=True)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                await self.session.commit()
                return await self._not_awarded(user_id, RewardKind.COMPLETION)

            await self.store.credit(user_id, course.completion_points, RewardKind.COMPLETION, str(course_id))
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise

        logger.info(f"Awarded {course.completion_points} completion points to user {user_id} for course {course_id}")
        return AwardResult(awarded=True, new_balance=await self.store.get_balance(user_id), kind=RewardKind.COMPLETION)
