"""Business logic for lesson, quiz and course progress."""

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any
from uuid import UUID

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from learnchain.config import Settings, get_settings
from learnchain.courses.models import Lesson
from learnchain.exceptions import NotEnrolledError, ResourceNotFoundError, ValidationError
from learnchain.ledger.base import AbstractLedger
from learnchain.ledger.models import ChainTxKind
from learnchain.ledger.outbox import ChainOutbox

from .awards import AwardCoordinator
from .models import QuizAttempt, UserCourse, UserLesson
from .scoring import QuizScore, correct_answers, public_questions, score
from .store import ProgressStore


logger = logging.getLogger(__name__)

MAX_ATTEMPT_NUMBER_RETRIES = 3


class CourseState(str, Enum):
    NOT_ENROLLED = "not_enrolled"
    ENROLLED = "enrolled"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    SYNCED = "synced"


@dataclass(frozen=True)
class SyncResult:
    synced: bool
    tx_hash: str | None = None


@dataclass(frozen=True)
class CompletionResult:
    course_id: int
    progress_percent: int
    completed: bool
    just_completed: bool = False
    points_awarded: bool = False
    synced: bool = False
    tx_hash: str | None = None


@dataclass(frozen=True)
class LessonProgressResult:
    user_lesson: UserLesson
    points_awarded: bool
    new_balance: int
    course_progress: int
    course_completed: bool
    tx_hash: str | None = None


@dataclass(frozen=True)
class QuizSubmissionResult:
    attempt: QuizAttempt
    score: QuizScore
    points_awarded: bool
    new_balance: int
    course_progress: int
    course_completed: bool
    # Only revealed once the learner has passed
    correct_answers: list[int] | None = None
    tx_hash: str | None = None


@dataclass(frozen=True)
class LessonProgressView:
    lesson_id: UUID
    title: str
    watch_progress_percent: int
    watched: bool
    has_quiz: bool
    quiz_passed: bool


@dataclass(frozen=True)
class CourseProgress:
    course_id: int
    state: CourseState
    progress_percent: int
    completed: bool
    completed_at: datetime | None
    total_lessons: int
    watched_lessons: int
    total_quizzes: int
    passed_quizzes: int
    on_chain_synced: bool
    enroll_on_chain_synced: bool
    completion_tx_hash: str | None
    lessons: list[LessonProgressView] = field(default_factory=list)


@dataclass(frozen=True)
class LessonQuiz:
    quiz_id: UUID
    lesson_id: UUID
    passing_score_percent: int
    pass_points: int
    questions: list[dict[str, Any]]
    attempts: int
    passed: bool


def compute_progress(lessons: int, watched: int, quizzes: int, passed: int, requires_quiz_pass: bool) -> int:
    """Floored course progress under the course's completion policy."""
    if lessons == 0:
        return 0
    if requires_quiz_pass:
        return (100 * (watched + passed)) // (lessons + quizzes)
    return (100 * watched) // lessons


class ProgressService:
    """Orchestrates per (user, course) progress and its chain sync."""

    def __init__(self, session: AsyncSession, ledger: AbstractLedger, settings: Settings | None = None) -> None:
        """Initialize progress service."""
        self.session = session
        self.ledger = ledger
        self.settings = settings or get_settings()
        self.store = ProgressStore(session)
        self.awards = AwardCoordinator(session, self.store)
        self.outbox = ChainOutbox(session, ledger, self.settings)

    async def _require_lesson(self, lesson_id: UUID) -> Lesson:
        lesson = await self.store.get_lesson(lesson_id)
        if lesson is None:
            raise ResourceNotFoundError("Lesson", lesson_id)
        return lesson

    async def _require_enrollment(self, user_id: UUID, course_id: int) -> UserCourse:
        user_course = await self.store.get_user_course(user_id, course_id)
        if user_course is None:
            raise NotEnrolledError(user_id, course_id)
        return user_course

    async def start_lesson(self, user_id: UUID, lesson_id: UUID) -> UserLesson:
        lesson = await self._require_lesson(lesson_id)
        await self._require_enrollment(user_id, lesson.course_id)

        user_lesson, created = await self.store.get_or_create_user_lesson(user_id, lesson_id)
        if not created:
            user_lesson.last_watched_at = datetime.now(UTC)
            await self.session.commit()
        else:
            logger.info(f"User {user_id} started lesson {lesson_id}")
        return user_lesson

    async def update_lesson_progress(self, user_id: UUID, lesson_id: UUID, percent: int) -> LessonProgressResult:
        """Record a watch-progress ping.

        Progress is monotonic. Crossing ``WATCH_COMPLETION_THRESHOLD`` marks the
        lesson watched, awards its watch points once and re-checks the course.

        Raises
        ------
            ValidationError: Unknown lesson or percent outside [0, 100].
            NotEnrolledError: The user is not enrolled in the lesson's course.
        """
        if isinstance(percent, bool) or not isinstance(percent, int) or not 0 <= percent <= 100:  # noqa: PLR2004
            msg = f"Progress must be an integer percent between 0 and 100, got {percent!r}"
            raise ValidationError(msg)

        lesson = await self._require_lesson(lesson_id)
        course_id = lesson.course_id
        user_course = await self._require_enrollment(user_id, course_id)

        user_lesson, _ = await self.store.get_or_create_user_lesson(user_id, lesson_id)
        await self.store.raise_watch_progress(user_lesson, percent)
        await self.session.commit()
        await self.session.refresh(user_lesson)

        points_awarded = False
        completion: CompletionResult | None = None
        if user_lesson.watch_progress_percent >= self.settings.WATCH_COMPLETION_THRESHOLD:
            newly_watched = await self.store.mark_watched(user_lesson)
            await self.session.commit()
            if newly_watched:
                logger.info(f"User {user_id} watched lesson {lesson_id}")

            award = await self.awards.award_watch_points(user_id, lesson_id)
            points_awarded = award.awarded
            if newly_watched or award.awarded:
                completion = await self.check_course_completion(user_id, course_id)
            await self.session.refresh(user_lesson)

        if completion is None:
            await self.session.refresh(user_course)
            completion = CompletionResult(
                course_id=course_id,
                progress_percent=user_course.progress_percent,
                completed=user_course.completed,
            )

        return LessonProgressResult(
            user_lesson=user_lesson,
            points_awarded=points_awarded,
            new_balance=await self.store.get_balance(user_id),
            course_progress=completion.progress_percent,
            course_completed=completion.completed,
            tx_hash=completion.tx_hash,
        )

    async def _add_attempt(self, user_id: UUID, quiz_id: UUID, answers: list[Any], result: QuizScore) -> QuizAttempt:
        """Persist the next attempt, renumbering if a concurrent submit took the number."""
        retries = 0
        while True:
            try:
                attempt = await self.store.add_attempt(user_id, quiz_id, answers, result.percent, result.passed)
                await self.session.commit()
            except IntegrityError:
                await self.session.rollback()
                retries += 1
                if retries >= MAX_ATTEMPT_NUMBER_RETRIES:
                    raise
                logger.info(f"Attempt number taken for user {user_id} quiz {quiz_id}, retrying")
            else:
                return attempt

    async def submit_quiz(self, user_id: UUID, lesson_id: UUID, answers: list[Any]) -> QuizSubmissionResult:
        """Score and store a quiz attempt, awarding pass points on the first pass.

        Raises
        ------
            ValidationError: Unknown lesson, lesson not started, no quiz, or malformed answers.
            NotEnrolledError: The user is not enrolled in the lesson's course.
        """
        lesson = await self._require_lesson(lesson_id)
        course_id = lesson.course_id
        await self._require_enrollment(user_id, course_id)

        if await self.store.get_user_lesson(user_id, lesson_id) is None:
            msg = f"Lesson {lesson_id} must be started before taking its quiz"
            raise ValidationError(msg)
        quiz = await self.store.get_quiz_for_lesson(lesson_id)
        if quiz is None:
            msg = f"Lesson {lesson_id} has no quiz"
            raise ValidationError(msg)
        quiz_id = quiz.id
        answer_key = correct_answers(quiz)

        result = score(quiz, answers)
        attempt = await self._add_attempt(user_id, quiz_id, answers, result)
        logger.info(
            f"User {user_id} scored {result.percent}% on quiz {quiz_id} "
            f"(attempt {attempt.attempt_number}, passed={result.passed})"
        )

        points_awarded = False
        if result.passed:
            award = await self.awards.award_quiz_points(user_id, quiz_id, attempt.id)
            points_awarded = award.awarded

        completion = await self.check_course_completion(user_id, course_id)
        await self.session.refresh(attempt)

        has_passed = result.passed or await self.store.earliest_passing_attempt(user_id, quiz_id) is not None
        return QuizSubmissionResult(
            attempt=attempt,
            score=result,
            points_awarded=points_awarded,
            new_balance=await self.store.get_balance(user_id),
            course_progress=completion.progress_percent,
            course_completed=completion.completed,
            correct_answers=answer_key if has_passed else None,
            tx_hash=completion.tx_hash,
        )

    async def check_course_completion(self, user_id: UUID, course_id: int) -> CompletionResult:
        """Recompute course progress and complete the course once it reaches 100%.

        Completion enqueues the on-chain completion record in the same commit,
        then awards completion points and attempts the sync. A failed sync is
        left to the reconciliation sweep.
        """
        course = await self.store.get_course(course_id)
        if course is None:
            raise ResourceNotFoundError("Course", course_id)
        requires_quiz_pass = course.requires_quiz_pass
        user_course = await self._require_enrollment(user_id, course_id)

        lessons = await self.store.count_lessons(course_id)
        watched = await self.store.count_watched(user_id, course_id)
        quizzes = passed = 0
        if requires_quiz_pass:
            quizzes = await self.store.count_quizzes(course_id)
            passed = len(await self.store.passed_quiz_ids(user_id, course_id))
        progress = compute_progress(lessons, watched, quizzes, passed, requires_quiz_pass)

        just_completed = False
        if not user_course.completed:
            user_course.progress_percent = progress
            if lessons > 0 and progress == 100:  # noqa: PLR2004
                result = await self.session.execute(
                    update(UserCourse)
                    .where(UserCourse.id == user_course.id, UserCourse.completed.is_(False))
                    .values(completed=True, completed_at=datetime.now(UTC))
                    .execution_options(synchronize_session=False)
                )
                just_completed = result.rowcount == 1
                if just_completed:
                    user = await self.store.get_user(user_id)
                    await self.outbox.enqueue(user_id, course_id, ChainTxKind.COMPLETE, user.wallet_address)
            await self.session.commit()
            await self.session.refresh(user_course)

        if not user_course.completed:
            return CompletionResult(course_id=course_id, progress_percent=user_course.progress_percent, completed=False)

        if just_completed:
            logger.info(f"User {user_id} completed course {course_id}")

        award = await self.awards.award_completion_points(user_id, course_id)
        sync = SyncResult(synced=user_course.on_chain_synced, tx_hash=user_course.completion_tx_hash)
        if just_completed or award.awarded:
            sync = await self.sync_to_chain(user_id, course_id)

        return CompletionResult(
            course_id=course_id,
            progress_percent=user_course.progress_percent,
            completed=True,
            just_completed=just_completed,
            points_awarded=award.awarded,
            synced=sync.synced,
            tx_hash=sync.tx_hash,
        )

    async def sync_to_chain(self, user_id: UUID, course_id: int) -> SyncResult:
        """Mirror a completed course on-chain.

        Never raises for ledger problems: the failure is recorded on the outbox
        row and the course stays completed but unsynced. A row still backing off
        from an earlier failure is left alone and reported as unsynced.
        """
        user_course = await self.store.get_user_course(user_id, course_id)
        if user_course is None or not user_course.completed:
            return SyncResult(synced=False)
        if user_course.on_chain_synced:
            return SyncResult(synced=True, tx_hash=user_course.completion_tx_hash)
        if not user_course.enroll_on_chain_synced:
            # completeCourse reverts for a wallet the contract has not enrolled
            logger.info(f"Completion sync of course {course_id} for user {user_id} waits for the enrollment record")
            return SyncResult(synced=False)

        row = await self.outbox.get(user_id, course_id, ChainTxKind.COMPLETE)
        if row is None:
            user = await self.store.get_user(user_id)
            row = await self.outbox.enqueue(user_id, course_id, ChainTxKind.COMPLETE, user.wallet_address)
            await self.session.commit()

        tx_hash = await self.outbox.dispatch(row)
        await self.session.refresh(user_course)
        if not user_course.on_chain_synced:
            logger.warning(f"Completion of course {course_id} by user {user_id} not yet on-chain; deferred")
        return SyncResult(synced=user_course.on_chain_synced, tx_hash=tx_hash or user_course.completion_tx_hash)

    async def course_state(self, user_id: UUID, course_id: int) -> CourseState:
        user_course = await self.store.get_user_course(user_id, course_id)
        if user_course is None:
            return CourseState.NOT_ENROLLED
        if user_course.completed:
            return CourseState.SYNCED if user_course.on_chain_synced else CourseState.COMPLETED
        if await self.store.list_user_lessons(user_id, course_id):
            return CourseState.IN_PROGRESS
        return CourseState.ENROLLED

    async def get_course_progress(self, user_id: UUID, course_id: int) -> CourseProgress:
        course = await self.store.get_course(course_id)
        if course is None:
            raise ResourceNotFoundError("Course", course_id)

        user_course = await self.store.get_user_course(user_id, course_id)
        user_lessons = {ul.lesson_id: ul for ul in await self.store.list_user_lessons(user_id, course_id)}
        passed_quiz_ids = await self.store.passed_quiz_ids(user_id, course_id)

        lesson_views = []
        for lesson in await self.store.list_lessons(course_id):
            user_lesson = user_lessons.get(lesson.id)
            quiz = await self.store.get_quiz_for_lesson(lesson.id)
            lesson_views.append(
                LessonProgressView(
                    lesson_id=lesson.id,
                    title=lesson.title,
                    watch_progress_percent=user_lesson.watch_progress_percent if user_lesson else 0,
                    watched=bool(user_lesson and user_lesson.watched),
                    has_quiz=quiz is not None,
                    quiz_passed=quiz is not None and quiz.id in passed_quiz_ids,
                )
            )

        return CourseProgress(
            course_id=course_id,
            state=await self.course_state(user_id, course_id),
            progress_percent=user_course.progress_percent if user_course else 0,
            completed=bool(user_course and user_course.completed),
            completed_at=user_course.completed_at if user_course else None,
            total_lessons=len(lesson_views),
            watched_lessons=sum(1 for view in lesson_views if view.watched),
            total_quizzes=sum(1 for view in lesson_views if view.has_quiz),
            passed_quizzes=sum(1 for view in lesson_views if view.quiz_passed),
            on_chain_synced=bool(user_course and user_course.on_chain_synced),
            enroll_on_chain_synced=bool(user_course and user_course.enroll_on_chain_synced),
            completion_tx_hash=user_course.completion_tx_hash if user_course else None,
            lessons=lesson_views,
        )

    async def get_lesson_quiz(self, user_id: UUID, lesson_id: UUID) -> LessonQuiz:
        """Return a lesson's quiz for the learner, without the answer key."""
        lesson = await self._require_lesson(lesson_id)
        await self._require_enrollment(user_id, lesson.course_id)
        quiz = await self.store.get_quiz_for_lesson(lesson_id)
        if quiz is None:
            raise ResourceNotFoundError("Quiz", lesson_id)

        return LessonQuiz(
            quiz_id=quiz.id,
            lesson_id=lesson_id,
            passing_score_percent=quiz.passing_score_percent,
            pass_points=quiz.pass_points,
            questions=public_questions(quiz),
            attempts=await self.store.count_attempts(user_id, quiz.id),
            passed=await self.store.earliest_passing_attempt(user_id, quiz.id) is not None,
        )
