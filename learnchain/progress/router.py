"""Lesson, quiz and course progress API endpoints."""

import logging
from uuid import UUID

from fastapi import APIRouter, Request

from learnchain.auth.dependencies import CurrentIdentity
from learnchain.database.session import DbSession
from learnchain.ledger.dependencies import Ledger

from .schemas import (
    CourseProgressResponse,
    LessonProgressResponse,
    LessonProgressUpdate,
    LessonStatus,
    QuizResponse,
    QuizSubmission,
    QuizSubmissionResponse,
    SyncResponse,
    UserLessonResponse,
)
from .service import ProgressService


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1", tags=["progress"])


def _service(request: Request, session: DbSession, ledger: Ledger) -> ProgressService:
    return ProgressService(session, ledger, getattr(request.app.state, "settings", None))


@router.post("/lessons/{lesson_id}/start")
async def start_lesson(
    lesson_id: UUID, request: Request, identity: CurrentIdentity, session: DbSession, ledger: Ledger
) -> UserLessonResponse:
    """Open a lesson for the current user."""
    user_lesson = await _service(request, session, ledger).start_lesson(identity.user_id, lesson_id)
    return UserLessonResponse.model_validate(user_lesson)


@router.post("/lessons/{lesson_id}/progress")
async def update_lesson_progress(
    lesson_id: UUID,
    update: LessonProgressUpdate,
    request: Request,
    identity: CurrentIdentity,
    session: DbSession,
    ledger: Ledger,
) -> LessonProgressResponse:
    """Record watch progress.

    Succeeds even when the ledger is down; the chain record is retried by the
    reconciliation sweep.
    """
    result = await _service(request, session, ledger).update_lesson_progress(
        identity.user_id, lesson_id, update.progress_percent
    )
    return LessonProgressResponse(
        lesson=UserLessonResponse.model_validate(result.user_lesson),
        points_awarded=result.points_awarded,
        new_balance=result.new_balance,
        course_progress=result.course_progress,
        course_completed=result.course_completed,
        tx_hash=result.tx_hash,
    )


@router.get("/lessons/{lesson_id}/quiz")
async def get_lesson_quiz(
    lesson_id: UUID, request: Request, identity: CurrentIdentity, session: DbSession, ledger: Ledger
) -> QuizResponse:
    quiz = await _service(request, session, ledger).get_lesson_quiz(identity.user_id, lesson_id)
    return QuizResponse(
        quiz_id=quiz.quiz_id,
        lesson_id=quiz.lesson_id,
        passing_score_percent=quiz.passing_score_percent,
        pass_points=quiz.pass_points,
        questions=quiz.questions,
        attempts=quiz.attempts,
        passed=quiz.passed,
    )


@router.post("/lessons/{lesson_id}/quiz/submit")
async def submit_quiz(
    lesson_id: UUID,
    submission: QuizSubmission,
    request: Request,
    identity: CurrentIdentity,
    session: DbSession,
    ledger: Ledger,
) -> QuizSubmissionResponse:
    """Score a quiz attempt; pass points are credited on the first pass only."""
    result = await _service(request, session, ledger).submit_quiz(identity.user_id, lesson_id, submission.answers)
    return QuizSubmissionResponse(
        attempt_id=result.attempt.id,
        attempt_number=result.attempt.attempt_number,
        score_percent=result.score.percent,
        correct_count=result.score.correct_count,
        passed=result.score.passed,
        points_awarded=result.points_awarded,
        new_balance=result.new_balance,
        course_progress=result.course_progress,
        course_completed=result.course_completed,
        correct_answers=result.correct_answers,
        tx_hash=result.tx_hash,
    )


@router.get("/courses/{course_id}/progress")
async def get_course_progress(
    course_id: int, request: Request, identity: CurrentIdentity, session: DbSession, ledger: Ledger
) -> CourseProgressResponse:
    progress = await _service(request, session, ledger).get_course_progress(identity.user_id, course_id)
    return CourseProgressResponse(
        course_id=progress.course_id,
        state=progress.state.value,
        progress_percent=progress.progress_percent,
        completed=progress.completed,
        completed_at=progress.completed_at,
        total_lessons=progress.total_lessons,
        watched_lessons=progress.watched_lessons,
        total_quizzes=progress.total_quizzes,
        passed_quizzes=progress.passed_quizzes,
        on_chain_synced=progress.on_chain_synced,
        enroll_on_chain_synced=progress.enroll_on_chain_synced,
        completion_tx_hash=progress.completion_tx_hash,
        lessons=[
            LessonStatus(
                lesson_id=view.lesson_id,
                title=view.title,
                watch_progress_percent=view.watch_progress_percent,
                watched=view.watched,
                has_quiz=view.has_quiz,
                quiz_passed=view.quiz_passed,
            )
            for view in progress.lessons
        ],
    )


@router.post("/courses/{course_id}/sync")
async def sync_course(
    course_id: int, request: Request, identity: CurrentIdentity, session: DbSession, ledger: Ledger
) -> SyncResponse:
    """Retry the on-chain completion record now, unless its retry backoff is still running."""
    result = await _service(request, session, ledger).sync_to_chain(identity.user_id, course_id)
    return SyncResponse(course_id=course_id, synced=result.synced, tx_hash=result.tx_hash)
