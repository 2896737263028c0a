"""Schemas for the lesson, quiz and course progress API."""

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class LessonProgressUpdate(BaseModel):
    """Schema for a watch-progress ping."""

    progress_percent: int = Field(..., ge=0, le=100, description="Highest percent of the video watched so far")


class QuizSubmission(BaseModel):
    """Schema for submitting quiz answers."""

    answers: list[Any] = Field(..., description="One option index per question, in question order")


class UserLessonResponse(BaseModel):
    """Schema for a user's state on one lesson."""

    lesson_id: UUID
    watch_progress_percent: int
    watched: bool
    watched_at: datetime | None = None
    watch_points_awarded: bool
    quiz_points_awarded: bool
    started_at: datetime
    last_watched_at: datetime | None = None

    model_config = ConfigDict(from_attributes=True)


class LessonProgressResponse(BaseModel):
    """Schema for the result of a progress ping."""

    lesson: UserLessonResponse
    points_awarded: bool
    new_balance: int
    course_progress: int
    course_completed: bool
    tx_hash: str | None = None


class QuizSubmissionResponse(BaseModel):
    """Schema for a scored quiz attempt."""

    attempt_id: UUID
    attempt_number: int
    score_percent: int
    correct_count: int
    passed: bool
    points_awarded: bool
    new_balance: int
    course_progress: int
    course_completed: bool
    correct_answers: list[int] | None = Field(None, description="Present once the quiz has been passed")
    tx_hash: str | None = None


class QuizResponse(BaseModel):
    """Schema for a lesson quiz without its answer key."""

    quiz_id: UUID
    lesson_id: UUID
    passing_score_percent: int
    pass_points: int
    questions: list[dict[str, Any]]
    attempts: int
    passed: bool


class LessonStatus(BaseModel):
    """Schema for one lesson inside a course progress response."""

    lesson_id: UUID
    title: str
    watch_progress_percent: int
    watched: bool
    has_quiz: bool
    quiz_passed: bool


class CourseProgressResponse(BaseModel):
    """Schema for course progress response."""

    course_id: int
    state: str
    progress_percent: int
    completed: bool
    completed_at: datetime | None = None
    total_lessons: int
    watched_lessons: int
    total_quizzes: int
    passed_quizzes: int
    on_chain_synced: bool
    enroll_on_chain_synced: bool
    completion_tx_hash: str | None = None
    lessons: list[LessonStatus] = Field(default_factory=list)


class SyncResponse(BaseModel):
    """Schema for a manual completion sync request."""

    course_id: int
    synced: bool
    tx_hash: str | None = None
