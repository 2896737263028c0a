"""Database models for lesson, quiz and course progress."""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column

from learnchain.database.base import Base


def _utcnow() -> datetime:
    return datetime.now(UTC)


class RewardKind(str, Enum):
    """The independently-idempotent point categories, plus the one debit."""

    WATCH = "watch"
    QUIZ_PASS = "quiz_pass"
    COMPLETION = "completion"
    ENROLLMENT_SPEND = "enrollment_spend"


class UserLesson(Base):
    """Per (user, lesson) watch state. One row per pair, mutated in place."""

    __tablename__ = "user_lessons"
    __table_args__ = (UniqueConstraint("user_id", "lesson_id", name="uq_user_lesson"),)

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    lesson_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("lessons.id", ondelete="CASCADE"), nullable=False, index=True
    )
    watch_progress_percent: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    watched: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    watched_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    watch_points_awarded: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    quiz_points_awarded: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)
    last_watched_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class UserCourse(Base):
    """Per (user, course) enrollment, completion and on-chain mirror state."""

    __tablename__ = "user_courses"
    __table_args__ = (UniqueConstraint("user_id", "course_id", name="uq_user_course"),)

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    course_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("courses.id", ondelete="CASCADE"), nullable=False, index=True
    )
    enrolled_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)
    points_spent: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    progress_percent: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    completed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completion_points_awarded: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    # Completion mirrored on-chain
    on_chain_synced: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, index=True)
    enroll_on_chain_synced: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, index=True)
    enroll_tx_hash: Mapped[str | None] = mapped_column(String(66), nullable=True)
    completion_tx_hash: Mapped[str | None] = mapped_column(String(66), nullable=True)

    def __repr__(self) -> str:
        """Return string representation of the enrollment."""
        return (
            f"<UserCourse(user_id={self.user_id}, course_id={self.course_id}, "
            f"completed={self.completed}, synced={self.on_chain_synced})>"
        )


class QuizAttempt(Base):
    """One scored quiz submission. Append-only; only ``points_awarded`` ever flips."""

    __tablename__ = "quiz_attempts"
    __table_args__ = (
        Index("ix_quiz_attempts_user_quiz", "user_id", "quiz_id"),
        UniqueConstraint("user_id", "quiz_id", "attempt_number", name="uq_quiz_attempt_number"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    quiz_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("quizzes.id", ondelete="CASCADE"), nullable=False
    )
    answers: Mapped[list[Any]] = mapped_column(JSON, nullable=False)
    score_percent: Mapped[int] = mapped_column(Integer, nullable=False)
    passed: Mapped[bool] = mapped_column(Boolean, nullable=False)
    attempt_number: Mapped[int] = mapped_column(Integer, nullable=False)
    points_awarded: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)


class PointEvent(Base):
    """Append-only balance history, written in the same commit as the balance change."""

    __tablename__ = "point_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    kind: Mapped[str] = mapped_column(String(32), nullable=False)
    delta: Mapped[int] = mapped_column(Integer, nullable=False)
    subject_id: Mapped[str] = mapped_column(String(64), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)
