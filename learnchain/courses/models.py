"""SQLAlchemy models for courses, lessons and quizzes."""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from learnchain.database.base import Base


class Course(Base):
    """A course. Its primary key is the course id registered on-chain."""

    __tablename__ = "courses"
    __table_args__ = (
        CheckConstraint("completion_points >= 0", name="ck_courses_completion_points"),
        CheckConstraint("enrollment_cost >= 0", name="ck_courses_enrollment_cost"),
        CheckConstraint("min_points_to_access >= 0", name="ck_courses_min_points"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    level: Mapped[str] = mapped_column(String(50), nullable=False, default="Beginner")
    is_published: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    completion_points: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    enrollment_cost: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    min_points_to_access: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_lessons: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    # Completion policy: False = watching every lesson completes the course,
    # True = every lesson's quiz must also be passed.
    requires_quiz_pass: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )

    lessons: Mapped[list[Lesson]] = relationship(
        "Lesson",
        back_populates="course",
        cascade="all, delete-orphan",
        order_by="Lesson.order_index",
    )


class Lesson(Base):
    """A video lesson inside a course."""

    __tablename__ = "lessons"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    course_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("courses.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    title: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    order_index: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    watch_points: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
    )

    course: Mapped[Course] = relationship("Course", back_populates="lessons")
    quiz: Mapped[Quiz | None] = relationship("Quiz", back_populates="lesson", uselist=False)


class Quiz(Base):
    """The multiple-choice quiz attached to a lesson.

    ``questions`` is a list of ``{"id", "question", "options", "correct_answer"}``
    where ``correct_answer`` is an index into ``options``.
    """

    __tablename__ = "quizzes"
    __table_args__ = (
        CheckConstraint(
            "passing_score_percent >= 0 AND passing_score_percent <= 100",
            name="ck_quizzes_passing_score",
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    lesson_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("lessons.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    questions: Mapped[list[dict[str, Any]]] = mapped_column(JSON, nullable=False, default=list)
    passing_score_percent: Mapped[int] = mapped_column(Integer, nullable=False, default=70)
    pass_points: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    lesson: Mapped[Lesson] = relationship("Lesson", back_populates="quiz")
