"""Schemas for the enrollment API."""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class UserCourseResponse(BaseModel):
    """Schema for a user's enrollment in a course."""

    course_id: int
    enrolled_at: datetime
    points_spent: int
    progress_percent: int
    completed: bool
    completed_at: datetime | None = None
    completion_points_awarded: bool
    on_chain_synced: bool
    enroll_on_chain_synced: bool
    enroll_tx_hash: str | None = None
    completion_tx_hash: str | None = None

    model_config = ConfigDict(from_attributes=True)


class EnrollmentResponse(BaseModel):
    """Schema for the result of an enrollment request."""

    enrollment: UserCourseResponse
    already_enrolled: bool
    points_spent: int
    new_balance: int
    enroll_on_chain_synced: bool
    tx_hash: str | None = None


class EnrollmentStatusResponse(BaseModel):
    """Schema for enrollment eligibility."""

    course_id: int
    enrolled: bool
    completed: bool
    eligible: bool
    balance: int
    enrollment_cost: int
    min_points_to_access: int
    reasons: list[str] = Field(default_factory=list)
