"""Schemas for the current-user API."""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from learnchain.enrollment.schemas import UserCourseResponse


class PointEventResponse(BaseModel):
    """Schema for one balance change."""

    kind: str
    delta: int
    subject_id: str
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class PointsResponse(BaseModel):
    """Schema for the off-chain balance and its recent history."""

    total_points: int
    history: list[PointEventResponse] = Field(default_factory=list)


class CourseChainStatus(BaseModel):
    """Database and chain view of one enrollment, side by side."""

    course_id: int
    enrolled_in_db: bool = True
    completed_in_db: bool
    enroll_on_chain_synced: bool
    on_chain_synced: bool
    enrolled_on_chain: bool
    completed_on_chain: bool
    in_sync: bool


class BlockchainStatusResponse(BaseModel):
    """Schema for comparing a user's off-chain and on-chain state."""

    wallet_address: str
    db_points: int
    chain_points: int
    courses: list[CourseChainStatus] = Field(default_factory=list)


class ChainTransactionResponse(BaseModel):
    """Schema for an outbox row."""

    id: UUID
    course_id: int
    kind: str
    status: str
    tx_hash: str | None = None
    attempts: int
    last_error: str | None = None
    next_attempt_at: datetime | None = None
    submitted_at: datetime | None = None
    confirmed_at: datetime | None = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class EnrollmentsResponse(BaseModel):
    enrollments: list[UserCourseResponse] = Field(default_factory=list)
