"""Current user API endpoints for points, enrollments and chain status.

This router handles endpoints that operate on the currently authenticated user,
eliminating the need to pass user_id in the URL.
"""

import logging
from typing import Annotated

from fastapi import APIRouter, Query, Request

from learnchain.auth.dependencies import CurrentIdentity
from learnchain.database.session import DbSession
from learnchain.enrollment.schemas import UserCourseResponse
from learnchain.enrollment.service import EnrollmentService
from learnchain.ledger.dependencies import Ledger
from learnchain.ledger.outbox import ChainOutbox
from learnchain.progress.store import ProgressStore

from .schemas import (
    BlockchainStatusResponse,
    ChainTransactionResponse,
    CourseChainStatus,
    EnrollmentsResponse,
    PointEventResponse,
    PointsResponse,
)


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/user", tags=["current-user"])


@router.get("/points")
async def get_points(
    identity: CurrentIdentity,
    session: DbSession,
    limit: Annotated[int, Query(ge=1, le=500)] = 100,
) -> PointsResponse:
    """Get the current user's off-chain balance and recent point history."""
    store = ProgressStore(session)
    events = await store.list_point_events(identity.user_id, limit=limit)
    return PointsResponse(
        total_points=await store.get_balance(identity.user_id),
        history=[PointEventResponse.model_validate(event) for event in events],
    )


@router.get("/enrollments")
async def list_enrollments(
    request: Request, identity: CurrentIdentity, session: DbSession, ledger: Ledger
) -> EnrollmentsResponse:
    service = EnrollmentService(session, ledger, getattr(request.app.state, "settings", None))
    enrollments = await service.list_enrollments(identity.user_id)
    return EnrollmentsResponse(enrollments=[UserCourseResponse.model_validate(uc) for uc in enrollments])


@router.get("/blockchain-status")
async def get_blockchain_status(identity: CurrentIdentity, session: DbSession, ledger: Ledger) -> BlockchainStatusResponse:
    """Compare the database with the chain for the current user.

    Reads the ledger directly, so an unreachable RPC endpoint surfaces as 503.
    """
    store = ProgressStore(session)
    user = await store.get_user(identity.user_id)
    # Chain records are written against the registered wallet
    wallet = user.wallet_address.lower() if user is not None else identity.wallet_address

    courses = []
    for user_course in await store.list_user_courses(identity.user_id):
        enrolled_on_chain = await ledger.is_enrolled(wallet, user_course.course_id)
        completed_on_chain = await ledger.has_completed(wallet, user_course.course_id)
        courses.append(
            CourseChainStatus(
                course_id=user_course.course_id,
                completed_in_db=user_course.completed,
                enroll_on_chain_synced=user_course.enroll_on_chain_synced,
                on_chain_synced=user_course.on_chain_synced,
                enrolled_on_chain=enrolled_on_chain,
                completed_on_chain=completed_on_chain,
                in_sync=enrolled_on_chain and completed_on_chain == user_course.completed,
            )
        )

    return BlockchainStatusResponse(
        wallet_address=wallet,
        db_points=await store.get_balance(identity.user_id),
        chain_points=await ledger.points_of(wallet),
        courses=courses,
    )


@router.get("/transactions")
async def list_transactions(identity: CurrentIdentity, session: DbSession, ledger: Ledger) -> list[ChainTransactionResponse]:
    """List the current user's on-chain records and their delivery state."""
    rows = await ChainOutbox(session, ledger).list_for_user(identity.user_id)
    return [ChainTransactionResponse.model_validate(row) for row in rows]
