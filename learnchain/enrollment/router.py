"""Course enrollment API endpoints."""

import logging

from fastapi import APIRouter, Request

from learnchain.auth.dependencies import CurrentIdentity
from learnchain.database.session import DbSession
from learnchain.ledger.dependencies import Ledger

from .schemas import EnrollmentResponse, EnrollmentStatusResponse, UserCourseResponse
from .service import EnrollmentService


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/courses", tags=["enrollment"])


def _service(request: Request, session: DbSession, ledger: Ledger) -> EnrollmentService:
    return EnrollmentService(session, ledger, getattr(request.app.state, "settings", None))


@router.post("/{course_id}/enroll")
async def enroll(
    course_id: int, request: Request, identity: CurrentIdentity, session: DbSession, ledger: Ledger
) -> EnrollmentResponse:
    """Enroll the current user; repeating the call returns the existing enrollment."""
    result = await _service(request, session, ledger).enroll(identity.user_id, identity.wallet_address, course_id)
    return EnrollmentResponse(
        enrollment=UserCourseResponse.model_validate(result.user_course),
        already_enrolled=result.already_enrolled,
        points_spent=result.points_spent,
        new_balance=result.new_balance,
        enroll_on_chain_synced=result.enroll_on_chain_synced,
        tx_hash=result.tx_hash,
    )


@router.get("/{course_id}/enrollment-status")
async def enrollment_status(
    course_id: int, request: Request, identity: CurrentIdentity, session: DbSession, ledger: Ledger
) -> EnrollmentStatusResponse:
    status = await _service(request, session, ledger).enrollment_status(identity.user_id, course_id)
    return EnrollmentStatusResponse(
        course_id=status.course_id,
        enrolled=status.enrolled,
        completed=status.completed,
        eligible=status.eligible,
        balance=status.balance,
        enrollment_cost=status.enrollment_cost,
        min_points_to_access=status.min_points_to_access,
        reasons=status.reasons,
    )
