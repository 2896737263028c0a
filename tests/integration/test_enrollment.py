"""Enrollment eligibility, point spend and the on-chain enrollment record."""

import pytest
from sqlalchemy import select

from learnchain.enrollment.service import EnrollmentService
from learnchain.exceptions import InsufficientPointsError, ResourceNotFoundError, ValidationError, WalletMismatchError
from learnchain.ledger.models import ChainTransaction, ChainTxKind, ChainTxStatus
from learnchain.progress.models import PointEvent, RewardKind, UserCourse
from learnchain.user.models import User


async def _balance(session_factory, user_id) -> int:
    async with session_factory() as session:
        return await session.scalar(select(User.total_points).where(User.id == user_id))


@pytest.mark.asyncio
async def test_enrollment_spends_points_and_syncs(
    db_session, session_factory, ledger, settings, make_user, make_course
):
    user = await make_user(total_points=300)
    course = await make_course(enrollment_cost=200)

    result = await EnrollmentService(db_session, ledger, settings).enroll(user.id, user.wallet_address, course.id)

    assert result.already_enrolled is False
    assert result.points_spent == 200
    assert result.new_balance == 100
    assert result.enroll_on_chain_synced is True
    assert result.tx_hash is not None
    assert await ledger.is_enrolled(user.wallet_address, course.id) is True
    assert await _balance(session_factory, user.id) == 100

    async with session_factory() as session:
        events = (await session.execute(select(PointEvent).where(PointEvent.user_id == user.id))).scalars().all()
        row = (
            await session.execute(select(ChainTransaction).where(ChainTransaction.kind == ChainTxKind.ENROLL.value))
        ).scalar_one()
    assert [(e.kind, e.delta, e.subject_id) for e in events] == [
        (RewardKind.ENROLLMENT_SPEND.value, -200, str(course.id))
    ]
    assert row.status == ChainTxStatus.SUBMITTED.value
    assert row.tx_hash == result.tx_hash
    assert row.wallet_address == user.wallet_address


@pytest.mark.asyncio
async def test_enrollment_is_idempotent(db_session, session_factory, ledger, settings, make_user, make_course):
    user = await make_user(total_points=300)
    course = await make_course(enrollment_cost=200)
    service = EnrollmentService(db_session, ledger, settings)

    first = await service.enroll(user.id, user.wallet_address, course.id)
    second = await service.enroll(user.id, user.wallet_address, course.id)

    assert second.already_enrolled is True
    assert second.points_spent == 0
    assert second.new_balance == 100
    assert second.user_course.id == first.user_course.id
    assert len(ledger.submitted) == 1

    async with session_factory() as session:
        rows = (await session.execute(select(UserCourse).where(UserCourse.user_id == user.id))).scalars().all()
    assert len(rows) == 1


@pytest.mark.asyncio
async def test_insufficient_points(db_session, session_factory, ledger, settings, make_user, make_course):
    user = await make_user(total_points=100)
    course = await make_course(enrollment_cost=200)

    with pytest.raises(InsufficientPointsError) as exc_info:
        await EnrollmentService(db_session, ledger, settings).enroll(user.id, user.wallet_address, course.id)

    assert (exc_info.value.required, exc_info.value.available) == (200, 100)
    assert await _balance(session_factory, user.id) == 100
    assert ledger.submitted == []
    async with session_factory() as session:
        assert (await session.execute(select(UserCourse))).first() is None
        assert (await session.execute(select(ChainTransaction))).first() is None


@pytest.mark.asyncio
async def test_access_floor_is_not_spent(db_session, session_factory, ledger, settings, make_user, make_course):
    course = await make_course(enrollment_cost=0, min_points_to_access=500)
    poor = await make_user(total_points=499)
    rich = await make_user(total_points=500)
    service = EnrollmentService(db_session, ledger, settings)

    with pytest.raises(InsufficientPointsError) as exc_info:
        await service.enroll(poor.id, poor.wallet_address, course.id)
    assert exc_info.value.reason == "course access"

    result = await service.enroll(rich.id, rich.wallet_address, course.id)
    assert result.points_spent == 0
    assert await _balance(session_factory, rich.id) == 500


@pytest.mark.asyncio
async def test_unpublished_and_unknown_courses(db_session, ledger, settings, user, make_course):
    draft = await make_course(is_published=False)
    service = EnrollmentService(db_session, ledger, settings)

    with pytest.raises(ValidationError, match="not open for enrollment"):
        await service.enroll(user.id, user.wallet_address, draft.id)
    with pytest.raises(ResourceNotFoundError):
        await service.enroll(user.id, user.wallet_address, 9999)


@pytest.mark.asyncio
async def test_enrollment_stands_when_ledger_is_down(
    db_session, session_factory, ledger, settings, make_user, make_course
):
    user = await make_user(total_points=300)
    course = await make_course(enrollment_cost=200)
    ledger.outage = True

    result = await EnrollmentService(db_session, ledger, settings).enroll(user.id, user.wallet_address, course.id)

    assert result.already_enrolled is False
    assert result.enroll_on_chain_synced is False
    assert result.tx_hash is None
    assert await _balance(session_factory, user.id) == 100

    async with session_factory() as session:
        row = (await session.execute(select(ChainTransaction))).scalar_one()
    assert row.status == ChainTxStatus.PENDING.value
    assert row.attempts == 1


@pytest.mark.asyncio
async def test_enrollment_status(db_session, ledger, settings, make_user, make_course):
    user = await make_user(total_points=50)
    course = await make_course(enrollment_cost=100, min_points_to_access=75)
    service = EnrollmentService(db_session, ledger, settings)

    status = await service.enrollment_status(user.id, course.id)

    assert status.enrolled is False
    assert status.eligible is False
    assert status.balance == 50
    assert len(status.reasons) == 2


@pytest.mark.asyncio
async def test_enrollment_requires_the_registered_wallet(
    db_session, session_factory, ledger, settings, make_user, make_course
):
    user = await make_user(total_points=300)
    course = await make_course(enrollment_cost=200)
    service = EnrollmentService(db_session, ledger, settings)

    with pytest.raises(WalletMismatchError):
        await service.enroll(user.id, "0x" + "34" * 20, course.id)

    assert await _balance(session_factory, user.id) == 300
    assert ledger.submitted == []
    async with session_factory() as session:
        assert (await session.execute(select(UserCourse))).first() is None

    # Case differences are not a different wallet
    result = await service.enroll(user.id, user.wallet_address.upper().replace("0X", "0x"), course.id)

    assert result.enroll_on_chain_synced is True
    assert await ledger.is_enrolled(user.wallet_address, course.id) is True
