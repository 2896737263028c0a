"""Shared fixtures: a throwaway SQLite database, a scriptable ledger and seed helpers."""

import os
import tempfile
from collections.abc import AsyncGenerator, Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path
from uuid import uuid4

import pytest
import pytest_asyncio


# Configure the app for tests before anything imports learnchain
_DEFAULT_DB = Path(tempfile.mkdtemp(prefix="learnchain-tests-")) / "import.db"
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_DEFAULT_DB}"
os.environ["ENVIRONMENT"] = "test"
os.environ["LEDGER_PROVIDER"] = "local"
os.environ["RECONCILE_ENABLED"] = "false"
os.environ["LEDGER_VERIFY_ON_STARTUP"] = "false"

from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker  # noqa: E402

from learnchain.auth.dependencies import USER_ID_HEADER, WALLET_HEADER  # noqa: E402
from learnchain.config.settings import Settings, get_settings  # noqa: E402
from learnchain.courses.models import Course, Lesson, Quiz  # noqa: E402
from learnchain.database.engine import create_app_engine  # noqa: E402
from learnchain.database.init import drop_database, init_database  # noqa: E402
from learnchain.database.session import create_session_factory, get_db_session  # noqa: E402
from learnchain.enrollment.service import EnrollmentService  # noqa: E402
from learnchain.ledger.base import LedgerTxRequest, SubmittedTx  # noqa: E402
from learnchain.ledger.exceptions import LedgerSubmissionError, LedgerUnavailableError  # noqa: E402
from learnchain.ledger.local import LocalLedger  # noqa: E402
from learnchain.user.models import User  # noqa: E402


QUIZ_QUESTIONS = [
    {"id": "q1", "question": "2 + 2?", "options": ["4", "3", "5", "22"], "correct_answer": 0},
    {"id": "q2", "question": "Capital of France?", "options": ["Rome", "Paris", "Madrid", "Oslo"], "correct_answer": 1},
    {"id": "q3", "question": "Largest planet?", "options": ["Mars", "Venus", "Jupiter", "Earth"], "correct_answer": 2},
    {"id": "q4", "question": "H2O is?", "options": ["Salt", "Air", "Fire", "Water"], "correct_answer": 3},
]
ALL_CORRECT = [0, 1, 2, 3]
THREE_CORRECT = [0, 1, 2, 0]  # 75%
ONE_CORRECT = [0, 0, 0, 0]  # 25%


class ScriptedLedger(LocalLedger):
    """Local ledger whose failures can be switched on per test.

    - ``outage``: every call raises ``LedgerUnavailableError``.
    - ``reject_submissions``: reads work, submissions revert.
    - ``drop_transactions``: submissions return a hash but never get mined.
    """

    def __init__(self) -> None:
        super().__init__()
        self.outage = False
        self.reject_submissions = False
        self.drop_transactions = False
        self.dropped: list[LedgerTxRequest] = []

    def _check_available(self) -> None:
        if self.outage:
            msg = "RPC endpoint unreachable"
            raise LedgerUnavailableError(msg)

    async def is_enrolled(self, wallet: str, course_id: int) -> bool:
        self._check_available()
        return await super().is_enrolled(wallet, course_id)

    async def has_completed(self, wallet: str, course_id: int) -> bool:
        self._check_available()
        return await super().has_completed(wallet, course_id)

    async def points_of(self, wallet: str) -> int:
        self._check_available()
        return await super().points_of(wallet)

    async def submit(self, request: LedgerTxRequest) -> SubmittedTx:
        self._check_available()
        if self.reject_submissions:
            msg = "execution reverted"
            raise LedgerSubmissionError(msg)
        if self.drop_transactions:
            self.dropped.append(request)
            return SubmittedTx(tx_hash=f"0x{uuid4().hex}{uuid4().hex}")
        return await super().submit(request)


@dataclass
class SeededCourse:
    course: Course
    lessons: list[Lesson]
    quizzes: list[Quiz] = field(default_factory=list)

    @property
    def id(self) -> int:
        return self.course.id


@pytest.fixture
def settings() -> Settings:
    """Settings with immediate retries so the sweep can be driven step by step."""
    return get_settings().model_copy(
        update={
            "RECONCILE_MAX_ATTEMPTS": 3,
            "RECONCILE_BACKOFF_BASE_SECONDS": 0,
            "RECONCILE_UNCONFIRMED_TIMEOUT_SECONDS": 0,
        }
    )


@pytest_asyncio.fixture
async def db_engine(tmp_path: Path) -> AsyncGenerator[AsyncEngine, None]:
    test_engine = create_app_engine(f"sqlite+aiosqlite:///{tmp_path / 'learnchain.db'}")
    await init_database(test_engine)
    yield test_engine
    await drop_database(test_engine)
    await test_engine.dispose()


@pytest.fixture
def session_factory(db_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return create_session_factory(db_engine)


@pytest_asyncio.fixture
async def db_session(session_factory: async_sessionmaker[AsyncSession]) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest.fixture
def ledger() -> ScriptedLedger:
    return ScriptedLedger()


@pytest_asyncio.fixture
async def user(db_session: AsyncSession) -> User:
    return await _create_user(db_session, total_points=0)


@pytest.fixture
def make_user(db_session: AsyncSession) -> Callable[..., Awaitable[User]]:
    async def _make(total_points: int = 0) -> User:
        return await _create_user(db_session, total_points=total_points)

    return _make


async def _create_user(session: AsyncSession, total_points: int) -> User:
    user = User(id=uuid4(), wallet_address=f"0x{uuid4().hex}{uuid4().hex[:8]}", total_points=total_points)
    session.add(user)
    await session.commit()
    return user


@pytest.fixture
def make_course(db_session: AsyncSession) -> Callable[..., Awaitable[SeededCourse]]:
    """Create a published course with ``lessons`` lessons, optionally each with a quiz."""
    next_id = iter(range(1, 10_000))

    async def _make(
        lessons: int = 2,
        watch_points: int = 50,
        completion_points: int = 500,
        enrollment_cost: int = 0,
        min_points_to_access: int = 0,
        with_quiz: bool = False,
        pass_points: int = 25,
        requires_quiz_pass: bool = False,
        is_published: bool = True,
    ) -> SeededCourse:
        course = Course(
            id=next(next_id),
            title="Intro to Web3",
            is_published=is_published,
            completion_points=completion_points,
            enrollment_cost=enrollment_cost,
            min_points_to_access=min_points_to_access,
            total_lessons=lessons,
            requires_quiz_pass=requires_quiz_pass,
        )
        db_session.add(course)

        seeded = SeededCourse(course=course, lessons=[])
        for index in range(lessons):
            lesson = Lesson(
                id=uuid4(),
                course_id=course.id,
                title=f"Lesson {index + 1}",
                order_index=index,
                watch_points=watch_points,
            )
            db_session.add(lesson)
            seeded.lessons.append(lesson)
            if with_quiz:
                quiz = Quiz(
                    id=uuid4(),
                    lesson_id=lesson.id,
                    questions=QUIZ_QUESTIONS,
                    passing_score_percent=70,
                    pass_points=pass_points,
                )
                db_session.add(quiz)
                seeded.quizzes.append(quiz)

        await db_session.commit()
        return seeded

    return _make


@pytest.fixture
def enroll(
    db_session: AsyncSession, ledger: ScriptedLedger, settings: Settings
) -> Callable[[User, SeededCourse], Awaitable[None]]:
    async def _enroll(user: User, course: SeededCourse) -> None:
        await EnrollmentService(db_session, ledger, settings).enroll(user.id, user.wallet_address, course.id)

    return _enroll


@pytest_asyncio.fixture
async def client_factory(
    session_factory: async_sessionmaker[AsyncSession], ledger: ScriptedLedger, settings: Settings
) -> AsyncGenerator[Callable[..., Awaitable[AsyncClient]], None]:
    """Build HTTP clients against a fresh app, optionally acting as ``user``."""
    from learnchain.main import create_app

    app = create_app(settings)
    app.state.ledger = ledger

    async def _get_test_session() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db_session] = _get_test_session

    clients: list[AsyncClient] = []

    async def _factory(user: User | None = None) -> AsyncClient:
        headers = {}
        if user is not None:
            headers = {USER_ID_HEADER: str(user.id), WALLET_HEADER: user.wallet_address}
        client = AsyncClient(transport=ASGITransport(app=app), base_url="http://test", headers=headers)
        clients.append(client)
        return client

    yield _factory

    for client in clients:
        await client.aclose()
    app.dependency_overrides.clear()
