from .base import Base
from .engine import create_app_engine, engine
from .session import DbSession, async_session_maker, create_session_factory, get_db_session


__all__ = [
    "Base",
    "DbSession",
    "async_session_maker",
    "create_app_engine",
    "create_session_factory",
    "engine",
    "get_db_session",
]
