"""Database package for the connectors service."""

from connectors.db.base import Base
from connectors.db.session import async_session_maker, engine, get_db

__all__ = [
    "Base",
    "async_session_maker",
    "engine",
    "get_db",
]
