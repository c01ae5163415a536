"""
Session scoping shared by the CLI commands and the job workers.
"""

from contextlib import contextmanager
from typing import Generator
from sqlalchemy.orm import Session

from .database import DatabaseManager


class SessionManager:
    """Hands out short-lived database sessions with automatic cleanup."""

    def __init__(self, db_manager: DatabaseManager):
        self.db_manager = db_manager

    @classmethod
    def from_url(cls, database_url: str = None) -> 'SessionManager':
        return cls(DatabaseManager(database_url))

    @contextmanager
    def get_session(self) -> Generator[Session, None, None]:
        """Get a database session, rolled back on error and always closed."""
        session = self.db_manager.get_session()
        try:
            yield session
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()
