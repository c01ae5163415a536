"""
Database initialization and management utilities.
"""

from pathlib import Path
from sqlalchemy.orm import Session
from .models import create_database_engine, create_tables, get_session_maker
from .store import SubscriptionStore


class DatabaseManager:
    """Manages database connections and operations."""

    def __init__(self, database_url: str = None):
        if database_url is None:
            # Default to local SQLite database
            db_path = Path.cwd() / "data" / "subscriptions.db"
            db_path.parent.mkdir(exist_ok=True)
            database_url = f"sqlite:///{db_path}"

        self.database_url = database_url
        self.engine = create_database_engine(database_url)
        self.SessionMaker = get_session_maker(self.engine)

    def initialize_database(self):
        """Create all tables if they don't exist."""
        create_tables(self.engine)

    def get_session(self) -> Session:
        """Get a new database session."""
        return self.SessionMaker()

    def dispose(self):
        """Release pooled connections."""
        self.engine.dispose()


__all__ = ['DatabaseManager', 'SubscriptionStore']
