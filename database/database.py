"""
Comfy Inventory Database Setup and Management
=============================================

Database initialization, session management, and settings helpers for the
model and workflow inventory.
"""

import logging
from pathlib import Path
from typing import Optional, Dict, Any, Generator
from contextlib import contextmanager

from sqlalchemy import create_engine, event, func
from sqlalchemy.orm import sessionmaker, Session, scoped_session
from sqlalchemy.pool import StaticPool

from .models import (
    Base, ModelRecord, WorkflowRecord, WorkflowDependency, Task,
    DownloadQueueItem, AppSettings
)

logger = logging.getLogger(__name__)

DEFAULT_SETTINGS = {
    "version": "1.0.0",
    "validation_level": "standard",
    "max_concurrent_tasks": 3,
    "civitai_lookup_enabled": False,
    "model_sources": {},
}


def default_database_url() -> str:
    """SQLite database in the project data directory."""
    project_root = Path(__file__).parent.parent  # Go up one level to project root
    db_path = project_root / "data" / "inventory.db"
    return f"sqlite:///{db_path}"


class DatabaseManager:
    """Manages database connection, sessions, and operations."""

    def __init__(self, database_url: Optional[str] = None):
        """Initialize database manager.

        Args:
            database_url: SQLAlchemy database URL. If None, uses SQLite in the project data directory.
        """
        if database_url is None:
            database_url = default_database_url()

        self.database_url = database_url

        # Configure engine based on database type
        if database_url.startswith('sqlite'):
            in_memory = database_url in ('sqlite://', 'sqlite:///:memory:')
            if not in_memory:
                db_path = Path(database_url.replace('sqlite:///', ''))
                db_path.parent.mkdir(parents=True, exist_ok=True)

            engine_kwargs = {
                "echo": False,  # Set to True for SQL debugging
                "connect_args": {
                    "check_same_thread": False,  # Workers write from threads
                    "timeout": 30  # 30 second timeout
                },
            }
            if in_memory:
                # One shared connection, otherwise every connection sees an empty database
                engine_kwargs["poolclass"] = StaticPool
            self.engine = create_engine(database_url, **engine_kwargs)

            # Enable WAL mode for concurrent readers, and FK enforcement for cascades
            @event.listens_for(self.engine, "connect")
            def set_sqlite_pragma(dbapi_connection, connection_record):
                cursor = dbapi_connection.cursor()
                cursor.execute("PRAGMA journal_mode=WAL")
                cursor.execute("PRAGMA synchronous=NORMAL")
                cursor.execute("PRAGMA cache_size=10000")
                cursor.execute("PRAGMA temp_store=MEMORY")
                cursor.execute("PRAGMA foreign_keys=ON")
                cursor.close()
        else:
            # PostgreSQL/MySQL configuration
            self.engine = create_engine(
                database_url,
                echo=False,
                pool_size=10,
                max_overflow=20,
                pool_recycle=3600,  # Recycle connections after 1 hour
            )

        # Create session factory
        self.SessionLocal = scoped_session(sessionmaker(
            autocommit=False,
            autoflush=False,
            expire_on_commit=False,
            bind=self.engine
        ))

    def create_tables(self):
        """Create all database tables and seed default settings."""
        logger.info("🗄️ Creating database tables...")
        Base.metadata.create_all(bind=self.engine)

        with self.get_session() as session:
            self._create_default_settings(session)
            session.commit()

        logger.info("✅ Database tables created successfully")

    def _create_default_settings(self, session: Session):
        """Create default app settings without overwriting user values."""
        for key, value in DEFAULT_SETTINGS.items():
            existing = session.query(AppSettings).filter_by(key=key).first()
            if not existing:
                session.add(AppSettings(key=key, value=value))

    @contextmanager
    def get_session(self) -> Generator[Session, None, None]:
        """Get a database session with automatic cleanup."""
        session = self.SessionLocal()
        try:
            yield session
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def get_setting(self, key: str, default: Any = None) -> Any:
        """Read one value from the settings table."""
        with self.get_session() as session:
            setting = session.query(AppSettings).filter_by(key=key).first()
            if setting is None or setting.value is None:
                return default
            return setting.value

    def set_setting(self, key: str, value: Any):
        """Create or replace one value in the settings table."""
        with self.get_session() as session:
            setting = session.query(AppSettings).filter_by(key=key).first()
            if setting:
                setting.value = value
            else:
                session.add(AppSettings(key=key, value=value))
            session.commit()

    def get_all_settings(self) -> Dict[str, Any]:
        with self.get_session() as session:
            return {s.key: s.value for s in session.query(AppSettings).all()}

    def get_inventory_stats(self) -> Dict[str, Any]:
        """Get row counts for the status command and dashboards."""
        with self.get_session() as session:
            workflow_status = dict(
                session.query(WorkflowRecord.status, func.count(WorkflowRecord.id))
                .group_by(WorkflowRecord.status).all()
            )
            task_status = dict(
                session.query(Task.status, func.count(Task.id))
                .group_by(Task.status).all()
            )
            return {
                'total_models': session.query(ModelRecord).count(),
                'total_workflows': session.query(WorkflowRecord).count(),
                'total_dependencies': session.query(WorkflowDependency).count(),
                'total_tasks': session.query(Task).count(),
                'total_downloads': session.query(DownloadQueueItem).count(),
                'workflows_by_status': workflow_status,
                'tasks_by_status': task_status,
            }

    def close(self):
        """Close database connections."""
        self.SessionLocal.remove()
        self.engine.dispose()


# Global database manager instance, used by the command line entry points
db_manager: Optional[DatabaseManager] = None

def get_database_manager() -> DatabaseManager:
    """Get or create the global database manager instance."""
    global db_manager
    if db_manager is None:
        db_manager = DatabaseManager()
    return db_manager

def initialize_database(database_url: Optional[str] = None, create_tables: bool = True):
    """Initialize the database with optional custom URL."""
    global db_manager
    db_manager = DatabaseManager(database_url)

    if create_tables:
        db_manager.create_tables()

    logger.info(f"✅ Database initialized: {db_manager.database_url}")
    return db_manager

def close_database():
    """Close database connections."""
    global db_manager
    if db_manager:
        db_manager.close()
        db_manager = None
