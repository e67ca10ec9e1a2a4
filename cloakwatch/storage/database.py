"""
Database connection and session management
"""
import os
import logging
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from dotenv import load_dotenv
from .models import Base

load_dotenv()

logger = logging.getLogger(__name__)


def get_database_url() -> str:
    """Get database URL from environment or default to SQLite"""
    db_url = os.getenv('DATABASE_URL', 'sqlite:///watchdog.db')
    # Ensure SQLite URLs use absolute path
    if db_url.startswith('sqlite:///') and db_url != 'sqlite:///:memory:':
        db_path = db_url.replace('sqlite:///', '')
        if not os.path.isabs(db_path):
            # Make path relative to project root
            project_root = os.path.dirname(os.path.dirname(os.path.dirname(__file__)))
            db_path = os.path.join(project_root, db_path)
        db_url = f'sqlite:///{db_path}'
    return db_url


def create_engine_instance(db_url: str = None):
    """Create SQLAlchemy engine"""
    db_url = db_url or get_database_url()
    # SQLite-specific configuration
    if db_url.startswith('sqlite'):
        engine = create_engine(
            db_url,
            connect_args={'check_same_thread': False, 'timeout': 15},  # Worker threads share the file
            echo=False  # Set to True for SQL query logging
        )
    else:
        engine = create_engine(db_url, echo=False, pool_pre_ping=True)
    return engine


def init_database(engine=None):
    """Initialize database schema (create all tables)"""
    engine = engine or create_engine_instance()
    Base.metadata.create_all(engine)
    logger.info(f"Database initialized at: {engine.url}")


# Context manager for database sessions
class DatabaseSession:
    """Context manager for database sessions"""

    def __init__(self, session_factory: sessionmaker = None):
        """
        Args:
            session_factory: Factory bound to a shared engine. When omitted a
                new engine is created from DATABASE_URL.
        """
        if session_factory is None:
            self.engine = create_engine_instance()
            session_factory = sessionmaker(bind=self.engine, expire_on_commit=False)
        self.SessionLocal = session_factory
        self.session = None

    def __enter__(self):
        self.session = self.SessionLocal()
        return self.session

    def __exit__(self, exc_type, exc_val, exc_tb):
        if exc_type:
            self.session.rollback()
        else:
            self.session.commit()
        self.session.close()
