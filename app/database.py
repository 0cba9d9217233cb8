# app/database.py
import logging

from sqlalchemy import create_engine, event
from sqlalchemy.orm import declarative_base, sessionmaker
from .config import get_settings

logger = logging.getLogger(__name__)


def _engine_options(settings):
    if settings.is_sqlite:
        # busy timeout bounds how long a write waits on the file lock
        return {"connect_args": {"check_same_thread": False, "timeout": settings.database_timeout}}
    return {
        "pool_size": settings.database_pool_size,
        "max_overflow": settings.database_max_overflow,
        "pool_timeout": settings.database_timeout,
        "connect_args": {
            "connect_timeout": settings.database_timeout,
            "options": f"-c statement_timeout={settings.database_timeout * 1000}",
        },
    }


settings = get_settings()

# Create engine
engine = create_engine(
    settings.database_url,
    pool_pre_ping=True,
    echo=False,
    **_engine_options(settings)
)

if settings.is_sqlite:
    @event.listens_for(engine, "connect")
    def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

# Session factory
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Base class for models
Base = declarative_base()

# Dependency to get database session
def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()

def create_tables():
    """Create all database tables - models must be imported first"""
    from . import models  # noqa: F401  registers the tables on Base.metadata

    Base.metadata.create_all(bind=engine)
    logger.info("Database tables created")

def drop_tables():
    """Drop all database tables"""
    from . import models  # noqa: F401

    Base.metadata.drop_all(bind=engine)
    logger.info("Database tables dropped")
