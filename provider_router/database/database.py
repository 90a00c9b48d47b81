"""Database configuration and session management."""

import os
import logging
from sqlalchemy import create_engine, inspect
from sqlalchemy.orm import declarative_base, sessionmaker

from provider_router.config import settings

logger = logging.getLogger(__name__)

# Create the directory holding a file-backed SQLite database
if settings.database_url.startswith("sqlite:///") and ":memory:" not in settings.database_url:
    db_dir = os.path.dirname(settings.database_url[len("sqlite:///"):])
    if db_dir:
        os.makedirs(db_dir, exist_ok=True)

# Create SQLAlchemy engine
engine = create_engine(
    settings.database_url,
    connect_args={"check_same_thread": False} if "sqlite" in settings.database_url else {},
)

# Create session factory
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Create declarative base for models
Base = declarative_base()


def get_db():
    """Get database session dependency."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db():
    """Initialize database tables.

    Creates the provider and audit tables if they don't exist.
    Safe to call multiple times.
    """
    # Import all models to ensure they are registered with Base
    from provider_router.models import Provider, AuditLog  # noqa: F401

    logger.info("Initializing database...")

    existing_tables = inspect(engine).get_table_names()
    if not existing_tables:
        logger.info("No existing tables found. Creating all tables...")
    else:
        logger.info(f"Found existing tables: {existing_tables}")

    Base.metadata.create_all(bind=engine)

    created_tables = inspect(engine).get_table_names()
    logger.info(f"Database initialized with tables: {created_tables}")
