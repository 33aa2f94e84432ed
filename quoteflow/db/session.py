"""
Database session management with SQLAlchemy.
"""
from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker, Session
from sqlalchemy.pool import StaticPool
from typing import Generator
from contextlib import contextmanager

from quoteflow.core.config import settings
from quoteflow.core.logging import get_logger

logger = get_logger(__name__)


def _engine_options(url: str) -> dict:
    if url.startswith("sqlite"):
        # Local/dev runs: one shared connection so ":memory:" survives
        return {
            "connect_args": {"check_same_thread": False},
            "poolclass": StaticPool,
        }
    return {
        "pool_pre_ping": True,
        "pool_size": 10,
        "max_overflow": 20,
        "pool_timeout": 30,
        "pool_recycle": 1800,
    }


engine = create_engine(settings.DATABASE_URL, **_engine_options(settings.DATABASE_URL))

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def get_db() -> Generator[Session, None, None]:
    """Dependency for getting database session."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def get_db_context() -> Generator[Session, None, None]:
    """Context manager for database session."""
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def init_db():
    """
    Initialize database schema and bootstrap the first administrator.

    Tables are created automatically only when DEBUG=true; production
    deployments provision the schema ahead of startup.
    """
    from sqlalchemy import inspect

    from quoteflow.db import models  # noqa

    inspector = inspect(engine)
    existing_tables = inspector.get_table_names()
    required_tables = ['users', 'inquiries', 'inquiry_items', 'automation_rules']

    missing = [t for t in required_tables if t not in existing_tables]
    if missing:
        if settings.DEBUG:
            logger.warning(f"Missing tables {missing}; DEBUG=true, creating schema")
            Base.metadata.create_all(bind=engine)
        else:
            logger.error(f"Database schema missing required tables: {missing}")
            return
    else:
        logger.info(f"Database schema verified: {len(existing_tables)} tables found")

    bootstrap_admin()


def bootstrap_admin():
    """
    Bootstrap initial admin user from environment variables.

    Only runs if ADMIN_BOOTSTRAP_EMAIL is set and no users exist yet, so it
    is idempotent across restarts.
    """
    from quoteflow.db.models import User, UserRole

    email = settings.ADMIN_BOOTSTRAP_EMAIL
    if not email:
        logger.info("Admin bootstrap: ADMIN_BOOTSTRAP_EMAIL not set. Skipping.")
        return

    with get_db_context() as db:
        existing_user = db.query(User).first()
        if existing_user:
            logger.info("Admin bootstrap: users already exist. Skipping bootstrap.")
            return

        admin = User(
            email=email,
            full_name="Administrator",
            role=UserRole.ADMIN,
            is_active=True,
        )
        db.add(admin)
        logger.info(f"Admin bootstrap: created administrator {email}")
