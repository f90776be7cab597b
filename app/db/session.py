"""
Database session management with SQLAlchemy.
"""
from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker, Session
from typing import Generator
from contextlib import contextmanager

from app.core.config import settings
from app.core.logging import get_logger

logger = get_logger(__name__)


def build_engine(url: str, **kwargs):
    """Create an engine; pool sizing only applies to server databases."""
    if url.startswith("sqlite"):
        return create_engine(url, connect_args={"check_same_thread": False}, **kwargs)
    return create_engine(
        url,
        pool_pre_ping=True,
        pool_size=10,
        max_overflow=20,
        pool_timeout=30,
        pool_recycle=1800,
        **kwargs,
    )


engine = build_engine(settings.DATABASE_URL)

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
    """Standalone session for scripts and startup tasks; commits on success."""
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


@contextmanager
def atomic(db: Session) -> Generator[Session, None, None]:
    """
    Run a read-check-write sequence as one transaction on an existing session.

    Commits when the block completes, rolls back on any exception and re-raises it,
    so callers never observe a half-applied conversion.
    """
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise


def init_db():
    """
    Initialize database connection and run startup tasks.

    IMPORTANT: Schema is managed by Alembic migrations, NOT create_all().
    Run `alembic upgrade head` before first startup.

    Startup order:
    1. Run preflight check (validates DB connectivity)
    2. Verify schema exists (tables were created by Alembic)
    3. Bootstrap admin if ADMIN_BOOTSTRAP_* env vars set and no users exist
    4. Seed demo data ONLY if SEED_DEMO=true (never in production)
    """
    from sqlalchemy import inspect

    from app.db.preflight import run_db_preflight
    run_db_preflight()

    # Import models to register them (but don't create tables)
    from app.db import models  # noqa

    inspector = inspect(engine)
    existing_tables = inspector.get_table_names()
    required_tables = ['users', 'customers', 'quotes', 'orders', 'jobs', 'audit_records']

    missing = [t for t in required_tables if t not in existing_tables]
    if missing:
        logger.warning(f"Database schema missing tables: {missing}. Run `alembic upgrade head`.")
        if settings.DEBUG:
            logger.warning("DEBUG=true: auto-creating tables (NOT for production!)")
            Base.metadata.create_all(bind=engine)
        else:
            return
    else:
        logger.info(f"Database schema verified: {len(existing_tables)} tables found")

    bootstrap_admin()

    if settings.SEED_DEMO:
        from app.db.seed import seed_demo_data
        seed_demo_data()


def bootstrap_admin():
    """
    Bootstrap initial admin user from environment variables.

    Only runs if ADMIN_BOOTSTRAP_EMAIL/PASSWORD are set and no users exist yet.
    """
    from app.db.models import User, UserRole
    from app.core.security import get_password_hash

    email = settings.ADMIN_BOOTSTRAP_EMAIL
    password = settings.ADMIN_BOOTSTRAP_PASSWORD

    if not email or not password:
        logger.info("Admin bootstrap: ADMIN_BOOTSTRAP_EMAIL/PASSWORD not set. Skipping.")
        return

    if len(password) < 10:
        logger.warning("ADMIN_BOOTSTRAP_PASSWORD must be at least 10 characters. Skipping bootstrap.")
        return

    try:
        with get_db_context() as db:
            if db.query(User).first():
                logger.info("Admin bootstrap: users already exist. Skipping bootstrap.")
                return

            db.add(User(
                email=email,
                hashed_password=get_password_hash(password),
                full_name="Administrator",
                role=UserRole.OWNER.value,
                is_active=True
            ))
    except Exception:
        logger.exception("Admin bootstrap failed")
        return
    logger.info(f"Bootstrap admin created: {email}")
