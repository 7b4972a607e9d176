"""
Database Connection and Session Management
PostgreSQL in production, SQLite for local runs and tests
"""
import logging
from contextlib import contextmanager
from typing import Iterator, Optional

from sqlalchemy import create_engine, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import sessionmaker, Session
from dotenv import load_dotenv

from callqueue.core.config import get_database_url, get_config_manager
from callqueue.core.exceptions import ConstraintViolationError, TransientBackendError
from callqueue.infrastructure.storage.models import Base, DispatchLock

# Load environment variables
load_dotenv()

logger = logging.getLogger(__name__)

DISPATCH_LOCK_SCOPE = "dispatch"


def create_db_engine(url: Optional[str] = None, **kwargs) -> Engine:
    """
    Create an engine for the configured database.

    SQLite connections are opened with a generous busy timeout so that
    concurrent claimers wait for the write lock instead of failing.
    """
    url = url or get_database_url()
    if url.startswith("sqlite"):
        connect_args = kwargs.pop("connect_args", {})
        connect_args.setdefault("check_same_thread", False)
        connect_args.setdefault("timeout", 30)
        kwargs["connect_args"] = connect_args
    else:
        kwargs.setdefault("pool_pre_ping", True)

    return create_engine(
        url,
        echo=bool(get_config_manager().get("database.echo", False)),
        **kwargs,
    )


# Created lazily so importing this module never touches the database
_engine: Optional[Engine] = None
SessionLocal = sessionmaker(autocommit=False, autoflush=False)


def get_engine() -> Engine:
    global _engine
    if _engine is None:
        _engine = create_db_engine()
        SessionLocal.configure(bind=_engine)
    return _engine


def init_db(engine: Optional[Engine] = None) -> None:
    """Create tables and seed the dispatch lock row."""
    engine = engine or get_engine()
    Base.metadata.create_all(bind=engine)

    with Session(bind=engine) as db:
        exists = db.execute(
            select(DispatchLock.scope).where(DispatchLock.scope == DISPATCH_LOCK_SCOPE)
        ).first()
        if exists is None:
            db.add(DispatchLock(scope=DISPATCH_LOCK_SCOPE))
            db.commit()
    logger.info("Database schema ready")


def commit_or_raise(db: Session) -> None:
    """
    Commit the session, translating driver errors into domain errors.

    Constraint violations are never swallowed: they roll back and
    surface as ConstraintViolationError.
    """
    try:
        db.commit()
    except IntegrityError as e:
        db.rollback()
        logger.error(f"Constraint violation on commit: {e.orig}")
        raise ConstraintViolationError(str(e.orig)) from e
    except OperationalError as e:
        db.rollback()
        logger.warning(f"Transient database error on commit: {e.orig}")
        raise TransientBackendError(str(e.orig)) from e


@contextmanager
def get_db() -> Iterator[Session]:
    """
    Get database session with automatic cleanup

    Usage:
        with get_db() as db:
            campaigns = db.query(Campaign).all()
    """
    get_engine()
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def get_db_session() -> Iterator[Session]:
    """
    Get database session for FastAPI dependency injection

    Usage:
        @app.get("/campaigns")
        def list_campaigns(db: Session = Depends(get_db_session)):
            return db.query(Campaign).all()
    """
    get_engine()
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
