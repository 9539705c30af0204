"""
database.py - Engine, Declarative Base and the Transactional Context

Every write path in the pipeline runs inside transaction(): the caller receives a
Session, threads it explicitly through the repositories it calls, and the context
commits on a clean exit and rolls back on every other exit path (exceptions and early
returns raised as ServiceError alike). Optimistic-lock and lock/serialization failures
surface as ConflictError so that retry loops can recognise them.
"""

import logging
from contextlib import contextmanager
from functools import lru_cache
from typing import Iterator, Optional
from uuid import uuid4

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from shared.config import get_settings
from shared.errors import ConflictError

logger = logging.getLogger(__name__)

Base = declarative_base()


def new_id() -> str:
    """Primary key generator shared by all tables."""
    return str(uuid4())


@lru_cache
def get_engine() -> Engine:
    """Create the process-wide engine from settings."""
    settings = get_settings()
    return create_engine(settings.sqlalchemy_url, echo=False, pool_pre_ping=True)


@lru_cache
def get_session_factory() -> sessionmaker:
    """Session factory bound to the process-wide engine."""
    return sessionmaker(autocommit=False, autoflush=False, bind=get_engine())


def init_db(engine: Optional[Engine] = None) -> None:
    """Create all tables."""
    # Import models so they register on Base.metadata
    import services.cart_service.models  # noqa: F401
    import services.inventory_service.models  # noqa: F401
    import services.order_service.models  # noqa: F401

    logger.info("Initializing database...")
    Base.metadata.create_all(bind=engine or get_engine())
    logger.info("Database initialized")


@contextmanager
def transaction(session_factory: Optional[sessionmaker] = None, label: str = "transaction") -> Iterator[Session]:
    """
    Scoped all-or-nothing unit of work.

    Commits when the block exits normally, rolls back otherwise and always closes
    the session. StaleDataError and OperationalError (lock timeouts, deadlocks,
    serialization failures) are re-raised as ConflictError.
    """
    factory = session_factory or get_session_factory()
    db = factory()
    tx_id = uuid4().hex[:8]
    logger.debug(f"[TX {tx_id}] {label} started")
    try:
        yield db
        db.commit()
        logger.debug(f"[TX {tx_id}] {label} committed")
    except (StaleDataError, OperationalError) as e:
        db.rollback()
        logger.warning(f"[TX {tx_id}] {label} rolled back on write conflict: {e}")
        raise ConflictError(f"Write conflict during {label}") from e
    except BaseException:
        db.rollback()
        logger.debug(f"[TX {tx_id}] {label} rolled back")
        raise
    finally:
        db.close()
