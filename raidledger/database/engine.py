"""
raidledger.database.engine — Database Connection & Units of Work
================================================================

Every service function in RaidLedger receives its execution context
explicitly: either an :class:`Engine` (for operations that open their own
unit of work) or a :class:`Session` (for steps that run inside someone
else's).  Nothing reaches for a module-level connection.

Multi-step mutations such as run creation and run termination go through
:func:`run_in_transaction`, which gives the callable a session bound to a
single transaction and guarantees all-or-nothing persistence::

    from raidledger.database.engine import create_db_engine, run_in_transaction

    engine = create_db_engine()          # reads DATABASE_URL from .env

    def _end(session):
        run = session.get(Run, run_id)
        ...

    run_in_transaction(engine, _end)     # commit, or roll back and re-raise
"""

from __future__ import annotations

import logging
import os
from collections.abc import Callable
from contextlib import contextmanager
from typing import Concatenate, ParamSpec, TypeVar

from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import Session

from raidledger.database.models import Base

logger = logging.getLogger(__name__)

P = ParamSpec("P")
T = TypeVar("T")


# ---------------------------------------------------------------------------
# Engine creation
# ---------------------------------------------------------------------------
def create_db_engine() -> Engine:
    """Build a SQLAlchemy :class:`Engine` from the ``DATABASE_URL`` env var.

    * ``pool_size=5`` — five persistent connections.
    * ``max_overflow=10`` — up to 10 extra connections under load.
    * ``pool_timeout=10`` — fail after 10 s if no connection is available.
    * ``pool_recycle=3600`` — recycle connections after 1 hour.

    Raises
    ------
    RuntimeError
        If ``DATABASE_URL`` is not set.
    """
    url = os.getenv("DATABASE_URL")
    if not url:
        raise RuntimeError(
            "DATABASE_URL is not set.  "
            "Copy .env.example → .env and set a valid PostgreSQL URL."
        )

    engine = create_engine(
        url,
        echo=False,        # Set True for SQL debugging
        pool_size=5,
        max_overflow=10,
        pool_pre_ping=True,
        pool_timeout=10,
        pool_recycle=3600,
    )
    logger.info("Database engine created → %s", engine.url.host)
    return engine


# ---------------------------------------------------------------------------
# Schema initialization
# ---------------------------------------------------------------------------
def init_db(engine: Engine) -> None:
    """Create all tables defined in :mod:`raidledger.database.models`.

    .. note::

        In production the schema is managed by Alembic (``alembic upgrade
        head``).  ``create_all`` is retained as a safety net for dev/test
        environments where Alembic may not have run.
    """
    Base.metadata.create_all(engine)
    logger.info("Database tables verified / created.")


# ---------------------------------------------------------------------------
# Session helpers
# ---------------------------------------------------------------------------
@contextmanager
def get_session(engine: Engine):
    """Yield a :class:`Session` that auto-commits on success and rolls back
    on exception.

    Usage::

        with get_session(engine) as session:
            session.add(Guild(id=123, name="Raid Community"))
            # commit happens automatically on block exit
    """
    session = Session(engine, expire_on_commit=False)
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def run_in_transaction(
    engine: Engine,
    fn: Callable[Concatenate[Session, P], T],
    *args: P.args,
    **kwargs: P.kwargs,
) -> T:
    """Execute ``fn(session, *args, **kwargs)`` as one unit of work.

    Commits when *fn* returns, rolls back and re-raises when it raises.
    ORM objects returned by *fn* stay readable after the session closes
    (``expire_on_commit=False``).
    """
    with Session(engine, expire_on_commit=False) as session:
        try:
            with session.begin():
                return fn(session, *args, **kwargs)
        except Exception:
            logger.debug("Transaction rolled back in %s", getattr(fn, "__name__", fn))
            raise

