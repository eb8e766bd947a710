from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import create_engine, Session
from sqlmodel import SQLModel
import logging
import os

from errors import PersistenceError

logger = logging.getLogger(__name__)

DB_FILE = os.path.join(os.path.dirname(__file__), "ridepool.db")
_default_url = f"sqlite:///{DB_FILE}"
DATABASE_URL = os.environ.get("DATABASE_URL", _default_url)

# SQLite needs check_same_thread=False; Postgres does not
_connect_args = {"check_same_thread": False} if DATABASE_URL.startswith("sqlite") else {}

engine = create_engine(DATABASE_URL, echo=False, connect_args=_connect_args)


def init_db():
    # models must be imported so their tables are registered on the metadata
    import models  # noqa: F401

    SQLModel.metadata.create_all(engine)


def get_session():
    return Session(engine)


def check_connection():
    """Round-trip to storage; raises PersistenceError when it is unreachable."""
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        logger.error(f"Storage unavailable at {engine.url!r}: {exc}")
        raise PersistenceError("storage unavailable") from exc
