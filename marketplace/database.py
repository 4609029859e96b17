import logging
import sqlite3
from contextlib import contextmanager
from typing import Any, Dict, List, Optional

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from marketplace.errors import ConstraintViolation, StorageError
from marketplace.settings import DATABASE_URL

logger = logging.getLogger(__name__)


def sqlite_connect_args(url: str) -> dict:
    if not url.startswith("sqlite"):
        return {}
    # Concurrent writers wait on the database lock instead of failing fast
    return {"check_same_thread": False, "timeout": 30}


engine = create_engine(DATABASE_URL, connect_args=sqlite_connect_args(DATABASE_URL))

SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
Base = declarative_base()


@event.listens_for(Engine, "connect")
def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
    if isinstance(dbapi_connection, sqlite3.Connection):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def atomic(db: Session):
    """Run a unit of work and commit it, or roll all of it back.

    The commit happens before the block's caller produces a response, so every
    write that returns successfully is durable.
    """
    try:
        yield db
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        logger.warning("Constraint violation: %s", exc.orig)
        raise ConstraintViolation("Request conflicts with existing data") from exc
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception("Storage failure")
        raise StorageError("Storage failure") from exc
    except Exception:
        db.rollback()
        raise


def execute(db: Session, statement: str, params: Optional[Dict[str, Any]] = None) -> Optional[int]:
    """Run a mutating statement, commit it and return the last inserted row id."""
    with atomic(db):
        result = db.execute(text(statement), params or {})
        row_id = result.lastrowid
    return row_id


def query_all(db: Session, statement: str, params: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
    try:
        result = db.execute(text(statement), params or {})
        return [dict(row) for row in result.mappings()]
    except SQLAlchemyError as exc:
        logger.exception("Query failed")
        raise StorageError("Storage failure") from exc


def query_one(db: Session, statement: str, params: Optional[Dict[str, Any]] = None) -> Optional[Dict[str, Any]]:
    rows = query_all(db, statement, params)
    return rows[0] if rows else None
