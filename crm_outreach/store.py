# crm_outreach/store.py
"""
Best-effort data access over a SQLModel session.

Reads of a single collection degrade to an empty list, writes degrade to
False; only `ping()` raises, for the "store unreachable" case that aborts a
whole run.
"""
from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session

from crm_outreach.errors import StoreUnavailable

log = logging.getLogger(__name__)


def _rollback(session: Session) -> None:
    try:
        session.rollback()
    except SQLAlchemyError:
        pass


def ping(session: Session) -> None:
    try:
        session.exec(text("SELECT 1"))
    except SQLAlchemyError as e:
        _rollback(session)
        raise StoreUnavailable(str(e)) from e


def select_many(session: Session, stmt, what: str) -> list:
    try:
        return list(session.exec(stmt).all())
    except SQLAlchemyError as e:
        _rollback(session)
        log.warning("read %s failed, continuing with none: %s", what, e)
        return []


def insert(session: Session, row: Any, what: str) -> bool:
    try:
        session.add(row)
        session.commit()
        return True
    except SQLAlchemyError as e:
        _rollback(session)
        log.warning("insert %s failed: %s", what, e)
        return False


def update(session: Session, row: Any, patch: dict, what: str) -> bool:
    try:
        for key, value in patch.items():
            setattr(row, key, value)
        session.add(row)
        session.commit()
        return True
    except SQLAlchemyError as e:
        _rollback(session)
        log.warning("update %s failed: %s", what, e)
        return False
