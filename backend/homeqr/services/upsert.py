"""Race-tolerant upsert engine.

WHAT:
    Writes one row identified by a unique key: read it, update it when
    present, insert it when absent, and when the insert loses a race against
    a concurrent writer, re-read the winner's row and update that instead.

WHY:
    The scan handler, the page-view handler, the lead handler and the repair
    job can all try to create the same `scan_sessions` or `analytics` row at
    the same moment. No handler holds a lock or shares memory with another;
    the unique constraint decides who creates the row and everybody else
    converges on it. Each step commits on its own, so the engine never relies
    on a dialect-specific ``INSERT ... ON CONFLICT`` statement.

FLOW:
    read by key ──► present ──► apply_update ──► commit ──► UPDATED
         │
         └──► absent ──► insert ──► commit ──► CREATED
                            │
                            └──► IntegrityError ──► rollback ──► re-read
                                     ──► apply_conflict ──► commit ──► RECOVERED

    Anything failing after the fallback raises UpsertError.
"""

import enum
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Mapping, Optional, Type

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from homeqr.models import Base
from homeqr.services.errors import UpsertError

logger = logging.getLogger(__name__)


class UpsertOutcome(str, enum.Enum):
    created = "created"
    updated = "updated"
    recovered = "recovered"  # insert lost a race, fell back to update


@dataclass
class UpsertResult:
    row: Any
    outcome: UpsertOutcome

    @property
    def created(self) -> bool:
        return self.outcome is UpsertOutcome.created


def find_by_key(db: Session, model: Type[Base], key: Mapping[str, Any]) -> Optional[Any]:
    """Select the single row matching every column/value pair in `key`."""
    query = db.query(model)
    for column, value in key.items():
        query = query.filter(getattr(model, column) == value)
    return query.first()


def _context(model: Type[Base], key: Mapping[str, Any]) -> Dict[str, str]:
    context = {"table": model.__tablename__}
    context.update({column: str(value) for column, value in key.items()})
    return context


def upsert_row(
    db: Session,
    model: Type[Base],
    key: Mapping[str, Any],
    build: Callable[[], Any],
    apply_update: Callable[[Any], None],
    apply_conflict: Optional[Callable[[Any], None]] = None,
) -> UpsertResult:
    """Insert-or-update the row identified by `key`.

    Args:
        db: Session; committed (or rolled back) by this call
        model: Mapped class owning the unique constraint over `key`
        key: Column name -> value for every column of the unique constraint
        build: Returns a new, unsaved instance for the insert branch
        apply_update: Mutates an existing row (plain values or SQL expressions)
        apply_conflict: Mutates the winner's row after a lost insert race;
            defaults to `apply_update`

    Returns:
        UpsertResult with the persisted row (attributes expire on commit and
        reload on access) and how it was written.

    Raises:
        UpsertError: the write failed for any reason other than the expected
            insert conflict, or failed again after the fallback.
    """
    context = _context(model, key)

    # 1. Conditional read by the uniqueness key; update in place when present
    try:
        row = find_by_key(db, model, key)
        if row is not None:
            apply_update(row)
            db.commit()
            return UpsertResult(row=row, outcome=UpsertOutcome.updated)
    except SQLAlchemyError as exc:
        db.rollback()
        raise UpsertError(f"Update of {model.__tablename__} failed", context) from exc

    # 2. Optimistic insert against the unique constraint
    try:
        row = build()
        db.add(row)
        db.commit()
        return UpsertResult(row=row, outcome=UpsertOutcome.created)
    except IntegrityError:
        db.rollback()
        logger.debug("[UPSERT] Insert conflict on %s, falling back to update", model.__tablename__, extra=context)
    except SQLAlchemyError as exc:
        db.rollback()
        raise UpsertError(f"Insert into {model.__tablename__} failed", context) from exc

    return _recover_after_conflict(db, model, key, apply_conflict or apply_update, context)


def _recover_after_conflict(
    db: Session,
    model: Type[Base],
    key: Mapping[str, Any],
    apply_conflict: Callable[[Any], None],
    context: Dict[str, str],
) -> UpsertResult:
    """Re-read the row a concurrent writer created and update it."""
    try:
        row = find_by_key(db, model, key)
        if row is None:
            # The conflict was not on our key (e.g. a foreign key) or the row vanished
            raise UpsertError(f"Row missing after insert conflict on {model.__tablename__}", context)
        apply_conflict(row)
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise UpsertError(f"Fallback update of {model.__tablename__} failed", context) from exc

    logger.debug("[UPSERT] Recovered from insert race on %s", model.__tablename__, extra=context)
    return UpsertResult(row=row, outcome=UpsertOutcome.recovered)
