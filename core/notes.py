from datetime import datetime
from typing import Any

from sqlalchemy.orm import Session

from core.exceptions import UnsupportedEntity

NOTE_TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"


def _require_notes(entity: Any):
    if not hasattr(type(entity), "notes"):
        raise UnsupportedEntity(entity, "notes")


def append_note(db: Session, entity: Any, message: str, timestamp: bool = True) -> str:
    """Append one line to the entity's audit log and persist it."""
    _require_notes(entity)

    line = message
    if timestamp:
        line = f"[{datetime.utcnow().strftime(NOTE_TIMESTAMP_FORMAT)}] {message}"

    existing = entity.notes or ""
    entity.notes = f"{existing}\n{line}" if existing else line
    db.commit()
    return line


def get_notes(entity: Any) -> str:
    _require_notes(entity)
    return entity.notes or ""
