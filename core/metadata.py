"""Per-entity metadata bag.

Hosts and work attempts carry a JSON ``metadata`` column that steps of a
chain use to hand state to each other. Reads are strict: asking for a key
that is not there raises ``MetadataKeyNotFound`` unless a default is given.
Every write commits straight away and bumps ``metadata_version``.
"""
import copy
import logging
from typing import Any, Dict

from sqlalchemy.orm import Session

from core.exceptions import MetadataKeyNotFound, UnsupportedEntity

logger = logging.getLogger(__name__)

MISSING = object()


def deep_merge(base: Dict[str, Any], incoming: Dict[str, Any]) -> Dict[str, Any]:
    """Merge ``incoming`` into a copy of ``base``.

    Nested dicts merge recursively, lists are concatenated, anything else in
    ``incoming`` wins.
    """
    merged = copy.deepcopy(base)
    for key, value in incoming.items():
        current = merged.get(key)
        if isinstance(current, dict) and isinstance(value, dict):
            merged[key] = deep_merge(current, value)
        elif isinstance(current, list) and isinstance(value, list):
            merged[key] = current + copy.deepcopy(value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


class MetadataBag:
    def __init__(self, db: Session, entity: Any):
        if not hasattr(type(entity), "meta"):
            raise UnsupportedEntity(entity, "metadata")
        self.db = db
        self.entity = entity

    @property
    def version(self) -> int:
        return self.entity.metadata_version or 0

    def get_all(self) -> Dict[str, Any]:
        return copy.deepcopy(self.entity.meta or {})

    def has(self, key: str) -> bool:
        return key in (self.entity.meta or {})

    def get(self, key: str, default: Any = MISSING) -> Any:
        data = self.entity.meta or {}
        if key in data:
            return copy.deepcopy(data[key])
        if default is not MISSING:
            return default
        raise MetadataKeyNotFound(key, self.entity, data.keys())

    def merge(self, partial: Dict[str, Any], overwrite: bool = True) -> Dict[str, Any]:
        """Write ``partial`` into the bag.

        ``overwrite=True`` replaces overlapping keys; ``overwrite=False``
        deep-merges nested dicts and concatenates lists.
        """
        current = self.entity.meta or {}
        if overwrite:
            updated = copy.deepcopy(current)
            updated.update(copy.deepcopy(partial))
        else:
            updated = deep_merge(current, partial)
        return self._save(updated)

    def add_missing(self, partial: Dict[str, Any]) -> Dict[str, Any]:
        current = self.get_all()
        for key, value in partial.items():
            current.setdefault(key, copy.deepcopy(value))
        return self._save(current)

    def set(self, key: str, value: Any) -> Dict[str, Any]:
        return self.merge({key: value})

    def append(self, key: str, value: Any) -> Dict[str, Any]:
        current = self.get_all()
        existing = current.get(key)
        if existing is None:
            current[key] = [value]
        elif isinstance(existing, list):
            existing.append(value)
        else:
            current[key] = [existing, value]
        return self._save(current)

    def delete(self, *keys: str) -> Dict[str, Any]:
        current = self.get_all()
        for key in keys:
            current.pop(key, None)
        return self._save(current)

    def clear(self) -> Dict[str, Any]:
        return self._save({})

    def increment(self, key: str, amount: int = 1) -> int:
        value = self.get(key, 0) + amount
        self.set(key, value)
        return value

    def decrement(self, key: str, amount: int = 1) -> int:
        return self.increment(key, -amount)

    def _save(self, data: Dict[str, Any]) -> Dict[str, Any]:
        # Always assign a fresh dict so the JSON column is flagged dirty
        self.entity.meta = data
        self.entity.metadata_version = self.version + 1
        self.db.commit()
        self.db.refresh(self.entity)
        logger.debug(
            f"Metadata of {type(self.entity).__name__} {self.entity.id} "
            f"saved (version {self.entity.metadata_version})"
        )
        return self.get_all()
