"""
govkit Variable Store

Values captured during the prepare stage, keyed by migration id, and read by
the enact and verify stages of the same migration.

A VariableSet is written exactly once. Its values are validated at write time
and exposed through a read-only mapping view, so later stages can neither add
nor replace entries. The store itself is thread-safe; sets belonging to
different migrations never alias.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import re
import threading
from datetime import datetime, timezone
from decimal import Decimal
from types import MappingProxyType
from typing import Any, Dict, Iterator, List, Mapping, Optional

from govkit.core import canonical_digest
from govkit.pipeline.errors import VariableConflictError, VariableSetError


MIGRATION_ID_PATTERN = re.compile(r"^[A-Za-z0-9_.-]{1,128}$")
VARIABLE_NAME_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]{0,63}$")

_SCALAR_TYPES = (str, int, bool, Decimal, bytes, type(None))


def validate_migration_id(migration_id: Any) -> str:
    """Validate a migration id, returning it unchanged."""
    if not isinstance(migration_id, str) or not MIGRATION_ID_PATTERN.match(migration_id):
        raise VariableSetError(
            "migration_id",
            "Must be 1-128 characters of [A-Za-z0-9_.-]",
            migration_id,
        )
    return migration_id


def _freeze_value(name: str, value: Any) -> Any:
    if isinstance(value, float):
        raise VariableSetError(name, "Floats are not allowed; use Decimal or int", value)
    if isinstance(value, _SCALAR_TYPES):
        return value
    if isinstance(value, (list, tuple)):
        return tuple(_freeze_value(f"{name}[{i}]", v) for i, v in enumerate(value))
    raise VariableSetError(
        name, f"Unsupported value type {type(value).__name__}", value
    )


class VariableSet(Mapping[str, Any]):
    """
    Immutable mapping of prepare-stage values for one migration.

    Lists are frozen to tuples; there are no mutating methods. Two sets are
    equal when their canonical digests match, so ``True`` and ``1`` or
    ``Decimal("1.0")`` and ``Decimal("1")`` are different values.
    """

    __slots__ = ("_migration_id", "_values", "_created_at")

    def __init__(self, migration_id: str, values: Optional[Mapping[str, Any]] = None):
        validate_migration_id(migration_id)
        frozen: Dict[str, Any] = {}
        for name, value in (values or {}).items():
            if not isinstance(name, str) or not VARIABLE_NAME_PATTERN.match(name):
                raise VariableSetError("name", "Must be an identifier of at most 64 chars", name)
            frozen[name] = _freeze_value(name, value)
        self._migration_id = migration_id
        self._values = MappingProxyType(frozen)
        self._created_at = datetime.now(timezone.utc).isoformat()

    @property
    def migration_id(self) -> str:
        return self._migration_id

    @property
    def created_at(self) -> str:
        return self._created_at

    @property
    def digest(self) -> str:
        """Content digest over migration id and values."""
        return canonical_digest({
            "migration_id": self._migration_id,
            "values": dict(self._values),
        })

    def __getitem__(self, key: str) -> Any:
        return self._values[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, VariableSet):
            return NotImplemented
        return self.digest == other.digest

    def __hash__(self) -> int:
        return hash(self.digest)

    def __repr__(self) -> str:
        return f"VariableSet({self._migration_id!r}, {dict(self._values)!r})"

    def __setattr__(self, name: str, value: Any) -> None:
        if hasattr(self, "_created_at"):
            raise AttributeError("VariableSet is immutable")
        object.__setattr__(self, name, value)

    def require(self, name: str) -> Any:
        """Get a value that must be present."""
        if name not in self._values:
            raise VariableSetError(name, f"Missing from variable set of {self._migration_id}")
        return self._values[name]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "migration_id": self._migration_id,
            "digest": self.digest,
            "created_at": self._created_at,
            "values": {
                k: (v.hex() if isinstance(v, bytes) else str(v) if isinstance(v, Decimal) else v)
                for k, v in self._values.items()
            },
        }


class VariableStore:
    """
    Thread-safe mapping from migration id to its VariableSet.

    write() is the only way to add a set. Writing an equal set again for the
    same id returns the stored set, so an idempotent prepare can be rerun;
    writing a different set raises VariableConflictError.
    """

    def __init__(self):
        self._sets: Dict[str, VariableSet] = {}
        self._lock = threading.RLock()

    def write(self, migration_id: str, values: Mapping[str, Any]) -> VariableSet:
        """Validate and store the variable set for a migration."""
        candidate = VariableSet(migration_id, values)
        with self._lock:
            existing = self._sets.get(migration_id)
            if existing is not None:
                if existing.digest == candidate.digest:
                    return existing
                raise VariableConflictError(
                    migration_id,
                    "Variable set already written with different values",
                    dict(candidate),
                )
            self._sets[migration_id] = candidate
            return candidate

    def get(self, migration_id: str) -> Optional[VariableSet]:
        with self._lock:
            return self._sets.get(migration_id)

    def read(self, migration_id: str) -> VariableSet:
        """Get the variable set, raising if prepare has not written one."""
        with self._lock:
            found = self._sets.get(migration_id)
        if found is None:
            raise VariableSetError(migration_id, "No variable set written")
        return found

    def discard(self, migration_id: str) -> bool:
        """Drop the set once the migration run is complete."""
        with self._lock:
            return self._sets.pop(migration_id, None) is not None

    def __contains__(self, migration_id: object) -> bool:
        with self._lock:
            return migration_id in self._sets

    def __len__(self) -> int:
        with self._lock:
            return len(self._sets)

    def migration_ids(self) -> List[str]:
        with self._lock:
            return sorted(self._sets)
