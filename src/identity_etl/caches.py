"""identity_etl.caches

Run-scoped memo caches in front of the store.

ReferenceCache  : foreign-key existence, one store lookup per distinct key.
LookupCache     : value-returning sibling (e.g. role name → role id).
DuplicateKeyIndex: parent key → set of composite keys already claimed.

Nothing here is ever invalidated: a key found missing stays missing for the
rest of the run even if another writer creates it meanwhile.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Sequence

from identity_etl.normalize import trim
from identity_etl.store import Store, Table

log = logging.getLogger(__name__)

KEY_SEPARATOR = "|"


def build_key(*parts: Any) -> str:
    """Join identity parts with '|'; None renders as an empty segment.

    >>> build_key("Permission", "users.read")
    'Permission|users.read'
    >>> build_key("Permission", None)
    'Permission|'
    """
    return KEY_SEPARATOR.join("" if p is None else str(p) for p in parts)


def _normalize_stored(value: Any) -> Any:
    return trim(value) if isinstance(value, str) else value


# ---------------------------------------------------------------------------
# ReferenceCache
# ---------------------------------------------------------------------------

class ReferenceCache:
    def __init__(self, store: Store, table: Table, column: str) -> None:
        self._store = store
        self.table = table
        self.column = column
        self._verdicts: dict[str, bool] = {}
        self.lookups = 0

    def is_valid(self, key: str | None) -> bool:
        if key is None:
            return False
        verdict = self._verdicts.get(key)
        if verdict is None:
            self.lookups += 1
            verdict = self._store.exists(self.table, self.column, key)
            self._verdicts[key] = verdict
            if not verdict:
                log.debug("%s.%s=%r not found; cached as invalid", self.table, self.column, key)
        return verdict

    def __len__(self) -> int:
        return len(self._verdicts)


# ---------------------------------------------------------------------------
# LookupCache
# ---------------------------------------------------------------------------

_MISSING = object()


class LookupCache:
    """Memoized key → value point lookups; misses are cached as None."""

    def __init__(
        self,
        store: Store,
        table: Table,
        key_column: str,
        value_column: str,
    ) -> None:
        self._store = store
        self.table = table
        self.key_column = key_column
        self.value_column = value_column
        self._values: dict[str, Any] = {}
        self.lookups = 0

    def get(self, key: str | None) -> Any | None:
        if key is None:
            return None
        value = self._values.get(key, _MISSING)
        if value is _MISSING:
            self.lookups += 1
            found = self._store.find_one(
                self.table, {self.key_column: key}, [self.value_column]
            )
            value = found[self.value_column] if found else None
            self._values[key] = value
        return value


# ---------------------------------------------------------------------------
# DuplicateKeyIndex
# ---------------------------------------------------------------------------

class DuplicateKeyIndex:
    """Parent key → composite keys present in the store or accepted this run.

    Stored values pass through the same normalizer as incoming fields
    (trim for text by default) before keying, so comparisons stay ordinal.
    """

    def __init__(
        self,
        store: Store,
        table: Table,
        parent_column: str,
        key_columns: Sequence[str],
        normalizer: Callable[[Any], Any] | None = None,
    ) -> None:
        self._store = store
        self.table = table
        self.parent_column = parent_column
        self.key_columns = tuple(key_columns)
        self._normalize = normalizer or _normalize_stored
        self._keys: dict[str, set[str]] = {}
        self.fetches = 0

    def load_or_fetch(self, parent_key: str) -> set[str]:
        keys = self._keys.get(parent_key)
        if keys is None:
            self.fetches += 1
            rows = self._store.find_all(
                self.table, {self.parent_column: parent_key}, self.key_columns
            )
            keys = {
                build_key(*(self._normalize(r[c]) for c in self.key_columns))
                for r in rows
            }
            self._keys[parent_key] = keys
        return keys

    def seed(self, parent_key: str) -> None:
        """Mark a parent created this run as known-empty; skips the store fetch."""
        self._keys.setdefault(parent_key, set())

    def contains(self, parent_key: str, composite_key: str) -> bool:
        return composite_key in self.load_or_fetch(parent_key)

    def add(self, parent_key: str, composite_key: str) -> None:
        self.load_or_fetch(parent_key).add(composite_key)
