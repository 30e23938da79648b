"""identity_etl.pipeline

Generic batched upsert pipeline shared by every entity import.

    open_rows → validate_row → ReferenceCache / DuplicateKeyIndex
              → resolve_row → PendingWrites → Store

An EntityStrategy value describes one entity: header aliases, required and
length-bounded fields, converters, identity and merge rules. run_import
drives a single pass over the CSV for that strategy.

Counting rules:
  - inserted is counted when a flush commits (primary table rows only)
  - updated / unchanged / duplicate / rejects are counted at decision time;
    a later flush failure does not roll them back
"""

from __future__ import annotations

import logging
from contextlib import closing
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Mapping, Sequence

from identity_etl.caches import DuplicateKeyIndex, ReferenceCache, build_key
from identity_etl.config import ImportSettings
from identity_etl.normalize import parse_datetime, trim
from identity_etl.passwords import (
    IdGenerator,
    IdentityV3PasswordHasher,
    PasswordHasher,
    new_id,
)
from identity_etl.shared import ImportCancelled, RejectWriter, RunCounters
from identity_etl.source import CancelToken, ImportRow, open_rows
from identity_etl.store import Store, Table

log = logging.getLogger(__name__)

Record = dict[str, Any]
Identity = dict[str, Any]


# ---------------------------------------------------------------------------
# Strategy types
# ---------------------------------------------------------------------------

class Shape(Enum):
    APPEND = "append"                 # insert-only, duplicates skipped
    NATURAL_KEY = "natural_key"       # upsert by natural key, merge on update
    COMPOSITE_KEY = "composite_key"   # upsert by full composite key


class Decision(Enum):
    INSERT = "insert"
    UPDATE = "update"
    UNCHANGED = "unchanged"
    SKIP_DUPLICATE = "skip_duplicate"
    SKIP_INVALID_REFERENCE = "skip_invalid_reference"


@dataclass(frozen=True)
class Reference:
    """Foreign key that must exist before a row may be written."""
    field: str
    table: Table
    column: str = "Id"


@dataclass(frozen=True, eq=False)
class EntityStrategy:
    name: str
    table: Table
    shape: Shape
    columns: Mapping[str, tuple[str, ...]]
    required: tuple[str, ...] = ()
    max_lengths: Mapping[str, int] = field(default_factory=dict)
    converters: Mapping[str, Callable[[str | None], Any]] = field(default_factory=dict)
    column_names: Mapping[str, str] = field(default_factory=dict)
    # NATURAL_KEY / COMPOSITE_KEY: identity columns.
    # APPEND: fields forming the duplicate key under parent_field.
    key_columns: tuple[str, ...] = ()
    parent_field: str | None = None
    reference: Reference | None = None
    reject_counter: str = "skipped"
    stamp_column: str | None = None
    write_order: tuple[Table, ...] = ()
    builder: Callable[[ImportContext, Record], Record] | None = None
    merger: Callable[[ImportContext, Record, Record], Record] | None = None
    identity: Callable[[Record], Identity] | None = None
    identities: Callable[[Record], list[Identity]] | None = None
    update_key: Callable[[Record], Identity] | None = None
    after_resolve: Callable[[ImportContext, Record, Record, bool], None] | None = None

    def column_for(self, field_name: str) -> str:
        return self.column_names.get(field_name, field_name)

    def lookup_identity(self, fields: Record) -> Identity:
        if self.identity is not None:
            return self.identity(fields)
        return {self.column_for(c): fields.get(c) for c in self.key_columns}

    def record_identities(self, record: Record) -> list[Identity]:
        if self.identities is not None:
            return self.identities(record)
        return [{self.column_for(c): record.get(self.column_for(c)) for c in self.key_columns}]

    def update_key_for(self, record: Record) -> Identity:
        if self.update_key is not None:
            return self.update_key(record)
        return self.record_identities(record)[0]

    def build(self, ctx: ImportContext, fields: Record) -> Record:
        if self.builder is not None:
            return self.builder(ctx, fields)
        return {self.column_for(f): fields.get(f) for f in self.columns}

    def changes_for(self, ctx: ImportContext, record: Record, fields: Record) -> Record:
        if self.merger is not None:
            changes = self.merger(ctx, record, fields)
        else:
            changes = merge_non_null(self, record, fields)
        if changes and self.stamp_column and self.stamp_column not in changes:
            changes[self.stamp_column] = ctx.new_id()
        return changes


@dataclass(frozen=True)
class RowVerdict:
    valid: bool
    fields: Record
    reason: str | None = None


# ---------------------------------------------------------------------------
# Merge helpers
# ---------------------------------------------------------------------------

def values_equal(stored: Any, incoming: Any) -> bool:
    """Compare a stored column value with an incoming one.

    Drivers without a native datetime type hand back text; compare parsed.
    """
    if isinstance(incoming, datetime) and isinstance(stored, str):
        return parse_datetime(stored) == incoming
    return stored == incoming


def merge_non_null(strategy: EntityStrategy, record: Record, fields: Record) -> Record:
    """Changed columns for every non-key field with a non-null incoming value."""
    changes: Record = {}
    keys = set(strategy.key_columns)
    for field_name in strategy.columns:
        if field_name in keys:
            continue
        value = fields.get(field_name)
        column = strategy.column_for(field_name)
        if value is not None and not values_equal(record.get(column), value):
            changes[column] = value
    return changes


# ---------------------------------------------------------------------------
# RowValidator
# ---------------------------------------------------------------------------

def validate_row(strategy: EntityStrategy, row: ImportRow) -> RowVerdict:
    """Trim every field, then check required fields and maximum lengths.

    Converters (booleans, dates, small ints) run only on rows that pass.
    """
    fields: Record = {name: trim(row.get(name)) for name in strategy.columns}
    for name in strategy.required:
        if fields.get(name) is None:
            return RowVerdict(False, fields, f"missing_{name}")
    for name, limit in strategy.max_lengths.items():
        value = fields.get(name)
        if value is not None and len(value) > limit:
            return RowVerdict(False, fields, f"too_long_{name}")
    for name, convert in strategy.converters.items():
        fields[name] = convert(fields.get(name))
    return RowVerdict(True, fields)


# ---------------------------------------------------------------------------
# BatchWriter
# ---------------------------------------------------------------------------

@dataclass
class Staged:
    record: Record
    is_insert: bool


def _identity_key(table: Table, identity: Identity) -> tuple:
    return (str(table), tuple(sorted(identity.items())))


class PendingWrites:
    """Inserts and updates waiting for the next flush.

    Staged records are indexed by every identity they answer to so that a
    later row in the same batch resolves against them before the store.
    """

    def __init__(self, primary: Table, write_order: Sequence[Table] = ()) -> None:
        self.primary = primary
        self._tables = (primary, *write_order)
        self._inserts: dict[Table, list[Record]] = {t: [] for t in self._tables}
        self._updates: dict[tuple, tuple[Table, Identity, Record]] = {}
        self._staged: dict[tuple, Staged] = {}
        self.flushed: dict[str, int] = {}

    @property
    def pending_count(self) -> int:
        return len(self._inserts[self.primary]) + len(self._updates)

    @property
    def staged_count(self) -> int:
        return len(self._staged)

    @property
    def is_empty(self) -> bool:
        return not self._updates and not any(self._inserts.values())

    def should_flush(self, batch_size: int) -> bool:
        return self.pending_count >= batch_size

    def add_insert(
        self,
        table: Table,
        record: Record,
        identities: Sequence[Identity] = (),
    ) -> None:
        self._inserts[table].append(record)
        self.stage(table, record, identities, is_insert=True)

    def add_update(self, table: Table, key: Identity, changes: Record) -> None:
        ikey = _identity_key(table, key)
        pending = self._updates.get(ikey)
        if pending is None:
            self._updates[ikey] = (table, dict(key), dict(changes))
        else:
            pending[2].update(changes)

    def stage(
        self,
        table: Table,
        record: Record,
        identities: Sequence[Identity],
        *,
        is_insert: bool,
    ) -> None:
        for identity in identities:
            self._staged[_identity_key(table, identity)] = Staged(record, is_insert)

    def find(self, table: Table, identity: Identity) -> Staged | None:
        return self._staged.get(_identity_key(table, identity))

    def flush(self, store: Store) -> int:
        """Write everything pending in one transaction; return primary rows inserted."""
        written: dict[str, int] = {}
        with store.transaction():
            for table in self._tables:
                rows = self._inserts[table]
                if rows:
                    written[str(table)] = store.insert_many(table, rows)
            for table, key, changes in self._updates.values():
                store.update(table, key, changes)

        inserted = len(self._inserts[self.primary])
        for name, count in written.items():
            self.flushed[name] = self.flushed.get(name, 0) + count
        self.clear()
        return inserted

    def clear(self) -> None:
        self._inserts = {t: [] for t in self._tables}
        self._updates.clear()
        self._staged.clear()


# ---------------------------------------------------------------------------
# Run context
# ---------------------------------------------------------------------------

@dataclass
class ImportContext:
    store: Store
    strategy: EntityStrategy
    pending: PendingWrites
    counters: RunCounters
    hasher: PasswordHasher
    new_id: IdGenerator
    references: ReferenceCache | None = None
    duplicates: DuplicateKeyIndex | None = None
    extras: dict[str, Any] = field(default_factory=dict)

    def cache(self, name: str, factory: Callable[[], Any]) -> Any:
        """Run-scoped helper cache created on first use."""
        if name not in self.extras:
            self.extras[name] = factory()
        return self.extras[name]

    def warn(self, message: str) -> None:
        log.warning(message)
        self.counters.warnings.append(message)


def build_context(
    store: Store,
    strategy: EntityStrategy,
    *,
    counters: RunCounters | None = None,
    hasher: PasswordHasher | None = None,
    id_generator: IdGenerator = new_id,
) -> ImportContext:
    references = None
    if strategy.reference is not None:
        references = ReferenceCache(
            store, strategy.reference.table, strategy.reference.column
        )
    duplicates = None
    if strategy.shape is Shape.APPEND:
        duplicates = DuplicateKeyIndex(
            store,
            strategy.table,
            strategy.column_for(strategy.parent_field),
            [strategy.column_for(c) for c in strategy.key_columns],
        )
    return ImportContext(
        store=store,
        strategy=strategy,
        pending=PendingWrites(strategy.table, strategy.write_order),
        counters=counters if counters is not None else RunCounters(),
        hasher=hasher if hasher is not None else IdentityV3PasswordHasher(),
        new_id=id_generator,
        references=references,
        duplicates=duplicates,
    )


# ---------------------------------------------------------------------------
# UpsertResolver
# ---------------------------------------------------------------------------

def resolve_row(ctx: ImportContext, fields: Record) -> Decision:
    strategy = ctx.strategy
    if strategy.reference is not None:
        if not ctx.references.is_valid(fields.get(strategy.reference.field)):
            return Decision.SKIP_INVALID_REFERENCE
    if strategy.shape is Shape.APPEND:
        return _resolve_append(ctx, fields)
    return _resolve_upsert(ctx, fields)


def _resolve_append(ctx: ImportContext, fields: Record) -> Decision:
    strategy = ctx.strategy
    parent = fields[strategy.parent_field]
    key = build_key(*(fields.get(c) for c in strategy.key_columns))
    if ctx.duplicates.contains(parent, key):
        return Decision.SKIP_DUPLICATE
    ctx.pending.add_insert(strategy.table, strategy.build(ctx, fields))
    ctx.duplicates.add(parent, key)
    return Decision.INSERT


def _resolve_upsert(ctx: ImportContext, fields: Record) -> Decision:
    strategy = ctx.strategy
    table = strategy.table
    identity = strategy.lookup_identity(fields)

    staged = ctx.pending.find(table, identity)
    if staged is not None:
        record, is_new = staged.record, staged.is_insert
    else:
        record, is_new = ctx.store.find_one(table, identity), False

    if record is None:
        record = strategy.build(ctx, fields)
        ctx.pending.add_insert(table, record, strategy.record_identities(record))
        if strategy.after_resolve is not None:
            strategy.after_resolve(ctx, record, fields, True)
        return Decision.INSERT

    changes = strategy.changes_for(ctx, record, fields)
    decision = Decision.UNCHANGED
    if changes:
        update_key = strategy.update_key_for(record)
        record.update(changes)
        if not is_new:
            ctx.pending.add_update(table, update_key, changes)
        decision = Decision.UPDATE
    # Only records with a pending write are staged.
    if is_new or changes:
        ctx.pending.stage(table, record, strategy.record_identities(record), is_insert=is_new)

    if strategy.after_resolve is not None:
        strategy.after_resolve(ctx, record, fields, is_new)
    return decision


# ---------------------------------------------------------------------------
# ImportHandler
# ---------------------------------------------------------------------------

def _reject(ctx: ImportContext, rejects: RejectWriter, row: ImportRow, reason: str) -> None:
    counter = ctx.strategy.reject_counter
    setattr(ctx.counters, counter, getattr(ctx.counters, counter) + 1)
    rejects.write(row, reason)


def process_row(ctx: ImportContext, row: ImportRow, rejects: RejectWriter) -> Decision | None:
    """Validate and resolve one row, updating counters. None means invalid."""
    verdict = validate_row(ctx.strategy, row)
    if not verdict.valid:
        _reject(ctx, rejects, row, verdict.reason)
        return None

    decision = resolve_row(ctx, verdict.fields)
    counters = ctx.counters
    if decision is Decision.SKIP_INVALID_REFERENCE:
        _reject(ctx, rejects, row, f"invalid_reference_{ctx.strategy.reference.field}")
    elif decision is Decision.SKIP_DUPLICATE:
        counters.duplicate += 1
        counters.skipped += 1
        rejects.write(row, "duplicate_key")
    elif decision is Decision.UPDATE:
        counters.updated += 1
    elif decision is Decision.UNCHANGED:
        counters.unchanged += 1
    return decision


def flush_pending(ctx: ImportContext) -> int:
    was_empty = ctx.pending.is_empty
    inserted = ctx.pending.flush(ctx.store)
    counters = ctx.counters
    counters.inserted += inserted
    counters.role_links_inserted = sum(
        n for name, n in ctx.pending.flushed.items() if name != str(ctx.strategy.table)
    )
    if not was_empty:
        counters.batches_flushed += 1
    return inserted


def run_import(
    store: Store,
    strategy: EntityStrategy,
    path: Path,
    settings: ImportSettings,
    *,
    cancel: CancelToken | None = None,
    rejects: RejectWriter | None = None,
    hasher: PasswordHasher | None = None,
    id_generator: IdGenerator = new_id,
    counters: RunCounters | None = None,
) -> RunCounters:
    """Import one CSV file for one entity strategy.

    Raises:
        FileNotFoundError: If path does not exist; nothing is read or written.
        ImportCancelled: If the cancel token fires; the pending batch is dropped.
        Exception: Any store error raised by a flush, after its rollback.
    """
    cancel = cancel if cancel is not None else store.cancel
    rejects = rejects if rejects is not None else RejectWriter(None)
    rows = open_rows(path, strategy.columns, cancel)

    ctx = build_context(
        store, strategy, counters=counters, hasher=hasher, id_generator=id_generator
    )
    batch_size = max(1, settings.batch_size)
    log.info("[%s] importing %s (batch_size=%d)", strategy.name, path, batch_size)

    try:
        with closing(rows):
            for row in rows:
                ctx.counters.read += 1
                process_row(ctx, row, rejects)
                if ctx.pending.should_flush(batch_size):
                    flush_pending(ctx)
                    log.info("[%s] Progress: %s", strategy.name, ctx.counters.summary())
            # Trailing updates are persisted even when no insert is pending.
            flush_pending(ctx)
    except ImportCancelled:
        log.warning(
            "[%s] cancelled after read=%d; pending batch discarded",
            strategy.name, ctx.counters.read,
        )
        store.rollback()
        raise

    log.info("[%s] DONE: %s", strategy.name, ctx.counters.summary())
    return ctx.counters
