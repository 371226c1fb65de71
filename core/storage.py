"""
Transactional in-memory storage.

Stands in for the relational store the ledger is designed against. It
offers the three guarantees the services rely on:

- serializable transactions: one writer at a time, nested calls join
  the outer transaction, any exception rolls back every insert and
  update made inside it;
- unique indexes checked on insert and update (NULL values never
  collide, as in SQL);
- per-table column immutability: only the columns a table declares
  mutable may be updated and no row is ever deleted.

Rows are plain dicts. Every read returns a deep copy so callers cannot
mutate stored state behind the storage's back.
"""

import threading
from contextlib import contextmanager
from copy import deepcopy
from dataclasses import dataclass, field
from datetime import datetime, timezone
from itertools import count
from typing import Any, Callable, Iterator, Optional

from .errors import ConflictError


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class UniqueViolation(ConflictError):
    def __init__(self, table: str, index: str, value: tuple):
        self.table = table
        self.index = index
        self.value = value
        super().__init__(f"Unique constraint {table}.{index} violated for {value!r}")


class ImmutableColumnError(Exception):
    """Raised when code tries to update a column its table declares immutable."""


@dataclass(frozen=True)
class TableSpec:
    primary_key: str = "id"
    unique: dict = field(default_factory=dict)
    mutable: frozenset = frozenset()


TABLES = {
    "users": TableSpec(
        unique={"email": ("email",)},
        mutable=frozenset({"name"}),
    ),
    "ledger_entries": TableSpec(
        unique={"reversal_of_entry_id": ("reversal_of_entry_id",)},
        mutable=frozenset({"status"}),
    ),
    "rewards": TableSpec(
        unique={"idempotency_key": ("idempotency_key",)},
        mutable=frozenset({"status", "confirmed_at", "paid_at", "reversed_at", "reversal_reason"}),
    ),
    "idempotency_keys": TableSpec(primary_key="key"),
    "rules": TableSpec(
        unique={"name_version": ("name", "version")},
        mutable=frozenset({"is_active"}),
    ),
}


class InMemoryStorage:
    def __init__(self, tables: Optional[dict] = None):
        self.tables: dict[str, TableSpec] = dict(tables or TABLES)
        self._rows: dict[str, dict[Any, dict]] = {name: {} for name in self.tables}
        self._indexes: dict[tuple[str, str], dict[tuple, Any]] = {
            (name, index): {} for name, spec in self.tables.items() for index in spec.unique
        }
        self._lock = threading.RLock()
        self._undo: Optional[list] = None
        self._sequence = count(1)

    @contextmanager
    def transaction(self) -> Iterator["InMemoryStorage"]:
        with self._lock:
            if self._undo is not None:
                yield self
                return
            self._undo = []
            try:
                yield self
            except BaseException:
                self._rollback()
                raise
            finally:
                self._undo = None

    @property
    def in_transaction(self) -> bool:
        return self._undo is not None

    def insert(self, table: str, row: dict) -> dict:
        spec = self._spec(table)
        with self.transaction():
            pk = row.get(spec.primary_key)
            if pk is None:
                raise ValueError(f"{table} row is missing primary key {spec.primary_key!r}")
            if pk in self._rows[table]:
                raise UniqueViolation(table, spec.primary_key, (pk,))
            stored = deepcopy(row)
            stored["_seq"] = next(self._sequence)
            self._check_unique(table, stored)
            self._rows[table][pk] = stored
            self._index(table, stored)
            self._undo.append(("insert", table, pk))
            return deepcopy(stored)

    def update(self, table: str, pk: Any, **changes) -> dict:
        spec = self._spec(table)
        illegal = set(changes) - spec.mutable
        if illegal:
            raise ImmutableColumnError(f"{table} columns {sorted(illegal)} are immutable")
        with self.transaction():
            current = self._rows[table].get(pk)
            if current is None:
                raise KeyError(f"{table} row {pk!r} does not exist")
            previous = {name: current.get(name) for name in changes}
            candidate = {**current, **deepcopy(changes)}
            self._unindex(table, current)
            try:
                self._check_unique(table, candidate)
            except UniqueViolation:
                self._index(table, current)
                raise
            current.update(deepcopy(changes))
            self._index(table, current)
            self._undo.append(("update", table, pk, previous))
            return deepcopy(current)

    def get(self, table: str, pk: Any) -> Optional[dict]:
        with self._lock:
            row = self._rows[self._name(table)].get(pk)
            return deepcopy(row) if row is not None else None

    def find_unique(self, table: str, index: str, *values) -> Optional[dict]:
        with self._lock:
            pk = self._indexes[(self._name(table), index)].get(tuple(values))
            return self.get(table, pk) if pk is not None else None

    def select(self, table: str, where: Optional[Callable[[dict], bool]] = None) -> list[dict]:
        """Return matching rows in insertion order."""
        with self._lock:
            rows = sorted(self._rows[self._name(table)].values(), key=lambda r: r["_seq"])
            return [deepcopy(r) for r in rows if where is None or where(r)]

    def count(self, table: str) -> int:
        with self._lock:
            return len(self._rows[self._name(table)])

    def _rollback(self) -> None:
        for op in reversed(self._undo):
            if op[0] == "insert":
                _, table, pk = op
                row = self._rows[table].pop(pk)
                self._unindex(table, row)
            else:
                _, table, pk, previous = op
                row = self._rows[table][pk]
                self._unindex(table, row)
                row.update(previous)
                self._index(table, row)

    def _check_unique(self, table: str, row: dict) -> None:
        for index, columns in self.tables[table].unique.items():
            key = self._index_key(row, columns)
            if key is not None and key in self._indexes[(table, index)]:
                raise UniqueViolation(table, index, key)

    def _index(self, table: str, row: dict) -> None:
        spec = self.tables[table]
        for index, columns in spec.unique.items():
            key = self._index_key(row, columns)
            if key is not None:
                self._indexes[(table, index)][key] = row[spec.primary_key]

    def _unindex(self, table: str, row: dict) -> None:
        for index, columns in self.tables[table].unique.items():
            key = self._index_key(row, columns)
            if key is not None:
                self._indexes[(table, index)].pop(key, None)

    @staticmethod
    def _index_key(row: dict, columns: tuple) -> Optional[tuple]:
        key = tuple(row.get(c) for c in columns)
        return None if any(v is None for v in key) else key

    def _spec(self, table: str) -> TableSpec:
        return self.tables[self._name(table)]

    def _name(self, table: str) -> str:
        if table not in self.tables:
            raise KeyError(f"Unknown table {table!r}")
        return table
