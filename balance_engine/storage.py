"""
In-memory document store.

Mimics the subset of a document database the balance engine relies on:

- per-document atomic updates (``$inc``, ``$set``, ``$setOnInsert``) that may be
  guarded by a filter, so a decrement only applies while the bucket covers it
- unique indexes, optionally partial
- multi-document transactions (snapshot and restore), when enabled

Every operation runs under one re-entrant lock, so a single call is atomic
and a transaction is serializable with respect to all other calls.
"""

import copy
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Callable, Iterator, Optional


class StorageError(Exception):
    pass


class DuplicateKeyError(StorageError):
    def __init__(self, collection: str, index: tuple[str, ...], key: tuple):
        self.collection = collection
        self.index = index
        self.key = key
        super().__init__(f"Duplicate key in {collection} for {index}: {key}")


@dataclass(frozen=True)
class UniqueIndex:
    fields: tuple[str, ...]
    where: Optional[Callable[[dict], bool]] = None

    def key_for(self, doc: dict) -> Optional[tuple]:
        if self.where is not None and not self.where(doc):
            return None
        key = tuple(doc.get(f) for f in self.fields)
        if any(part is None for part in key):
            return None
        return key


def _compare(value: Any, op: str, expected: Any) -> bool:
    if op == "$eq":
        return value == expected
    if op == "$ne":
        return value != expected
    if op == "$in":
        return value in expected
    if op == "$nin":
        return value not in expected
    if op == "$exists":
        return (value is not None) == bool(expected)
    if value is None:
        return False
    if op == "$gt":
        return value > expected
    if op == "$gte":
        return value >= expected
    if op == "$lt":
        return value < expected
    if op == "$lte":
        return value <= expected
    raise StorageError(f"Unsupported filter operator {op}")


def matches(doc: dict, filter: Optional[dict]) -> bool:
    if not filter:
        return True
    for field, condition in filter.items():
        value = doc.get(field)
        if isinstance(condition, dict) and condition and all(k.startswith("$") for k in condition):
            if not all(_compare(value, op, expected) for op, expected in condition.items()):
                return False
        elif value != condition:
            return False
    return True


def _apply_update(doc: dict, update: dict, inserting: bool) -> None:
    for op, fields in update.items():
        if op == "$set":
            doc.update(fields)
        elif op == "$setOnInsert":
            if inserting:
                doc.update(fields)
        elif op == "$inc":
            for field, delta in fields.items():
                current = doc.get(field)
                if current is None:
                    current = Decimal("0") if isinstance(delta, Decimal) else 0
                doc[field] = current + delta
        else:
            raise StorageError(f"Unsupported update operator {op}")


class Collection:
    def __init__(self, name: str, key: str, lock: threading.RLock, unique: tuple[UniqueIndex, ...] = ()):
        self.name = name
        self.key = key
        self._lock = lock
        self._unique = (UniqueIndex((key,)),) + tuple(unique)
        self._docs: dict[Any, dict] = {}

    def _check_unique(self, doc: dict, ignore_key: Any = None) -> None:
        for index in self._unique:
            key = index.key_for(doc)
            if key is None:
                continue
            for other_key, other in self._docs.items():
                if other_key == ignore_key:
                    continue
                if index.key_for(other) == key:
                    raise DuplicateKeyError(self.name, index.fields, key)

    def insert_one(self, doc: dict) -> dict:
        if doc.get(self.key) is None:
            raise StorageError(f"{self.name} documents require '{self.key}'")
        with self._lock:
            stored = copy.deepcopy(doc)
            self._check_unique(stored)
            self._docs[stored[self.key]] = stored
            return copy.deepcopy(stored)

    def find_one(self, filter: Optional[dict] = None) -> Optional[dict]:
        with self._lock:
            for doc in self._docs.values():
                if matches(doc, filter):
                    return copy.deepcopy(doc)
        return None

    def find(
        self,
        filter: Optional[dict] = None,
        sort: Optional[tuple[str, bool]] = None,
        skip: int = 0,
        limit: Optional[int] = None,
    ) -> list[dict]:
        """Return matching documents. ``sort`` is ``(field, descending)``."""
        with self._lock:
            found = [copy.deepcopy(d) for d in self._docs.values() if matches(d, filter)]
        if sort is not None:
            field, descending = sort
            found.sort(key=lambda d: d.get(field), reverse=descending)
        if skip:
            found = found[skip:]
        if limit is not None:
            found = found[:limit]
        return found

    def count(self, filter: Optional[dict] = None) -> int:
        with self._lock:
            return sum(1 for d in self._docs.values() if matches(d, filter))

    def distinct(self, field: str, filter: Optional[dict] = None) -> list:
        with self._lock:
            values = {d.get(field) for d in self._docs.values() if matches(d, filter)}
        values.discard(None)
        return sorted(values, key=str)

    def update_one(self, filter: dict, update: dict, upsert: bool = False) -> Optional[dict]:
        """
        Atomically apply ``update`` to the first document matching ``filter``.

        Returns the updated document, or None when nothing matched and
        ``upsert`` is False. On upsert the equality fields of the filter seed
        the new document.
        """
        with self._lock:
            for key, doc in self._docs.items():
                if matches(doc, filter):
                    updated = copy.deepcopy(doc)
                    _apply_update(updated, update, inserting=False)
                    if updated.get(self.key) != key:
                        raise StorageError(f"Cannot change '{self.key}' of a {self.name} document")
                    self._check_unique(updated, ignore_key=key)
                    self._docs[key] = updated
                    return copy.deepcopy(updated)
            if not upsert:
                return None
            seeded = {
                field: value for field, value in filter.items()
                if not (isinstance(value, dict) and any(k.startswith("$") for k in value))
            }
            _apply_update(seeded, update, inserting=True)
            return self.insert_one(seeded)

    def replace_one(self, filter: dict, doc: dict) -> Optional[dict]:
        with self._lock:
            for key, existing in self._docs.items():
                if matches(existing, filter):
                    replacement = copy.deepcopy(doc)
                    replacement[self.key] = key
                    self._check_unique(replacement, ignore_key=key)
                    self._docs[key] = replacement
                    return copy.deepcopy(replacement)
        return None

    def delete_one(self, filter: dict) -> bool:
        with self._lock:
            for key, doc in self._docs.items():
                if matches(doc, filter):
                    del self._docs[key]
                    return True
        return False

    def _snapshot(self) -> dict[Any, dict]:
        return copy.deepcopy(self._docs)

    def _restore(self, snapshot: dict[Any, dict]) -> None:
        self._docs = snapshot


def _is_commission(doc: dict) -> bool:
    return doc.get("category") == "commission"


class InMemoryStorage:
    def __init__(self, supports_transactions: bool = True):
        self.supports_transactions = supports_transactions
        self._lock = threading.RLock()
        self.balances = Collection("balances", "user_id", self._lock)
        self.balance_transactions = Collection(
            "balance_transactions", "id", self._lock,
            unique=(UniqueIndex(("user_id", "related_transaction_id", "tier"), where=_is_commission),),
        )
        self.affiliate_earnings = Collection(
            "affiliate_earnings", "id", self._lock,
            unique=(UniqueIndex(("user_id", "transaction_id", "tier")),),
        )
        self.withdrawals = Collection("withdrawals", "id", self._lock)
        self.users = Collection("users", "id", self._lock)
        self.kyc = Collection("kyc", "user_id", self._lock)

    @property
    def collections(self) -> tuple[Collection, ...]:
        return (
            self.balances, self.balance_transactions, self.affiliate_earnings,
            self.withdrawals, self.users, self.kyc,
        )

    @contextmanager
    def transaction(self) -> Iterator["InMemoryStorage"]:
        """Run a group of writes atomically; any exception restores every collection."""
        if not self.supports_transactions:
            raise StorageError("This store does not support multi-document transactions")
        with self._lock:
            snapshots = [(c, c._snapshot()) for c in self.collections]
            try:
                yield self
            except BaseException:
                for collection, snapshot in snapshots:
                    collection._restore(snapshot)
                raise
