"""
Document store with optimistic multi-document transactions.

Documents live in named collections and carry a version counter. A
transaction records the version of every document it reads and buffers
every write; commit re-checks those versions under a short lock and applies
the buffered writes in one step. A version mismatch aborts the attempt and
the body is re-run against fresh data. Nothing a transaction body does is
visible to other readers until its commit succeeds.
"""

import copy
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, TypeVar
from uuid import uuid4

from .exceptions import TransientStoreError

logger = logging.getLogger(__name__)

T = TypeVar("T")

DocKey = tuple[str, str]


class WriteConflict(Exception):
    pass


@dataclass
class _Write:
    op: str  # create, set, merge, increment, delete
    key: DocKey
    data: dict = field(default_factory=dict)


class StoreTransaction:
    def __init__(self, store: "InMemoryStore"):
        self._store = store
        self.reads: dict[DocKey, int] = {}
        self.writes: list[_Write] = []

    def get(self, collection: str, doc_id: str) -> Optional[dict]:
        if self.writes:
            raise RuntimeError("all reads must happen before the first write of a transaction")
        key = (collection, doc_id)
        version, data = self._store._read(key)
        self.reads[key] = version
        return data

    def create(self, collection: str, doc_id: str, data: dict) -> None:
        """Create a document; the commit aborts if it already exists."""
        self.writes.append(_Write("create", (collection, doc_id), copy.deepcopy(data)))

    def set(self, collection: str, doc_id: str, data: dict, merge: bool = False) -> None:
        op = "merge" if merge else "set"
        self.writes.append(_Write(op, (collection, doc_id), copy.deepcopy(data)))

    def delete(self, collection: str, doc_id: str) -> None:
        self.writes.append(_Write("delete", (collection, doc_id)))

    def increment(self, collection: str, doc_id: str, amounts: dict[str, int],
                  defaults: Optional[dict] = None) -> None:
        """Add to numeric fields, creating the document from ``defaults`` if missing."""
        self.writes.append(_Write(
            "increment", (collection, doc_id),
            {"amounts": dict(amounts), "defaults": copy.deepcopy(defaults or {})},
        ))


class InMemoryStore:
    def __init__(self, max_attempts: int = 5, retry_delay: float = 0.001):
        self.max_attempts = max_attempts
        self.retry_delay = retry_delay
        self.available = True
        self._docs: dict[DocKey, dict] = {}
        self._versions: dict[DocKey, int] = {}
        self._lock = threading.Lock()

    def new_id(self) -> str:
        return uuid4().hex

    def get(self, collection: str, doc_id: str) -> Optional[dict]:
        return self._read((collection, doc_id))[1]

    def list(self, collection: str, **filters: Any) -> list[dict]:
        self._check_available()
        with self._lock:
            docs = [
                copy.deepcopy(data) for (coll, _), data in self._docs.items()
                if coll == collection and all(data.get(k) == v for k, v in filters.items())
            ]
        return docs

    def run_transaction(self, fn: Callable[[StoreTransaction], T],
                        max_attempts: Optional[int] = None) -> T:
        """Run ``fn`` inside a transaction, re-running it on write conflicts.

        Returns whatever ``fn`` returned for the attempt that committed. Any
        exception raised by ``fn`` abandons the attempt without writing.
        """
        attempts = max_attempts or self.max_attempts
        for attempt in range(1, attempts + 1):
            txn = StoreTransaction(self)
            result = fn(txn)
            try:
                self._commit(txn)
                return result
            except WriteConflict as e:
                logger.debug(f"Transaction attempt {attempt}/{attempts} conflicted: {e}")
                time.sleep(self.retry_delay * attempt)
        raise TransientStoreError(f"Transaction aborted after {attempts} conflicting attempts")

    def _check_available(self) -> None:
        if not self.available:
            raise TransientStoreError("Store is unavailable")

    def _read(self, key: DocKey) -> tuple[int, Optional[dict]]:
        self._check_available()
        with self._lock:
            return self._versions.get(key, 0), copy.deepcopy(self._docs.get(key))

    def _commit(self, txn: StoreTransaction) -> None:
        with self._lock:
            self._check_available()
            for key, version in txn.reads.items():
                if self._versions.get(key, 0) != version:
                    raise WriteConflict(f"{key[0]}/{key[1]} changed since it was read")

            staged: dict[DocKey, Optional[dict]] = {}
            for write in txn.writes:
                current = staged[write.key] if write.key in staged else self._docs.get(write.key)
                staged[write.key] = self._apply(write, copy.deepcopy(current))

            for key, data in staged.items():
                if data is None:
                    self._docs.pop(key, None)
                else:
                    self._docs[key] = data
                self._versions[key] = self._versions.get(key, 0) + 1

    @staticmethod
    def _apply(write: _Write, current: Optional[dict]) -> Optional[dict]:
        if write.op == "delete":
            return None
        if write.op == "create":
            if current is not None:
                raise WriteConflict(f"{write.key[0]}/{write.key[1]} already exists")
            return write.data
        if write.op == "set":
            return write.data
        if write.op == "merge":
            merged = current or {}
            merged.update(write.data)
            return merged
        if write.op == "increment":
            doc = current if current is not None else dict(write.data["defaults"])
            for name, amount in write.data["amounts"].items():
                doc[name] = doc.get(name, 0) + amount
            return doc
        raise ValueError(f"Unknown write operation {write.op}")
