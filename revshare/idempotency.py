import logging
from datetime import datetime, timezone
from typing import Callable, Optional

from .models import IdempotencyKeyRecord
from .store import InMemoryStore, StoreTransaction

logger = logging.getLogger(__name__)

KEYS_COLLECTION = "txKeys"


class IdempotencyGate:
    """Maps a dedupe key to exactly one transaction id.

    The read-check-write for a key runs as a single store transaction, so
    concurrent claimants for the same key all come back with the id minted
    by whichever of them committed first.
    """

    def __init__(self, store: InMemoryStore, clock: Optional[Callable[[], datetime]] = None):
        self.store = store
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    def acquire(self, dedupe_key: str) -> str:
        if not dedupe_key:
            raise ValueError("dedupe_key must be a non-empty string")

        def claim(txn: StoreTransaction) -> tuple[str, bool]:
            existing = txn.get(KEYS_COLLECTION, dedupe_key)
            if existing is not None:
                return IdempotencyKeyRecord(**existing).transaction_id, False
            transaction_id = self.store.new_id()
            record = IdempotencyKeyRecord(dedupe_key=dedupe_key, transaction_id=transaction_id,
                                          created_at=self.clock())
            txn.create(KEYS_COLLECTION, dedupe_key, record.model_dump())
            return transaction_id, True

        transaction_id, minted = self.store.run_transaction(claim)
        if minted:
            logger.info(f"Claimed dedupe key {dedupe_key} for transaction {transaction_id}")
        else:
            logger.info(f"Duplicate event {dedupe_key}, reusing transaction {transaction_id}")
        return transaction_id
