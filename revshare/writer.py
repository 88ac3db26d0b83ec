import logging
from datetime import datetime, timezone
from typing import Callable, Optional, Protocol

from .idempotency import IdempotencyGate
from .models import IngestResult, Transaction
from .store import InMemoryStore, StoreTransaction

logger = logging.getLogger(__name__)

TRANSACTIONS_COLLECTION = "transactions"


class Enqueuer(Protocol):
    def enqueue(self, transaction_id: str) -> None: ...


# Defers a call until after the response, e.g. BackgroundTasks.add_task.
Scheduler = Callable[..., None]


class TransactionWriter:
    def __init__(self, store: InMemoryStore, gate: IdempotencyGate, dispatcher: Enqueuer,
                 clock: Optional[Callable[[], datetime]] = None):
        self.store = store
        self.gate = gate
        self.dispatcher = dispatcher
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    def ingest(self, transaction: Transaction, schedule: Optional[Scheduler] = None) -> IngestResult:
        """Claim the dedupe key, persist the transaction once and dispatch it."""
        transaction_id = self.gate.acquire(transaction.dedupe_key)
        created = self.write(transaction_id, transaction, schedule)
        return IngestResult(transaction_id=transaction_id, created=created)

    def write(self, transaction_id: str, transaction: Transaction,
              schedule: Optional[Scheduler] = None) -> bool:
        """Create the transaction record if absent.

        Returns False when a record for ``transaction_id`` already exists,
        which happens when a redelivered event gets past the gate after an
        earlier delivery failed further down the pipeline. With ``schedule``
        the dispatch is handed to it instead of being enqueued right away.
        """
        record = transaction.model_copy(update={"id": transaction_id, "created_at": self.clock()})

        def create_once(txn: StoreTransaction) -> bool:
            if txn.get(TRANSACTIONS_COLLECTION, transaction_id) is not None:
                return False
            txn.create(TRANSACTIONS_COLLECTION, transaction_id, record.model_dump())
            return True

        persisted = self.store.run_transaction(create_once)
        if not persisted:
            logger.info(f"Transaction {transaction_id} already persisted, skipping write")
            return False

        logger.info(
            f"Persisted transaction {transaction_id} ({transaction.platform.value} "
            f"{transaction.event.value}, {transaction.monetary.gross_cents} "
            f"{transaction.monetary.currency.value})"
        )
        if schedule is not None:
            schedule(self.dispatcher.enqueue, transaction_id)
        else:
            self.dispatcher.enqueue(transaction_id)
        return True
