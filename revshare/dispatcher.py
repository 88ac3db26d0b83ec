import logging
import time
from concurrent.futures import Executor, Future
from datetime import datetime, timezone
from typing import Callable, Optional

from .exceptions import DispatchFailureNotFoundError, TransientStoreError, UnknownTransactionError
from .models import DispatchFailure
from .store import InMemoryStore

logger = logging.getLogger(__name__)

FAILURES_COLLECTION = "dispatchFailures"


class Dispatcher:
    """Runs distribution for a transaction id outside the ingestion path.

    Each unit gets up to ``max_attempts`` tries with exponential backoff.
    Units that still fail are parked in the ``dispatchFailures`` collection
    for manual reconciliation and are not retried again on their own.
    """

    def __init__(
        self,
        handler: Callable[[str], object],
        store: InMemoryStore,
        max_attempts: int = 3,
        backoff_seconds: float = 0.5,
        executor: Optional[Executor] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.handler = handler
        self.store = store
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds
        self.executor = executor
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    def enqueue(self, transaction_id: str) -> Optional[Future]:
        if self.executor is None:
            self.run(transaction_id)
            return None
        logger.debug(f"Queued distribution for transaction {transaction_id}")
        return self.executor.submit(self.run, transaction_id)

    def run(self, transaction_id: str) -> bool:
        """Run one unit of work with bounded retries. Returns True on success."""
        last_error: Optional[Exception] = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                self.handler(transaction_id)
                return True
            except UnknownTransactionError as e:
                logger.warning(f"Skipping distribution: {e}")
                return False
            except Exception as e:
                last_error = e
                logger.warning(
                    f"Distribution of {transaction_id} failed (attempt {attempt}/{self.max_attempts}): {e}"
                )
                if attempt < self.max_attempts and self.backoff_seconds > 0:
                    time.sleep(self.backoff_seconds * 2 ** (attempt - 1))

        self._park(transaction_id, last_error)
        return False

    def failures(self) -> list[DispatchFailure]:
        docs = self.store.list(FAILURES_COLLECTION)
        return sorted((DispatchFailure(**d) for d in docs), key=lambda f: f.failed_at)

    def reconcile(self, transaction_id: str) -> bool:
        """Manually re-run a parked unit; clears the failure record on success."""
        if self.store.get(FAILURES_COLLECTION, transaction_id) is None:
            raise DispatchFailureNotFoundError(f"No dispatch failure recorded for {transaction_id}")
        self.handler(transaction_id)
        self.store.run_transaction(lambda txn: txn.delete(FAILURES_COLLECTION, transaction_id))
        logger.info(f"Reconciled transaction {transaction_id}")
        return True

    def shutdown(self, wait: bool = True) -> None:
        if self.executor is not None:
            self.executor.shutdown(wait=wait)

    def _park(self, transaction_id: str, error: Optional[Exception]) -> None:
        logger.error(
            f"Giving up on distribution of {transaction_id} after {self.max_attempts} attempts, "
            f"needs manual reconciliation: {error}"
        )
        failure = DispatchFailure(
            transaction_id=transaction_id,
            attempts=self.max_attempts,
            last_error=repr(error),
            failed_at=self.clock(),
        )
        try:
            self.store.run_transaction(
                lambda txn: txn.set(FAILURES_COLLECTION, transaction_id, failure.model_dump())
            )
        except TransientStoreError:
            logger.exception(f"Could not record dispatch failure for {transaction_id}")
