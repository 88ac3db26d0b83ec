import logging
from concurrent.futures import Executor, ThreadPoolExecutor
from datetime import datetime
from typing import Callable, Optional

from .config import Settings, get_settings
from .dispatcher import Dispatcher
from .distribution import (
    AFFILIATE_BALANCES_COLLECTION,
    COMMISSIONS_COLLECTION,
    PARTNER_BALANCES_COLLECTION,
    PARTNER_SPLITS_COLLECTION,
    DistributionEngine,
)
from .exceptions import UnknownTransactionError
from .idempotency import IdempotencyGate
from .models import (
    AffiliateBalance,
    CommissionEntry,
    DispatchFailure,
    IngestResult,
    PartnerBalance,
    PartnerSplitEntry,
    Transaction,
    WebhookAck,
)
from .normalizers import (
    normalize_apple_notification,
    normalize_revenuecat_event,
    normalize_stripe_event,
)
from .referrals import ReferralLookup
from .store import InMemoryStore
from .stripe_client import make_invoice_retriever
from .writer import TRANSACTIONS_COLLECTION, Scheduler, TransactionWriter

logger = logging.getLogger(__name__)


class RevShareService:
    """Wires gate, writer, dispatcher and distribution engine over one store."""

    def __init__(
        self,
        store: Optional[InMemoryStore] = None,
        settings: Optional[Settings] = None,
        executor: Optional[Executor] = None,
        clock: Optional[Callable[[], datetime]] = None,
        retrieve_invoice: Optional[Callable[[str], dict]] = None,
    ):
        self.settings = settings or get_settings()
        self.retrieve_invoice = retrieve_invoice
        self.store = store or InMemoryStore(max_attempts=self.settings.STORE_MAX_TRANSACTION_ATTEMPTS)
        self.referrals = ReferralLookup(self.store)
        self.engine = DistributionEngine(
            self.store, self.referrals,
            net_fee_platforms=self.settings.NET_FEE_PLATFORMS,
            clock=clock,
        )
        self.dispatcher = Dispatcher(
            self.engine.distribute, self.store,
            max_attempts=self.settings.DISPATCH_MAX_ATTEMPTS,
            backoff_seconds=self.settings.DISPATCH_BACKOFF_SECONDS,
            executor=executor,
            clock=clock,
        )
        self.gate = IdempotencyGate(self.store, clock=clock)
        self.writer = TransactionWriter(self.store, self.gate, self.dispatcher, clock=clock)

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "RevShareService":
        settings = settings or get_settings()
        executor = None
        if settings.DISPATCH_WORKERS > 0:
            executor = ThreadPoolExecutor(max_workers=settings.DISPATCH_WORKERS,
                                          thread_name_prefix="revshare-dispatch")
        return cls(settings=settings, executor=executor, retrieve_invoice=make_invoice_retriever(settings))

    # -- ingestion ---------------------------------------------------------

    def ingest(self, transaction: Transaction, schedule: Optional[Scheduler] = None) -> IngestResult:
        return self.writer.ingest(transaction, schedule)

    def ingest_stripe_event(self, payload: dict, schedule: Optional[Scheduler] = None) -> WebhookAck:
        transaction = normalize_stripe_event(payload, self.retrieve_invoice, self.settings)
        if transaction is None:
            return WebhookAck(ignored=True)
        return self._ack(self.ingest(transaction, schedule))

    def ingest_revenuecat_event(self, payload: dict, schedule: Optional[Scheduler] = None) -> WebhookAck:
        return self._ack(self.ingest(normalize_revenuecat_event(payload, self.settings), schedule))

    def ingest_apple_notification(self, signed_payload: str,
                                  schedule: Optional[Scheduler] = None) -> WebhookAck:
        transaction = normalize_apple_notification(signed_payload, self.settings)
        return self._ack(self.ingest(transaction, schedule))

    # -- queries -----------------------------------------------------------

    def get_transaction(self, transaction_id: str) -> Transaction:
        doc = self.store.get(TRANSACTIONS_COLLECTION, transaction_id)
        if doc is None:
            raise UnknownTransactionError(f"Transaction {transaction_id} not found")
        return Transaction.model_validate(doc)

    def list_commissions(self, transaction_id: Optional[str] = None,
                         affiliate_id: Optional[str] = None) -> list[CommissionEntry]:
        filters = _filters(transaction_id=transaction_id, affiliate_id=affiliate_id)
        entries = [CommissionEntry(**d) for d in self.store.list(COMMISSIONS_COLLECTION, **filters)]
        entries.sort(key=lambda e: (e.created_at, e.id))
        return entries

    def list_partner_splits(self, transaction_id: Optional[str] = None,
                            partner_id: Optional[str] = None) -> list[PartnerSplitEntry]:
        filters = _filters(transaction_id=transaction_id, partner_id=partner_id)
        entries = [PartnerSplitEntry(**d) for d in self.store.list(PARTNER_SPLITS_COLLECTION, **filters)]
        entries.sort(key=lambda e: (e.created_at, e.id))
        return entries

    def get_affiliate_balance(self, affiliate_id: str) -> AffiliateBalance:
        doc = self.store.get(AFFILIATE_BALANCES_COLLECTION, affiliate_id)
        return AffiliateBalance(**doc) if doc else AffiliateBalance(affiliate_id=affiliate_id)

    def get_partner_balance(self, partner_id: str) -> PartnerBalance:
        doc = self.store.get(PARTNER_BALANCES_COLLECTION, partner_id)
        return PartnerBalance(**doc) if doc else PartnerBalance(partner_id=partner_id)

    # -- reconciliation ----------------------------------------------------

    def dispatch_failures(self) -> list[DispatchFailure]:
        return self.dispatcher.failures()

    def reconcile(self, transaction_id: str) -> bool:
        return self.dispatcher.reconcile(transaction_id)

    def close(self) -> None:
        self.dispatcher.shutdown(wait=True)

    @staticmethod
    def _ack(result: IngestResult) -> WebhookAck:
        return WebhookAck(transaction_id=result.transaction_id, created=result.created)


def _filters(**kwargs) -> dict:
    return {k: v for k, v in kwargs.items() if v is not None}
