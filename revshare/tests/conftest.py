from datetime import datetime, timezone
from decimal import Decimal

import pytest

from revshare.config import Settings
from revshare.distribution import DistributionEngine
from revshare.idempotency import IdempotencyGate
from revshare.models import Monetary, Transaction
from revshare.service import RevShareService
from revshare.store import InMemoryStore
from revshare.writer import TransactionWriter

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


class RecordingDispatcher:
    def __init__(self):
        self.enqueued: list[str] = []

    def enqueue(self, transaction_id: str) -> None:
        self.enqueued.append(transaction_id)


@pytest.fixture
def clock():
    return lambda: NOW


@pytest.fixture
def settings():
    return Settings(DISPATCH_WORKERS=0, DISPATCH_BACKOFF_SECONDS=0)


@pytest.fixture
def store():
    return InMemoryStore(retry_delay=0)


@pytest.fixture
def recorder():
    return RecordingDispatcher()


@pytest.fixture
def gate(store, clock):
    return IdempotencyGate(store, clock=clock)


@pytest.fixture
def writer(store, gate, recorder, clock):
    return TransactionWriter(store, gate, recorder, clock=clock)


@pytest.fixture
def engine(store, clock):
    return DistributionEngine(store, clock=clock)


@pytest.fixture
def service(store, settings, clock):
    return RevShareService(store=store, settings=settings, clock=clock)


@pytest.fixture
def make_transaction():
    def _make(dedupe_key="invoice:in_123", event="initial_purchase", platform="stripe_web",
              gross_cents=10000, fee_cents=300, net_after_fees_cents=9700, user_uid="user-1",
              currency="brl"):
        return Transaction(
            tenant_id="tenant-1",
            user_uid=user_uid,
            product_id="price_monthly",
            platform=platform,
            event=event,
            monetary=Monetary(
                currency=currency,
                gross_cents=gross_cents,
                fee_cents=fee_cents,
                net_after_fees_cents=net_after_fees_cents,
            ),
            occurred_at=NOW,
            dedupe_key=dedupe_key,
        )
    return _make


@pytest.fixture
def set_referral(store):
    def _set(user_uid="user-1", affiliate_id="aff-1"):
        store.run_transaction(lambda txn: txn.set("referrals", user_uid, {"affiliate_id": affiliate_id}))
    return _set


@pytest.fixture
def set_partners(store):
    def _set(shares=(("A", "0.5"), ("B", "0.5")), hold_days_partners=14):
        doc = {
            "shares": [{"partner_id": p, "pct": Decimal(pct)} for p, pct in shares],
            "hold_days_partners": hold_days_partners,
        }
        store.run_transaction(lambda txn: txn.set("settings", "partnership", doc))
    return _set


@pytest.fixture
def set_commission(store):
    def _set(**defaults):
        store.run_transaction(lambda txn: txn.set("settings", "commission", {"defaults": defaults}))
    return _set
