"""
Revenue-share ledger for billing events

This package provides:
- Exactly-once ingestion of billing events keyed by a dedupe key
- Normalizers for Stripe, RevenueCat and App Store notifications
- Affiliate commission and partner split computation
- Atomic ledger entries and pending balances with hold periods
- Asynchronous distribution with bounded retries and manual reconciliation
"""

from .distribution import DistributionEngine, compute_split
from .dispatcher import Dispatcher
from .exceptions import (
    DispatchFailureNotFoundError,
    InvalidSettingsError,
    NormalizationError,
    ProviderUnavailableError,
    RevShareError,
    TransientStoreError,
    UnknownTransactionError,
)
from .idempotency import IdempotencyGate
from .models import (
    AffiliateBalance,
    CommissionEntry,
    CommissionSettings,
    PartnerBalance,
    PartnershipSettings,
    PartnerSplitEntry,
    Transaction,
)
from .service import RevShareService
from .store import InMemoryStore
from .writer import TransactionWriter

__all__ = [
    "AffiliateBalance",
    "CommissionEntry",
    "CommissionSettings",
    "DispatchFailureNotFoundError",
    "DistributionEngine",
    "Dispatcher",
    "IdempotencyGate",
    "InMemoryStore",
    "InvalidSettingsError",
    "NormalizationError",
    "PartnerBalance",
    "PartnershipSettings",
    "PartnerSplitEntry",
    "ProviderUnavailableError",
    "RevShareError",
    "RevShareService",
    "Transaction",
    "TransactionWriter",
    "TransientStoreError",
    "UnknownTransactionError",
    "compute_split",
]
