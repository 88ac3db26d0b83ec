"""
Distribution Engine

Turns one persisted transaction into ledger entries:
1. Pick the base amount (net of fees or gross)
2. Resolve the referring affiliate, if any
3. Classify first purchase vs. recurring
4. Compute the affiliate commission
5. Split what remains of the net amount among the partners
6. Write entries and balance increments in one atomic store transaction

Entry ids are derived from (transaction, beneficiary, kind) and checked
before insert, so running the engine again for the same transaction
creates nothing and increments nothing.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Callable, Iterable, Optional

from .exceptions import UnknownTransactionError
from .models import (
    BaseType, CommissionEntry, CommissionSettings, DistributionResult, EntryKind,
    PartnerShare, PartnershipSettings, PartnerSplitEntry, Platform, Transaction, TxEvent,
)
from .money import percent_of
from .program import load_commission_settings, load_partnership_settings
from .referrals import ReferralLookup
from .store import InMemoryStore, StoreTransaction
from .writer import TRANSACTIONS_COLLECTION

logger = logging.getLogger(__name__)

COMMISSIONS_COLLECTION = "commissions"
PARTNER_SPLITS_COLLECTION = "partnerSplits"
AFFILIATE_BALANCES_COLLECTION = "affiliateBalances"
PARTNER_BALANCES_COLLECTION = "partnerBalances"

# Refund/dispute reversal is not handled here; these events move no revenue.
NON_REVENUE_EVENTS = frozenset({TxEvent.REFUND, TxEvent.CANCEL})


def entry_id(transaction_id: str, beneficiary_id: str, kind: EntryKind) -> str:
    return f"{transaction_id}:{beneficiary_id}:{kind.value}"


@dataclass(frozen=True)
class Split:
    """Amounts computed for one transaction, before anything is written."""

    base_type: BaseType
    base_cents: int
    net_after_fees_cents: int
    kind: EntryKind
    recurrence_no: int
    rate: Decimal
    affiliate_cents: int
    base_sociedade_cents: int
    partner_amounts: tuple[tuple[PartnerShare, int], ...]

    @property
    def total_cents(self) -> int:
        return self.affiliate_cents + sum(amount for _, amount in self.partner_amounts)


def classify(event: TxEvent, commission: CommissionSettings) -> tuple[EntryKind, int, Decimal]:
    # Based only on the declared event kind; purchase history is not consulted.
    if event == TxEvent.RENEWAL:
        return EntryKind.RECURRING, 2, commission.defaults.recurring_pct
    return EntryKind.FIRST, 1, commission.defaults.first_pct


def compute_split(
    transaction: Transaction,
    commission: CommissionSettings,
    partnership: PartnershipSettings,
    has_affiliate: bool,
    net_fee_platforms: Iterable[str] = (Platform.STRIPE_WEB.value,),
) -> Split:
    monetary = transaction.monetary
    net_fee_platforms = {str(p) for p in net_fee_platforms}

    if commission.defaults.base == "net" and transaction.platform.value in net_fee_platforms:
        base_type, base_cents = BaseType.NET, monetary.net_cents
    else:
        base_type, base_cents = BaseType.GROSS, monetary.gross_cents
    net_after_fees = monetary.net_cents

    kind, recurrence_no, rate = classify(transaction.event, commission)

    affiliate_cents = 0
    if has_affiliate and rate > 0:
        affiliate_cents = min(max(0, percent_of(base_cents, rate)), net_after_fees)
    base_sociedade = max(0, net_after_fees - affiliate_cents)

    # Half-up rounding can push the shares a cent past what is left, so each
    # share is capped by the unallocated remainder.
    remaining = base_sociedade
    partner_amounts = []
    for share in partnership.shares:
        amount = min(max(0, percent_of(base_sociedade, share.pct)), remaining)
        remaining -= amount
        partner_amounts.append((share, amount))

    return Split(
        base_type=base_type,
        base_cents=base_cents,
        net_after_fees_cents=net_after_fees,
        kind=kind,
        recurrence_no=recurrence_no,
        rate=rate,
        affiliate_cents=affiliate_cents,
        base_sociedade_cents=base_sociedade,
        partner_amounts=tuple(partner_amounts),
    )


class DistributionEngine:
    def __init__(
        self,
        store: InMemoryStore,
        referrals: Optional[ReferralLookup] = None,
        net_fee_platforms: Iterable[str] = (Platform.STRIPE_WEB.value,),
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.store = store
        self.referrals = referrals or ReferralLookup(store)
        self.net_fee_platforms = tuple(net_fee_platforms)
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    def distribute(self, transaction_id: str) -> DistributionResult:
        doc = self.store.get(TRANSACTIONS_COLLECTION, transaction_id)
        if doc is None:
            raise UnknownTransactionError(f"Transaction {transaction_id} not found")
        transaction = Transaction.model_validate(doc)

        if transaction.event in NON_REVENUE_EVENTS:
            logger.info(f"Transaction {transaction_id} is a {transaction.event.value} event, nothing to distribute")
            return DistributionResult(transaction_id=transaction_id, skipped_reason=transaction.event.value)

        # Settings are read once per run and passed down as frozen snapshots.
        commission = load_commission_settings(self.store)
        partnership = load_partnership_settings(self.store)
        affiliate_id = self.referrals.affiliate_for(transaction.user_uid)

        split = compute_split(
            transaction, commission, partnership,
            has_affiliate=affiliate_id is not None,
            net_fee_platforms=self.net_fee_platforms,
        )
        now = self.clock()

        commissions = []
        if affiliate_id is not None and split.affiliate_cents > 0:
            commissions.append(self._commission_entry(
                transaction_id, transaction, split, affiliate_id,
                now, now + timedelta(days=commission.defaults.hold_days),
            ))
        partner_hold_until = now + timedelta(days=partnership.hold_days_partners)
        splits = [
            self._partner_split_entry(transaction_id, transaction, split, share, amount, now, partner_hold_until)
            for share, amount in split.partner_amounts
        ]

        created_commissions, created_splits = self.store.run_transaction(
            lambda txn: self._write_entries(txn, commissions, splits, now)
        )
        skipped = len(commissions) + len(splits) - len(created_commissions) - len(created_splits)

        logger.info(
            f"Distributed transaction {transaction_id}: base {split.base_type.value} {split.base_cents}, "
            f"affiliate {affiliate_id or '-'} {split.affiliate_cents}, "
            f"partners {[amount for _, amount in split.partner_amounts]}, "
            f"{len(created_commissions) + len(created_splits)} entries created, {skipped} already present"
        )
        return DistributionResult(
            transaction_id=transaction_id,
            base_type=split.base_type,
            base_cents=split.base_cents,
            affiliate_id=affiliate_id,
            affiliate_cents=split.affiliate_cents,
            base_sociedade_cents=split.base_sociedade_cents,
            commissions_created=created_commissions,
            partner_splits_created=created_splits,
            entries_skipped=skipped,
        )

    def _write_entries(
        self,
        txn: StoreTransaction,
        commissions: list[CommissionEntry],
        splits: list[PartnerSplitEntry],
        now: datetime,
    ) -> tuple[list[CommissionEntry], list[PartnerSplitEntry]]:
        new_commissions = [e for e in commissions if txn.get(COMMISSIONS_COLLECTION, e.id) is None]
        new_splits = [e for e in splits if txn.get(PARTNER_SPLITS_COLLECTION, e.id) is None]

        for entry in new_commissions:
            txn.create(COMMISSIONS_COLLECTION, entry.id, entry.model_dump())
            self._credit_pending(txn, AFFILIATE_BALANCES_COLLECTION, "affiliate_id",
                                 entry.affiliate_id, entry.amount_cents, entry.currency.value, now)
        for entry in new_splits:
            txn.create(PARTNER_SPLITS_COLLECTION, entry.id, entry.model_dump())
            self._credit_pending(txn, PARTNER_BALANCES_COLLECTION, "partner_id",
                                 entry.partner_id, entry.amount_cents, entry.currency.value, now)
        return new_commissions, new_splits

    @staticmethod
    def _credit_pending(txn: StoreTransaction, collection: str, id_field: str, beneficiary_id: str,
                        amount_cents: int, currency: str, now: datetime) -> None:
        txn.increment(
            collection, beneficiary_id, {"pending_cents": amount_cents},
            defaults={id_field: beneficiary_id, "currency": currency,
                      "pending_cents": 0, "available_cents": 0, "paid_cents": 0},
        )
        txn.set(collection, beneficiary_id, {"updated_at": now}, merge=True)

    @staticmethod
    def _commission_entry(transaction_id: str, transaction: Transaction, split: Split, affiliate_id: str,
                          now: datetime, hold_until: datetime) -> CommissionEntry:
        stripe_ids = transaction.store_ids.stripe
        return CommissionEntry(
            id=entry_id(transaction_id, affiliate_id, split.kind),
            tenant_id=transaction.tenant_id,
            affiliate_id=affiliate_id,
            user_uid=transaction.user_uid,
            product_id=transaction.product_id,
            transaction_id=transaction_id,
            kind=split.kind,
            recurrence_no=split.recurrence_no,
            base_type=split.base_type,
            base_cents=split.base_cents,
            rate=split.rate,
            amount_cents=split.affiliate_cents,
            currency=transaction.monetary.currency,
            hold_until=hold_until,
            invoice_id=stripe_ids.invoice_id if stripe_ids else None,
            charge_id=stripe_ids.charge_id if stripe_ids else None,
            balance_transaction_id=stripe_ids.balance_transaction_id if stripe_ids else None,
            created_at=now,
        )

    @staticmethod
    def _partner_split_entry(transaction_id: str, transaction: Transaction, split: Split, share: PartnerShare,
                             amount_cents: int, now: datetime, hold_until: datetime) -> PartnerSplitEntry:
        stripe_ids = transaction.store_ids.stripe
        return PartnerSplitEntry(
            id=entry_id(transaction_id, share.partner_id, split.kind),
            tenant_id=transaction.tenant_id,
            partner_id=share.partner_id,
            user_uid=transaction.user_uid,
            product_id=transaction.product_id,
            transaction_id=transaction_id,
            kind=split.kind,
            recurrence_no=split.recurrence_no,
            gross_cents=transaction.monetary.gross_cents,
            fees_cents=transaction.monetary.fee_cents or 0,
            net_after_fees_cents=split.net_after_fees_cents,
            affiliate_cents=split.affiliate_cents,
            base_sociedade_cents=split.base_sociedade_cents,
            share_pct=share.pct,
            amount_cents=amount_cents,
            currency=transaction.monetary.currency,
            hold_until=hold_until,
            invoice_id=stripe_ids.invoice_id if stripe_ids else None,
            charge_id=stripe_ids.charge_id if stripe_ids else None,
            balance_transaction_id=stripe_ids.balance_transaction_id if stripe_ids else None,
            created_at=now,
        )
