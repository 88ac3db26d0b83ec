from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Literal, Optional
from pydantic import BaseModel, Field, ConfigDict, model_validator


class Currency(str, Enum):
    BRL = "brl"
    USD = "usd"
    EUR = "eur"


class Platform(str, Enum):
    STRIPE_WEB = "stripe_web"
    IOS = "ios"
    ANDROID = "android"


class TxEvent(str, Enum):
    INITIAL_PURCHASE = "initial_purchase"
    RENEWAL = "renewal"
    REFUND = "refund"
    CANCEL = "cancel"
    REACTIVATION = "reactivation"


class EntryKind(str, Enum):
    FIRST = "first"
    RECURRING = "recurring"


class EntryStatus(str, Enum):
    PENDING = "pending"
    AVAILABLE = "available"
    PAID = "paid"


class BaseType(str, Enum):
    NET = "net"
    GROSS = "gross"


# =============================================================================
# TRANSACTIONS
# =============================================================================


class StripeIds(BaseModel):
    checkout_session_id: Optional[str] = None
    invoice_id: Optional[str] = None
    charge_id: Optional[str] = None
    balance_transaction_id: Optional[str] = None

    model_config = ConfigDict(frozen=True)


class IosIds(BaseModel):
    original_transaction_id: str
    transaction_id: Optional[str] = None

    model_config = ConfigDict(frozen=True)


class AndroidIds(BaseModel):
    purchase_token: str
    order_id: Optional[str] = None
    subscription_id: Optional[str] = None

    model_config = ConfigDict(frozen=True)


class StoreIds(BaseModel):
    stripe: Optional[StripeIds] = None
    ios: Optional[IosIds] = None
    android: Optional[AndroidIds] = None

    model_config = ConfigDict(frozen=True)


class Monetary(BaseModel):
    currency: Currency
    gross_cents: int = Field(..., ge=0)
    fee_cents: Optional[int] = Field(default=None, ge=0)
    net_after_fees_cents: Optional[int] = Field(default=None, ge=0)

    model_config = ConfigDict(frozen=True)

    @model_validator(mode="after")
    def check_net_within_gross(self) -> "Monetary":
        if self.net_after_fees_cents is not None and self.net_after_fees_cents > self.gross_cents:
            raise ValueError("net_after_fees_cents cannot exceed gross_cents")
        return self

    @property
    def net_cents(self) -> int:
        if self.net_after_fees_cents is None:
            return self.gross_cents
        return self.net_after_fees_cents


class Transaction(BaseModel):
    """Canonical billing event. Immutable once persisted."""

    tenant_id: str
    user_uid: str
    product_id: str
    platform: Platform
    event: TxEvent
    monetary: Monetary
    occurred_at: datetime
    dedupe_key: str = Field(..., min_length=1, description="Unique per real-world billing event")
    store_ids: StoreIds = Field(default_factory=StoreIds)
    id: Optional[str] = None
    created_at: Optional[datetime] = None

    model_config = ConfigDict(frozen=True, json_schema_extra={
        "example": {
            "tenant_id": "tenant-1",
            "user_uid": "user-42",
            "product_id": "price_monthly",
            "platform": "stripe_web",
            "event": "initial_purchase",
            "monetary": {"currency": "brl", "gross_cents": 10000, "fee_cents": 300, "net_after_fees_cents": 9700},
            "occurred_at": "2024-05-01T12:00:00Z",
            "dedupe_key": "invoice:in_123",
        }
    })


class IdempotencyKeyRecord(BaseModel):
    dedupe_key: str
    transaction_id: str
    created_at: datetime


class IngestResult(BaseModel):
    transaction_id: str
    created: bool


class WebhookAck(BaseModel):
    received: bool = True
    transaction_id: Optional[str] = None
    created: Optional[bool] = None
    ignored: bool = False


# =============================================================================
# LEDGER
# =============================================================================


class CommissionEntry(BaseModel):
    id: str
    tenant_id: str
    affiliate_id: str
    user_uid: str
    product_id: str
    transaction_id: str
    kind: EntryKind
    recurrence_no: int
    base_type: BaseType
    base_cents: int
    rate: Decimal
    amount_cents: int = Field(..., ge=0)
    currency: Currency
    status: EntryStatus = EntryStatus.PENDING
    hold_until: datetime
    invoice_id: Optional[str] = None
    charge_id: Optional[str] = None
    balance_transaction_id: Optional[str] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class PartnerSplitEntry(BaseModel):
    id: str
    tenant_id: str
    partner_id: str
    user_uid: str
    product_id: str
    transaction_id: str
    kind: EntryKind
    recurrence_no: int
    gross_cents: int
    fees_cents: int
    net_after_fees_cents: int
    affiliate_cents: int
    base_sociedade_cents: int
    share_pct: Decimal
    amount_cents: int = Field(..., ge=0)
    currency: Currency
    status: EntryStatus = EntryStatus.PENDING
    hold_until: datetime
    invoice_id: Optional[str] = None
    charge_id: Optional[str] = None
    balance_transaction_id: Optional[str] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class AffiliateBalance(BaseModel):
    affiliate_id: str
    currency: Optional[Currency] = None
    pending_cents: int = 0
    available_cents: int = 0
    paid_cents: int = 0
    updated_at: Optional[datetime] = None


class PartnerBalance(BaseModel):
    partner_id: str
    currency: Optional[Currency] = None
    pending_cents: int = 0
    available_cents: int = 0
    paid_cents: int = 0
    updated_at: Optional[datetime] = None


class DistributionResult(BaseModel):
    transaction_id: str
    skipped_reason: Optional[str] = None
    base_type: Optional[BaseType] = None
    base_cents: int = 0
    affiliate_id: Optional[str] = None
    affiliate_cents: int = 0
    base_sociedade_cents: int = 0
    commissions_created: list[CommissionEntry] = Field(default_factory=list)
    partner_splits_created: list[PartnerSplitEntry] = Field(default_factory=list)
    entries_skipped: int = 0


class DispatchFailure(BaseModel):
    transaction_id: str
    attempts: int
    last_error: str
    failed_at: datetime


# =============================================================================
# PROGRAM SETTINGS
# =============================================================================


class CommissionDefaults(BaseModel):
    first_pct: Decimal = Field(default=Decimal("0.30"), ge=0, le=1)
    recurring_pct: Decimal = Field(default=Decimal("0.15"), ge=0, le=1)
    months: int = 12
    cookie_ttl_days: int = 60
    min_payout_cents: int = 20000
    hold_days: int = Field(default=14, ge=1)
    base: Literal["net", "gross"] = "net"

    model_config = ConfigDict(frozen=True)


class CommissionSettings(BaseModel):
    defaults: CommissionDefaults = Field(default_factory=CommissionDefaults)

    model_config = ConfigDict(frozen=True)


class PartnerShare(BaseModel):
    partner_id: str = Field(..., min_length=1)
    pct: Decimal = Field(..., ge=0, le=1)

    model_config = ConfigDict(frozen=True)


class PartnershipSettings(BaseModel):
    shares: tuple[PartnerShare, ...] = ()
    hold_days_partners: int = Field(default=14, ge=1)

    model_config = ConfigDict(frozen=True)

    @model_validator(mode="after")
    def check_total_pct(self) -> "PartnershipSettings":
        if sum((s.pct for s in self.shares), Decimal("0")) > 1:
            raise ValueError("partner shares cannot add up to more than 100%")
        partner_ids = [s.partner_id for s in self.shares]
        if len(set(partner_ids)) != len(partner_ids):
            raise ValueError("each partner can only hold one share")
        return self
