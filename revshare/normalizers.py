"""
Provider payload normalization.

One variant per event source, each validated against its own schema before
it is turned into the canonical Transaction. Anything that does not match
raises NormalizationError and never reaches ingestion. Signature
verification happens upstream of these functions.
"""

import base64
import binascii
import json
import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .config import Settings, get_settings
from .exceptions import NormalizationError
from .models import (
    Currency, IosIds, Monetary, Platform, StoreIds, StripeIds, Transaction, TxEvent,
)
from .money import round_cents

logger = logging.getLogger(__name__)

UNKNOWN_USER = "USER_UNKNOWN"
UNKNOWN_PRODUCT = "PRODUCT_UNKNOWN"

# Reversal of these is not implemented; they are acknowledged and dropped.
STRIPE_IGNORED_EVENTS = ("charge.refunded", "invoice.payment_failed", "charge.dispute.created")


class _ProviderModel(BaseModel):
    model_config = ConfigDict(extra="ignore")


# =============================================================================
# STRIPE
# =============================================================================


class StripeFeeDetail(_ProviderModel):
    amount: int = 0


class StripeBalanceTransaction(_ProviderModel):
    id: str
    amount: int = Field(..., ge=0)
    fee: Optional[int] = Field(default=None, ge=0)
    fee_details: list[StripeFeeDetail] = Field(default_factory=list)


class StripeCharge(_ProviderModel):
    id: str
    balance_transaction: Optional[Union[StripeBalanceTransaction, str]] = None


class StripePrice(_ProviderModel):
    id: str


class StripeInvoiceLine(_ProviderModel):
    price: Optional[Union[StripePrice, str]] = None


class StripeInvoiceLines(_ProviderModel):
    data: list[StripeInvoiceLine] = Field(default_factory=list)


class StripeStatusTransitions(_ProviderModel):
    paid_at: Optional[int] = None


class StripeInvoice(_ProviderModel):
    id: str = Field(..., min_length=1)
    amount_paid: int = Field(default=0, ge=0)
    currency: Optional[str] = None
    billing_reason: Optional[str] = None
    metadata: dict[str, str] = Field(default_factory=dict)
    charge: Optional[Union[StripeCharge, str]] = None
    lines: StripeInvoiceLines = Field(default_factory=StripeInvoiceLines)
    status_transitions: StripeStatusTransitions = Field(default_factory=StripeStatusTransitions)


class StripeCheckoutSession(_ProviderModel):
    id: str = Field(..., min_length=1)
    amount_total: Optional[int] = Field(default=None, ge=0)
    currency: Optional[str] = None
    metadata: dict[str, str] = Field(default_factory=dict)


class StripeEventData(_ProviderModel):
    object: dict


class StripeEvent(_ProviderModel):
    id: Optional[str] = None
    type: str
    data: StripeEventData


# =============================================================================
# REVENUECAT
# =============================================================================


class RevenueCatEvent(_ProviderModel):
    type: str
    app_user_id: str = Field(..., min_length=1)
    product_id: str = Field(..., min_length=1)
    id: Optional[str] = None
    event_id: Optional[str] = None
    store: Optional[str] = None
    platform: Optional[str] = None
    event_timestamp_ms: Optional[int] = None
    price_in_purchased_currency: Optional[float] = None
    currency: Optional[str] = None
    original_transaction_id: Optional[str] = None
    transaction_id: Optional[str] = None


# =============================================================================
# APPLE
# =============================================================================


class AppleTransactionInfo(_ProviderModel):
    originalTransactionId: str = Field(..., min_length=1)
    transactionId: Optional[str] = None
    productId: Optional[str] = None
    purchaseDate: int
    appAccountToken: Optional[str] = None
    price: Optional[int] = None  # milliunits
    currency: Optional[str] = None


class AppleNotificationData(_ProviderModel):
    signedTransactionInfo: str


class AppleNotification(_ProviderModel):
    notificationType: str
    subtype: Optional[str] = None
    data: AppleNotificationData


# =============================================================================
# HELPERS
# =============================================================================


def _parse(model: type[BaseModel], payload: object, source: str):
    try:
        return model.model_validate(payload)
    except ValidationError as e:
        raise NormalizationError(f"Invalid {source} payload: {e}") from e


def _currency(code: Optional[str], settings: Settings) -> Currency:
    value = (code or settings.DEFAULT_CURRENCY).lower()
    try:
        return Currency(value)
    except ValueError:
        raise NormalizationError(f"Unsupported currency {code!r}") from None


def _from_millis(ms: int) -> datetime:
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _build(**fields) -> Transaction:
    try:
        return Transaction(**fields)
    except ValidationError as e:
        raise NormalizationError(f"Payload does not form a valid transaction: {e}") from e


def decode_jws_payload(token: str) -> dict:
    """Decode the payload segment of a compact JWS without verifying it."""
    parts = token.split(".")
    if len(parts) != 3:
        raise NormalizationError("Malformed JWS: expected three segments")
    segment = parts[1] + "=" * (-len(parts[1]) % 4)
    try:
        decoded = json.loads(base64.urlsafe_b64decode(segment))
    except (binascii.Error, ValueError) as e:
        raise NormalizationError(f"Malformed JWS payload: {e}") from e
    if not isinstance(decoded, dict):
        raise NormalizationError("JWS payload is not a JSON object")
    return decoded


# =============================================================================
# NORMALIZERS
# =============================================================================


def normalize_stripe_invoice(payload: dict, settings: Optional[Settings] = None) -> Transaction:
    settings = settings or get_settings()
    invoice: StripeInvoice = _parse(StripeInvoice, payload, "Stripe invoice")

    charge = invoice.charge if isinstance(invoice.charge, StripeCharge) else None
    bt = charge.balance_transaction if charge and isinstance(charge.balance_transaction, StripeBalanceTransaction) else None

    if bt is not None:
        gross = bt.amount
        # Stripe's fee already totals fee_details; only sum them when it is absent.
        fee = bt.fee if bt.fee is not None else sum(d.amount for d in bt.fee_details)
    else:
        gross, fee = invoice.amount_paid, 0

    price = invoice.lines.data[0].price if invoice.lines.data else None
    product_id = price.id if isinstance(price, StripePrice) else (price or UNKNOWN_PRODUCT)
    paid_at = invoice.status_transitions.paid_at

    return _build(
        tenant_id=invoice.metadata.get("tenant_id", settings.DEFAULT_TENANT_ID),
        user_uid=invoice.metadata.get("user_uid", UNKNOWN_USER),
        product_id=product_id,
        platform=Platform.STRIPE_WEB,
        event=TxEvent.RENEWAL if invoice.billing_reason == "subscription_cycle" else TxEvent.INITIAL_PURCHASE,
        store_ids=StoreIds(stripe=StripeIds(
            checkout_session_id=invoice.metadata.get("checkout_session_id"),
            invoice_id=invoice.id,
            charge_id=charge.id if charge else (invoice.charge if isinstance(invoice.charge, str) else None),
            balance_transaction_id=bt.id if bt else None,
        )),
        monetary=Monetary(
            currency=_currency(invoice.currency, settings),
            gross_cents=gross,
            fee_cents=fee,
            net_after_fees_cents=max(0, gross - fee),
        ),
        occurred_at=datetime.fromtimestamp(paid_at, tz=timezone.utc) if paid_at else _now(),
        dedupe_key=f"invoice:{invoice.id}",
    )


def normalize_stripe_checkout_session(payload: dict, settings: Optional[Settings] = None) -> Transaction:
    settings = settings or get_settings()
    session: StripeCheckoutSession = _parse(StripeCheckoutSession, payload, "Stripe checkout session")
    gross = session.amount_total or 0
    # Fees are only known once the invoice/charge settles.
    return _build(
        tenant_id=session.metadata.get("tenant_id", settings.DEFAULT_TENANT_ID),
        user_uid=session.metadata.get("user_uid", UNKNOWN_USER),
        product_id=session.metadata.get("product_id", UNKNOWN_PRODUCT),
        platform=Platform.STRIPE_WEB,
        event=TxEvent.INITIAL_PURCHASE,
        store_ids=StoreIds(stripe=StripeIds(checkout_session_id=session.id)),
        monetary=Monetary(currency=_currency(session.currency, settings), gross_cents=gross,
                          net_after_fees_cents=gross),
        occurred_at=_now(),
        dedupe_key=f"checkout:{session.id}",
    )


def normalize_stripe_event(
    payload: dict,
    retrieve_invoice: Optional[Callable[[str], dict]] = None,
    settings: Optional[Settings] = None,
) -> Optional[Transaction]:
    """Normalize a Stripe webhook event. Returns None for event types that are not ingested.

    ``retrieve_invoice`` lets the caller fetch the invoice with its charge
    and balance transaction expanded, which is where fees come from.
    """
    event: StripeEvent = _parse(StripeEvent, payload, "Stripe event")
    if event.type == "checkout.session.completed":
        return normalize_stripe_checkout_session(event.data.object, settings)
    if event.type == "invoice.payment_succeeded":
        invoice = event.data.object
        if retrieve_invoice is not None and invoice.get("id"):
            invoice = retrieve_invoice(invoice["id"])
        return normalize_stripe_invoice(invoice, settings)
    if event.type in STRIPE_IGNORED_EVENTS:
        logger.info(f"Stripe event {event.type} acknowledged without ingestion")
    return None


def map_revenuecat_event(event_type: str) -> TxEvent:
    t = event_type.upper()
    if "UNCANCELLATION" in t:
        return TxEvent.REACTIVATION
    if "RENEWAL" in t:
        return TxEvent.RENEWAL
    if "CANCELLATION" in t:
        return TxEvent.CANCEL
    if "REFUND" in t:
        return TxEvent.REFUND
    return TxEvent.INITIAL_PURCHASE


def normalize_revenuecat_event(payload: dict, settings: Optional[Settings] = None) -> Transaction:
    settings = settings or get_settings()
    # Webhook bodies wrap the event; accept the bare event too.
    if isinstance(payload, dict) and isinstance(payload.get("event"), dict):
        payload = payload["event"]
    ev: RevenueCatEvent = _parse(RevenueCatEvent, payload, "RevenueCat")

    event_id = ev.event_id or ev.id
    if not event_id:
        raise NormalizationError("RevenueCat event has no id")

    is_ios = (ev.platform or "").lower() == "ios" or (ev.store or "").upper() in ("APP_STORE", "MAC_APP_STORE")
    if ev.price_in_purchased_currency is not None and ev.currency:
        currency = _currency(ev.currency, settings)
        gross = round_cents(abs(Decimal(str(ev.price_in_purchased_currency))) * 100)
    else:
        currency = _currency(None, settings)
        gross = settings.MOBILE_FALLBACK_PRICE_CENTS

    store_ids = StoreIds()
    if is_ios and ev.original_transaction_id:
        store_ids = StoreIds(ios=IosIds(original_transaction_id=ev.original_transaction_id,
                                        transaction_id=ev.transaction_id))

    return _build(
        tenant_id=settings.DEFAULT_TENANT_ID,
        user_uid=ev.app_user_id,
        product_id=ev.product_id,
        platform=Platform.IOS if is_ios else Platform.ANDROID,
        event=map_revenuecat_event(ev.type),
        store_ids=store_ids,
        monetary=Monetary(currency=currency, gross_cents=gross, net_after_fees_cents=gross),
        occurred_at=_from_millis(ev.event_timestamp_ms) if ev.event_timestamp_ms else _now(),
        dedupe_key=f"rc:event:{event_id}",
    )


def map_apple_notification(notification_type: str) -> TxEvent:
    t = notification_type.upper()
    if "DID_RENEW" in t:
        return TxEvent.RENEWAL
    if "DID_CHANGE_RENEWAL_STATUS" in t or "DID_FAIL_TO_RENEW" in t:
        return TxEvent.CANCEL
    if "REFUND" in t:
        return TxEvent.REFUND
    return TxEvent.INITIAL_PURCHASE


def normalize_apple_notification(signed_payload: str, settings: Optional[Settings] = None) -> Transaction:
    settings = settings or get_settings()
    if not isinstance(signed_payload, str) or not signed_payload:
        raise NormalizationError("Missing signedPayload")
    notification: AppleNotification = _parse(AppleNotification, decode_jws_payload(signed_payload),
                                             "App Store notification")
    info: AppleTransactionInfo = _parse(
        AppleTransactionInfo, decode_jws_payload(notification.data.signedTransactionInfo),
        "App Store transaction",
    )

    if info.price is not None and info.currency:
        currency = _currency(info.currency, settings)
        gross = round_cents(Decimal(info.price) / 10)
    else:
        currency = _currency(None, settings)
        gross = settings.MOBILE_FALLBACK_PRICE_CENTS

    return _build(
        tenant_id=settings.DEFAULT_TENANT_ID,
        user_uid=info.appAccountToken or UNKNOWN_USER,
        product_id=info.productId or UNKNOWN_PRODUCT,
        platform=Platform.IOS,
        event=map_apple_notification(notification.notificationType),
        store_ids=StoreIds(ios=IosIds(original_transaction_id=info.originalTransactionId,
                                      transaction_id=info.transactionId)),
        monetary=Monetary(currency=currency, gross_cents=gross, net_after_fees_cents=gross),
        occurred_at=_from_millis(info.purchaseDate),
        dedupe_key=f"ios:orig:{info.originalTransactionId}:{info.purchaseDate}",
    )
