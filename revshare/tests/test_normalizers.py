"""
Unit Tests for provider normalizers

Tests cover:
1. Stripe invoices, checkout sessions and event routing
2. RevenueCat event mapping
3. App Store notification decoding
4. Rejection of invalid payloads
"""

import base64
import json

import pytest

from revshare.exceptions import NormalizationError
from revshare.models import Currency, Platform, TxEvent
from revshare.normalizers import (
    map_apple_notification,
    map_revenuecat_event,
    normalize_apple_notification,
    normalize_revenuecat_event,
    normalize_stripe_checkout_session,
    normalize_stripe_event,
    normalize_stripe_invoice,
)


def jws(payload: dict) -> str:
    def segment(data: dict) -> str:
        return base64.urlsafe_b64encode(json.dumps(data).encode()).rstrip(b"=").decode()
    return f"{segment({'alg': 'ES256'})}.{segment(payload)}.signature"


def stripe_invoice(**overrides) -> dict:
    invoice = {
        "id": "in_123",
        "amount_paid": 10000,
        "currency": "brl",
        "billing_reason": "subscription_create",
        "metadata": {"tenant_id": "tenant-1", "user_uid": "user-1", "checkout_session_id": "cs_1"},
        "charge": {
            "id": "ch_1",
            "balance_transaction": {
                "id": "txn_1", "amount": 10000, "fee": 300,
                "fee_details": [{"amount": 300, "type": "stripe_fee"}],
            },
        },
        "lines": {"data": [{"price": {"id": "price_monthly"}}]},
        "status_transitions": {"paid_at": 1714564800},
    }
    invoice.update(overrides)
    return invoice


class TestStripe:
    """Tests for Stripe payloads."""

    def test_invoice_with_balance_transaction(self, settings):
        tx = normalize_stripe_invoice(stripe_invoice(), settings)

        assert tx.dedupe_key == "invoice:in_123"
        assert tx.platform == Platform.STRIPE_WEB
        assert tx.event == TxEvent.INITIAL_PURCHASE
        assert tx.tenant_id == "tenant-1"
        assert tx.user_uid == "user-1"
        assert tx.product_id == "price_monthly"
        assert tx.monetary.gross_cents == 10000
        assert tx.monetary.fee_cents == 300
        assert tx.monetary.net_after_fees_cents == 9700
        assert tx.store_ids.stripe.charge_id == "ch_1"
        assert tx.store_ids.stripe.balance_transaction_id == "txn_1"
        assert tx.occurred_at.timestamp() == 1714564800

    def test_subscription_cycle_is_renewal(self, settings):
        tx = normalize_stripe_invoice(stripe_invoice(billing_reason="subscription_cycle"), settings)

        assert tx.event == TxEvent.RENEWAL

    def test_invoice_without_expanded_charge_uses_amount_paid(self, settings):
        tx = normalize_stripe_invoice(stripe_invoice(charge="ch_1", metadata={}), settings)

        assert tx.monetary.gross_cents == 10000
        assert tx.monetary.net_after_fees_cents == 10000
        assert tx.store_ids.stripe.charge_id == "ch_1"
        assert tx.user_uid == "USER_UNKNOWN"
        assert tx.tenant_id == settings.DEFAULT_TENANT_ID

    def test_fee_details_used_when_fee_missing(self, settings):
        invoice = stripe_invoice()
        invoice["charge"]["balance_transaction"] = {
            "id": "txn_1", "amount": 10000, "fee_details": [{"amount": 250}, {"amount": 50}],
        }

        tx = normalize_stripe_invoice(invoice, settings)

        assert tx.monetary.fee_cents == 300

    def test_checkout_session(self, settings):
        tx = normalize_stripe_checkout_session({
            "id": "cs_1", "amount_total": 4990, "currency": "usd",
            "metadata": {"user_uid": "user-9", "product_id": "prod_1"},
        }, settings)

        assert tx.dedupe_key == "checkout:cs_1"
        assert tx.monetary.currency == Currency.USD
        assert tx.monetary.net_after_fees_cents == 4990
        assert tx.product_id == "prod_1"

    def test_event_routing(self, settings):
        event = {"id": "evt_1", "type": "invoice.payment_succeeded", "data": {"object": stripe_invoice()}}

        tx = normalize_stripe_event(event, settings=settings)

        assert tx.dedupe_key == "invoice:in_123"

    def test_event_routing_uses_invoice_retriever(self, settings):
        retrieved = []

        def retrieve(invoice_id):
            retrieved.append(invoice_id)
            return stripe_invoice(id=invoice_id)

        event = {"type": "invoice.payment_succeeded", "data": {"object": {"id": "in_999"}}}
        tx = normalize_stripe_event(event, retrieve_invoice=retrieve, settings=settings)

        assert retrieved == ["in_999"]
        assert tx.monetary.net_after_fees_cents == 9700

    @pytest.mark.parametrize("event_type", ["charge.refunded", "charge.dispute.created", "customer.created"])
    def test_unhandled_events_ignored(self, settings, event_type):
        event = {"type": event_type, "data": {"object": {"id": "x"}}}

        assert normalize_stripe_event(event, settings=settings) is None

    def test_unsupported_currency_rejected(self, settings):
        with pytest.raises(NormalizationError):
            normalize_stripe_invoice(stripe_invoice(currency="jpy"), settings)

    def test_missing_id_rejected(self, settings):
        invoice = stripe_invoice()
        del invoice["id"]

        with pytest.raises(NormalizationError):
            normalize_stripe_invoice(invoice, settings)


class TestRevenueCat:
    """Tests for RevenueCat payloads."""

    @pytest.mark.parametrize("event_type,expected", [
        ("INITIAL_PURCHASE", TxEvent.INITIAL_PURCHASE),
        ("RENEWAL", TxEvent.RENEWAL),
        ("CANCELLATION", TxEvent.CANCEL),
        ("UNCANCELLATION", TxEvent.REACTIVATION),
        ("REFUND", TxEvent.REFUND),
        ("NON_RENEWING_PURCHASE", TxEvent.INITIAL_PURCHASE),
    ])
    def test_event_mapping(self, event_type, expected):
        assert map_revenuecat_event(event_type) == expected

    def test_wrapped_event_with_price(self, settings):
        body = {"api_version": "1.0", "event": {
            "id": "evt-1", "type": "RENEWAL", "app_user_id": "user-1", "product_id": "monthly",
            "store": "APP_STORE", "event_timestamp_ms": 1714564800000,
            "price_in_purchased_currency": 19.9, "currency": "BRL",
            "original_transaction_id": "1000", "transaction_id": "1001",
        }}

        tx = normalize_revenuecat_event(body, settings)

        assert tx.dedupe_key == "rc:event:evt-1"
        assert tx.platform == Platform.IOS
        assert tx.event == TxEvent.RENEWAL
        assert tx.monetary.gross_cents == 1990
        assert tx.store_ids.ios.original_transaction_id == "1000"

    def test_bare_event_without_price_uses_fallback(self, settings):
        tx = normalize_revenuecat_event({
            "event_id": "evt-2", "type": "INITIAL_PURCHASE", "app_user_id": "user-2",
            "product_id": "annual", "platform": "android",
        }, settings)

        assert tx.platform == Platform.ANDROID
        assert tx.monetary.gross_cents == settings.MOBILE_FALLBACK_PRICE_CENTS
        assert tx.monetary.currency == Currency.BRL

    def test_missing_event_id_rejected(self, settings):
        with pytest.raises(NormalizationError):
            normalize_revenuecat_event({"type": "RENEWAL", "app_user_id": "u", "product_id": "p"}, settings)

    def test_missing_user_rejected(self, settings):
        with pytest.raises(NormalizationError):
            normalize_revenuecat_event({"id": "evt-3", "type": "RENEWAL", "product_id": "p"}, settings)


class TestApple:
    """Tests for App Store Server Notifications."""

    def notification(self, notification_type="DID_RENEW", **info):
        transaction = {
            "originalTransactionId": "2000", "transactionId": "2001", "productId": "monthly",
            "purchaseDate": 1714564800000, "appAccountToken": "user-1",
        }
        transaction.update(info)
        return jws({"notificationType": notification_type, "data": {"signedTransactionInfo": jws(transaction)}})

    @pytest.mark.parametrize("notification_type,expected", [
        ("SUBSCRIBED", TxEvent.INITIAL_PURCHASE),
        ("DID_RENEW", TxEvent.RENEWAL),
        ("DID_FAIL_TO_RENEW", TxEvent.CANCEL),
        ("DID_CHANGE_RENEWAL_STATUS", TxEvent.CANCEL),
        ("REFUND", TxEvent.REFUND),
    ])
    def test_notification_mapping(self, notification_type, expected):
        assert map_apple_notification(notification_type) == expected

    def test_decodes_signed_payload(self, settings):
        tx = normalize_apple_notification(self.notification(), settings)

        assert tx.dedupe_key == "ios:orig:2000:1714564800000"
        assert tx.platform == Platform.IOS
        assert tx.event == TxEvent.RENEWAL
        assert tx.user_uid == "user-1"
        assert tx.store_ids.ios.transaction_id == "2001"
        assert tx.monetary.gross_cents == settings.MOBILE_FALLBACK_PRICE_CENTS

    def test_price_in_milliunits(self, settings):
        tx = normalize_apple_notification(self.notification(price=9990, currency="USD"), settings)

        assert tx.monetary.gross_cents == 999
        assert tx.monetary.currency == Currency.USD

    @pytest.mark.parametrize("payload", ["", "not-a-jws", "a.!!!.c"])
    def test_malformed_payload_rejected(self, settings, payload):
        with pytest.raises(NormalizationError):
            normalize_apple_notification(payload, settings)

    def test_missing_original_transaction_rejected(self, settings):
        token = jws({"notificationType": "DID_RENEW",
                     "data": {"signedTransactionInfo": jws({"purchaseDate": 1})}})

        with pytest.raises(NormalizationError):
            normalize_apple_notification(token, settings)
