import logging
from typing import Callable, Optional

import stripe

from .config import Settings
from .exceptions import NormalizationError, ProviderUnavailableError

logger = logging.getLogger(__name__)

# Fees and net only exist on the charge's balance transaction.
INVOICE_EXPAND = ["charge.balance_transaction", "lines.data.price"]


def make_invoice_retriever(settings: Settings) -> Optional[Callable[[str], dict]]:
    """Build a callable that fetches an invoice with its fee data expanded.

    Returns None when no Stripe secret key is configured; invoices are then
    normalized from the webhook payload alone.
    """
    if not settings.STRIPE_SECRET_KEY:
        logger.warning("STRIPE_SECRET_KEY not set, Stripe invoices will be booked without fees")
        return None

    stripe.api_key = settings.STRIPE_SECRET_KEY

    def retrieve_invoice(invoice_id: str) -> dict:
        try:
            invoice = stripe.Invoice.retrieve(invoice_id, expand=INVOICE_EXPAND)
        except stripe.InvalidRequestError as e:
            raise NormalizationError(f"Stripe invoice {invoice_id} could not be retrieved: {e}") from e
        except stripe.StripeError as e:
            raise ProviderUnavailableError(f"Could not retrieve Stripe invoice {invoice_id}: {e}") from e
        logger.debug(f"Retrieved Stripe invoice {invoice_id}")
        return invoice.to_dict()

    return retrieve_invoice
