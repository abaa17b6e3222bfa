"""
Payment gateway and the payment-success chain.

In `stripe` mode payment intents go through the Stripe API; in `offline` mode
the gateway simulates an immediately successful payment, the same way the
checkout falls back when no payment backend is reachable.

`handle_payment_success` is the commit point of a purchase: accept the quote
(if still pending), create the invoice, mark it paid. Every gateway payment
id is claimed once in the "payments" collection, so a repeated callback for
the same payment returns the recorded result instead of running the chain
again.
"""
import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import stripe
from pymongo.errors import DuplicateKeyError

from database import DocumentStore, now_utc
from errors import InvalidState, PaymentFailure
from invoice_pdf import format_amount
from invoice_service import create_invoice_for_accepted_quote, get_invoice_by_id, mark_invoice_paid
from notifications import notify_safely
from project_service import get_project_by_id
from quote_service import accept_quote, get_quote_by_id
from request_service import get_request_by_id
from schemas import Payment, QuoteStatus

logger = logging.getLogger(__name__)

PAYMENTS = "payments"
STALE_CLAIM_AFTER = timedelta(minutes=10)


def to_minor_units(amount: Any) -> int:
    """Major currency units to the smallest unit (cents)."""
    return int(round(float(amount or 0) * 100))


class PaymentGateway:
    def __init__(self, mode: str = "offline", secret_key: Optional[str] = None,
                 webhook_secret: Optional[str] = None, currency: str = "EUR"):
        if mode == "stripe" and not secret_key:
            logger.warning("PAYMENT_MODE=stripe without STRIPE_SECRET_KEY; falling back to offline payments")
            mode = "offline"
        self.mode = mode
        self.secret_key = secret_key
        self.webhook_secret = webhook_secret
        self.currency = currency

    @classmethod
    def from_settings(cls, settings) -> "PaymentGateway":
        return cls(
            mode=settings.payment_mode,
            secret_key=settings.stripe_secret_key,
            webhook_secret=settings.stripe_webhook_secret,
            currency=settings.default_currency,
        )

    @property
    def simulated(self) -> bool:
        return self.mode != "stripe"

    def create_payment_intent(self, amount: Any, payment_method_id: str, metadata: Optional[Dict[str, Any]] = None,
                              idempotency_key: Optional[str] = None) -> Dict[str, Any]:
        minor = to_minor_units(amount)
        if minor <= 0:
            raise PaymentFailure("Payment amount must be positive")

        if self.simulated:
            intent_id = f"sim_{uuid.uuid4().hex}"
            logger.info("Simulated payment intent %s for %d minor units", intent_id, minor)
            return {"id": intent_id, "client_secret": None, "amount": minor, "status": "succeeded", "simulated": True}

        try:
            intent = stripe.PaymentIntent.create(
                amount=minor,
                currency=self.currency.lower(),
                payment_method=payment_method_id,
                metadata={k: str(v) for k, v in (metadata or {}).items()},
                api_key=self.secret_key,
                idempotency_key=idempotency_key,
            )
        except stripe.StripeError as exc:
            logger.error("Stripe error creating payment intent: %s", exc)
            raise PaymentFailure(str(exc)) from exc
        return {
            "id": intent["id"],
            "client_secret": intent["client_secret"],
            "amount": minor,
            "status": intent["status"],
            "simulated": False,
        }

    def construct_webhook_event(self, payload: bytes, sig_header: Optional[str]):
        if self.simulated or not self.webhook_secret:
            raise PaymentFailure("Stripe webhooks are not configured")
        try:
            return stripe.Webhook.construct_event(payload, sig_header, self.webhook_secret)
        except (ValueError, stripe.SignatureVerificationError) as exc:
            raise PaymentFailure("Invalid webhook signature") from exc


def _is_stale(claim: Dict[str, Any], now: datetime) -> bool:
    claimed_at = claim.get("claimed_at") or claim.get("updated_at")
    if claimed_at is None:
        return True
    if claimed_at.tzinfo is None:
        claimed_at = claimed_at.replace(tzinfo=timezone.utc)
    return now - claimed_at > STALE_CLAIM_AFTER


def _claim(store: DocumentStore, quote_id: str, payment: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """
    Record the payment id as processing. Returns the claim, or None when
    the payment was already applied.

    A failed claim may be retried. A claim left processing for longer than
    STALE_CLAIM_AFTER belongs to a worker that died mid-chain and is taken
    over; a fresher one is refused.
    """
    now = now_utc()
    record = Payment(
        payment_id=str(payment["id"]),
        quote_id=quote_id,
        amount=float(payment.get("amount") or 0),
        status=payment["status"],
        simulated=bool(payment.get("simulated")),
        claimed_at=now,
    ).model_dump()
    try:
        claim_id = store.create_document(PAYMENTS, record)
        return store.get_document(PAYMENTS, claim_id)
    except DuplicateKeyError:
        pass

    existing = store.find_one(PAYMENTS, {"payment_id": record["payment_id"]})
    if existing.get("quote_id") != quote_id:
        raise InvalidState(f"Payment {record['payment_id']} belongs to another quote")
    if existing.get("state") == "applied":
        return None
    if existing.get("state") == "processing":
        if not _is_stale(existing, now):
            raise InvalidState(f"Payment {record['payment_id']} is already being processed")
        logger.warning("Taking over payment %s, processing since %s", record["payment_id"],
                       existing.get("claimed_at") or existing.get("updated_at"))
        expected = {"state": "processing", "claimed_at": existing.get("claimed_at")}
    else:
        expected = {"state": "failed"}
    retried = store.update_document(PAYMENTS, existing["id"],
                                    {"state": "processing", "error": None, "claimed_at": now}, expected=expected)
    if retried is None:
        raise InvalidState(f"Payment {record['payment_id']} is already being processed")
    return retried


def _result(store: DocumentStore, payment_doc: Dict[str, Any], invoice: Dict[str, Any]) -> Dict[str, Any]:
    project = get_project_by_id(store, invoice["project_id"])
    return {
        "payment": payment_doc,
        "invoice": invoice,
        "project": project,
        "request": get_request_by_id(store, project["request_id"]),
    }


def handle_payment_success(store: DocumentStore, quote_id: str, payment: Dict[str, Any], storage=None,
                           actor_id: Optional[str] = None) -> Dict[str, Any]:
    """
    Apply a successful payment `{id, amount, status, simulated}` to a quote.

    Returns {"payment", "invoice", "project", "request"}.
    """
    if not payment.get("id"):
        raise PaymentFailure("Payment callback without a payment id")
    if payment.get("status") != "succeeded":
        raise PaymentFailure(f"Payment {payment['id']} did not succeed (status: {payment.get('status')})")

    quote = get_quote_by_id(store, quote_id)
    claim = _claim(store, quote_id, payment)
    if claim is None:
        recorded = store.find_one(PAYMENTS, {"payment_id": str(payment["id"])})
        logger.info("Payment %s already applied; returning recorded result", payment["id"])
        return _result(store, recorded, get_invoice_by_id(store, recorded["invoice_id"]))

    if payment.get("amount") is not None and float(payment["amount"]) != float(quote.get("amount") or 0):
        logger.warning("Payment %s amount %s differs from quote %s amount %s",
                       payment["id"], payment["amount"], quote_id, quote.get("amount"))

    try:
        if quote.get("status") == QuoteStatus.PENDING:
            accept_quote(store, quote_id, actor_id=actor_id)
        elif quote.get("status") != QuoteStatus.ACCEPTED:
            raise InvalidState(f"Quote {quote_id} is {quote.get('status')} and cannot be paid")
        invoice = create_invoice_for_accepted_quote(store, quote_id, storage=storage)
        invoice = mark_invoice_paid(store, invoice["id"])
    except Exception as exc:
        logger.error("Payment %s for quote %s could not be applied: %s", payment["id"], quote_id, exc)
        store.update_document(PAYMENTS, claim["id"], {"state": "failed", "error": str(exc)})
        raise

    applied = store.update_document(PAYMENTS, claim["id"], {"state": "applied", "invoice_id": invoice["id"]})
    logger.info("Payment %s applied to quote %s (invoice %s)", payment["id"], quote_id, invoice["id"])
    notify_safely(store, quote.get("client_id"), "PAYMENT_RECEIVED", {
        "amount": format_amount(payment.get("amount") if payment.get("amount") is not None else invoice.get("amount")),
        "quoteId": quote_id,
        "invoiceId": invoice["id"],
    })
    return _result(store, applied, invoice)
