"""
Invoice lifecycle and the payment cascade.

`mark_invoice_paid` is the only place a job finishes: invoice, project and
request move to their final states together inside one unit of work. The
invoice write is conditional on the invoice still being `generated`, so a
second payment for the same invoice changes nothing.
"""
import logging
from typing import Any, Callable, Dict, List, Optional

from pymongo import DESCENDING

from database import DocumentStore, Subscription, now_utc
from errors import InvalidState, NotFound
from invoice_pdf import InvoiceDocument, build_line_item, format_amount, render_invoice_pdf
from notifications import notify_safely
from project_service import PROJECTS, get_project_by_id, get_project_for_quote
from quote_service import get_quote_by_id
from request_service import REQUESTS, check_transition
from schemas import Invoice, InvoiceStatus, ProjectStatus, QuoteStatus, RequestStatus
from users import display_name, get_user

logger = logging.getLogger(__name__)

INVOICES = "invoices"

BY_DATE_DESC = [("date", DESCENDING)]


def get_invoice_by_id(store: DocumentStore, invoice_id: str) -> Dict[str, Any]:
    return store.require_document(INVOICES, invoice_id, "Invoice")


def _party_names(store: DocumentStore, provider_id: Optional[str], client_id: Optional[str]):
    provider_name, client_name = "Service Provider", "Client"
    try:
        provider_name = display_name(get_user(store, provider_id), provider_name, prefer_company=True)
        client_name = display_name(get_user(store, client_id), client_name)
    except Exception:
        logger.warning("Profile lookup for invoice failed; using fallback names", exc_info=True)
    return provider_name, client_name


def generate_invoice(store: DocumentStore, project_id: str, overrides: Optional[Dict[str, Any]] = None,
                     storage=None, default_currency: str = "EUR") -> Dict[str, Any]:
    """
    Create a `generated` invoice for a project and attach its PDF.

    Without an amount override the invoice bills the project's budget, the
    quote amount snapshotted at acceptance. An UploadFailure propagates to the
    caller; the invoice document is kept without a URL.
    """
    overrides = overrides or {}
    project = get_project_by_id(store, project_id)
    if project.get("status") == ProjectStatus.COMPLETED:
        raise InvalidState(f"Project {project_id} is already completed and paid")

    amount = overrides.get("amount")
    if amount is None:
        amount = project.get("budget")
    currency = overrides.get("currency") or project.get("currency") or default_currency
    order_giver_id = project.get("client_id") or project.get("order_giver_id")

    doc = Invoice(
        project_id=project_id,
        request_id=project.get("request_id"),
        quote_id=project.get("quote_id"),
        provider_id=project.get("provider_id"),
        order_giver_id=order_giver_id,
        amount=float(amount or 0),
        currency=currency,
        note=overrides.get("note") or "",
        date=now_utc(),
    ).model_dump()
    invoice_id = store.create_document(INVOICES, doc)
    logger.info("Invoice %s generated for project %s: %s %s", invoice_id, project_id, doc["amount"], currency)

    provider_name, client_name = _party_names(store, project.get("provider_id"), order_giver_id)
    pdf = render_invoice_pdf(InvoiceDocument(
        invoice_id=invoice_id,
        issued=doc["date"],
        provider_name=provider_name,
        client_name=client_name,
        currency=currency,
        total=doc["amount"],
        line_item=build_line_item(project, currency),
    ))

    url = None
    if storage is not None:
        url = storage.upload(f"invoices/{invoice_id}.pdf", pdf, "application/pdf")
        store.update_document(INVOICES, invoice_id, {"invoice_url": url})
    else:
        logger.warning("No blob storage configured; invoice %s has no PDF URL", invoice_id)

    notify_safely(store, order_giver_id, "INVOICE_GENERATED", {
        "requestId": project.get("request_id") or "",
        "requestTitle": project.get("title") or "Service Request",
        "invoiceId": invoice_id,
        "invoiceUrl": url,
    })
    return get_invoice_by_id(store, invoice_id)


def create_invoice_for_accepted_quote(store: DocumentStore, quote_id: str, storage=None) -> Dict[str, Any]:
    quote = get_quote_by_id(store, quote_id)
    if quote.get("status") != QuoteStatus.ACCEPTED:
        raise InvalidState(f"Quote {quote_id} has not been accepted")
    project = get_project_for_quote(store, quote_id)
    if project is None:
        raise NotFound("Project for quote", quote_id)
    existing = store.find_one(INVOICES, {"project_id": project["id"]}, sort=BY_DATE_DESC)
    if existing:
        return existing
    return generate_invoice(store, project["id"], storage=storage, default_currency=quote.get("currency") or "EUR")


def mark_invoice_paid(store: DocumentStore, invoice_id: str) -> Dict[str, Any]:
    invoice = get_invoice_by_id(store, invoice_id)
    if invoice.get("status") == InvoiceStatus.PAID:
        logger.info("Invoice %s already paid; nothing to do", invoice_id)
        return invoice

    paid_at = now_utc()
    with store.transaction() as uow:
        paid = uow.update(INVOICES, invoice_id, {"status": InvoiceStatus.PAID, "paid_at": paid_at},
                          expected={"status": InvoiceStatus.GENERATED})
        if paid is None:
            # Another caller paid it between our read and this write.
            return get_invoice_by_id(store, invoice_id)

        project = uow.require(PROJECTS, invoice["project_id"], "Project")
        if project.get("status") == ProjectStatus.COMPLETED:
            raise InvalidState(f"Project {project['id']} was already completed by another invoice")
        uow.update(PROJECTS, project["id"],
                   {"status": ProjectStatus.COMPLETED, "progress": 100, "completed_at": paid_at})

        request = uow.require(REQUESTS, project["request_id"], "Request")
        check_transition(request, RequestStatus.COMPLETED)
        completed = uow.update(REQUESTS, request["id"],
                               {"status": RequestStatus.COMPLETED, "completed_at": paid_at},
                               expected={"status": RequestStatus.IN_PROGRESS})
        if completed is None:
            raise InvalidState(f"Request {request['id']} changed status during payment")

    logger.info("Invoice %s paid; project %s and request %s completed", invoice_id, project["id"], request["id"])
    title = project.get("title") or request.get("title") or "Service Request"
    notify_safely(store, paid.get("provider_id"), "PAYMENT_COMPLETED", {
        "amount": format_amount(paid.get("amount")),
        "requestId": request["id"],
        "requestTitle": title,
    })
    notify_safely(store, paid.get("order_giver_id") or request.get("created_by"), "REQUEST_UPDATED", {
        "requestId": request["id"],
        "requestTitle": title,
    })
    return paid


def get_invoices_for_project(store: DocumentStore, project_id: str) -> List[Dict[str, Any]]:
    return store.get_documents(INVOICES, {"project_id": project_id}, sort=BY_DATE_DESC)


def get_invoices_for_request(store: DocumentStore, request_id: str) -> List[Dict[str, Any]]:
    return store.get_documents(INVOICES, {"request_id": request_id}, sort=BY_DATE_DESC)


def get_invoices_for_provider(store: DocumentStore, provider_id: str) -> List[Dict[str, Any]]:
    return store.get_documents(INVOICES, {"provider_id": provider_id}, sort=BY_DATE_DESC)


def get_invoices_for_order_giver(store: DocumentStore, user_id: str) -> List[Dict[str, Any]]:
    return store.get_documents(INVOICES, {"order_giver_id": user_id}, sort=BY_DATE_DESC)


def subscribe_to_provider_invoices(store: DocumentStore, provider_id: str,
                                   callback: Callable[[List[Dict[str, Any]]], None]) -> Subscription:
    return store.subscribe(INVOICES, {"provider_id": provider_id}, callback, sort=BY_DATE_DESC, limit=50)
