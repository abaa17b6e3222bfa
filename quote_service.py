"""
Quote lifecycle.

`accept_quote` is the one multi-document transition on this side of the
marketplace: quote, request, project and the competing quotes all change in
a single unit of work. The request write is conditional on the request still
being pending with no accepted quote, so two concurrent accepts for the same
request cannot both succeed.
"""
import logging
from typing import Any, Callable, Dict, List, Optional

from database import DocumentStore, NEWEST_FIRST, Subscription, now_utc
from errors import InvalidState, PermissionDenied
from notifications import notify_safely
from project_service import create_project_for_quote
from request_service import REQUESTS
from schemas import AcceptedQuote, Quote, QuoteStatus, RequestStatus
from users import display_name, get_user

logger = logging.getLogger(__name__)

QUOTES = "quotes"

REJECTED_BY_ACCEPTANCE = "Another quote was accepted for this request."

QUOTE_FIELDS = {
    "amount", "currency", "duration", "note", "package", "delivery_speed",
    "revisions", "include_materials", "attachments",
}


def get_quote_by_id(store: DocumentStore, quote_id: str) -> Dict[str, Any]:
    return store.require_document(QUOTES, quote_id, "Quote")


def _check_owner(request: Dict[str, Any], actor_id: Optional[str]) -> None:
    if actor_id is None:
        return
    if actor_id not in (request.get("created_by"), request.get("order_giver_id")):
        raise PermissionDenied("You can only update quotes for your own requests")


def send_quote(store: DocumentStore, provider_id: str, request_id: str, details: Dict[str, Any]) -> Dict[str, Any]:
    request = store.require_document(REQUESTS, request_id, "Request")
    if request.get("status") != RequestStatus.PENDING:
        raise InvalidState(f"Request {request_id} is {request.get('status')} and no longer accepts quotes")

    provider = get_user(store, provider_id)
    fields = {k: v for k, v in details.items() if k in QUOTE_FIELDS and v is not None}
    fields.setdefault("currency", request.get("currency") or "EUR")
    doc = Quote(
        request_id=request_id,
        provider_id=provider_id,
        provider_name=display_name(provider, "Unknown", prefer_company=True),
        client_id=request.get("created_by") or request.get("order_giver_id"),
        **fields,
    ).model_dump()

    with store.transaction() as uow:
        quote_id = uow.create(QUOTES, doc)
        uow.update(REQUESTS, request_id, add_to_set={"quotes": quote_id}, inc={"responses": 1})

    quote = get_quote_by_id(store, quote_id)
    logger.info("Quote %s sent by %s for request %s (%s %s)",
                quote_id, provider_id, request_id, quote["amount"], quote["currency"])
    notify_safely(store, quote["client_id"], "NEW_QUOTE", {
        "requestId": request_id,
        "requestTitle": request.get("title") or "Service Request",
        "quoteId": quote_id,
    })
    return quote


def accept_quote(store: DocumentStore, quote_id: str, actor_id: Optional[str] = None) -> Dict[str, Any]:
    """
    Accept a pending quote.

    Returns {"quote", "request", "project"} as committed. Raises InvalidState
    when the quote is no longer pending or the request already has an
    accepted quote, and PermissionDenied when `actor_id` does not own the
    request.
    """
    quote = get_quote_by_id(store, quote_id)
    request = store.require_document(REQUESTS, quote["request_id"], "Request")
    _check_owner(request, actor_id)
    if quote.get("status") != QuoteStatus.PENDING:
        raise InvalidState(f"Quote {quote_id} is {quote.get('status')}, not pending")

    accepted_at = now_utc()
    snapshot = AcceptedQuote(
        provider_id=quote["provider_id"],
        provider_name=quote.get("provider_name"),
        price=float(quote.get("amount") or 0),
        quote_id=quote_id,
        accepted_at=accepted_at,
    ).model_dump()

    with store.transaction() as uow:
        updated_request = uow.update(
            REQUESTS, request["id"],
            {
                "status": RequestStatus.IN_PROGRESS,
                "provider_assigned": True,
                "provider_id": quote["provider_id"],
                "accepted_quote_id": quote_id,
                "accepted_quote": snapshot,
            },
            expected={"status": RequestStatus.PENDING, "accepted_quote_id": None},
        )
        if updated_request is None:
            raise InvalidState(f"Request {request['id']} already has an accepted quote or is not pending")

        updated_quote = uow.update(QUOTES, quote_id, {"status": QuoteStatus.ACCEPTED, "accepted_at": accepted_at},
                                   expected={"status": QuoteStatus.PENDING})
        if updated_quote is None:
            raise InvalidState(f"Quote {quote_id} changed status concurrently")

        project = create_project_for_quote(uow, updated_quote, updated_request)

        others = uow.find(QUOTES, {"request_id": request["id"], "status": QuoteStatus.PENDING})
        for other in others:
            if other["id"] == quote_id:
                continue
            uow.update(QUOTES, other["id"],
                       {"status": QuoteStatus.REJECTED, "rejection_reason": REJECTED_BY_ACCEPTANCE},
                       expected={"status": QuoteStatus.PENDING})

    logger.info("Quote %s accepted; request %s in progress, project %s", quote_id, request["id"], project["id"])
    notify_safely(store, quote["provider_id"], "QUOTE_ACCEPTED", {
        "requestId": request["id"],
        "requestTitle": request.get("title") or "Service Request",
    })
    return {"quote": updated_quote, "request": updated_request, "project": project}


def reject_quote(store: DocumentStore, quote_id: str, actor_id: Optional[str] = None,
                 reason: Optional[str] = None) -> Dict[str, Any]:
    quote = get_quote_by_id(store, quote_id)
    if actor_id is not None:
        request = store.require_document(REQUESTS, quote["request_id"], "Request")
        _check_owner(request, actor_id)
    updates: Dict[str, Any] = {"status": QuoteStatus.REJECTED}
    if reason:
        updates["rejection_reason"] = reason
    updated = store.update_document(QUOTES, quote_id, updates, expected={"status": QuoteStatus.PENDING})
    if updated is None:
        raise InvalidState(f"Quote {quote_id} is {quote.get('status')}, not pending")
    return updated


def withdraw_quote(store: DocumentStore, quote_id: str, provider_id: str) -> Dict[str, Any]:
    quote = get_quote_by_id(store, quote_id)
    if quote.get("provider_id") != provider_id:
        raise PermissionDenied("Only the quoting provider can withdraw a quote")
    updated = store.update_document(QUOTES, quote_id, {"status": QuoteStatus.WITHDRAWN},
                                    expected={"status": QuoteStatus.PENDING})
    if updated is None:
        raise InvalidState(f"Quote {quote_id} is {quote.get('status')}, not pending")
    return updated


def get_quotes_for_request(store: DocumentStore, request_id: str) -> List[Dict[str, Any]]:
    return store.get_documents(QUOTES, {"request_id": request_id}, sort=NEWEST_FIRST)


def get_quotes_for_user(store: DocumentStore, user_id: str, status: Optional[str] = None) -> List[Dict[str, Any]]:
    """Quotes received on requests owned by `user_id`."""
    filt: Dict[str, Any] = {"client_id": user_id}
    if status:
        filt["status"] = status
    return store.get_documents(QUOTES, filt, sort=NEWEST_FIRST)


def get_quotes_for_provider(store: DocumentStore, provider_id: str,
                            status: Optional[str] = None) -> List[Dict[str, Any]]:
    filt: Dict[str, Any] = {"provider_id": provider_id}
    if status:
        filt["status"] = status
    return store.get_documents(QUOTES, filt, sort=NEWEST_FIRST)


def subscribe_to_provider_quotes(store: DocumentStore, provider_id: str,
                                 callback: Callable[[List[Dict[str, Any]]], None]) -> Subscription:
    return store.subscribe(QUOTES, {"provider_id": provider_id}, callback, sort=NEWEST_FIRST)


def subscribe_to_user_quotes(store: DocumentStore, user_id: str,
                             callback: Callable[[List[Dict[str, Any]]], None]) -> Subscription:
    return store.subscribe(QUOTES, {"client_id": user_id}, callback, sort=NEWEST_FIRST)
