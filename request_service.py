"""
Request lifecycle: create, read, update, cancel, complete, rate.

Request status only moves along REQUEST_TRANSITIONS. `completed`,
`cancelled` and `archived` have no outgoing edges, so nothing ever brings a
finished request back to an earlier state.
"""
import logging
from typing import Any, Callable, Dict, List, Optional

from database import DocumentStore, NEWEST_FIRST, Subscription, now_utc
from errors import InvalidState
from matching import filter_open_requests_for_provider
from schemas import Rating, RequestStatus, ServiceRequest
from users import USERS

logger = logging.getLogger(__name__)

REQUESTS = "requests"

REQUEST_TRANSITIONS = {
    RequestStatus.DRAFT: {RequestStatus.PENDING, RequestStatus.CANCELLED, RequestStatus.ARCHIVED},
    RequestStatus.PENDING: {RequestStatus.IN_PROGRESS, RequestStatus.CANCELLED, RequestStatus.ARCHIVED},
    RequestStatus.IN_PROGRESS: {RequestStatus.COMPLETED, RequestStatus.CANCELLED},
    RequestStatus.COMPLETED: set(),
    RequestStatus.CANCELLED: set(),
    RequestStatus.ARCHIVED: set(),
}

# Written only by the quote/invoice cascades, never through update_request.
PROTECTED_FIELDS = {
    "id", "_id", "created_by", "order_giver_id", "created_at", "quotes", "responses",
    "provider_assigned", "provider_id", "accepted_quote_id", "accepted_quote", "rating",
}


def can_transition(current: str, target: str) -> bool:
    return target in REQUEST_TRANSITIONS.get(current, set())


def check_transition(request: Dict[str, Any], target: str) -> None:
    current = request.get("status")
    if not can_transition(current, target):
        raise InvalidState(f"Request {request.get('id')} cannot move from {current} to {target}")


def create_request(store: DocumentStore, owner_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
    data = {k: v for k, v in payload.items() if k not in PROTECTED_FIELDS}
    status = data.pop("status", None)
    data["status"] = RequestStatus.DRAFT if status == RequestStatus.DRAFT else RequestStatus.PENDING
    doc = ServiceRequest(created_by=owner_id, order_giver_id=owner_id, **data).model_dump(exclude_none=True)
    request_id = store.create_document(REQUESTS, doc)
    # Owner may be unknown to the users collection (external auth).
    store.update_document(USERS, owner_id, add_to_set={"requests": request_id})
    logger.info("Request %s created by %s", request_id, owner_id)
    return store.get_document(REQUESTS, request_id)


def get_request_by_id(store: DocumentStore, request_id: str) -> Dict[str, Any]:
    return store.require_document(REQUESTS, request_id, "Request")


def get_user_requests(store: DocumentStore, user_id: str, status: Optional[str] = None) -> List[Dict[str, Any]]:
    filt: Dict[str, Any] = {"$or": [{"created_by": user_id}, {"order_giver_id": user_id}]}
    if status:
        filt["status"] = status
    return store.get_documents(REQUESTS, filt, sort=NEWEST_FIRST)


def update_request(store: DocumentStore, request_id: str, updates: Dict[str, Any]) -> Dict[str, Any]:
    request = get_request_by_id(store, request_id)
    changes = {k: v for k, v in updates.items() if k not in PROTECTED_FIELDS}
    target = changes.get("status")
    expected = None
    if target is not None and target != request.get("status"):
        check_transition(request, target)
        expected = {"status": request.get("status")}
    elif target is not None:
        changes.pop("status")
    updated = store.update_document(REQUESTS, request_id, changes, expected=expected)
    if updated is None:
        raise InvalidState(f"Request {request_id} changed while it was being updated")
    return updated


def _set_status(store: DocumentStore, request: Dict[str, Any], target: str, stamp: str) -> Dict[str, Any]:
    check_transition(request, target)
    updated = store.update_document(
        REQUESTS, request["id"], {"status": target, stamp: now_utc()},
        expected={"status": request["status"]},
    )
    if updated is None:
        raise InvalidState(f"Request {request['id']} changed status concurrently")
    logger.info("Request %s: %s -> %s", request["id"], request["status"], target)
    return updated


def cancel_request(store: DocumentStore, request_id: str) -> Dict[str, Any]:
    request = get_request_by_id(store, request_id)
    if request.get("status") == RequestStatus.CANCELLED:
        return request
    return _set_status(store, request, RequestStatus.CANCELLED, "cancelled_at")


def complete_request(store: DocumentStore, request_id: str) -> Dict[str, Any]:
    request = get_request_by_id(store, request_id)
    return _set_status(store, request, RequestStatus.COMPLETED, "completed_at")


def average_rating(ratings: List[Dict[str, Any]]) -> Optional[float]:
    stars = [r.get("stars") for r in ratings if isinstance(r.get("stars"), (int, float))]
    if not stars:
        return None
    return round(sum(stars) / len(stars), 1)


def rate_request(store: DocumentStore, request_id: str, rating: int, review: str = "") -> Dict[str, Any]:
    """Store a 1-5 rating on a completed request and fold it into the provider's average."""
    request = get_request_by_id(store, request_id)
    accepted = request.get("accepted_quote") or {}
    if request.get("status") != RequestStatus.COMPLETED or not accepted:
        raise InvalidState("Only completed requests with an accepted quote can be rated")
    if request.get("rating"):
        raise InvalidState(f"Request {request_id} has already been rated")

    record = Rating(stars=rating, review=review or "", rated_at=now_utc()).model_dump()
    provider_id = accepted.get("provider_id") or request.get("provider_id")

    with store.transaction() as uow:
        updated = uow.update(REQUESTS, request_id, {"rating": record}, expected={"rating": None})
        if updated is None:
            raise InvalidState(f"Request {request_id} has already been rated")
        provider = uow.require(USERS, provider_id, "User")
        ratings = list(provider.get("ratings") or [])
        ratings.append({**record, "request_id": request_id, "client_id": request.get("created_by")})
        uow.update(USERS, provider_id, {"ratings": ratings, "average_rating": average_rating(ratings)})
    return updated


def subscribe_to_user_requests(store: DocumentStore, user_id: str,
                               callback: Callable[[List[Dict[str, Any]]], None]) -> Subscription:
    filt = {"$or": [{"created_by": user_id}, {"order_giver_id": user_id}]}
    return store.subscribe(REQUESTS, filt, callback, sort=NEWEST_FIRST)


def subscribe_to_provider_open_requests(store: DocumentStore, provider_id: str, service_type: Optional[str],
                                        service_area: Optional[str],
                                        callback: Callable[[List[Dict[str, Any]]], None]) -> Subscription:
    """Stream pending and in-progress requests the provider may act on."""
    def deliver(snapshot: List[Dict[str, Any]]) -> None:
        callback(filter_open_requests_for_provider(snapshot, provider_id, service_type, service_area))

    filt = {"status": {"$in": [RequestStatus.PENDING, RequestStatus.IN_PROGRESS]}}
    return store.subscribe(REQUESTS, filt, deliver, sort=NEWEST_FIRST)
