"""
Per-user orchestrators for the order-giver and provider dashboards.

A context is built explicitly with a store and the signed-in user's id.
`start()` opens its snapshot subscriptions; every callback only stores the new
list and recomputes derived stats, never doing further I/O. `close()` (or
leaving the `with` block) releases every subscription handle.

Action methods delegate to the lifecycle services and raise AuthRequired when
no user is bound.
"""
import logging
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional

from database import DocumentStore, Subscription
from errors import AuthRequired, PermissionDenied
from invoice_service import (
    generate_invoice, get_invoice_by_id, mark_invoice_paid, subscribe_to_provider_invoices,
)
from matching import broadcast_new_request
from notifications import notify_safely, subscribe_to_notifications
from payments import handle_payment_success
from project_service import (
    add_project_comment, add_project_photo, get_project_by_id, subscribe_to_order_giver_projects,
    subscribe_to_provider_projects, update_project_progress,
)
from quote_service import (
    accept_quote, reject_quote, send_quote, subscribe_to_provider_quotes, subscribe_to_user_quotes,
    withdraw_quote,
)
from request_service import (
    cancel_request, create_request, get_request_by_id, rate_request, subscribe_to_provider_open_requests,
    subscribe_to_user_requests,
)
from schemas import InvoiceStatus, ProjectStatus, RequestStatus
from users import get_user, update_user_profile

logger = logging.getLogger(__name__)


@dataclass
class OrderGiverStats:
    total_requests: int = 0
    pending_quotes: int = 0
    active_projects: int = 0
    completed_projects: int = 0
    total_spent: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ProviderStats:
    total_requests: int = 0
    pending_quotes: int = 0
    active_projects: int = 0
    completed_projects: int = 0
    earnings: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _count(items: List[Dict[str, Any]], status: str) -> int:
    return sum(1 for item in items if item.get("status") == status)


def order_giver_stats(requests: List[Dict[str, Any]],
                      projects: Optional[List[Dict[str, Any]]] = None) -> OrderGiverStats:
    """
    Counters from the order giver's requests. `total_spent` sums the accepted
    price of completed requests. When a project snapshot is available its
    statuses replace the request-based active/completed counts.
    """
    spent = sum(
        float((r.get("accepted_quote") or {}).get("price") or 0)
        for r in requests
        if r.get("status") == RequestStatus.COMPLETED and r.get("accepted_quote_id")
    )
    stats = OrderGiverStats(
        total_requests=len(requests),
        pending_quotes=_count(requests, RequestStatus.PENDING),
        active_projects=_count(requests, RequestStatus.IN_PROGRESS),
        completed_projects=_count(requests, RequestStatus.COMPLETED),
        total_spent=round(spent, 2),
    )
    if projects is not None:
        stats.active_projects = _count(projects, ProjectStatus.ACTIVE)
        stats.completed_projects = _count(projects, ProjectStatus.COMPLETED)
    return stats


def provider_stats(open_requests: List[Dict[str, Any]], provider_id: str,
                   invoices: Optional[List[Dict[str, Any]]] = None,
                   projects: Optional[List[Dict[str, Any]]] = None) -> ProviderStats:
    # Open requests never include completed ones; finished work comes from projects.
    earnings = sum(float(inv.get("amount") or 0) for inv in (invoices or [])
                   if inv.get("status") == InvoiceStatus.PAID)
    stats = ProviderStats(
        total_requests=len(open_requests),
        pending_quotes=_count(open_requests, RequestStatus.PENDING),
        active_projects=sum(1 for r in open_requests
                            if r.get("status") == RequestStatus.IN_PROGRESS and r.get("provider_id") == provider_id),
        completed_projects=_count(open_requests, RequestStatus.COMPLETED),
        earnings=round(earnings, 2),
    )
    if projects is not None:
        stats.completed_projects = _count(projects, ProjectStatus.COMPLETED)
    return stats


class _Context:
    def __init__(self, store: DocumentStore, user_id: Optional[str] = None, storage=None):
        self.store = store
        self.user_id = user_id
        self.storage = storage
        self.notifications: List[Dict[str, Any]] = []
        self._subscriptions: List[Subscription] = []

    @property
    def active(self) -> bool:
        return bool(self._subscriptions)

    def require_user(self) -> str:
        if not self.user_id:
            raise AuthRequired()
        return self.user_id

    def _track(self, subscription: Optional[Subscription]) -> None:
        if subscription is not None:
            self._subscriptions.append(subscription)

    def _on_notifications(self, snapshot: List[Dict[str, Any]]) -> None:
        self.notifications = snapshot

    def start(self):
        raise NotImplementedError

    def close(self) -> None:
        while self._subscriptions:
            self._subscriptions.pop().unsubscribe()

    def __enter__(self):
        return self.start()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def update_profile(self, updates: Dict[str, Any]) -> Dict[str, Any]:
        return update_user_profile(self.store, self.require_user(), updates)


class OrderGiverContext(_Context):
    def __init__(self, store: DocumentStore, user_id: Optional[str] = None, storage=None):
        super().__init__(store, user_id, storage)
        self.requests: List[Dict[str, Any]] = []
        self.quotes: List[Dict[str, Any]] = []
        self.projects: Optional[List[Dict[str, Any]]] = None
        self.stats = OrderGiverStats()

    def start(self) -> "OrderGiverContext":
        uid = self.require_user()
        if self.active:
            return self
        self._track(subscribe_to_user_requests(self.store, uid, self._on_requests))
        self._track(subscribe_to_user_quotes(self.store, uid, self._on_quotes))
        self._track(subscribe_to_order_giver_projects(self.store, uid, self._on_projects))
        self._track(subscribe_to_notifications(self.store, uid, self._on_notifications))
        logger.debug("Order giver context started for %s", uid)
        return self

    def _on_requests(self, snapshot: List[Dict[str, Any]]) -> None:
        self.requests = snapshot
        self.stats = order_giver_stats(self.requests, self.projects)

    def _on_quotes(self, snapshot: List[Dict[str, Any]]) -> None:
        self.quotes = snapshot

    def _on_projects(self, snapshot: List[Dict[str, Any]]) -> None:
        self.projects = snapshot
        self.stats = order_giver_stats(self.requests, self.projects)

    def _owned_request(self, request_id: str) -> Dict[str, Any]:
        uid = self.require_user()
        request = get_request_by_id(self.store, request_id)
        if uid not in (request.get("created_by"), request.get("order_giver_id")):
            raise PermissionDenied("You can only manage your own requests")
        return request

    def create_request(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Create a request, confirm it to the owner and broadcast it to matching providers."""
        uid = self.require_user()
        request = create_request(self.store, uid, payload)
        notify_safely(self.store, uid, "REQUEST_CREATED", {
            "requestId": request["id"],
            "requestTitle": request.get("title") or "Service Request",
        })
        if request.get("status") == RequestStatus.PENDING:
            broadcast_new_request(self.store, request)
        return request

    def cancel_request(self, request_id: str) -> Dict[str, Any]:
        self._owned_request(request_id)
        return cancel_request(self.store, request_id)

    def accept_quote(self, quote_id: str) -> Dict[str, Any]:
        return accept_quote(self.store, quote_id, actor_id=self.require_user())

    def reject_quote(self, quote_id: str) -> Dict[str, Any]:
        return reject_quote(self.store, quote_id, actor_id=self.require_user())

    def pay_quote(self, quote_id: str, payment: Dict[str, Any]) -> Dict[str, Any]:
        return handle_payment_success(self.store, quote_id, payment, storage=self.storage,
                                      actor_id=self.require_user())

    def pay_invoice(self, invoice_id: str) -> Dict[str, Any]:
        uid = self.require_user()
        invoice = get_invoice_by_id(self.store, invoice_id)
        if invoice.get("order_giver_id") != uid:
            raise PermissionDenied("You can only pay your own invoices")
        return mark_invoice_paid(self.store, invoice_id)

    def rate_provider(self, request_id: str, rating: int, review: str = "") -> Dict[str, Any]:
        self._owned_request(request_id)
        return rate_request(self.store, request_id, rating, review)


class ProviderContext(_Context):
    def __init__(self, store: DocumentStore, user_id: Optional[str] = None, storage=None):
        super().__init__(store, user_id, storage)
        self.requests: List[Dict[str, Any]] = []
        self.quotes: List[Dict[str, Any]] = []
        self.projects: List[Dict[str, Any]] = []
        self.invoices: List[Dict[str, Any]] = []
        self.stats = ProviderStats()

    def start(self) -> "ProviderContext":
        uid = self.require_user()
        if self.active:
            return self
        profile = get_user(self.store, uid) or {}
        services = profile.get("services") or []
        service_type = profile.get("service_type") or (services[0] if services else None)
        service_area = profile.get("service_area") or profile.get("city")
        self._track(subscribe_to_provider_open_requests(self.store, uid, service_type, service_area,
                                                        self._on_requests))
        self._track(subscribe_to_provider_quotes(self.store, uid, self._on_quotes))
        self._track(subscribe_to_provider_projects(self.store, uid, self._on_projects))
        self._track(subscribe_to_provider_invoices(self.store, uid, self._on_invoices))
        self._track(subscribe_to_notifications(self.store, uid, self._on_notifications))
        logger.debug("Provider context started for %s (%s, %s)", uid, service_type, service_area)
        return self

    def _on_requests(self, snapshot: List[Dict[str, Any]]) -> None:
        self.requests = snapshot
        self.stats = provider_stats(self.requests, self.user_id, self.invoices, self.projects)

    def _on_quotes(self, snapshot: List[Dict[str, Any]]) -> None:
        self.quotes = snapshot

    def _on_projects(self, snapshot: List[Dict[str, Any]]) -> None:
        self.projects = snapshot
        self.stats = provider_stats(self.requests, self.user_id, self.invoices, self.projects)

    def _on_invoices(self, snapshot: List[Dict[str, Any]]) -> None:
        self.invoices = snapshot
        self.stats = provider_stats(self.requests, self.user_id, self.invoices, self.projects)

    def send_quote(self, request_id: str, details: Dict[str, Any]) -> Dict[str, Any]:
        return send_quote(self.store, self.require_user(), request_id, details)

    def withdraw_quote(self, quote_id: str) -> Dict[str, Any]:
        return withdraw_quote(self.store, quote_id, self.require_user())

    def update_progress(self, project_id: str, progress: Any,
                        updates: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        return update_project_progress(self.store, project_id, progress, updates, actor_id=self.require_user())

    def create_invoice(self, project_id: str, overrides: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        uid = self.require_user()
        project = get_project_by_id(self.store, project_id)
        if project.get("provider_id") != uid:
            raise PermissionDenied("Only the assigned provider can invoice this project")
        return generate_invoice(self.store, project_id, overrides, storage=self.storage)

    def upload_photo(self, project_id: str, filename: str, data: bytes,
                     content_type: str = "image/jpeg") -> Dict[str, Any]:
        return add_project_photo(self.store, project_id, self.storage, filename, data, content_type,
                                 actor_id=self.require_user())

    def add_comment(self, project_id: str, text: str) -> Dict[str, Any]:
        return add_project_comment(self.store, project_id, text, author_id=self.require_user())

    def set_invoice_paid(self, invoice_id: str) -> Dict[str, Any]:
        uid = self.require_user()
        invoice = get_invoice_by_id(self.store, invoice_id)
        if invoice.get("provider_id") != uid:
            raise PermissionDenied("You can only settle your own invoices")
        return mark_invoice_paid(self.store, invoice_id)
