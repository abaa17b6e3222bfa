"""
Notification dispatcher.

`send_notification` renders a template from NOTIFICATION_TYPES and stores the
result in the "notifications" collection. It does not push anything itself:
push delivery is wired as a creation hook on the collection (see push.py).

Lifecycle code never calls `send_notification` directly; it goes through
`notify_safely`, which logs and swallows every failure so a notification
problem can't undo a quote, a payment or a request.
"""
import logging
import re
from typing import Any, Callable, Dict, List, Optional

from database import DocumentStore, NEWEST_FIRST, Subscription
from errors import InvalidKind, NotificationDeliveryFailure
from schemas import Notification

logger = logging.getLogger(__name__)

NOTIFICATIONS = "notifications"

NOTIFICATION_TYPES: Dict[str, Dict[str, str]] = {
    "REQUEST_CREATED": {
        "title": "Request Submitted",
        "body": 'Your request "{requestTitle}" has been created',
        "icon": "/icons/request.png",
        "click_action": "/requests/{requestId}",
    },
    "NEW_REQUEST_AVAILABLE": {
        "title": "New Request Available",
        "body": "A new {serviceType} job posted near you: {requestTitle}",
        "icon": "/icons/request.png",
        "click_action": "/provider/requests",
    },
    "NEW_QUOTE": {
        "title": "New Quote Received",
        "body": "You have received a new quote for your request: {requestTitle}",
        "icon": "/icons/quote.png",
        "click_action": "/requests/{requestId}",
    },
    "QUOTE_ACCEPTED": {
        "title": "Quote Accepted",
        "body": "Your quote for {requestTitle} has been accepted!",
        "icon": "/icons/check.png",
        "click_action": "/provider/projects",
    },
    "INVOICE_GENERATED": {
        "title": "Invoice Generated",
        "body": "Invoice for {requestTitle} has been generated.",
        "icon": "/icons/payment.png",
        "click_action": "/requests/{requestId}",
    },
    "PAYMENT_COMPLETED": {
        "title": "Payment Completed",
        "body": "Payment of ${amount} received for {requestTitle}.",
        "icon": "/icons/payment.png",
        "click_action": "/provider/invoices",
    },
    "REQUEST_UPDATED": {
        "title": "Request Updated",
        "body": 'Your request "{requestTitle}" has been updated',
        "icon": "/icons/update.png",
        "click_action": "/requests/{requestId}",
    },
    "NEW_MESSAGE": {
        "title": "New Message",
        "body": "{senderName}: {message}",
        "icon": "/icons/message.png",
        "click_action": "/messages?conversationId={conversationId}",
    },
    "PAYMENT_RECEIVED": {
        "title": "Payment Received",
        "body": "Your payment of ${amount} has been received",
        "icon": "/icons/payment.png",
        "click_action": "/transactions",
    },
}

_PLACEHOLDER = re.compile(r"\{(\w+)\}")


def render(template: str, params: Dict[str, Any]) -> str:
    """Replace every {key} with str(params[key]); unknown keys render empty."""
    def substitute(match: "re.Match[str]") -> str:
        value = params.get(match.group(1))
        return "" if value is None else str(value)

    return _PLACEHOLDER.sub(substitute, template)


def render_notification(kind: str, params: Dict[str, Any]) -> Dict[str, str]:
    template = NOTIFICATION_TYPES.get(kind)
    if template is None:
        raise InvalidKind(kind)
    return {
        "title": render(template["title"], params),
        "body": render(template["body"], params),
        "icon": template["icon"],
        "click_action": render(template["click_action"], params),
    }


def send_notification(store: DocumentStore, user_id: str, kind: str,
                      params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    params = dict(params or {})
    rendered = render_notification(kind, params)
    doc = Notification(user_id=user_id, type=kind, data=params, **rendered).model_dump()
    try:
        new_id = store.create_document(NOTIFICATIONS, doc)
    except Exception as exc:
        raise NotificationDeliveryFailure(f"Could not store {kind} notification for {user_id}: {exc}") from exc
    return store.get_document(NOTIFICATIONS, new_id) or {"id": new_id, **doc}


def notify_safely(store: DocumentStore, user_id: Optional[str], kind: str,
                  params: Optional[Dict[str, Any]] = None) -> Optional[Dict[str, Any]]:
    """Best-effort wrapper around send_notification. Never raises."""
    if not user_id:
        return None
    try:
        return send_notification(store, user_id, kind, params)
    except Exception:
        logger.warning("Notification %s to %s failed", kind, user_id, exc_info=True)
        return None


def get_user_notifications(store: DocumentStore, user_id: str, limit: int = 20) -> List[Dict[str, Any]]:
    return store.get_documents(NOTIFICATIONS, {"user_id": user_id}, sort=NEWEST_FIRST, limit=limit)


def mark_notification_as_read(store: DocumentStore, notification_id: str,
                              user_id: Optional[str] = None) -> Optional[Dict[str, Any]]:
    expected = {"user_id": user_id} if user_id else None
    return store.update_document(NOTIFICATIONS, notification_id, {"read": True}, expected=expected)


def mark_all_notifications_as_read(store: DocumentStore, user_id: str) -> int:
    return store.update_documents(NOTIFICATIONS, {"user_id": user_id, "read": False}, {"read": True})


def subscribe_to_notifications(store: DocumentStore, user_id: str,
                               callback: Callable[[List[Dict[str, Any]]], None]) -> Optional[Subscription]:
    if not user_id:
        logger.warning("subscribe_to_notifications called without a user id")
        return None
    return store.subscribe(NOTIFICATIONS, {"user_id": user_id}, callback, sort=NEWEST_FIRST, limit=20)
