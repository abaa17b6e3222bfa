"""
Push delivery for stored notifications.

A creation hook on the "notifications" collection hands every new
notification to a worker pool, which sends it to the recipient's registered
FCM tokens. Failures are counted per token and logged; nothing here blocks or
raises into the business operation that created the notification.
"""
import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from typing import Any, Dict, Optional

import requests

from database import DocumentStore
from notifications import NOTIFICATIONS
from users import push_tokens_for

logger = logging.getLogger(__name__)

FCM_SEND_URL = "https://fcm.googleapis.com/fcm/send"


@dataclass
class PushResult:
    delivered: int = 0
    failed: int = 0


def build_push_payload(notification: Dict[str, Any]) -> Dict[str, Any]:
    data = {k: str(v) for k, v in (notification.get("data") or {}).items() if v is not None}
    data["click_action"] = notification.get("click_action") or "/"
    return {
        "notification": {
            "title": notification.get("title") or "Notification",
            "body": notification.get("body") or "",
        },
        "data": data,
    }


class FCMPushSender:
    """Sends one payload to one device token over the FCM HTTP API."""

    def __init__(self, server_key: str, timeout: int = 30, session: Optional[requests.Session] = None):
        self.server_key = server_key
        self.timeout = timeout
        self.session = session or requests.Session()

    def send(self, token: str, payload: Dict[str, Any]) -> bool:
        headers = {
            "Authorization": f"key={self.server_key}",
            "Content-Type": "application/json",
        }
        body = {"to": token, **payload}
        response = self.session.post(FCM_SEND_URL, headers=headers, json=body, timeout=self.timeout)
        if response.status_code != 200:
            logger.warning("FCM returned HTTP %s for token %s...", response.status_code, token[:8])
            return False
        return response.json().get("success") == 1


def deliver_notification(store: DocumentStore, notification: Dict[str, Any], sender) -> PushResult:
    result = PushResult()
    user_id = notification.get("user_id")
    tokens = push_tokens_for(store, [user_id]) if user_id else []
    if not tokens:
        logger.info("No push tokens for user %s", user_id)
        return result

    payload = build_push_payload(notification)
    for token in tokens:
        try:
            ok = sender.send(token, payload)
        except Exception:
            logger.warning("Push to token %s... failed", token[:8], exc_info=True)
            ok = False
        if ok:
            result.delivered += 1
        else:
            result.failed += 1

    logger.info("Forwarded notification %s to %d tokens. Success: %d, Failure: %d",
                notification.get("id"), len(tokens), result.delivered, result.failed)
    return result


class PushForwarder:
    """
    Forwards every new notification document to its recipient's devices.

    Delivery runs on a small worker pool so the operation that created the
    notification never waits on FCM. `shutdown()` detaches the hook and lets
    queued deliveries finish.
    """

    def __init__(self, store: DocumentStore, sender, max_workers: int = 4):
        self.store = store
        self.sender = sender
        self.executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="push")
        self._pending = set()
        self._lock = threading.Lock()
        self._remove_hook = store.on_create(NOTIFICATIONS, self.forward)

    def forward(self, notification: Dict[str, Any]) -> Optional[Future]:
        if not notification:
            return None
        future = self.executor.submit(self._deliver, notification)
        with self._lock:
            self._pending.add(future)
        future.add_done_callback(self._discard)
        return future

    def _deliver(self, notification: Dict[str, Any]) -> Optional[PushResult]:
        try:
            return deliver_notification(self.store, notification, self.sender)
        except Exception:
            logger.exception("Push forwarding failed for notification %s", notification.get("id"))
            return None

    def _discard(self, future: Future) -> None:
        with self._lock:
            self._pending.discard(future)

    def flush(self, timeout: Optional[float] = None) -> None:
        """Block until every delivery queued so far has finished."""
        with self._lock:
            pending = list(self._pending)
        wait(pending, timeout=timeout)

    def shutdown(self, wait_for_pending: bool = True) -> None:
        self._remove_hook()
        self.executor.shutdown(wait=wait_for_pending)


def register_push_forwarding(store: DocumentStore, sender, max_workers: int = 4) -> PushForwarder:
    return PushForwarder(store, sender, max_workers=max_workers)
