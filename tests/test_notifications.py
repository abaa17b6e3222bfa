import pytest

from errors import InvalidKind, NotificationDeliveryFailure
from notifications import (
    NOTIFICATION_TYPES,
    get_user_notifications,
    mark_all_notifications_as_read,
    mark_notification_as_read,
    notify_safely,
    render,
    send_notification,
    subscribe_to_notifications,
)

FULL_PARAMS = {
    "requestId": "r1",
    "requestTitle": "Leaking boiler",
    "serviceType": "plomberie_chauffage",
    "amount": "250",
    "senderName": "Bob",
    "message": "On my way",
    "conversationId": "alice_bob",
}


class TestRendering:
    def test_replaces_every_occurrence(self):
        assert render("{a}-{a}-{b}", {"a": 1, "b": "x"}) == "1-1-x"

    def test_missing_params_render_empty(self):
        assert render("Hello {name}!", {}) == "Hello !"

    @pytest.mark.parametrize("kind", sorted(NOTIFICATION_TYPES))
    def test_rendered_notifications_have_no_placeholders(self, store, kind):
        for params in (FULL_PARAMS, {}):
            notification = send_notification(store, "alice", kind, params)
            assert "{" not in notification["title"]
            assert "{" not in notification["body"]
            assert "{" not in notification["click_action"]

    def test_all_kinds_are_supported(self):
        assert set(NOTIFICATION_TYPES) == {
            "REQUEST_CREATED", "NEW_REQUEST_AVAILABLE", "NEW_QUOTE", "QUOTE_ACCEPTED", "INVOICE_GENERATED",
            "PAYMENT_COMPLETED", "REQUEST_UPDATED", "NEW_MESSAGE", "PAYMENT_RECEIVED",
        }


class TestSendNotification:
    def test_persists_unread_notification_with_params(self, store):
        notification = send_notification(store, "alice", "NEW_QUOTE", {"requestId": "r1", "requestTitle": "Boiler"})
        assert notification["read"] is False
        assert notification["type"] == "NEW_QUOTE"
        assert notification["data"] == {"requestId": "r1", "requestTitle": "Boiler"}
        assert notification["click_action"] == "/requests/r1"
        assert notification["body"] == "You have received a new quote for your request: Boiler"

    def test_unknown_kind(self, store):
        with pytest.raises(InvalidKind):
            send_notification(store, "alice", "NOT_A_KIND", {})
        assert store.count_documents("notifications") == 0

    def test_storage_errors_become_delivery_failures(self, store, monkeypatch):
        def broken(*args, **kwargs):
            raise RuntimeError("db down")

        monkeypatch.setattr(store, "create_document", broken)
        with pytest.raises(NotificationDeliveryFailure):
            send_notification(store, "alice", "NEW_QUOTE", {})


class TestNotifySafely:
    def test_swallows_every_failure(self, store, monkeypatch):
        assert notify_safely(store, "alice", "NOT_A_KIND") is None

        def broken(*args, **kwargs):
            raise RuntimeError("db down")

        monkeypatch.setattr(store, "create_document", broken)
        assert notify_safely(store, "alice", "NEW_QUOTE", {}) is None

    def test_skips_missing_recipient(self, store):
        assert notify_safely(store, None, "NEW_QUOTE", {}) is None
        assert store.count_documents("notifications") == 0

    def test_returns_notification_on_success(self, store):
        assert notify_safely(store, "alice", "REQUEST_CREATED", {"requestTitle": "x"})["user_id"] == "alice"


class TestReadState:
    def test_mark_one_and_all(self, store):
        first = send_notification(store, "alice", "NEW_QUOTE", {})
        send_notification(store, "alice", "NEW_QUOTE", {})
        send_notification(store, "bob", "NEW_QUOTE", {})

        assert mark_notification_as_read(store, first["id"], "alice")["read"] is True
        assert mark_notification_as_read(store, first["id"], "bob") is None
        assert mark_all_notifications_as_read(store, "alice") == 1
        assert all(n["read"] for n in get_user_notifications(store, "alice"))
        assert not any(n["read"] for n in get_user_notifications(store, "bob"))

    def test_subscription_streams_latest_twenty(self, store):
        for _ in range(25):
            send_notification(store, "alice", "NEW_QUOTE", {})
        snapshots = []
        sub = subscribe_to_notifications(store, "alice", snapshots.append)
        assert len(snapshots[-1]) == 20
        sub.unsubscribe()

    def test_subscription_requires_user(self, store):
        assert subscribe_to_notifications(store, "", lambda s: None) is None
