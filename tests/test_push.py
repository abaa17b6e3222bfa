import threading
import time
from unittest import mock

from notifications import send_notification
from push import FCM_SEND_URL, FCMPushSender, build_push_payload, deliver_notification, register_push_forwarding
from quote_service import get_quote_by_id, send_quote
from users import register_push_token
from conftest import RecordingPushSender


class BlockingPushSender(RecordingPushSender):
    """Holds every send until `release` is set, like a device behind a slow network."""

    def __init__(self):
        super().__init__()
        self.release = threading.Event()

    def send(self, token, payload):
        self.release.wait(10)
        return super().send(token, payload)


class TestPayload:
    def test_payload_shape(self):
        payload = build_push_payload({
            "title": "New Message",
            "body": "Bob: hi",
            "click_action": "/messages?conversationId=alice_bob",
            "data": {"conversationId": "alice_bob", "senderId": "bob", "unused": None},
        })
        assert payload == {
            "notification": {"title": "New Message", "body": "Bob: hi"},
            "data": {
                "conversationId": "alice_bob",
                "senderId": "bob",
                "click_action": "/messages?conversationId=alice_bob",
            },
        }

    def test_defaults(self):
        payload = build_push_payload({})
        assert payload["notification"]["title"] == "Notification"
        assert payload["data"]["click_action"] == "/"


class TestDelivery:
    def test_counts_per_token_failures(self, store, make_user):
        make_user("dave", fcm_tokens=["good-1", "bad", "good-2"])
        sender = RecordingPushSender(failing_tokens=["bad"])
        notification = send_notification(store, "dave", "NEW_QUOTE", {"requestTitle": "x"})

        result = deliver_notification(store, notification, sender)

        assert (result.delivered, result.failed) == (2, 1)
        assert [token for token, _ in sender.sent] == ["good-1", "good-2"]

    def test_no_tokens_is_a_no_op(self, store, make_user):
        make_user("erin")
        sender = RecordingPushSender()
        result = deliver_notification(store, {"user_id": "erin", "title": "t"}, sender)
        assert (result.delivered, result.failed) == (0, 0)
        assert sender.sent == []

    def test_forwarding_hook_pushes_new_notifications(self, store, make_user):
        make_user("frank")
        register_push_token(store, "frank", "frank-phone")
        register_push_token(store, "frank", "frank-phone")
        sender = RecordingPushSender()
        forwarder = register_push_forwarding(store, sender)

        send_notification(store, "frank", "QUOTE_ACCEPTED", {"requestTitle": "Boiler"})
        forwarder.flush(timeout=5)

        assert len(sender.sent) == 1
        token, payload = sender.sent[0]
        assert token == "frank-phone"
        assert payload["notification"]["title"] == "Quote Accepted"
        forwarder.shutdown()
        send_notification(store, "frank", "QUOTE_ACCEPTED", {"requestTitle": "Boiler"})
        assert len(sender.sent) == 1

    def test_slow_devices_do_not_hold_up_the_quote(self, store, owner, provider, pending_request):
        register_push_token(store, "alice", "alice-phone")
        register_push_token(store, "alice", "alice-tablet")
        sender = BlockingPushSender()
        forwarder = register_push_forwarding(store, sender)

        started = time.monotonic()
        quote = send_quote(store, "bob", pending_request["id"], {"amount": 250})
        elapsed = time.monotonic() - started

        assert elapsed < 1
        assert get_quote_by_id(store, quote["id"])["status"] == "pending"
        assert sender.sent == []

        sender.release.set()
        forwarder.shutdown()
        assert sorted(token for token, _ in sender.sent) == ["alice-phone", "alice-tablet"]

    def test_a_crashing_sender_is_contained(self, store, make_user):
        make_user("gina", fcm_tokens=["gina-phone"])
        sender = mock.Mock()
        sender.send.side_effect = RuntimeError("no network")
        forwarder = register_push_forwarding(store, sender)

        future = forwarder.forward(send_notification(store, "gina", "NEW_MESSAGE", {"senderName": "Bob"}))
        forwarder.shutdown()

        assert future.result().failed == 1


class TestFCMPushSender:
    def test_posts_to_fcm_with_server_key(self):
        session = mock.Mock()
        session.post.return_value = mock.Mock(status_code=200, json=lambda: {"success": 1})
        sender = FCMPushSender("server-key", session=session)

        assert sender.send("token-1", {"notification": {"title": "t", "body": "b"}, "data": {}}) is True

        args, kwargs = session.post.call_args
        assert args[0] == FCM_SEND_URL
        assert kwargs["headers"]["Authorization"] == "key=server-key"
        assert kwargs["json"]["to"] == "token-1"

    def test_http_error_is_a_failed_delivery(self):
        session = mock.Mock()
        session.post.return_value = mock.Mock(status_code=401)
        assert FCMPushSender("bad-key", session=session).send("token-1", {}) is False
