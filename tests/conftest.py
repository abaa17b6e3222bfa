"""
Shared fixtures: an in-memory document store (mongomock), blob storage and
push fakes, and a small cast of users.
"""
import mongomock
import pytest

from database import DocumentStore
from errors import NotFound, UploadFailure
from quote_service import accept_quote, send_quote
from request_service import create_request


class MemoryStorage:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.files = {}

    def upload(self, path, data, content_type):
        if self.fail:
            raise UploadFailure(f"Could not store {path}")
        file_id = f"f{len(self.files) + 1}"
        self.files[file_id] = (path, data, content_type)
        return f"http://testserver/files/{file_id}"

    def paths(self):
        return [path for path, _, _ in self.files.values()]

    def open(self, file_id):
        if file_id not in self.files:
            raise NotFound("File", file_id)
        path, data, content_type = self.files[file_id]
        return data, content_type, path


class RecordingPushSender:
    def __init__(self, failing_tokens=()):
        self.failing_tokens = set(failing_tokens)
        self.sent = []

    def send(self, token, payload):
        if token in self.failing_tokens:
            raise ConnectionError("device unreachable")
        self.sent.append((token, payload))
        return True


@pytest.fixture
def store():
    client = mongomock.MongoClient()
    store = DocumentStore(client["marketplace_test"], client=client)
    store.ensure_indexes()
    yield store
    store.close()


@pytest.fixture
def storage():
    return MemoryStorage()


@pytest.fixture
def make_user(store):
    """Factory fixture: insert a user under a readable id and return the stored document."""
    def _make_user(user_id, role="order_giver", **fields):
        doc = {"role": role, "display_name": user_id.title(), "tokens": [f"{user_id}-token"]}
        doc.update(fields)
        store.create_document("users", doc, doc_id=user_id)
        return store.get_document("users", user_id)
    return _make_user


@pytest.fixture
def owner(make_user):
    return make_user("alice", email="alice@example.com")


@pytest.fixture
def provider(make_user):
    return make_user(
        "bob",
        role="agency",
        display_name="Bob",
        company_name="Bob Plomberie",
        service_type="plomberie_chauffage",
        service_area="paris",
        fcm_tokens=["bob-device"],
    )


@pytest.fixture
def other_provider(make_user):
    return make_user(
        "carol",
        role="company",
        display_name="Carol",
        services=["plomberie_chauffage", "serrurerie_securite"],
        service_area="Paris",
    )


@pytest.fixture
def request_payload():
    return {
        "title": "Leaking boiler",
        "description": "The boiler in the kitchen leaks since Monday.",
        "service_type": "plomberie_chauffage",
        "priority": "urgent_sur_devis",
        "location": {"address": "Paris", "coordinates": {"lat": 48.8566, "lng": 2.3522}},
        "budget": 300,
        "contact": {"person": "Alice", "phone": "+33600000000", "email": "alice@example.com"},
    }


@pytest.fixture
def pending_request(store, owner, request_payload):
    return create_request(store, owner["id"], request_payload)


@pytest.fixture
def quote(store, provider, pending_request):
    return send_quote(store, provider["id"], pending_request["id"], {"amount": 250, "package": "standard"})


@pytest.fixture
def accepted(store, owner, quote):
    return accept_quote(store, quote["id"], actor_id=owner["id"])
