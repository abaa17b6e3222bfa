import pytest

from errors import InvalidState, PermissionDenied, UploadFailure
from invoice_service import generate_invoice, mark_invoice_paid
from project_service import (
    add_project_comment,
    add_project_photo,
    clamp_progress,
    get_project_by_id,
    get_projects_for_order_giver,
    get_projects_for_provider,
    update_project_progress,
)
from request_service import get_request_by_id
from conftest import MemoryStorage


@pytest.fixture
def project(accepted):
    return accepted["project"]


class TestProgress:
    @pytest.mark.parametrize("raw, stored", [(-5, 0), (0, 0), (42.4, 42), (100, 100), (250, 100), ("60", 60)])
    def test_clamped(self, raw, stored):
        assert clamp_progress(raw) == stored

    def test_not_a_number(self):
        with pytest.raises(InvalidState):
            clamp_progress("half")

    def test_update_keeps_extra_fields_but_not_protected_ones(self, store, project):
        updated = update_project_progress(store, project["id"], 30, {"status_note": "Parts ordered", "budget": 1})
        assert updated["progress"] == 30
        assert updated["status_note"] == "Parts ordered"
        assert updated["budget"] == 250

    def test_reaching_100_notifies_but_does_not_complete(self, store, project):
        updated = update_project_progress(store, project["id"], 120, actor_id="bob")

        assert updated["progress"] == 100
        assert updated["status"] == "active"
        assert get_request_by_id(store, project["request_id"])["status"] == "in_progress"
        assert store.count_documents("notifications", {"user_id": "alice", "type": "REQUEST_UPDATED"}) == 1

    def test_only_assigned_provider_updates(self, store, project):
        with pytest.raises(PermissionDenied):
            update_project_progress(store, project["id"], 10, actor_id="carol")

    def test_completed_project_is_frozen(self, store, project):
        invoice = generate_invoice(store, project["id"])
        mark_invoice_paid(store, invoice["id"])
        with pytest.raises(InvalidState):
            update_project_progress(store, project["id"], 50)
        assert get_project_by_id(store, project["id"])["progress"] == 100


class TestPhotosAndComments:
    def test_photo_is_uploaded_and_appended(self, store, storage, project):
        updated = add_project_photo(store, project["id"], storage, "before.jpg", b"\xff\xd8jpeg", actor_id="bob")

        assert storage.paths() == [f"projects/{project['id']}/before.jpg"]
        assert updated["photos"][0]["name"] == "before.jpg"
        assert updated["photos"][0]["url"] == "http://testserver/files/f1"

    def test_failed_upload_leaves_project_untouched(self, store, project):
        with pytest.raises(UploadFailure):
            add_project_photo(store, project["id"], MemoryStorage(fail=True), "before.jpg", b"data")
        assert get_project_by_id(store, project["id"])["photos"] == []

    def test_comments_from_participants(self, store, project):
        add_project_comment(store, project["id"], "Starting Monday", author_id="bob")
        updated = add_project_comment(store, project["id"], "Great", author_id="alice")
        assert [c["text"] for c in updated["comments"]] == ["Starting Monday", "Great"]

        with pytest.raises(PermissionDenied):
            add_project_comment(store, project["id"], "Hi", author_id="mallory")


class TestQueries:
    def test_by_participant(self, store, project):
        assert [p["id"] for p in get_projects_for_provider(store, "bob")] == [project["id"]]
        assert [p["id"] for p in get_projects_for_order_giver(store, "alice", status="active")] == [project["id"]]
        assert get_projects_for_order_giver(store, "alice", status="completed") == []
