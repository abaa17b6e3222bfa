import pytest

from contexts import OrderGiverContext, ProviderContext, order_giver_stats, provider_stats
from errors import AuthRequired, PermissionDenied


class TestStats:
    def test_order_giver_stats_from_requests(self):
        requests = [
            {"status": "pending"},
            {"status": "in_progress", "accepted_quote_id": "q2", "accepted_quote": {"price": 500}},
            {"status": "completed", "accepted_quote_id": "q3", "accepted_quote": {"price": 250}},
            {"status": "completed", "accepted_quote_id": "q4", "accepted_quote": {"price": 99.5}},
            {"status": "cancelled"},
        ]
        stats = order_giver_stats(requests).to_dict()
        assert stats == {
            "total_requests": 5,
            "pending_quotes": 1,
            "active_projects": 1,
            "completed_projects": 2,
            "total_spent": 349.5,
        }

    def test_project_snapshot_overrides_project_counts(self):
        projects = [{"status": "active"}, {"status": "active"}, {"status": "completed"}]
        stats = order_giver_stats([{"status": "in_progress"}], projects)
        assert (stats.active_projects, stats.completed_projects) == (2, 1)

    def test_provider_earnings_count_paid_invoices_only(self):
        requests = [
            {"status": "pending"},
            {"status": "in_progress", "provider_id": "bob"},
            {"status": "in_progress", "provider_id": "carol"},
        ]
        invoices = [{"status": "paid", "amount": 250}, {"status": "generated", "amount": 400}]
        projects = [{"status": "completed"}, {"status": "active"}]

        stats = provider_stats(requests, "bob", invoices, projects)

        assert stats.total_requests == 3
        assert stats.pending_quotes == 1
        assert stats.active_projects == 1
        assert stats.completed_projects == 1
        assert stats.earnings == 250


class TestOrderGiverContext:
    def test_requires_a_user(self, store):
        context = OrderGiverContext(store)
        with pytest.raises(AuthRequired):
            context.start()
        with pytest.raises(AuthRequired):
            context.create_request({"title": "x"})

    def test_live_state_follows_writes(self, store, owner, provider, other_provider, request_payload):
        with OrderGiverContext(store, "alice") as context:
            request = context.create_request(request_payload)

            assert [r["id"] for r in context.requests] == [request["id"]]
            assert context.stats.total_requests == 1
            assert context.stats.pending_quotes == 1
            kinds = sorted(n["type"] for n in context.notifications)
            assert kinds == ["REQUEST_CREATED"]

        assert store.count_documents("notifications", {"type": "NEW_REQUEST_AVAILABLE"}) == 2
        assert store.listener_count() == 0

    def test_draft_is_not_broadcast(self, store, owner, provider, request_payload):
        with OrderGiverContext(store, "alice") as context:
            context.create_request({**request_payload, "status": "draft"})
        assert store.count_documents("notifications", {"type": "NEW_REQUEST_AVAILABLE"}) == 0

    def test_full_purchase_through_context(self, store, storage, owner, quote):
        with OrderGiverContext(store, "alice", storage=storage) as context:
            assert [q["id"] for q in context.quotes] == [quote["id"]]

            context.pay_quote(quote["id"], {"id": "sim_1", "amount": 250, "status": "succeeded"})

            assert context.stats.completed_projects == 1
            assert context.stats.active_projects == 0
            assert context.stats.total_spent == 250
            context.rate_provider(quote["request_id"], 5)
        assert store.get_document("users", "bob")["average_rating"] == 5.0

    def test_cannot_cancel_someone_elses_request(self, store, make_user, pending_request):
        make_user("eve")
        with pytest.raises(PermissionDenied):
            OrderGiverContext(store, "eve").cancel_request(pending_request["id"])

    def test_start_twice_does_not_duplicate_subscriptions(self, store, owner):
        context = OrderGiverContext(store, "alice")
        context.start()
        context.start()
        assert store.listener_count() == 4
        context.close()
        assert store.listener_count() == 0


class TestProviderContext:
    def test_open_requests_follow_profile(self, store, owner, provider, pending_request, request_payload):
        from request_service import create_request

        create_request(store, "alice", {**request_payload, "service_type": "serrurerie_securite"})
        with ProviderContext(store, "bob") as context:
            assert [r["id"] for r in context.requests] == [pending_request["id"]]
            quote = context.send_quote(pending_request["id"], {"amount": 180})
            assert [q["id"] for q in context.quotes] == [quote["id"]]

    def test_services_array_is_used_when_no_legacy_field(self, store, other_provider, pending_request):
        with ProviderContext(store, "carol") as context:
            assert [r["id"] for r in context.requests] == [pending_request["id"]]

    def test_work_and_earnings(self, store, storage, accepted):
        project_id = accepted["project"]["id"]
        with ProviderContext(store, "bob", storage=storage) as context:
            context.update_progress(project_id, 100)
            context.upload_photo(project_id, "after.jpg", b"jpeg")
            context.add_comment(project_id, "Done")
            invoice = context.create_invoice(project_id)
            assert context.stats.earnings == 0

            context.set_invoice_paid(invoice["id"])

            assert context.stats.earnings == 250
            assert context.stats.completed_projects == 1
            assert context.invoices[0]["invoice_url"].startswith("http://testserver/files/")

    def test_cannot_invoice_someone_elses_project(self, store, other_provider, accepted):
        with pytest.raises(PermissionDenied):
            ProviderContext(store, "carol").create_invoice(accepted["project"]["id"])
