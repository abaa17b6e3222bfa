import matching
from matching import (
    broadcast_new_request,
    filter_by_area,
    filter_open_requests_for_provider,
    get_matching_providers,
)


def ids(providers):
    return sorted(p["id"] for p in providers)


class TestGetMatchingProviders:
    def test_both_category_shapes_match(self, store, provider, other_provider):
        assert ids(get_matching_providers(store, "plomberie_chauffage", "Paris")) == ["bob", "carol"]

    def test_provider_in_both_shapes_is_returned_once(self, store, make_user):
        make_user("dan", role="contractor", service_type="serrurerie_securite", services=["serrurerie_securite"])
        assert ids(get_matching_providers(store, "serrurerie_securite")) == ["dan"]

    def test_non_providers_are_ignored(self, store, make_user):
        make_user("olga", role="order_giver", service_type="plomberie_chauffage")
        assert get_matching_providers(store, "plomberie_chauffage") == []

    def test_area_filter_with_city_fallback_and_unknown_area(self, store, make_user):
        make_user("lyon", role="provider", service_type="peinture_finitions", service_area="Lyon")
        make_user("city", role="provider", service_type="peinture_finitions", city="Paris 11e")
        make_user("anywhere", role="provider", service_type="peinture_finitions")
        assert ids(get_matching_providers(store, "peinture_finitions", "paris")) == ["anywhere", "city"]

    def test_one_failing_lookup_keeps_the_other(self, store, provider, other_provider, monkeypatch):
        def broken(store, service_type):
            raise RuntimeError("index missing")

        monkeypatch.setattr(matching, "CATEGORY_LOOKUPS",
                            (broken, matching._providers_by_services_array))
        assert ids(get_matching_providers(store, "plomberie_chauffage")) == ["carol"]

    def test_total_failure_returns_empty(self, store, provider, monkeypatch):
        monkeypatch.setattr(matching, "filter_by_area", lambda providers, area: 1 / 0)
        assert get_matching_providers(store, "plomberie_chauffage", "Paris") == []


class TestFilterByArea:
    def test_no_area_keeps_everyone(self):
        providers = [{"id": "a", "service_area": "Lyon"}]
        assert filter_by_area(providers, None) == providers

    def test_substring_match_is_case_insensitive(self):
        providers = [{"id": "a", "service_area": "Grand PARIS"}, {"id": "b", "service_area": "Nice"}]
        assert ids(filter_by_area(providers, "paris")) == ["a"]


class TestBroadcast:
    def test_notifies_every_matching_provider(self, store, provider, other_provider, pending_request):
        assert broadcast_new_request(store, pending_request) == 2
        sent = store.get_documents("notifications", {"type": "NEW_REQUEST_AVAILABLE"})
        assert sorted(n["user_id"] for n in sent) == ["bob", "carol"]
        assert all(n["data"]["requestId"] == pending_request["id"] for n in sent)

    def test_creator_is_never_notified(self, store, provider, request_payload):
        from request_service import create_request

        request = create_request(store, provider["id"], request_payload)
        assert broadcast_new_request(store, request) == 0

    def test_one_failing_notification_does_not_stop_the_rest(self, store, provider, other_provider,
                                                              pending_request, monkeypatch):
        real = store.create_document

        def flaky(collection_name, data, doc_id=None):
            if collection_name == "notifications" and data.get("user_id") == "bob":
                raise RuntimeError("write conflict")
            return real(collection_name, data, doc_id=doc_id)

        monkeypatch.setattr(store, "create_document", flaky)
        assert broadcast_new_request(store, pending_request) == 1

    def test_request_without_category_is_not_broadcast(self, store, provider):
        assert broadcast_new_request(store, {"id": "r1", "title": "x"}) == 0


class TestOpenRequestFilter:
    REQUESTS = [
        {"id": "open", "status": "pending", "service_type": "plomberie_chauffage",
         "location": {"address": "12 rue de Paris"}},
        {"id": "other-type", "status": "pending", "service_type": "serrurerie_securite",
         "location": {"address": "Paris"}},
        {"id": "elsewhere", "status": "pending", "service_type": "plomberie_chauffage",
         "location": {"address": "Lyon"}},
        {"id": "mine", "status": "in_progress", "service_type": "plomberie_chauffage",
         "provider_id": "bob", "location": {"address": "Paris"}},
        {"id": "theirs", "status": "in_progress", "service_type": "plomberie_chauffage",
         "accepted_quote": {"provider_id": "carol"}, "location": {"address": "Paris"}},
    ]

    def test_filters_by_assignment_type_and_area(self):
        visible = filter_open_requests_for_provider(self.REQUESTS, "bob", "plomberie_chauffage", "paris")
        assert [r["id"] for r in visible] == ["open", "mine"]

    def test_without_profile_filters_only_assignment_applies(self):
        visible = filter_open_requests_for_provider(self.REQUESTS, "bob")
        assert [r["id"] for r in visible] == ["open", "other-type", "elsewhere", "mine"]
