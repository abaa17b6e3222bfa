from datetime import timedelta

import pytest

import payments
from database import now_utc
from errors import InvalidState, PaymentFailure
from payments import PaymentGateway, handle_payment_success, to_minor_units
from quote_service import send_quote


def succeeded(payment_id="pi_1", amount=250):
    return {"id": payment_id, "amount": amount, "status": "succeeded", "simulated": True}


class TestGateway:
    def test_minor_units(self):
        assert to_minor_units(250) == 25000
        assert to_minor_units("19.99") == 1999
        assert to_minor_units(None) == 0

    def test_stripe_without_key_falls_back_to_offline(self):
        gateway = PaymentGateway(mode="stripe")
        assert gateway.mode == "offline"
        assert gateway.simulated

    def test_offline_intent_succeeds_immediately(self):
        intent = PaymentGateway().create_payment_intent(250, "pm_card_visa", {"quote_id": "q1"})
        assert intent["id"].startswith("sim_")
        assert intent["status"] == "succeeded"
        assert intent["amount"] == 25000
        assert intent["simulated"] is True

    def test_non_positive_amount_is_refused(self):
        with pytest.raises(PaymentFailure):
            PaymentGateway().create_payment_intent(0, "pm_card_visa")

    def test_webhooks_need_stripe_mode(self):
        with pytest.raises(PaymentFailure):
            PaymentGateway().construct_webhook_event(b"{}", "t=1,v1=abc")


class TestPaymentSuccess:
    def test_pending_quote_is_accepted_invoiced_and_paid(self, store, storage, quote):
        result = handle_payment_success(store, quote["id"], succeeded(), storage=storage)

        assert result["payment"]["state"] == "applied"
        assert result["invoice"]["status"] == "paid"
        assert result["invoice"]["amount"] == 250
        assert result["project"]["status"] == "completed"
        assert result["request"]["status"] == "completed"
        assert result["request"]["accepted_quote_id"] == quote["id"]
        assert storage.paths() == [f"invoices/{result['invoice']['id']}.pdf"]
        received = store.get_documents("notifications", {"user_id": "alice", "type": "PAYMENT_RECEIVED"})
        assert received[0]["body"] == "Your payment of $250 has been received"

    def test_already_accepted_quote(self, store, quote, accepted):
        result = handle_payment_success(store, quote["id"], succeeded())
        assert result["project"]["id"] == accepted["project"]["id"]
        assert result["invoice"]["status"] == "paid"

    def test_repeated_callback_returns_recorded_result(self, store, quote):
        first = handle_payment_success(store, quote["id"], succeeded())
        second = handle_payment_success(store, quote["id"], succeeded())

        assert second["invoice"]["id"] == first["invoice"]["id"]
        assert store.count_documents("invoices") == 1
        assert store.count_documents("payments") == 1
        assert store.count_documents("notifications", {"type": "PAYMENT_RECEIVED"}) == 1

    def test_payment_id_cannot_be_reused_for_another_quote(self, store, other_provider, pending_request, quote):
        other = send_quote(store, "carol", pending_request["id"], {"amount": 200})
        handle_payment_success(store, quote["id"], succeeded())
        with pytest.raises(InvalidState):
            handle_payment_success(store, other["id"], succeeded())

    @pytest.mark.parametrize("payment", [
        {"id": "pi_1", "amount": 250, "status": "requires_payment_method"},
        {"amount": 250, "status": "succeeded"},
    ])
    def test_unsuccessful_or_anonymous_payments_change_nothing(self, store, quote, payment):
        with pytest.raises(PaymentFailure):
            handle_payment_success(store, quote["id"], payment)
        assert store.count_documents("payments") == 0
        assert store.get_document("quotes", quote["id"])["status"] == "pending"

    def test_failed_attempt_can_be_retried(self, store, quote, monkeypatch):
        real = payments.create_invoice_for_accepted_quote
        attempts = []

        def flaky(*args, **kwargs):
            attempts.append(1)
            if len(attempts) == 1:
                raise RuntimeError("pdf renderer crashed")
            return real(*args, **kwargs)

        monkeypatch.setattr(payments, "create_invoice_for_accepted_quote", flaky)
        with pytest.raises(RuntimeError):
            handle_payment_success(store, quote["id"], succeeded())
        assert store.find_one("payments", {"payment_id": "pi_1"})["state"] == "failed"

        result = handle_payment_success(store, quote["id"], succeeded())
        assert result["payment"]["state"] == "applied"
        assert result["request"]["status"] == "completed"

    def _abandoned_claim(self, store, quote, claimed_at):
        store.create_document("payments", {
            "payment_id": "pi_1", "quote_id": quote["id"], "amount": 250, "status": "succeeded",
            "state": "processing", "claimed_at": claimed_at,
        })

    def test_claim_in_progress_refuses_a_second_worker(self, store, quote):
        self._abandoned_claim(store, quote, now_utc())
        with pytest.raises(InvalidState):
            handle_payment_success(store, quote["id"], succeeded())
        assert store.count_documents("invoices") == 0

    def test_claim_abandoned_mid_chain_is_taken_over(self, store, quote):
        self._abandoned_claim(store, quote, now_utc() - payments.STALE_CLAIM_AFTER - timedelta(minutes=1))

        result = handle_payment_success(store, quote["id"], succeeded())

        assert result["payment"]["state"] == "applied"
        assert result["request"]["status"] == "completed"
        assert store.count_documents("payments") == 1

    def test_withdrawn_quote_cannot_be_paid(self, store, quote):
        store.update_document("quotes", quote["id"], {"status": "withdrawn"})
        with pytest.raises(InvalidState):
            handle_payment_success(store, quote["id"], succeeded())
        assert store.count_documents("invoices") == 0
