import json
import time
import unittest

from cotiz.db import close_db, get_db
from cotiz.infrastructure.repositories import TransferRepository
from tests.helpers.procurement import (
    approved_quote,
    build_temp_app,
    create_supplier,
    db_fetchone,
    headers,
    reset_global_state,
    stripe_body,
    stripe_headers,
)
from tests.helpers.temp_db import TempDbSandbox


ASAAS_HEADERS = {"asaas-access-token": "asaas-token-test"}


class WebhookTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self._temp_db = TempDbSandbox(prefix="webhooks")
        self.app = build_temp_app(self._temp_db)
        self.client = self.app.test_client()
        self.headers = headers()

    def tearDown(self) -> None:
        with self.app.app_context():
            close_db()
        self._temp_db.cleanup()
        reset_global_state()

    def _pending_payment(self) -> int:
        quote_id, _ = approved_quote(self.client, self.headers, amount=1800.0)
        created = self.client.post("/api/payments", json={"quote_id": quote_id}, headers=self.headers)
        self.assertEqual(created.status_code, 201)
        return int(created.get_json()["id"])

    def _payment(self, payment_id: int) -> dict:
        return self.client.get(f"/api/payments/{payment_id}", headers=self.headers).get_json()


class StripeWebhookTest(WebhookTestCase):
    def _post(self, body: bytes, **kwargs):
        return self.client.post("/api/webhooks/stripe", data=body, headers=stripe_headers(body, **kwargs))

    def test_checkout_completed_moves_payment_to_escrow(self) -> None:
        payment_id = self._pending_payment()
        body = stripe_body(
            "evt_checkout_1",
            "checkout.session.completed",
            {"id": "cs_test_1", "payment_intent": "pi_1", "metadata": {"payment_id": str(payment_id)}},
        )

        response = self._post(body)

        self.assertEqual(response.status_code, 200, response.get_data(as_text=True))
        self.assertEqual(response.get_json()["status"], "in_escrow")
        payment = self._payment(payment_id)
        self.assertEqual(payment["status"], "in_escrow")
        self.assertEqual(payment["stripe_session_id"], "cs_test_1")
        self.assertTrue(payment["escrow_release_date"])

    def test_duplicate_event_is_acknowledged_without_side_effects(self) -> None:
        payment_id = self._pending_payment()
        body = stripe_body(
            "evt_dup",
            "payment_intent.succeeded",
            {"id": "pi_dup", "metadata": {"payment_id": str(payment_id)}},
        )
        self.assertEqual(self._post(body).status_code, 200)
        transactions_before = len(self._payment(payment_id)["transactions"])

        again = self._post(body)

        self.assertEqual(again.status_code, 200)
        self.assertTrue(again.get_json()["duplicate"])
        self.assertEqual(len(self._payment(payment_id)["transactions"]), transactions_before)

    def test_invalid_signature_is_rejected_and_audited(self) -> None:
        body = stripe_body("evt_bad", "payment_intent.succeeded", {"id": "pi_bad"})

        response = self._post(body, secret="whsec_wrong")

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.get_json()["error"], "webhook_signature_invalid")
        audit = db_fetchone(
            self._temp_db,
            "SELECT entity_id FROM audit_logs WHERE action = 'WEBHOOK_UNAUTHORIZED_ATTEMPT'",
        )
        self.assertIsNotNone(audit)
        self.assertEqual(audit["entity_id"], "stripe")
        self.assertIsNone(db_fetchone(self._temp_db, "SELECT id FROM webhook_events WHERE event_id = 'evt_bad'"))

    def test_stale_timestamp_is_rejected(self) -> None:
        body = stripe_body("evt_old", "payment_intent.succeeded", {"id": "pi_old"})

        response = self._post(body, timestamp=int(time.time()) - 3600)

        self.assertEqual(response.status_code, 400)

    def test_failed_then_retry_then_confirmed(self) -> None:
        payment_id = self._pending_payment()
        failed = self._post(
            stripe_body("evt_fail", "payment_intent.payment_failed", {"id": "pi_f", "metadata": {"payment_id": str(payment_id)}})
        )
        self.assertEqual(failed.get_json()["status"], "failed")

        retried = self.client.post(f"/api/payments/{payment_id}/retry", headers=self.headers)
        self.assertEqual(retried.get_json()["status"], "pending")

        # A referencia do intent ficou gravada; o evento seguinte nao precisa de metadata.
        confirmed = self._post(stripe_body("evt_ok", "payment_intent.succeeded", {"id": "pi_f"}))
        self.assertEqual(confirmed.get_json()["status"], "in_escrow")

    def test_redundant_event_is_ignored(self) -> None:
        payment_id = self._pending_payment()
        obj = {"id": "pi_twice", "metadata": {"payment_id": str(payment_id)}}
        self._post(stripe_body("evt_a", "payment_intent.succeeded", obj))

        second = self._post(stripe_body("evt_b", "payment_intent.succeeded", obj))

        self.assertEqual(second.status_code, 200)
        self.assertEqual(second.get_json()["ignored"], "invalid_transition")
        self.assertEqual(self._payment(payment_id)["status"], "in_escrow")

    def test_dispute_lifecycle(self) -> None:
        payment_id = self._pending_payment()
        obj = {"id": "pi_disp", "metadata": {"payment_id": str(payment_id)}}
        self._post(stripe_body("evt_paid", "payment_intent.succeeded", obj))

        opened = self._post(stripe_body("evt_disp", "charge.dispute.created", {"id": "dp_1", "payment_intent": "pi_disp"}))
        closed = self._post(
            stripe_body("evt_disp_closed", "charge.dispute.closed", {"id": "dp_1", "payment_intent": "pi_disp", "status": "won"})
        )

        self.assertEqual(opened.get_json()["status"], "disputed")
        self.assertEqual(closed.get_json()["status"], "in_escrow")

    def test_dispute_closed_without_chargeback_keeps_payment_disputed(self) -> None:
        payment_id = self._pending_payment()
        obj = {"id": "pi_warn", "metadata": {"payment_id": str(payment_id)}}
        self._post(stripe_body("evt_paid_warn", "payment_intent.succeeded", obj))
        self._post(stripe_body("evt_disp_warn", "charge.dispute.created", {"id": "dp_2", "payment_intent": "pi_warn"}))

        closed = self._post(
            stripe_body(
                "evt_disp_warn_closed",
                "charge.dispute.closed",
                {"id": "dp_2", "payment_intent": "pi_warn", "status": "warning_closed"},
            )
        )

        self.assertEqual(closed.status_code, 200)
        self.assertEqual(closed.get_json()["ignored"], "event_type")
        self.assertEqual(self._payment(payment_id)["status"], "disputed")

    def test_lost_dispute_refunds(self) -> None:
        payment_id = self._pending_payment()
        obj = {"id": "pi_lost", "metadata": {"payment_id": str(payment_id)}}
        self._post(stripe_body("evt_paid_lost", "payment_intent.succeeded", obj))
        self._post(stripe_body("evt_disp_lost", "charge.dispute.created", {"id": "dp_3", "payment_intent": "pi_lost"}))

        closed = self._post(
            stripe_body("evt_disp_lost_closed", "charge.dispute.closed", {"id": "dp_3", "payment_intent": "pi_lost", "status": "lost"})
        )

        self.assertEqual(closed.get_json()["status"], "refunded")

    def test_non_object_data_is_rejected_without_recording_event(self) -> None:
        for index, data in enumerate(([1, 2], {"object": "pi_1"}, {"object": {"metadata": "payment_id=1"}})):
            body = json.dumps({"id": f"evt_bad_{index}", "type": "payment_intent.succeeded", "data": data}).encode("utf-8")

            response = self._post(body)

            self.assertEqual(response.status_code, 400, data)
            self.assertEqual(response.get_json()["error"], "webhook_payload_invalid")
        recorded = db_fetchone(self._temp_db, "SELECT COUNT(*) AS total FROM webhook_events WHERE provider = 'stripe'")
        self.assertEqual(int(recorded["total"]), 0)

    def test_unknown_event_type_is_acknowledged(self) -> None:
        response = self._post(stripe_body("evt_other", "customer.created", {"id": "cus_1"}))

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.get_json()["ignored"], "event_type")

    def test_malformed_body(self) -> None:
        response = self._post(b"not json")

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.get_json()["error"], "webhook_payload_invalid")


class AsaasWebhookTest(WebhookTestCase):
    def test_missing_token_is_unauthorized(self) -> None:
        response = self.client.post("/api/webhooks/asaas", json={"event": "PAYMENT_RECEIVED"})

        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.get_json()["error"], "webhook_unauthorized")
        audit = db_fetchone(
            self._temp_db,
            "SELECT details_json FROM audit_logs WHERE action = 'WEBHOOK_UNAUTHORIZED_ATTEMPT'",
        )
        self.assertEqual(json.loads(audit["details_json"])["provider"], "asaas")

    def test_payment_received_by_external_reference(self) -> None:
        payment_id = self._pending_payment()
        payload = {
            "id": "evt_asaas_1",
            "event": "PAYMENT_RECEIVED",
            "payment": {"id": "pay_123", "externalReference": str(payment_id), "billingType": "PIX"},
        }

        response = self.client.post("/api/webhooks/asaas", json=payload, headers=ASAAS_HEADERS)

        self.assertEqual(response.status_code, 200)
        payment = self._payment(payment_id)
        self.assertEqual(payment["status"], "in_escrow")
        self.assertEqual(payment["asaas_payment_id"], "pay_123")
        self.assertEqual(payment["payment_method"], "pix")

        confirmed = self.client.post(
            "/api/webhooks/asaas",
            json={"id": "evt_asaas_2", "event": "PAYMENT_CONFIRMED", "payment": {"id": "pay_123"}},
            headers=ASAAS_HEADERS,
        )
        self.assertEqual(confirmed.get_json()["ignored"], "invalid_transition")

        duplicate = self.client.post("/api/webhooks/asaas", json=payload, headers=ASAAS_HEADERS)
        self.assertTrue(duplicate.get_json()["duplicate"])

    def test_refund_from_escrow(self) -> None:
        payment_id = self._pending_payment()
        reference = {"id": "pay_ref", "externalReference": str(payment_id)}
        self.client.post("/api/webhooks/asaas", json={"event": "PAYMENT_RECEIVED", "payment": reference}, headers=ASAAS_HEADERS)

        refunded = self.client.post(
            "/api/webhooks/asaas",
            json={"event": "PAYMENT_REFUNDED", "payment": {"id": "pay_ref"}},
            headers=ASAAS_HEADERS,
        )

        self.assertEqual(refunded.get_json()["status"], "refunded")

    def test_unknown_reference_is_ignored(self) -> None:
        response = self.client.post(
            "/api/webhooks/asaas",
            json={"event": "PAYMENT_RECEIVED", "payment": {"id": "pay_unknown"}},
            headers=ASAAS_HEADERS,
        )

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.get_json()["ignored"], "payment_not_found")

    def test_non_object_payload_is_rejected(self) -> None:
        bodies = (
            [{"event": "PAYMENT_RECEIVED"}],
            {"event": "PAYMENT_RECEIVED", "payment": "pay_1"},
            {"event": "SUBSCRIPTION_UPDATED", "subscription": ["sub_1"]},
        )
        for body in bodies:
            response = self.client.post("/api/webhooks/asaas", json=body, headers=ASAAS_HEADERS)

            self.assertEqual(response.status_code, 400, body)
            self.assertEqual(response.get_json()["error"], "webhook_payload_invalid")


class TransferApprovalTest(WebhookTestCase):
    def _transfer(self, *, amount: float, pix_key: str | None = "pix@fornecedor.com") -> int:
        supplier = create_supplier(
            self.client,
            self.headers,
            name="Fornecedor Pix",
            email="pix@fornecedor.com",
            bank_data={"pix_key": "pix@fornecedor.com"},
        )
        with self.app.app_context():
            db = get_db()
            transfer_id = TransferRepository().create(
                db,
                supplier_id=int(supplier["id"]),
                amount=amount,
                asaas_transfer_id="tr_1",
                pix_key=pix_key,
                client_id="client-condominio-a",
            )
            db.commit()
        return transfer_id

    def _ask(self, value: float, pix_key: str = "pix@fornecedor.com", transfer_id: str = "tr_1"):
        return self.client.post(
            "/api/webhooks/asaas/transfer-approval",
            json={"transfer": {"id": transfer_id, "value": value, "pixAddressKey": pix_key}},
            headers=ASAAS_HEADERS,
        )

    def _transfer_status(self, transfer_id: int) -> str:
        return db_fetchone(self._temp_db, "SELECT status FROM supplier_transfers WHERE id = ?", (transfer_id,))["status"]

    def test_matching_transfer_is_approved(self) -> None:
        transfer_id = self._transfer(amount=1200.0)

        response = self._ask(1200.0)

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.get_json()["status"], "APPROVED")
        self.assertEqual(self._transfer_status(transfer_id), "approved")

    def test_value_mismatch_is_rejected(self) -> None:
        transfer_id = self._transfer(amount=1200.0)

        response = self._ask(1500.0)

        self.assertEqual(response.get_json()["status"], "REJECTED")
        self.assertEqual(self._transfer_status(transfer_id), "failed")

    def test_pix_mismatch_is_rejected(self) -> None:
        transfer_id = self._transfer(amount=1200.0)

        response = self._ask(1200.0, pix_key="outra@chave.com")

        self.assertEqual(response.get_json()["status"], "REJECTED")
        self.assertEqual(self._transfer_status(transfer_id), "failed")

    def test_value_above_automatic_limit_stays_pending(self) -> None:
        self.app.config["TRANSFER_MAX_AUTO_APPROVE"] = 1000.0
        transfer_id = self._transfer(amount=1200.0)

        response = self._ask(1200.0)

        self.assertEqual(response.get_json()["status"], "REJECTED")
        self.assertEqual(self._transfer_status(transfer_id), "pending")

    def test_unknown_transfer_is_rejected(self) -> None:
        response = self._ask(10.0, transfer_id="tr_nao_existe")

        self.assertEqual(response.get_json()["status"], "REJECTED")

    def test_requires_token(self) -> None:
        response = self.client.post("/api/webhooks/asaas/transfer-approval", json={"transfer": {"id": "tr_1"}})

        self.assertEqual(response.status_code, 401)

    def test_non_object_transfer_is_rejected(self) -> None:
        for body in ([{"transfer": {"id": "tr_1"}}], {"transfer": "tr_1"}):
            response = self.client.post("/api/webhooks/asaas/transfer-approval", json=body, headers=ASAAS_HEADERS)

            self.assertEqual(response.status_code, 400, body)
            self.assertEqual(response.get_json()["status"], "REJECTED")


if __name__ == "__main__":
    unittest.main()
