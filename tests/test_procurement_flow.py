import unittest

from cotiz.db import close_db
from cotiz.integrations.messaging import get_mock_outbox
from tests.helpers.procurement import (
    CLIENT_ID,
    build_temp_app,
    confirmation_code_for,
    create_quote,
    create_supplier,
    db_execute,
    headers,
    payment_in_escrow,
    reset_global_state,
    send_quote,
    submit_public_response,
)
from tests.helpers.temp_db import TempDbSandbox


class ProcurementFlowTest(unittest.TestCase):
    def setUp(self) -> None:
        self._temp_db = TempDbSandbox(prefix="procurement_flow")
        self.app = build_temp_app(self._temp_db)
        self.client = self.app.test_client()
        self.headers = headers()

    def tearDown(self) -> None:
        with self.app.app_context():
            close_db()
        self._temp_db.cleanup()
        reset_global_state()

    def _status(self, quote_id: int) -> str:
        response = self.client.get(f"/api/quotes/{quote_id}", headers=self.headers)
        self.assertEqual(response.status_code, 200)
        return response.get_json()["status"]

    def test_full_flow_from_quote_to_confirmed_delivery(self) -> None:
        vidros = create_supplier(self.client, self.headers, name="Vidros Sol", email="contato@vidrossol.com.br")
        portoes = create_supplier(
            self.client,
            self.headers,
            name="Portoes Norte",
            email="vendas@portoesnorte.com.br",
            whatsapp="11988887777",
        )
        quote_id = create_quote(self.client, self.headers)
        self.assertEqual(self._status(quote_id), "draft")

        sent = send_quote(self.client, self.headers, quote_id, [vidros["id"], portoes["id"]])
        self.assertEqual(sent["status"], "sent")
        self.assertEqual(sent["invited_count"], 2)
        codes = {item["supplier_id"]: item["short_code"] for item in sent["results"]}
        self.assertEqual(len(get_mock_outbox().messages("whatsapp")), 2)
        self.assertEqual(len(get_mock_outbox().messages("email")), 2)

        public = self.client.get(f"/api/public/quotes/{codes[vidros['id']]}")
        self.assertEqual(public.status_code, 200)
        public_payload = public.get_json()
        self.assertEqual(public_payload["quote"]["id"], quote_id)
        self.assertEqual(public_payload["access_count"], 1)
        self.assertTrue(public_payload["can_respond"])
        self.assertEqual(len(public_payload["items"]), 2)

        first = submit_public_response(
            self.client,
            codes[vidros["id"]],
            supplier_name="Vidros Sol",
            supplier_email="contato@vidrossol.com.br",
            total_amount=4200.0,
            delivery_days=12,
        )
        self.assertEqual(first.status_code, 201)
        self.assertEqual(first.get_json()["quote_status"], "receiving")
        second = submit_public_response(
            self.client,
            codes[portoes["id"]],
            supplier_name="Portoes Norte",
            supplier_email="vendas@portoesnorte.com.br",
            total_amount=3900.0,
            delivery_days=15,
            shipping_cost=150.0,
        )
        self.assertEqual(second.status_code, 201)

        comparison = self.client.get(f"/api/quotes/{quote_id}/responses", headers=self.headers).get_json()
        self.assertEqual(comparison["count"], 2)
        by_supplier = {item["supplier_id"]: item for item in comparison["items"]}
        self.assertTrue(by_supplier[portoes["id"]]["is_lowest_price"])
        self.assertEqual(by_supplier[portoes["id"]]["total"], 4050.0)
        self.assertTrue(by_supplier[vidros["id"]]["is_fastest_delivery"])
        self.assertFalse(by_supplier[vidros["id"]]["is_lowest_price"])

        approved = self.client.post(
            f"/api/responses/{second.get_json()['response_id']}/approve",
            json={"comments": "Melhor custo total"},
            headers=self.headers,
        )
        self.assertEqual(approved.status_code, 200)
        approved_payload = approved.get_json()
        self.assertEqual(approved_payload["quote_status"], "approved")
        self.assertIsNone(approved_payload["approval"])
        self.assertEqual(approved_payload["rejected_count"], 1)

        detail = self.client.get(f"/api/quotes/{quote_id}", headers=self.headers).get_json()
        self.assertEqual(detail["supplier_id"], portoes["id"])
        self.assertEqual(float(detail["total"]), 3900.0)

        payment_id = payment_in_escrow(self.client, self.headers, quote_id)
        payment = self.client.get(f"/api/payments/{payment_id}", headers=self.headers).get_json()
        self.assertEqual(payment["status"], "in_escrow")
        self.assertTrue(payment["escrow_release_date"])
        self.assertIn("release", payment["allowed_events"])

        delivery = self.client.post("/api/deliveries", json={"quote_id": quote_id}, headers=self.headers)
        self.assertEqual(delivery.status_code, 201, delivery.get_data(as_text=True))
        delivery_id = delivery.get_json()["id"]
        self.assertNotIn("confirmation_code", delivery.get_json())

        code = confirmation_code_for(self._temp_db, delivery_id)
        self.assertRegex(code, r"^\d{6}$")

        confirmed = self.client.post("/api/deliveries/confirm", json={"confirmation_code": code}, headers=self.headers)
        self.assertEqual(confirmed.status_code, 200, confirmed.get_data(as_text=True))
        self.assertTrue(confirmed.get_json()["payment_released"])

        self.assertEqual(self._status(quote_id), "finalized")
        payment = self.client.get(f"/api/payments/{payment_id}", headers=self.headers).get_json()
        self.assertEqual(payment["status"], "completed")
        types = [item["transaction_type"] for item in payment["transactions"]]
        self.assertIn("delivery_confirmed", types)

        dashboard = self.client.get("/api/dashboard", headers=self.headers)
        self.assertEqual(dashboard.status_code, 200)
        summary = dashboard.get_json()
        self.assertEqual(summary["client_id"], CLIENT_ID)
        self.assertEqual(summary["quotes_by_status"].get("finalized"), 1)
        self.assertEqual(float(summary["amount_released"]), 3900.0)

        history = self.client.get(f"/api/quotes/{quote_id}/history", headers=self.headers).get_json()
        statuses = [item["to_status"] for item in history["items"]]
        for expected in ("sent", "receiving", "approved", "finalized"):
            self.assertIn(expected, statuses)

    def test_quotes_are_isolated_between_clients(self) -> None:
        quote_id = create_quote(self.client, self.headers)
        other = headers(client_id="client-condominio-b")

        self.assertEqual(self.client.get(f"/api/quotes/{quote_id}", headers=other).status_code, 404)
        listed = self.client.get("/api/quotes", headers=other).get_json()
        self.assertEqual(listed["items"], [])

    def test_send_skips_inactive_supplier_and_requires_one_active(self) -> None:
        supplier = create_supplier(self.client, self.headers, name="Eletrica Sul", email="eletrica@sul.com.br")
        patched = self.client.patch(
            f"/api/suppliers/{supplier['id']}/status",
            json={"status": "suspended"},
            headers=self.headers,
        )
        self.assertEqual(patched.status_code, 200)
        quote_id = create_quote(self.client, self.headers)

        response = self.client.post(
            f"/api/quotes/{quote_id}/send",
            json={"supplier_ids": [supplier["id"]]},
            headers=self.headers,
        )

        self.assertEqual(response.status_code, 404)
        payload = response.get_json()
        self.assertEqual(payload["error"], "suppliers_not_found")
        self.assertEqual(payload["results"][0]["reason"], "supplier_suspended")
        self.assertEqual(self._status(quote_id), "draft")

    def test_resubmission_updates_existing_response(self) -> None:
        supplier = create_supplier(self.client, self.headers, name="Hidraulica Leste", email="h@leste.com.br")
        quote_id = create_quote(self.client, self.headers)
        code = send_quote(self.client, self.headers, quote_id, [supplier["id"]])["results"][0]["short_code"]

        first = submit_public_response(
            self.client, code, supplier_name="Hidraulica Leste", supplier_email="h@leste.com.br", total_amount=900.0
        )
        second = submit_public_response(
            self.client, code, supplier_name="Hidraulica Leste", supplier_email="h@leste.com.br", total_amount=850.0
        )

        self.assertEqual(first.status_code, 201)
        self.assertEqual(second.status_code, 200)
        self.assertTrue(second.get_json()["updated"])
        self.assertEqual(first.get_json()["response_id"], second.get_json()["response_id"])
        comparison = self.client.get(f"/api/quotes/{quote_id}/responses", headers=self.headers).get_json()
        self.assertEqual(comparison["count"], 1)
        self.assertEqual(float(comparison["items"][0]["total_amount"]), 850.0)

    def test_public_response_validation(self) -> None:
        supplier = create_supplier(self.client, self.headers, name="Pintura Oeste", email="p@oeste.com.br")
        quote_id = create_quote(self.client, self.headers)
        code = send_quote(self.client, self.headers, quote_id, [supplier["id"]])["results"][0]["short_code"]

        invalid_amount = submit_public_response(
            self.client, code, supplier_name="Pintura Oeste", supplier_email="p@oeste.com.br", total_amount=0
        )
        unknown_token = submit_public_response(
            self.client, "NAOEXISTE", supplier_name="Pintura Oeste", supplier_email="p@oeste.com.br", total_amount=10
        )

        self.assertEqual(invalid_amount.status_code, 400)
        self.assertEqual(invalid_amount.get_json()["error"], "total_amount_invalid")
        self.assertEqual(unknown_token.status_code, 404)
        self.assertEqual(unknown_token.get_json()["error"], "token_not_found")

    def test_non_finite_amount_is_rejected(self) -> None:
        supplier = create_supplier(self.client, self.headers, name="Vidracaria Sul", email="v@sul.com.br")
        quote_id = create_quote(self.client, self.headers)
        code = send_quote(self.client, self.headers, quote_id, [supplier["id"]])["results"][0]["short_code"]

        for raw in ("nan", "inf", "-Infinity"):
            response = submit_public_response(
                self.client, code, supplier_name="Vidracaria Sul", supplier_email="v@sul.com.br", total_amount=raw
            )
            self.assertEqual(response.status_code, 400, raw)
            self.assertEqual(response.get_json()["error"], "required_fields_missing")
            self.assertIn("total_amount", response.get_json()["fields"])

        comparison = self.client.get(f"/api/quotes/{quote_id}/responses", headers=self.headers).get_json()
        self.assertEqual(comparison["count"], 0)

    def test_expired_token_is_forbidden(self) -> None:
        supplier = create_supplier(self.client, self.headers, name="Jardim Verde", email="j@verde.com.br")
        quote_id = create_quote(self.client, self.headers)
        code = send_quote(self.client, self.headers, quote_id, [supplier["id"]])["results"][0]["short_code"]
        db_execute(self._temp_db, "UPDATE quote_tokens SET expires_at = ? WHERE short_code = ?", ("2000-01-01T00:00:00Z", code))

        response = self.client.get(f"/api/public/quotes/{code}")

        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.get_json()["error"], "token_expired")

    def test_cancel_draft_quote(self) -> None:
        quote_id = create_quote(self.client, self.headers)

        cancelled = self.client.post(f"/api/quotes/{quote_id}/cancel", json={"reason": "duplicada"}, headers=self.headers)
        blocked = self.client.post(f"/api/quotes/{quote_id}/send", json={}, headers=self.headers)

        self.assertEqual(cancelled.status_code, 200)
        self.assertEqual(cancelled.get_json()["status"], "cancelled")
        self.assertEqual(blocked.status_code, 409)


if __name__ == "__main__":
    unittest.main()
