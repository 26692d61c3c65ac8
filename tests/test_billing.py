import unittest

from cotiz.db import close_db, get_db
from cotiz.infrastructure.repositories import BillingRepository
from tests.helpers.procurement import build_temp_app, db_execute, db_fetchone, reset_global_state
from tests.helpers.temp_db import TempDbSandbox


ASAAS_HEADERS = {"asaas-access-token": "asaas-token-test"}
CLIENT = "client-assinante"


class SubscriptionBillingTest(unittest.TestCase):
    def setUp(self) -> None:
        self._temp_db = TempDbSandbox(prefix="billing")
        self.app = build_temp_app(self._temp_db)
        self.client = self.app.test_client()
        db_execute(self._temp_db, "INSERT INTO clients (id, name) VALUES (?, ?)", (CLIENT, "Condominio Assinante"))
        self.subscription_id, self.invoice_id = self._create_invoice(due_date="2000-01-01T00:00:00Z")

    def tearDown(self) -> None:
        with self.app.app_context():
            close_db()
        self._temp_db.cleanup()
        reset_global_state()

    def _create_invoice(self, *, due_date: str, auto_suspend: bool = True) -> tuple[int, int]:
        repository = BillingRepository()
        with self.app.app_context():
            db = get_db()
            subscription_id = repository.create_subscription(
                db,
                client_id=CLIENT,
                plan="basic",
                auto_suspend=auto_suspend,
                asaas_subscription_id="sub_1",
            )
            invoice_id = repository.create_invoice(
                db,
                subscription_id=subscription_id,
                amount=149.9,
                due_date=due_date,
                client_id=CLIENT,
                asaas_charge_id="chg_1",
            )
            db.commit()
        return subscription_id, invoice_id

    def _invoice(self) -> dict:
        with self.app.app_context():
            return BillingRepository().get_invoice(get_db(), self.invoice_id)

    def _post(self, payload: dict):
        return self.client.post("/api/webhooks/asaas", json=payload, headers=ASAAS_HEADERS)

    def test_overdue_event_suspends_after_grace_period(self) -> None:
        response = self._post({"id": "evt_over", "event": "PAYMENT_OVERDUE", "payment": {"id": "chg_1"}})

        self.assertEqual(response.status_code, 200, response.get_data(as_text=True))
        self.assertEqual(response.get_json()["subscription_status"], "suspended")
        self.assertEqual(self._invoice()["status"], "past_due")
        client = db_fetchone(self._temp_db, "SELECT is_active FROM clients WHERE id = ?", (CLIENT,))
        self.assertEqual(int(client["is_active"]), 0)
        audit = db_fetchone(self._temp_db, "SELECT entity_id FROM audit_logs WHERE action = 'SUBSCRIPTION_SUSPENDED'")
        self.assertEqual(int(audit["entity_id"]), self.subscription_id)

    def test_payment_reactivates_subscription_and_client(self) -> None:
        self._post({"id": "evt_over", "event": "PAYMENT_OVERDUE", "payment": {"id": "chg_1"}})

        response = self._post({"id": "evt_paid", "event": "PAYMENT_RECEIVED", "payment": {"id": "chg_1"}})

        self.assertEqual(response.get_json()["invoice_status"], "paid")
        invoice = self._invoice()
        self.assertEqual(invoice["status"], "paid")
        self.assertTrue(invoice["paid_at"])
        subscription = db_fetchone(self._temp_db, "SELECT status FROM subscriptions WHERE id = ?", (self.subscription_id,))
        self.assertEqual(subscription["status"], "active")
        client = db_fetchone(self._temp_db, "SELECT is_active FROM clients WHERE id = ?", (CLIENT,))
        self.assertEqual(int(client["is_active"]), 1)

    def test_recent_overdue_only_marks_past_due(self) -> None:
        db_execute(self._temp_db, "UPDATE invoices SET due_date = ? WHERE id = ?", ("2999-01-01T00:00:00Z", self.invoice_id))

        response = self._post({"id": "evt_over", "event": "PAYMENT_OVERDUE", "payment": {"id": "chg_1"}})

        self.assertEqual(response.get_json()["subscription_status"], "past_due")

    def test_subscription_expired_event(self) -> None:
        response = self._post({"id": "evt_exp", "event": "SUBSCRIPTION_EXPIRED", "subscription": {"id": "sub_1"}})

        self.assertEqual(response.get_json()["subscription_status"], "expired")

    def test_unknown_subscription_is_ignored(self) -> None:
        response = self._post({"id": "evt_upd", "event": "SUBSCRIPTION_UPDATED", "subscription": {"id": "sub_x"}})

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.get_json()["ignored"], "subscription_not_found")


if __name__ == "__main__":
    unittest.main()
