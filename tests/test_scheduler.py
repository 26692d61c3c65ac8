import unittest
from datetime import timedelta
from unittest.mock import patch

from cotiz import scheduler as scheduler_module
from cotiz.db import close_db
from cotiz.integrations.messaging import get_mock_outbox
from cotiz.observability import metrics_snapshot
from cotiz.scheduler import JobScheduler, run_job
from cotiz.validators import format_datetime, utc_now
from tests.helpers.procurement import (
    approved_quote,
    build_temp_app,
    create_quote,
    create_supplier,
    db_execute,
    db_fetchone,
    headers,
    payment_in_escrow,
    reset_global_state,
    send_quote,
)
from tests.helpers.temp_db import TempDbSandbox


class SchedulerTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self._temp_db = TempDbSandbox(prefix="scheduler")
        self.app = build_temp_app(self._temp_db)
        self.client = self.app.test_client()
        self.headers = headers()

    def tearDown(self) -> None:
        with self.app.app_context():
            close_db()
        self._temp_db.cleanup()
        reset_global_state()


class JobSchedulerBackoffTest(SchedulerTestCase):
    def test_failing_job_backs_off_exponentially(self) -> None:
        calls = {"broken": 0, "healthy": 0}

        def broken(_db):
            calls["broken"] += 1
            raise RuntimeError("falhou")

        def healthy(_db):
            calls["healthy"] += 1
            return {"ok": True}

        self.app.config.update(
            SCHEDULER_JOBS="broken,healthy",
            SCHEDULER_MIN_BACKOFF_SECONDS=30,
            SCHEDULER_MAX_BACKOFF_SECONDS=100,
        )
        with patch.dict(scheduler_module.JOBS, {"broken": broken, "healthy": healthy}, clear=True):
            job_scheduler = JobScheduler(self.app)

            self.assertEqual(job_scheduler.run_once(now=0.0), {"broken": "failed", "healthy": "succeeded"})
            self.assertEqual(job_scheduler.run_once(now=10.0), {"broken": "skipped", "healthy": "succeeded"})
            self.assertEqual(job_scheduler.run_once(now=30.0)["broken"], "failed")
            self.assertEqual(job_scheduler.backoff_state()["broken"], {"failures": 2, "next_run_at": 90.0})
            self.assertEqual(job_scheduler.run_once(now=89.0)["broken"], "skipped")
            self.assertEqual(job_scheduler.run_once(now=90.0)["broken"], "failed")
            # 30 * 2^2 = 120, limitado ao maximo configurado.
            self.assertEqual(job_scheduler.backoff_state()["broken"]["next_run_at"], 190.0)

        self.assertEqual(calls, {"broken": 3, "healthy": 5})
        self.assertEqual(metrics_snapshot()["scheduler_jobs"].get("broken:failed"), 3)

    def test_success_clears_backoff(self) -> None:
        attempts = []

        def flaky(_db):
            attempts.append(1)
            if len(attempts) == 1:
                raise RuntimeError("primeira falha")
            return {}

        self.app.config["SCHEDULER_JOBS"] = "flaky"
        with patch.dict(scheduler_module.JOBS, {"flaky": flaky}, clear=True):
            job_scheduler = JobScheduler(self.app)
            job_scheduler.run_once(now=0.0)
            self.assertEqual(job_scheduler.run_once(now=60.0), {"flaky": "succeeded"})

        self.assertEqual(job_scheduler.backoff_state(), {})

    def test_unknown_job_names_fall_back_to_all_jobs(self) -> None:
        self.app.config["SCHEDULER_JOBS"] = "nao_existe"

        job_scheduler = JobScheduler(self.app)

        self.assertEqual(job_scheduler.jobs, list(scheduler_module.JOBS))

    def test_scheduler_does_not_start_in_tests(self) -> None:
        self.assertNotIn("job_scheduler", self.app.extensions)


class PeriodicJobsTest(SchedulerTestCase):
    def test_escrow_auto_release(self) -> None:
        quote_id, _ = approved_quote(self.client, self.headers)
        payment_id = payment_in_escrow(self.client, self.headers, quote_id)
        db_execute(self._temp_db, "UPDATE payments SET escrow_release_date = ? WHERE id = ?", ("2000-01-01T00:00:00Z", payment_id))

        with self.app.app_context():
            result = run_job("escrow_auto_release")

        self.assertEqual(result, {"released": 1, "skipped": 0})
        row = db_fetchone(self._temp_db, "SELECT status, release_reason FROM payments WHERE id = ?", (payment_id,))
        self.assertEqual(row["status"], "completed")
        self.assertEqual(row["release_reason"], "auto_release")
        quote = self.client.get(f"/api/quotes/{quote_id}", headers=self.headers).get_json()
        self.assertEqual(quote["status"], "approved")

    def test_escrow_not_due_is_kept(self) -> None:
        quote_id, _ = approved_quote(self.client, self.headers)
        payment_in_escrow(self.client, self.headers, quote_id)

        with self.app.app_context():
            result = run_job("escrow_auto_release")

        self.assertEqual(result["released"], 0)

    def test_quote_reminders_twice_at_most(self) -> None:
        supplier = create_supplier(self.client, self.headers, name="Serralheria Alfa", email="alfa@serralheria.com")
        quote_id = create_quote(self.client, self.headers)
        send_quote(self.client, self.headers, quote_id, [supplier["id"]])
        db_execute(self._temp_db, "UPDATE quote_supplier_status SET invited_at = ?", ("2000-01-01T00:00:00Z",))
        get_mock_outbox().clear()

        with self.app.app_context():
            first = run_job("quote_reminders")
            db_execute(self._temp_db, "UPDATE quote_supplier_status SET last_reminder_at = ?", ("2000-01-02T00:00:00Z",))
            second = run_job("quote_reminders")
            db_execute(self._temp_db, "UPDATE quote_supplier_status SET last_reminder_at = ?", ("2000-01-03T00:00:00Z",))
            third = run_job("quote_reminders")

        self.assertEqual(first["reminders_sent"], 1)
        self.assertEqual(second["reminders_sent"], 1)
        self.assertEqual(third["reminders_sent"], 0)
        status = db_fetchone(self._temp_db, "SELECT status, reminder_count FROM quote_supplier_status")
        self.assertEqual(status["status"], "reminded_twice")
        self.assertEqual(int(status["reminder_count"]), 2)
        self.assertEqual(len(get_mock_outbox().messages("whatsapp")), 2)

    def test_overdue_invoices_suspend_subscription(self) -> None:
        db_execute(
            self._temp_db,
            "INSERT INTO clients (id, name) VALUES (?, ?)",
            ("client-inadimplente", "Condominio Inadimplente"),
        )
        db_execute(
            self._temp_db,
            "INSERT INTO subscriptions (id, client_id, plan, status, auto_suspend) VALUES (1, ?, 'basic', 'active', 1)",
            ("client-inadimplente",),
        )
        db_execute(
            self._temp_db,
            "INSERT INTO invoices (subscription_id, client_id, amount, due_date, status) VALUES (1, ?, 99.9, ?, 'pending')",
            ("client-inadimplente", "2000-01-01T00:00:00Z"),
        )

        with self.app.app_context():
            result = run_job("overdue_invoices")

        self.assertEqual(result, {"marked_past_due": 1, "suspended": 1, "reminders_sent": 0, "reminders_skipped": 1})
        self.assertEqual(db_fetchone(self._temp_db, "SELECT status FROM subscriptions WHERE id = 1")["status"], "suspended")
        client = db_fetchone(self._temp_db, "SELECT is_active FROM clients WHERE id = 'client-inadimplente'")
        self.assertEqual(int(client["is_active"]), 0)

    def test_overdue_reminder_is_sent_once_per_schedule_day(self) -> None:
        db_execute(
            self._temp_db,
            "INSERT INTO clients (id, name, email, phone) VALUES (?, ?, ?, ?)",
            ("client-atrasado", "Condominio Atrasado", "sindico@atrasado.com.br", "11988887777"),
        )
        db_execute(
            self._temp_db,
            "INSERT INTO subscriptions (id, client_id, plan, status, auto_suspend) VALUES (2, ?, 'pro', 'active', 0)",
            ("client-atrasado",),
        )
        due_date = format_datetime(utc_now() - timedelta(days=3, hours=2))
        db_execute(
            self._temp_db,
            "INSERT INTO invoices (subscription_id, client_id, amount, due_date, status) VALUES (2, ?, 200.0, ?, 'pending')",
            ("client-atrasado", due_date),
        )
        get_mock_outbox().clear()

        with self.app.app_context():
            first = run_job("overdue_invoices")
            second = run_job("overdue_invoices")

        self.assertEqual(first["reminders_sent"], 1)
        self.assertEqual(second["reminders_sent"], 0)
        whatsapp = get_mock_outbox().messages("whatsapp")
        email = get_mock_outbox().messages("email")
        self.assertEqual(len(whatsapp), 1)
        self.assertEqual(len(email), 1)
        self.assertEqual(email[0]["to"], "sindico@atrasado.com.br")
        self.assertIn("3 dias", whatsapp[0]["text"])
        self.assertIn("12,00", whatsapp[0]["text"])
        reminder = db_fetchone(self._temp_db, "SELECT reminder_day, sent_via_whatsapp, sent_via_email FROM overdue_reminders")
        self.assertEqual(int(reminder["reminder_day"]), 3)
        self.assertEqual(int(reminder["sent_via_whatsapp"]), 1)
        self.assertEqual(int(reminder["sent_via_email"]), 1)

    def test_overdue_reminders_can_be_disabled(self) -> None:
        self.app.config["OVERDUE_REMINDER_ENABLED"] = False
        db_execute(
            self._temp_db,
            "INSERT INTO clients (id, name, email) VALUES (?, ?, ?)",
            ("client-silencioso", "Condominio Silencioso", "sindico@silencioso.com.br"),
        )
        db_execute(
            self._temp_db,
            "INSERT INTO invoices (client_id, amount, due_date, status) VALUES (?, 50.0, ?, 'pending')",
            ("client-silencioso", format_datetime(utc_now() - timedelta(days=2))),
        )
        get_mock_outbox().clear()

        with self.app.app_context():
            result = run_job("overdue_invoices")

        self.assertEqual(result["reminders_sent"], 0)
        self.assertEqual(get_mock_outbox().messages("email"), [])

    def test_cli_lists_and_runs_jobs(self) -> None:
        runner = self.app.test_cli_runner()

        listed = runner.invoke(args=["jobs", "list"])
        ran = runner.invoke(args=["jobs", "run", "escrow_auto_release"])

        self.assertEqual(listed.exit_code, 0)
        self.assertIn("quote_reminders", listed.output)
        self.assertEqual(ran.exit_code, 0, ran.output)
        self.assertIn("escrow_auto_release", ran.output)


if __name__ == "__main__":
    unittest.main()
