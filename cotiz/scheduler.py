from __future__ import annotations

import logging
import os
import threading
import time
import uuid
from typing import Callable, Dict, Iterable

import click
from flask import Flask

from cotiz.db import close_db, get_db
from cotiz.observability import bind_request_id, observe_scheduler_job


logger = logging.getLogger("cotiz.scheduler")


def run_quote_reminders(db) -> dict:
    from cotiz.application.quote_service import QuoteService
    from cotiz.infrastructure.repositories import InvitationRepository

    service = QuoteService()
    totals = {"clients": 0, "reminders_sent": 0}
    for client_id in InvitationRepository.clients_with_open_invitations(db):
        result = service.send_reminders(db, client_id=client_id)
        db.commit()
        totals["clients"] += 1
        totals["reminders_sent"] += int(result.payload.get("reminders_sent") or 0)
    return totals


def run_escrow_auto_release(db) -> dict:
    from cotiz.application.payment_service import PaymentService

    result = PaymentService().auto_release_due(db)
    db.commit()
    return dict(result)


def run_overdue_invoices(db) -> dict:
    from cotiz.application.billing_service import BillingService

    service = BillingService()
    result = dict(service.sweep_overdue(db))
    db.commit()
    result.update(service.send_overdue_reminders(db))
    db.commit()
    return result


JOBS: Dict[str, Callable[[object], dict]] = {
    "quote_reminders": run_quote_reminders,
    "escrow_auto_release": run_escrow_auto_release,
    "overdue_invoices": run_overdue_invoices,
}


def run_job(name: str) -> dict:
    """Executa um job dentro do app context atual e devolve o resumo."""
    job = JOBS.get(name)
    if job is None:
        raise KeyError(name)
    with bind_request_id(f"job-{name}-{uuid.uuid4().hex[:8]}"):
        db = get_db()
        try:
            result = job(db)
        except Exception:
            db.rollback()
            observe_scheduler_job(name, "failed")
            logger.exception("scheduler_job_failed", extra={"job": name})
            raise
        observe_scheduler_job(name, "succeeded")
        logger.info("scheduler_job_finished", extra={"job": name, "result": result})
        return result


class JobScheduler:
    def __init__(self, app: Flask) -> None:
        self.app = app
        self.interval_seconds = _int_config(app, "SCHEDULER_INTERVAL_SECONDS", 300, 10, 86_400)
        self.min_backoff_seconds = _int_config(app, "SCHEDULER_MIN_BACKOFF_SECONDS", 30, 1, 3600)
        self.max_backoff_seconds = _int_config(
            app,
            "SCHEDULER_MAX_BACKOFF_SECONDS",
            1800,
            self.min_backoff_seconds,
            86_400,
        )
        self.jobs = _parse_jobs(app.config.get("SCHEDULER_JOBS"))

        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._failure_counts: dict[str, int] = {}
        self._next_run_at: dict[str, float] = {}

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._thread = threading.Thread(target=self._run_loop, name="job-scheduler", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()

    def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            self.run_once()
            self._stop_event.wait(self.interval_seconds)

    def run_once(self, now: float | None = None) -> dict[str, str]:
        outcomes: dict[str, str] = {}
        current = time.monotonic() if now is None else now
        with self.app.app_context():
            try:
                for name in self.jobs:
                    if not self._is_due(name, current):
                        outcomes[name] = "skipped"
                        continue
                    try:
                        run_job(name)
                    except Exception:  # noqa: BLE001 - falha ja logada; job entra em backoff
                        self._register_failure(name, current)
                        outcomes[name] = "failed"
                    else:
                        self._clear_backoff(name)
                        outcomes[name] = "succeeded"
            finally:
                close_db()
        return outcomes

    def _is_due(self, name: str, now: float) -> bool:
        next_run_at = self._next_run_at.get(name)
        if next_run_at is None:
            return True
        return now >= next_run_at

    def _clear_backoff(self, name: str) -> None:
        self._failure_counts.pop(name, None)
        self._next_run_at.pop(name, None)

    def _register_failure(self, name: str, now: float) -> None:
        failure_count = self._failure_counts.get(name, 0) + 1
        self._failure_counts[name] = failure_count
        backoff_seconds = min(
            self.max_backoff_seconds,
            self.min_backoff_seconds * (2 ** (failure_count - 1)),
        )
        self._next_run_at[name] = now + backoff_seconds

    def backoff_state(self) -> dict[str, dict]:
        return {
            name: {"failures": count, "next_run_at": self._next_run_at.get(name)}
            for name, count in self._failure_counts.items()
        }


def start_job_scheduler(app: Flask) -> JobScheduler | None:
    if not _should_start_scheduler(app):
        return None
    scheduler = JobScheduler(app)
    scheduler.start()
    app.extensions["job_scheduler"] = scheduler
    app.logger.info(
        "Job scheduler started: interval=%ss jobs=%s",
        scheduler.interval_seconds,
        ", ".join(scheduler.jobs),
    )
    return scheduler


def register_jobs_cli(app: Flask) -> None:
    @app.cli.group("jobs")
    def jobs_group() -> None:
        """Jobs periodicos (lembretes, liberacao de custodia, inadimplencia)."""

    @jobs_group.command("list")
    def jobs_list() -> None:
        for name in JOBS:
            click.echo(name)

    @jobs_group.command("run")
    @click.argument("name", type=click.Choice(sorted(JOBS)))
    def jobs_run(name: str) -> None:
        result = run_job(name)
        click.echo(f"{name}: {result}")


def _should_start_scheduler(app: Flask) -> bool:
    if not app.config.get("SCHEDULER_ENABLED", False):
        return False
    if app.config.get("TESTING"):
        return False
    if app.debug:
        run_main = os.environ.get("WERKZEUG_RUN_MAIN")
        if run_main and run_main.lower() != "true":
            return False
    return True


def _int_config(app: Flask, key: str, default: int, min_value: int, max_value: int) -> int:
    try:
        value = int(app.config.get(key, default))
    except (TypeError, ValueError):
        value = default
    return max(min_value, min(value, max_value))


def _parse_jobs(value: object) -> list[str]:
    items: Iterable[str]
    if value is None:
        items = list(JOBS)
    elif isinstance(value, str):
        items = [name.strip() for name in value.split(",") if name.strip()]
    elif isinstance(value, (list, tuple, set)):
        items = [str(name).strip() for name in value if str(name).strip()]
    else:
        items = list(JOBS)

    filtered = [name for name in items if name in JOBS]
    return filtered or list(JOBS)
