"""Prometheus metrics exposed by the scheduler engine."""

from prometheus_client import CollectorRegistry, Counter, Gauge, generate_latest


class SchedulerMetrics:
    """Wrapper around the Prometheus registry used by the engine."""

    def __init__(self, registry: CollectorRegistry | None = None):
        """Create counters and gauges inside the provided registry."""
        self.registry = registry or CollectorRegistry()
        self.snoozes_restored = Counter(
            "mse_snoozes_restored_total", "Snoozed emails restored", ["account_id"], registry=self.registry
        )
        self.reminders_triggered = Counter(
            "mse_reminders_triggered_total", "Reminders fired", ["account_id"], registry=self.registry
        )
        self.sent = Counter("mse_scheduled_sent_total", "Scheduled sends delivered", ["account_id"], registry=self.registry)
        self.retried = Counter(
            "mse_scheduled_retried_total", "Scheduled sends put back for retry", ["account_id"], registry=self.registry
        )
        self.failed = Counter(
            "mse_scheduled_failed_total", "Scheduled sends failed permanently", ["account_id"], registry=self.registry
        )
        self.job_errors = Counter("mse_job_errors_total", "Job runs aborted by an error", ["job"], registry=self.registry)
        self.ticks = Counter("mse_ticks_total", "Ticks executed", registry=self.registry)
        self.ticks_skipped = Counter(
            "mse_ticks_skipped_total", "Ticks skipped because another tick was running", registry=self.registry
        )
        self.tick_duration = Gauge("mse_last_tick_duration_seconds", "Duration of the last tick", registry=self.registry)
        self.due = Gauge("mse_due_rows", "Rows due after the last tick", ["job"], registry=self.registry)

    def inc_snooze_restored(self, account_id: str):
        self.snoozes_restored.labels(account_id=account_id or "default").inc()

    def inc_reminder_triggered(self, account_id: str):
        self.reminders_triggered.labels(account_id=account_id or "default").inc()

    def inc_sent(self, account_id: str):
        """Increase the ``sent`` counter for the given account."""
        self.sent.labels(account_id=account_id or "default").inc()

    def inc_retried(self, account_id: str):
        self.retried.labels(account_id=account_id or "default").inc()

    def inc_failed(self, account_id: str):
        self.failed.labels(account_id=account_id or "default").inc()

    def inc_job_error(self, job: str):
        self.job_errors.labels(job=job).inc()

    def observe_tick(self, duration: float):
        """Count a completed tick and remember how long it took."""
        self.ticks.inc()
        self.tick_duration.set(duration)

    def inc_tick_skipped(self):
        self.ticks_skipped.inc()

    def set_due(self, job: str, value: int):
        self.due.labels(job=job).set(value)

    def generate_latest(self) -> bytes:
        """Return the latest metrics snapshot in Prometheus text format."""
        return generate_latest(self.registry)
