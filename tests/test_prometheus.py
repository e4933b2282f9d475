from mail_scheduler.prometheus import SchedulerMetrics


def test_scheduler_metrics_counters_and_gauges():
    metrics = SchedulerMetrics()

    metrics.inc_snooze_restored("acc1")
    metrics.inc_reminder_triggered("acc1")
    metrics.inc_sent("acc1")
    metrics.inc_retried("")
    metrics.inc_failed(None)
    metrics.inc_job_error("snooze")
    metrics.inc_tick_skipped()
    metrics.observe_tick(0.25)
    metrics.set_due("scheduled_sends", 3)

    output = metrics.generate_latest()
    assert b'mse_scheduled_sent_total{account_id="acc1"} 1.0' in output
    assert b'mse_scheduled_retried_total{account_id="default"} 1.0' in output
    assert b'mse_scheduled_failed_total{account_id="default"} 1.0' in output
    assert b'mse_job_errors_total{job="snooze"} 1.0' in output
    assert b"mse_ticks_total 1.0" in output
    assert b"mse_ticks_skipped_total 1.0" in output
    assert b"mse_last_tick_duration_seconds 0.25" in output
    assert b'mse_due_rows{job="scheduled_sends"} 3.0' in output


def test_registries_are_isolated():
    first = SchedulerMetrics()
    second = SchedulerMetrics()
    first.inc_sent("acc1")
    assert b"mse_scheduled_sent_total{" not in second.generate_latest()
