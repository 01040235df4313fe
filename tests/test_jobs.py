import threading
from unittest.mock import MagicMock

from accrual_engine import config
from accrual_engine.jobs import outbox_worker
from accrual_engine.jobs.daily_trigger import DailyAccrualTrigger
from accrual_engine.jobs.outbox_worker import OutboxWorker
from accrual_engine.models.db.enums import TriggerSource


def test_worker_poll_purges_on_schedule(monkeypatch):
    monkeypatch.setitem(config.OUTBOX_SETTINGS, "purge_every_polls", 3)
    dispatcher = MagicMock()
    dispatcher.process_batch.return_value = {"skipped": False, "published": 0}
    worker = OutboxWorker(dispatcher, poll_interval=0.01)

    for _ in range(6):
        assert worker.poll_once()["skipped"] is False
    assert dispatcher.process_batch.call_count == 6
    assert dispatcher.purge.call_count == 2


def test_worker_start_and_stop():
    dispatcher = MagicMock()
    dispatcher.process_batch.return_value = {}
    worker = OutboxWorker(dispatcher, poll_interval=0.01)
    worker.start()
    assert worker.is_running
    worker.stop(timeout=2)
    assert not worker.is_running
    assert dispatcher.process_batch.called


def test_trigger_fire_runs_housekeeping_then_accrual():
    calls = []
    scheduler = MagicMock()
    coordinator = MagicMock()
    coordinator.expire_overdue_purchases.side_effect = lambda: calls.append("expire")
    coordinator.retry_pending_licenses.side_effect = lambda: calls.append("licenses")

    def _run(trigger):
        calls.append("run")
        return {"success": True, "trigger": trigger.value}

    scheduler.run.side_effect = _run

    trigger = DailyAccrualTrigger(scheduler, coordinator)
    result = trigger.fire()
    assert calls == ["expire", "licenses", "run"]
    assert result["trigger"] == TriggerSource.AUTOMATIC.value
    assert trigger.last_result is result


def test_trigger_end_to_end_on_empty_database(scheduler):
    result = DailyAccrualTrigger(scheduler).fire()
    assert result["success"] is True
    assert result["trigger"] == "AUTOMATIC"


def test_trigger_housekeeping_failure_does_not_block_accrual():
    scheduler = MagicMock()
    scheduler.run.return_value = {"success": True}
    coordinator = MagicMock()
    coordinator.expire_overdue_purchases.side_effect = RuntimeError("expiry sweep broke")
    coordinator.retry_pending_licenses.side_effect = RuntimeError("license service down")

    result = DailyAccrualTrigger(scheduler, coordinator).fire()

    assert result == {"success": True}
    coordinator.retry_pending_licenses.assert_called_once()
    scheduler.run.assert_called_once_with(trigger=TriggerSource.AUTOMATIC)


def test_worker_loop_error_history_is_bounded(monkeypatch):
    monkeypatch.setattr(outbox_worker.time, "sleep", lambda _seconds: None)
    outbox_worker.LAST_EXCEPTIONS.clear()
    limit = outbox_worker.LAST_EXCEPTIONS.maxlen
    enough = threading.Event()
    calls = {"n": 0}

    def _broken():
        calls["n"] += 1
        if calls["n"] > limit + 10:
            enough.set()
        raise RuntimeError(f"db down {calls['n']}")

    dispatcher = MagicMock()
    dispatcher.process_batch.side_effect = _broken
    worker = OutboxWorker(dispatcher, poll_interval=0)
    worker.start()
    assert enough.wait(5)
    worker.stop(timeout=2)

    assert len(outbox_worker.LAST_EXCEPTIONS) == limit
    assert outbox_worker.LAST_EXCEPTIONS[-1]["type"] == "RuntimeError"
    outbox_worker.LAST_EXCEPTIONS.clear()
