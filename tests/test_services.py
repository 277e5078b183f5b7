from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

import pytest

from datachat.core.session import SessionStore
from datachat.log import setup_logging
from datachat.services.base import Service
from datachat.services.export import ExportSink
from datachat.services.service_manager import ServiceManager
from datachat.services.sweeper import SWEEP_JOB_ID, RetentionSweeper


class RecordingService(Service):
    def __init__(self, name: str, events: list[str], fail_start: bool = False, critical: bool = False):
        self._name = name
        self.critical = critical
        self._events = events
        self._fail_start = fail_start

    @property
    def service_name(self) -> str:
        return self._name

    async def start(self) -> None:
        if self._fail_start:
            raise ConnectionError(f"{self._name} unreachable")
        self._events.append(f"start:{self._name}")

    async def stop(self) -> None:
        self._events.append(f"stop:{self._name}")

    async def health_check(self) -> bool:
        return not self._fail_start


async def test_start_in_order_and_stop_in_reverse():
    events: list[str] = []
    manager = ServiceManager()
    manager.add(RecordingService("a", events))
    manager.add(RecordingService("b", events))

    await manager.start_all()
    await manager.stop_all()

    assert events == ["start:a", "start:b", "stop:b", "stop:a"]
    assert manager.get("b").service_name == "b"
    assert manager.get("zzz") is None


async def test_non_critical_failure_is_tolerated():
    events: list[str] = []
    manager = ServiceManager()
    manager.add(RecordingService("db", events, fail_start=True))
    manager.add(RecordingService("sweeper", events, critical=True))

    await manager.start_all()

    assert events == ["start:sweeper"]
    assert await manager.health_check_all() == {"db": False, "sweeper": True}


async def test_critical_failure_propagates():
    manager = ServiceManager()
    manager.add(RecordingService("core", [], fail_start=True, critical=True))
    with pytest.raises(ConnectionError):
        await manager.start_all()


class FakeClock:
    def __init__(self):
        self.now = datetime(2024, 1, 1, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now


async def test_sweep_drops_expired_exports_and_idle_sessions():
    clock = FakeClock()
    sink = ExportSink(retention=timedelta(minutes=30), clock=clock)
    store = SessionStore(clock=clock)
    await sink.export_table(["A"], [{"A": 1}], "q")
    store.get_or_create("idle")

    sweeper = RetentionSweeper(sink, [store], interval_minutes=5, session_idle_minutes=60)
    clock.now += timedelta(minutes=45)
    assert await sweeper.sweep() == {"exports": 1, "sessions": 0}

    clock.now += timedelta(minutes=30)
    assert await sweeper.sweep() == {"exports": 0, "sessions": 1}


async def test_session_expiry_disabled_by_default():
    clock = FakeClock()
    store = SessionStore(clock=clock)
    store.get_or_create("u")
    sweeper = RetentionSweeper(ExportSink(clock=clock), [store])
    clock.now += timedelta(days=30)
    assert await sweeper.sweep() == {"exports": 0, "sessions": 0}
    assert len(store) == 1


async def test_sweeper_schedules_interval_job():
    sweeper = RetentionSweeper(ExportSink(), interval_minutes=5)
    await sweeper.start()
    try:
        assert await sweeper.health_check()
        job = sweeper._scheduler.get_job(SWEEP_JOB_ID)
        assert job is not None
        assert job.trigger.interval == timedelta(minutes=5)
    finally:
        await sweeper.stop()


def test_setup_logging_quiets_library_loggers():
    setup_logging("INFO", json_output=True)
    assert logging.getLogger("httpx").level == logging.WARNING
    setup_logging("DEBUG")
    assert logging.getLogger("httpx").level == logging.DEBUG
