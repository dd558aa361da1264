import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from backend.app.core.units import UnitCatalog
from backend.app.scraper.aggregator import RunAggregator, RunState
from backend.app.scraper.models import RawScrapeResult, RunMetadata, Unit
from backend.app.scraper.pipeline import ScrapePipeline, RunReport
from backend.app.scraper.scheduler import Scheduler
from backend.app.scraper.store import FilesystemArtifactStore
from backend.app.scraper.writer import ArtifactWriter

NOW = datetime(2025, 6, 15, 12, 0, tzinfo=timezone.utc)
U1 = Unit("13U-rep", "tier-1")
U2 = Unit("13U-rep", "tier-2")


class Source:
    def __init__(self, fail=()):
        self.fail = set(fail)

    def fetch(self, unit):
        if unit in self.fail:
            raise RuntimeError(f"{unit} unavailable")
        return RawScrapeResult(
            unit=unit,
            standings={"teams": [{"team": "Jays", "teamCode": "J", "wins": 2, "losses": 0}]},
            schedule={"allGames": []},
            fetched_at=NOW,
        )


class BrokenStore(FilesystemArtifactStore):
    def publish(self, artifacts):
        raise OSError("read-only file system")


def _pipeline(store, source) -> ScrapePipeline:
    aggregator = RunAggregator(UnitCatalog.from_units([U1, U2]), source, unit_delay=0, clock=lambda: NOW)
    return ScrapePipeline(aggregator, ArtifactWriter(store))


def test_successful_run_commits_and_swaps_snapshot(tmp_path: Path):
    store = FilesystemArtifactStore(tmp_path)
    pipeline = _pipeline(store, Source())

    report = pipeline.run(1)

    assert report.committed
    assert report.error_kind is None
    assert pipeline.snapshot is not None
    assert pipeline.snapshot.total_units == 2
    assert store.get("last-run")["status"] == "completed"
    assert report.to_dict()["snapshot"] == store.current_snapshot()


def test_total_fetch_failure_keeps_previous_snapshot(tmp_path: Path):
    store = FilesystemArtifactStore(tmp_path)
    _pipeline(store, Source()).run(1)
    committed = store.current_snapshot()
    pipeline = _pipeline(store, Source(fail={U1, U2}))

    report = pipeline.run(2)

    assert report.state is RunState.FAILED
    assert report.error_kind == "fetch"
    assert "last error: 13U-rep/tier-2 unavailable" in report.error_message
    assert pipeline.snapshot is None
    assert store.current_snapshot() == committed
    assert store.get("ysba")["metadata"]["runNumber"] == 1
    assert store.get("last-run")["status"] == "failed"
    assert len(store.keys("errors/")) == 1


def test_write_failure_is_reported_as_write(tmp_path: Path):
    pipeline = _pipeline(BrokenStore(tmp_path), Source(fail={U2}))

    report = pipeline.run(1)

    assert report.error_kind == "write"
    assert "read-only file system" in report.error_message
    assert pipeline.snapshot is None

    scheduler = Scheduler(pipeline, units_configured=2)
    scheduler.trigger()
    status = scheduler.status()
    assert status["lastError"]["kind"] == "write"
    assert status["lastRun"]["success"] is False
    assert status["lastRun"]["errorCount"] == 1


def _report(run_number: int) -> RunReport:
    metadata = RunMetadata(
        run_number=run_number,
        started_at=NOW,
        finished_at=NOW + timedelta(seconds=2),
        success_count=1,
        failure_count=0,
        total_units=1,
    )
    return RunReport(metadata=metadata, state=RunState.COMPLETED, error_kind=None)


class BlockingPipeline:
    def __init__(self):
        self.started = threading.Event()
        self.release = threading.Event()
        self.runs = []
        self.cancel = None

    def run(self, run_number, cancel=None):
        self.runs.append(run_number)
        self.cancel = cancel
        self.started.set()
        assert self.release.wait(5)
        return _report(run_number)


def test_trigger_during_run_is_ignored():
    pipeline = BlockingPipeline()
    scheduler = Scheduler(pipeline, units_configured=3)
    worker = threading.Thread(target=scheduler.trigger)
    worker.start()
    assert pipeline.started.wait(5)

    assert scheduler.status()["isRunning"] is True
    assert scheduler.trigger() is None
    assert scheduler.trigger_async() is False

    pipeline.release.set()
    worker.join(5)

    status = scheduler.status()
    assert pipeline.runs == [1]
    assert status["isRunning"] is False
    assert status["runCount"] == 1
    assert status["unitsConfigured"] == 3
    assert status["lastRun"]["duration"] == 2000


def test_shutdown_waits_for_in_flight_run():
    pipeline = BlockingPipeline()
    scheduler = Scheduler(pipeline)
    worker = threading.Thread(target=scheduler.trigger)
    worker.start()
    assert pipeline.started.wait(5)

    assert scheduler.shutdown(timeout=0.05) is False
    assert pipeline.cancel.is_set()
    assert scheduler.trigger() is None

    pipeline.release.set()
    worker.join(5)
    assert scheduler.shutdown(timeout=1) is True


def test_start_runs_immediately_then_stops_cleanly():
    calls = []

    class QuickPipeline:
        def run(self, run_number, cancel=None):
            calls.append(run_number)
            return _report(run_number)

    scheduler = Scheduler(QuickPipeline(), interval_seconds=3600)
    scheduler.start()
    for _ in range(100):
        if calls:
            break
        threading.Event().wait(0.01)

    assert scheduler.shutdown(timeout=1) is True
    assert calls == [1]


def test_crashing_pipeline_never_escapes_scheduler():
    class Crashing:
        def run(self, run_number, cancel=None):
            raise KeyError("boom")

    scheduler = Scheduler(Crashing())

    assert scheduler.trigger() is None
    status = scheduler.status()
    assert status["lastError"]["kind"] == "internal"
    assert status["isRunning"] is False


@pytest.mark.parametrize("interval", [60.0, 1800.0])
def test_status_reports_interval(interval):
    assert Scheduler(BlockingPipeline(), interval_seconds=interval).status()["intervalMinutes"] == interval / 60


class FailingStateStore(FilesystemArtifactStore):
    def put(self, key, payload):
        raise OSError("no space left on device")


def test_last_run_write_failure_after_publish_still_commits(tmp_path: Path):
    store = FailingStateStore(tmp_path)
    pipeline = _pipeline(store, Source())

    report = pipeline.run(1)

    assert report.committed
    assert report.error_kind is None
    assert pipeline.snapshot is not None
    assert store.current_snapshot() == report.write_result.snapshot_id
    assert store.get("ysba")["metadata"]["runNumber"] == 1

    scheduler = Scheduler(pipeline)
    scheduler.trigger()
    assert scheduler.status()["lastError"] is None
    assert scheduler.status()["lastRun"]["success"] is True


def test_run_cancelled_before_any_unit_is_not_reported_as_failures(tmp_path: Path):
    store = FilesystemArtifactStore(tmp_path)
    pipeline = _pipeline(store, Source())
    cancel = threading.Event()
    cancel.set()

    report = pipeline.run(1, cancel=cancel)

    assert report.error_kind == "fetch"
    assert report.error_message == "Run cancelled before any of 2 units was processed"
    assert report.metadata.failure_count == 0
    assert store.current_snapshot() is None


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


class ClockedStop(threading.Event):
    """Stop event whose waits advance the fake clock; sets itself after ``limit`` waits."""

    def __init__(self, clock, limit):
        super().__init__()
        self.clock = clock
        self.limit = limit
        self.waits = []

    def wait(self, timeout=None):
        self.waits.append(timeout)
        self.clock.now += timeout
        if len(self.waits) >= self.limit:
            self.set()
        return self.is_set()


class SlowPipeline:
    def __init__(self, clock, duration):
        self.clock = clock
        self.duration = duration
        self.starts = []

    def run(self, run_number, cancel=None):
        self.starts.append(self.clock.now)
        self.clock.now += self.duration
        return _report(run_number)


def _loop_with(duration, interval=1.0, limit=3):
    clock = FakeClock()
    pipeline = SlowPipeline(clock, duration)
    scheduler = Scheduler(pipeline, interval_seconds=interval, monotonic=clock)
    scheduler._stop = ClockedStop(clock, limit)
    scheduler._loop()
    return pipeline.starts, scheduler._stop.waits


def test_scheduled_runs_start_on_a_fixed_period():
    starts, waits = _loop_with(duration=0.3)

    assert starts == pytest.approx([0.0, 1.0, 2.0])
    assert waits == pytest.approx([0.7, 0.7, 0.7])


def test_ticks_missed_during_a_long_run_are_skipped():
    starts, waits = _loop_with(duration=2.5)

    assert starts == pytest.approx([0.0, 3.0, 6.0])
    assert waits == pytest.approx([0.5, 0.5, 0.5])
