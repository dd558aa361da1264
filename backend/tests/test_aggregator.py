import threading
from datetime import datetime, timedelta, timezone

import pytest

from backend.app.core.units import UnitCatalog
from backend.app.scraper.aggregator import PacedUnitQueue, RunAggregator, RunInProgressError, RunState
from backend.app.scraper.models import RawScrapeResult, Unit
from backend.app.scraper.optimizer import optimize
from backend.app.scraper.retry import RetryingFetcher, RetryPolicy
from backend.app.scraper.writer import strip_volatile

NOW = datetime(2025, 6, 15, 12, 0, tzinfo=timezone.utc)
U1 = Unit("9U-rep", "tier-1")
U2 = Unit("9U-rep", "tier-2")
U3 = Unit("11U-select", "all-tiers")


def _teams(n: int) -> dict:
    return {
        "teams": [
            {"team": f"Team {i}", "teamCode": f"5000{i:02d}", "wins": n - i, "losses": i, "ties": 0}
            for i in range(n)
        ]
    }


def _schedule(n_played: int = 2) -> dict:
    return {
        "allGames": [
            {
                "date": (NOW - timedelta(days=d + 1)).isoformat(),
                "homeTeam": "Team 0",
                "homeTeamCode": "500000",
                "awayTeam": "Team 1",
                "awayTeamCode": "500001",
                "homeScore": d,
                "awayScore": 1,
                "isCompleted": True,
            }
            for d in range(n_played)
        ]
    }


class FakeSource:
    """Per-unit canned results; an Exception value is raised on every call."""

    def __init__(self, results):
        self.results = results
        self.calls = []
        self.closed = 0

    def fetch(self, unit):
        self.calls.append(unit)
        value = self.results[unit]
        if isinstance(value, Exception):
            raise value
        standings, schedule = value
        return RawScrapeResult(unit=unit, standings=standings, schedule=schedule, fetched_at=NOW)

    def close(self):
        self.closed += 1


class Clock:
    def __init__(self, start=NOW, step=timedelta(seconds=1)):
        self.current = start
        self.step = step

    def __call__(self):
        value = self.current
        self.current += self.step
        return value


def _aggregator(units, source, sleeps=None, **kwargs) -> RunAggregator:
    sleeps = sleeps if sleeps is not None else []
    return RunAggregator(
        UnitCatalog.from_units(units),
        source,
        unit_delay=kwargs.pop("unit_delay", 1.0),
        sleep=sleeps.append,
        clock=kwargs.pop("clock", Clock()),
        **kwargs,
    )


def test_scenario_two_units_one_empty():
    source = FakeSource({U1: (_teams(5), _schedule()), U2: (_teams(0), {"allGames": []})})

    outcome = _aggregator([U1, U2], source).run(1)

    assert outcome.state is RunState.COMPLETED
    dataset = outcome.dataset
    assert dataset.total_units == 2
    assert dataset.get(U1).team_count == 5
    assert dataset.get(U2).team_count == 0

    derived = optimize(dataset)
    assert derived.active_only["metadata"]["activeUnits"] == 1
    assert list(derived.active_only["divisions"]["9U-rep"]["tiers"]) == ["tier-1"]
    counts = {row["key"]: row["teamCount"] for row in derived.index["units"]}
    assert counts == {"9U-rep-tier-1": 5, "9U-rep-tier-2": 0}


def test_exhausted_retries_fail_only_that_unit():
    source = FakeSource(
        {U1: (_teams(3), _schedule()), U2: ConnectionError("source down"), U3: (_teams(4), _schedule())}
    )
    fetch_sleeps = []
    fetcher = RetryingFetcher(source, RetryPolicy.linear(max_attempts=3, base_delay=2.0), sleep=fetch_sleeps.append)

    outcome = _aggregator([U1, U2, U3], fetcher).run(7)

    assert outcome.state is RunState.COMPLETED
    assert source.calls == [U1, U2, U2, U2, U3]
    assert fetch_sleeps == [2.0, 4.0]
    meta = outcome.metadata
    assert (meta.success_count, meta.failure_count, meta.total_units) == (2, 1, 3)
    (error,) = meta.per_unit_errors
    assert error.unit == U2
    assert error.attempts == 3
    assert error.message == "source down"
    assert outcome.dataset.get(U2) is None
    assert outcome.dataset.total_units == 2
    assert source.closed == 1


def test_total_failure_discards_dataset():
    source = FakeSource({U1: RuntimeError("a"), U2: RuntimeError("b")})

    aggregator = _aggregator([U1, U2], source)
    outcome = aggregator.run(3)

    assert outcome.state is RunState.FAILED
    assert outcome.dataset is None
    assert outcome.metadata.success_count == 0
    assert outcome.metadata.failure_count == 2
    assert outcome.metadata.success is False
    assert aggregator.state is RunState.FAILED


def test_transform_failure_is_recorded_as_unit_failure():
    source = FakeSource({U1: (["not", "a", "mapping"], {}), U2: (_teams(2), _schedule())})

    outcome = _aggregator([U1, U2], source).run(1)

    assert outcome.metadata.success_count == 1
    assert outcome.metadata.per_unit_errors[0].message.startswith("transform failed")


def test_units_are_paced_with_a_delay_between_them():
    sleeps = []
    source = FakeSource({u: (_teams(1), _schedule(0)) for u in (U1, U2, U3)})

    _aggregator([U1, U2, U3], source, sleeps=sleeps, unit_delay=1.5).run(1)

    assert sleeps == [1.5, 1.5]


def test_identical_inputs_give_identical_datasets():
    results = {U1: (_teams(4), _schedule(3)), U2: (_teams(2), _schedule(1))}

    first = _aggregator([U1, U2], FakeSource(results), clock=lambda: NOW).run(1)
    second = _aggregator([U1, U2], FakeSource(results), clock=lambda: NOW + timedelta(seconds=30)).run(2)

    assert first.dataset.to_dict() != second.dataset.to_dict()
    assert strip_volatile(first.dataset.to_dict()) == strip_volatile(second.dataset.to_dict())


def test_cancellation_stops_between_units():
    cancel = threading.Event()

    class CancellingSource(FakeSource):
        def fetch(self, unit):
            cancel.set()
            return super().fetch(unit)

    source = CancellingSource({u: (_teams(1), _schedule(0)) for u in (U1, U2, U3)})

    outcome = _aggregator([U1, U2, U3], source).run(1, cancel=cancel)

    assert source.calls == [U1]
    assert outcome.metadata.success_count == 1


def test_overlapping_run_is_rejected():
    seen = {}

    class ReentrantSource(FakeSource):
        def fetch(self, unit):
            seen["running"] = aggregator.is_running()
            with pytest.raises(RunInProgressError):
                aggregator.run(99)
            return super().fetch(unit)

    aggregator = _aggregator([U1], ReentrantSource({U1: (_teams(1), _schedule(0))}))

    outcome = aggregator.run(1)

    assert seen["running"] is True
    assert outcome.state is RunState.COMPLETED
    assert aggregator.is_running() is False


def test_paced_queue_yields_first_unit_immediately():
    sleeps = []

    assert list(PacedUnitQueue([U1], 5.0, sleep=sleeps.append)) == [U1]
    assert sleeps == []
    with pytest.raises(ValueError):
        PacedUnitQueue([U1], -1)
