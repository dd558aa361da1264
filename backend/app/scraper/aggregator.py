"""One pass over every configured unit: fetch, transform, assemble a FullDataset."""
from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Dict, Iterable, Iterator, List, Optional

from backend.app.core.logging import logger
from backend.app.core.units import UnitCatalog
from backend.app.scraper.models import DivisionData, FullDataset, RunMetadata, Unit, UnitDataset, UnitError
from backend.app.scraper.retry import UnitFetchError
from backend.app.scraper.transform import Transformer


class RunInProgressError(RuntimeError):
    pass


class RunState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class RunOutcome:
    state: RunState
    dataset: Optional[FullDataset]
    metadata: RunMetadata

    @property
    def completed(self) -> bool:
        return self.state is RunState.COMPLETED


class PacedUnitQueue:
    """Yields units at a bounded rate: the first immediately, then one per ``delay`` seconds.

    Iteration stops early once ``cancel`` is set; the check happens before the
    wait and again after it, never in the middle of a unit.
    """

    def __init__(
        self,
        units: Iterable[Unit],
        delay: float,
        *,
        sleep: Callable[[float], None] = time.sleep,
        cancel: Optional[threading.Event] = None,
    ) -> None:
        if delay < 0:
            raise ValueError("delay must be >= 0")
        self.units = tuple(units)
        self.delay = delay
        self._sleep = sleep
        self._cancel = cancel

    def _cancelled(self) -> bool:
        return self._cancel is not None and self._cancel.is_set()

    def __len__(self) -> int:
        return len(self.units)

    def __iter__(self) -> Iterator[Unit]:
        for index, unit in enumerate(self.units):
            if self._cancelled():
                logger.info("Run cancelled before %s; %s unit(s) skipped", unit, len(self.units) - index)
                return
            if index and self.delay:
                self._sleep(self.delay)
                if self._cancelled():
                    logger.info("Run cancelled before %s; %s unit(s) skipped", unit, len(self.units) - index)
                    return
            yield unit


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class RunAggregator:
    def __init__(
        self,
        catalog: UnitCatalog,
        fetcher,
        transformer: Optional[Transformer] = None,
        *,
        unit_delay: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self.catalog = catalog
        self.fetcher = fetcher
        self.transformer = transformer or Transformer(now=clock)
        self.unit_delay = unit_delay
        self._sleep = sleep
        self._clock = clock
        self._lock = threading.Lock()
        self.state = RunState.IDLE

    def is_running(self) -> bool:
        return self.state is RunState.RUNNING

    def run(self, run_number: int, cancel: Optional[threading.Event] = None) -> RunOutcome:
        if not self._lock.acquire(blocking=False):
            raise RunInProgressError("A run is already in progress")
        try:
            self.state = RunState.RUNNING
            outcome = self._run(run_number, cancel)
            self.state = outcome.state
            return outcome
        except BaseException:
            self.state = RunState.FAILED
            raise
        finally:
            self._lock.release()

    def _run(self, run_number: int, cancel: Optional[threading.Event]) -> RunOutcome:
        started_at = self._clock()
        units = PacedUnitQueue(self.catalog.units, self.unit_delay, sleep=self._sleep, cancel=cancel)
        logger.info("Run #%s started: %s units", run_number, len(units))

        results: Dict[Unit, UnitDataset] = {}
        errors: List[UnitError] = []
        try:
            for unit in units:
                try:
                    raw = self.fetcher.fetch(unit)
                except UnitFetchError as exc:
                    logger.error("Unit %s failed: %s", unit, exc.last_error)
                    errors.append(UnitError(unit=unit, message=str(exc.last_error), attempts=exc.attempts))
                    continue
                except Exception as exc:  # noqa: BLE001
                    logger.error("Unit %s failed: %s", unit, exc)
                    errors.append(UnitError(unit=unit, message=str(exc), attempts=1))
                    continue

                try:
                    results[unit] = self.transformer.transform(raw)
                except Exception as exc:  # noqa: BLE001
                    logger.exception("Unit %s could not be transformed", unit)
                    errors.append(UnitError(unit=unit, message=f"transform failed: {exc}", attempts=0))
                    continue
                logger.info(
                    "Unit %s ok: %s teams, %s games",
                    unit,
                    results[unit].team_count,
                    results[unit].game_count,
                )
        finally:
            close = getattr(self.fetcher, "close", None)
            if callable(close):
                try:
                    close()
                except Exception:  # noqa: BLE001
                    logger.exception("Error closing source fetcher")

        finished_at = self._clock()
        metadata = RunMetadata(
            run_number=run_number,
            started_at=started_at,
            finished_at=finished_at,
            success_count=len(results),
            failure_count=len(errors),
            total_units=len(units),
            per_unit_errors=tuple(errors),
        )

        if not results:
            logger.error("Run #%s failed: no unit succeeded (%s errors)", run_number, len(errors))
            return RunOutcome(state=RunState.FAILED, dataset=None, metadata=metadata)

        dataset = FullDataset(
            run_number=run_number,
            last_updated=finished_at,
            divisions=self._assemble(results),
        )
        logger.info(
            "Run #%s completed in %sms: %s ok, %s failed",
            run_number,
            metadata.duration_ms,
            metadata.success_count,
            metadata.failure_count,
        )
        return RunOutcome(state=RunState.COMPLETED, dataset=dataset, metadata=metadata)

    def _assemble(self, results: Dict[Unit, UnitDataset]) -> Dict[str, DivisionData]:
        tiers_by_division: Dict[str, Dict[str, UnitDataset]] = {}
        for unit in self.catalog.units:
            dataset = results.get(unit)
            if dataset is not None:
                tiers_by_division.setdefault(unit.division, {})[unit.tier] = dataset
        return {
            key: DivisionData(
                key=key,
                display_name=self.catalog.display_name(key),
                short_name=self.catalog.short_name(key),
                tiers=tiers,
            )
            for key, tiers in tiers_by_division.items()
        }
