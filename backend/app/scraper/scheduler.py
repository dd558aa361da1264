"""Periodic driver for the pipeline: one immediate run, then one per interval."""
from __future__ import annotations

import threading
import time
from typing import Any, Callable, Dict, Optional

from backend.app.core.logging import logger
from backend.app.scraper.models import isoformat_utc
from backend.app.scraper.pipeline import RunReport, ScrapePipeline


class Scheduler:
    """At most one run in flight; triggers that arrive during a run are dropped, not queued."""

    def __init__(
        self,
        pipeline: ScrapePipeline,
        *,
        interval_seconds: float = 30 * 60,
        units_configured: int = 0,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self.pipeline = pipeline
        self.interval_seconds = interval_seconds
        self.units_configured = units_configured
        self._monotonic = monotonic

        self._run_lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._stop = threading.Event()
        self._cancel = threading.Event()
        self._thread: Optional[threading.Thread] = None

        self._is_running = False
        self.run_count = 0
        self.last_run: Optional[Dict[str, Any]] = None
        self.last_error: Optional[Dict[str, Any]] = None

    @property
    def stopping(self) -> bool:
        return self._stop.is_set()

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._thread = threading.Thread(target=self._loop, name="ysba-scheduler", daemon=True)
        self._thread.start()
        logger.info("Scheduler started: every %.0f minutes", self.interval_seconds / 60)

    def _loop(self) -> None:
        # Ticks are anchored on run starts; ticks missed during a long run are skipped.
        next_at = self._monotonic()
        while not self._stop.is_set():
            self.trigger(reason="scheduled")
            next_at += self.interval_seconds
            now = self._monotonic()
            while next_at <= now:
                next_at += self.interval_seconds
            if self._stop.wait(max(0.0, next_at - now)):
                break
        logger.info("Scheduler loop exited")

    def trigger(self, reason: str = "manual") -> Optional[RunReport]:
        """Run now unless a run is already in flight or shutdown has begun."""
        if self._stop.is_set():
            logger.info("Ignoring %s trigger: scheduler is shutting down", reason)
            return None
        if not self._run_lock.acquire(blocking=False):
            logger.info("Ignoring %s trigger: a run is already in progress", reason)
            return None
        try:
            with self._state_lock:
                self._is_running = True
                self.run_count += 1
                run_number = self.run_count
            logger.info("Starting run #%s (%s)", run_number, reason)
            report = self.pipeline.run(run_number, cancel=self._cancel)
            self._record(report)
            return report
        except Exception as exc:  # noqa: BLE001
            logger.exception("Run #%s crashed", self.run_count)
            with self._state_lock:
                self.last_error = {"kind": "internal", "message": str(exc), "runNumber": self.run_count}
            return None
        finally:
            with self._state_lock:
                self._is_running = False
            self._run_lock.release()

    def trigger_async(self, reason: str = "manual") -> bool:
        if self._stop.is_set() or self._run_lock.locked():
            logger.info("Ignoring %s trigger: run in progress or shutting down", reason)
            return False
        threading.Thread(target=self.trigger, kwargs={"reason": reason}, name="ysba-run", daemon=True).start()
        return True

    def _record(self, report: RunReport) -> None:
        metadata = report.metadata
        last_run = {
            "runNumber": metadata.run_number,
            "success": report.committed,
            "duration": metadata.duration_ms,
            "successCount": metadata.success_count,
            "errorCount": metadata.failure_count,
            "finishedAt": isoformat_utc(metadata.finished_at),
            "dataChanged": metadata.data_changed,
        }
        with self._state_lock:
            self.last_run = last_run
            if report.error_kind:
                self.last_error = {
                    "kind": report.error_kind,
                    "message": report.error_message,
                    "runNumber": metadata.run_number,
                    "at": isoformat_utc(metadata.finished_at),
                }

    def status(self) -> Dict[str, Any]:
        with self._state_lock:
            return {
                "isRunning": self._is_running,
                "runCount": self.run_count,
                "lastRun": dict(self.last_run) if self.last_run else None,
                "lastError": dict(self.last_error) if self.last_error else None,
                "unitsConfigured": self.units_configured,
                "isShuttingDown": self._stop.is_set(),
                "intervalMinutes": self.interval_seconds / 60,
            }

    def shutdown(self, timeout: float = 300.0) -> bool:
        """Stop accepting triggers and wait up to ``timeout`` seconds for the in-flight run.

        Returns False when the run was still going at the deadline; it is then
        asked to stop before its next unit.
        """
        logger.info("Scheduler shutting down (timeout %.0fs)", timeout)
        self._stop.set()
        finished = self._run_lock.acquire(timeout=max(0.0, timeout))
        if finished:
            self._run_lock.release()
        else:
            logger.warning("Run still in progress after %.0fs; cancelling remaining units", timeout)
            self._cancel.set()
        if self._thread is not None:
            self._thread.join(timeout=1.0 if not finished else max(1.0, timeout))
        return finished
