"""One run end to end: aggregate, derive, write; classify what went wrong."""
from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Optional

from backend.app.core.logging import logger
from backend.app.scraper.aggregator import RunAggregator, RunState
from backend.app.scraper.models import FullDataset, RunMetadata
from backend.app.scraper.optimizer import DEFAULT_RECENT_GAMES_LIMIT, optimize
from backend.app.scraper.writer import ArtifactWriter, ArtifactWriteError, WriteResult

FETCH_FAILURE = "fetch"
WRITE_FAILURE = "write"


@dataclass(frozen=True)
class RunReport:
    metadata: RunMetadata
    state: RunState
    write_result: Optional[WriteResult] = None
    error_kind: Optional[str] = None
    error_message: Optional[str] = None

    @property
    def committed(self) -> bool:
        return self.write_result is not None

    def to_dict(self) -> dict:
        return {
            **self.metadata.to_dict(),
            "state": self.state.value,
            "committed": self.committed,
            "snapshot": self.write_result.snapshot_id if self.write_result else None,
            "error": {"kind": self.error_kind, "message": self.error_message} if self.error_kind else None,
        }


class ScrapePipeline:
    """Owns the reference to the last committed FullDataset.

    ``snapshot`` is replaced in a single assignment after a successful write,
    so readers on other threads always see a complete dataset.
    """

    def __init__(
        self,
        aggregator: RunAggregator,
        writer: ArtifactWriter,
        *,
        recent_games_limit: int = DEFAULT_RECENT_GAMES_LIMIT,
    ) -> None:
        self.aggregator = aggregator
        self.writer = writer
        self.recent_games_limit = recent_games_limit
        self.snapshot: Optional[FullDataset] = None

    def is_running(self) -> bool:
        return self.aggregator.is_running()

    def _record_failure(self, metadata: RunMetadata, error, kind: str) -> None:
        try:
            self.writer.record_failure(metadata, error, kind=kind)
        except ArtifactWriteError:
            logger.exception("Could not record failure of run #%s", metadata.run_number)

    def run(self, run_number: int, cancel: Optional[threading.Event] = None) -> RunReport:
        outcome = self.aggregator.run(run_number, cancel=cancel)
        metadata = outcome.metadata

        if not outcome.completed or outcome.dataset is None:
            if metadata.success_count == 0 and metadata.failure_count == 0:
                message = f"Run cancelled before any of {metadata.total_units} units was processed"
            else:
                message = f"All {metadata.total_units} units failed"
            if metadata.per_unit_errors:
                message += f"; last error: {metadata.per_unit_errors[-1].message}"
            self._record_failure(metadata, message, FETCH_FAILURE)
            return RunReport(
                metadata=metadata, state=outcome.state, error_kind=FETCH_FAILURE, error_message=message
            )

        try:
            derived = optimize(outcome.dataset, self.recent_games_limit)
            result = self.writer.write(outcome.dataset, metadata, derived)
        except (ArtifactWriteError, ValueError) as exc:
            logger.exception("Run #%s could not be committed", run_number)
            self._record_failure(metadata, exc, WRITE_FAILURE)
            return RunReport(
                metadata=metadata, state=RunState.FAILED, error_kind=WRITE_FAILURE, error_message=str(exc)
            )

        self.snapshot = outcome.dataset
        return RunReport(metadata=result.metadata, state=outcome.state, write_result=result)
