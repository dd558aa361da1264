"""Persist a FullDataset, its per-unit slices and derived artifacts as one snapshot."""
from __future__ import annotations

import time
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional

from backend.app.core.logging import logger
from backend.app.scraper.models import FullDataset, RunMetadata, isoformat_utc
from backend.app.scraper.optimizer import DerivedArtifacts
from backend.app.scraper.store import ERRORS_PREFIX, LAST_RUN_KEY, ArtifactStore

FULL_KEY = "ysba"
ACTIVE_KEY = "ysba-active"
STANDINGS_KEY = "ysba-standings"
RECENT_KEY = "ysba-recent"
INDEX_KEY = "ysba-index"
DASHBOARD_KEY = "dashboard"
METADATA_KEY = "metadata"
DIVISIONS_PREFIX = "divisions/"

REQUIRED_KEYS = (FULL_KEY, ACTIVE_KEY, STANDINGS_KEY, RECENT_KEY, INDEX_KEY, DASHBOARD_KEY, METADATA_KEY)

ARTIFACT_PURPOSES: Dict[str, str] = {
    FULL_KEY: "Complete dataset (all divisions, tiers, standings and games)",
    ACTIVE_KEY: "Only divisions/tiers that have teams",
    STANDINGS_KEY: "Standings only, compact fields, no games",
    RECENT_KEY: "Most recent played games across active units",
    INDEX_KEY: "Per-unit team and game counts for navigation",
    DASHBOARD_KEY: "Global totals plus latest and next games",
    METADATA_KEY: "Metadata of the run that produced the current snapshot",
    LAST_RUN_KEY: "Outcome of the most recent run, successful or not",
}

_VOLATILE_KEYS = frozenset({"lastUpdated", "runNumber"})


class ArtifactWriteError(RuntimeError):
    pass


def division_key(division: str, tier: str) -> str:
    return f"{DIVISIONS_PREFIX}{division}-{tier}"


def strip_volatile(payload: Any) -> Any:
    """Drop timestamp-like fields recursively so two runs can be compared."""
    if isinstance(payload, Mapping):
        return {k: strip_volatile(v) for k, v in payload.items() if k not in _VOLATILE_KEYS}
    if isinstance(payload, list):
        return [strip_volatile(v) for v in payload]
    return payload


def build_artifact_map(dataset: FullDataset, metadata: RunMetadata, derived: DerivedArtifacts) -> Dict[str, Any]:
    last_updated = isoformat_utc(dataset.last_updated)
    artifacts: Dict[str, Any] = {
        FULL_KEY: dataset.to_dict(),
        ACTIVE_KEY: derived.active_only,
        STANDINGS_KEY: derived.quick_standings,
        RECENT_KEY: derived.recent_games,
        INDEX_KEY: derived.index,
        DASHBOARD_KEY: derived.dashboard,
        METADATA_KEY: {
            **metadata.to_dict(),
            "lastUpdated": last_updated,
            "totalDivisions": len(dataset.divisions),
            "totalTeams": dataset.total_teams,
            "totalGames": dataset.total_games,
        },
    }
    for key, division in dataset.divisions.items():
        for tier, unit in division.tiers.items():
            artifacts[division_key(key, tier)] = {
                **unit.to_dict(),
                "displayName": division.display_name,
                "lastUpdated": last_updated,
            }
    return artifacts


def validate_artifacts(artifacts: Mapping[str, Any]) -> None:
    errors: list[str] = []

    def load(key: str) -> Any:
        if key not in artifacts:
            errors.append(f"Missing required artifact: {key}")
            return None
        payload = artifacts[key]
        if not isinstance(payload, dict):
            errors.append(f"{key} must be an object")
            return None
        return payload

    full = load(FULL_KEY)
    active = load(ACTIVE_KEY)
    standings = load(STANDINGS_KEY)
    recent = load(RECENT_KEY)
    index = load(INDEX_KEY)
    load(DASHBOARD_KEY)
    load(METADATA_KEY)

    slices = {k for k in artifacts if k.startswith(DIVISIONS_PREFIX)}

    if isinstance(full, dict):
        meta = full.get("metadata") or {}
        if int(meta.get("totalUnits", -1)) != len(slices):
            errors.append(f"{FULL_KEY} metadata.totalUnits inconsistent with per-unit slices ({len(slices)})")

    if isinstance(index, dict):
        rows = index.get("units")
        if not isinstance(rows, list):
            errors.append(f"{INDEX_KEY} units must be a list")
        else:
            if int(index.get("totalUnits", -1)) != len(rows):
                errors.append(f"{INDEX_KEY} totalUnits inconsistent with units")
            for row in rows:
                key = division_key(str(row.get("division")), str(row.get("tier")))
                if key not in slices:
                    errors.append(f"{INDEX_KEY} row {key} has no per-unit slice")

    if isinstance(active, dict) and isinstance(full, dict):
        full_divisions = full.get("divisions") or {}
        active_units = 0
        for div_key, division in (active.get("divisions") or {}).items():
            for tier, unit in (division.get("tiers") or {}).items():
                active_units += 1
                source = (full_divisions.get(div_key) or {}).get("tiers", {}).get(tier)
                if source is None:
                    errors.append(f"{ACTIVE_KEY} unit {div_key}/{tier} missing from {FULL_KEY}")
                if not unit.get("standings"):
                    errors.append(f"{ACTIVE_KEY} unit {div_key}/{tier} has no teams")
                quick = ((standings or {}).get("divisions") or {}).get(div_key, {}).get("tiers", {}).get(tier)
                if quick is None or len(quick) != len(unit.get("standings") or []):
                    errors.append(f"{STANDINGS_KEY} team count for {div_key}/{tier} differs from {ACTIVE_KEY}")
        if int((active.get("metadata") or {}).get("activeUnits", -1)) != active_units:
            errors.append(f"{ACTIVE_KEY} metadata.activeUnits inconsistent with divisions")

    if isinstance(recent, dict):
        games = recent.get("games")
        if not isinstance(games, list):
            errors.append(f"{RECENT_KEY} games must be a list")
        elif len(games) > int(recent.get("totalGames", 0)):
            errors.append(f"{RECENT_KEY} has more games than totalGames")

    if errors:
        raise ValueError("Artifact validation failed:\n- " + "\n- ".join(errors))


@dataclass(frozen=True)
class WriteResult:
    snapshot_id: str
    keys: tuple[str, ...]
    metadata: RunMetadata

    @property
    def data_changed(self) -> Optional[bool]:
        return self.metadata.data_changed


def _epoch_ms() -> int:
    return int(time.time() * 1000)


class ArtifactWriter:
    def __init__(
        self,
        store: ArtifactStore,
        *,
        error_log_keep: int = 10,
        epoch_ms: Callable[[], int] = _epoch_ms,
    ) -> None:
        self.store = store
        self.error_log_keep = error_log_keep
        self._epoch_ms = epoch_ms

    def has_data_changed(self, payload: Mapping[str, Any]) -> bool:
        try:
            previous = self.store.get(FULL_KEY)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Could not read previous dataset for change detection: %s", exc)
            return True
        if previous is None:
            return True
        return strip_volatile(previous) != strip_volatile(payload)

    def write(self, dataset: FullDataset, metadata: RunMetadata, derived: DerivedArtifacts) -> WriteResult:
        changed = self.has_data_changed(dataset.to_dict())
        metadata = replace(metadata, data_changed=changed)
        artifacts = build_artifact_map(dataset, metadata, derived)
        validate_artifacts(artifacts)

        try:
            snapshot_id = self.store.publish(artifacts)
        except Exception as exc:  # noqa: BLE001
            raise ArtifactWriteError(f"Failed to publish snapshot: {exc}") from exc

        # The snapshot is live once publish returns; a stale last-run does not undo the commit.
        try:
            self._put_last_run(metadata, status="completed", snapshot_id=snapshot_id)
        except ArtifactWriteError:
            logger.exception("Snapshot %s published but last-run was not updated", snapshot_id)
        logger.info(
            "Wrote %s artifacts for run #%s (data changed: %s)", len(artifacts), metadata.run_number, changed
        )
        return WriteResult(snapshot_id=snapshot_id, keys=tuple(sorted(artifacts)), metadata=metadata)

    def _put_last_run(
        self,
        metadata: RunMetadata,
        *,
        status: str,
        snapshot_id: Optional[str] = None,
        error: Optional[Mapping[str, Any]] = None,
    ) -> None:
        payload = {**metadata.to_dict(), "status": status, "snapshot": snapshot_id, "error": error}
        try:
            self.store.put(LAST_RUN_KEY, payload)
        except Exception as exc:  # noqa: BLE001
            raise ArtifactWriteError(f"Failed to write {LAST_RUN_KEY}: {exc}") from exc

    def record_failure(self, metadata: RunMetadata, error: BaseException | str, kind: str = "fetch") -> str:
        """Overwrite last-run with the failure and keep an error log for it; returns the log key."""
        details = {"kind": kind, "message": str(error), "type": type(error).__name__ if not isinstance(error, str) else None}
        self._put_last_run(metadata, status="failed", snapshot_id=self.store.current_snapshot(), error=details)
        key = self.write_error_log({**details, "run": metadata.to_dict()})
        self.cleanup_error_logs()
        return key

    def write_error_log(self, payload: Mapping[str, Any]) -> str:
        key = f"{ERRORS_PREFIX}error-{self._epoch_ms()}"
        body = {"timestamp": isoformat_utc(datetime.now(timezone.utc)), **payload}
        try:
            self.store.put(key, body)
        except Exception as exc:  # noqa: BLE001
            raise ArtifactWriteError(f"Failed to write error log {key}: {exc}") from exc
        logger.info("Error log written: %s", key)
        return key

    def error_log_keys(self) -> List[str]:
        def stamp(key: str) -> int:
            try:
                return int(key.rsplit("-", 1)[-1])
            except ValueError:
                return 0

        keys = [k for k in self.store.keys(ERRORS_PREFIX) if k.startswith(f"{ERRORS_PREFIX}error-")]
        return sorted(keys, key=stamp, reverse=True)

    def cleanup_error_logs(self, keep: Optional[int] = None) -> List[str]:
        keep = self.error_log_keep if keep is None else keep
        removed: List[str] = []
        for key in self.error_log_keys()[max(0, keep):]:
            try:
                self.store.delete(key)
                removed.append(key)
            except Exception as exc:  # noqa: BLE001
                logger.warning("Could not delete old error log %s: %s", key, exc)
        if removed:
            logger.info("Cleaned up %s old error log(s)", len(removed))
        return removed

    def read(self, key: str) -> Optional[Any]:
        return self.store.get(key)

    def file_summary(self) -> Dict[str, Any]:
        artifacts: Dict[str, Any] = {}
        for key, purpose in ARTIFACT_PURPOSES.items():
            size = self.store.size(key)
            artifacts[key] = {
                "exists": size is not None,
                "size": size or 0,
                "sizeKB": round((size or 0) / 1024, 1),
                "purpose": purpose,
            }
        unit_keys = self.store.keys(DIVISIONS_PREFIX)
        unit_bytes = sum(self.store.size(k) or 0 for k in unit_keys)
        return {
            "snapshot": self.store.current_snapshot(),
            "artifacts": artifacts,
            "unitSlices": {"count": len(unit_keys), "size": unit_bytes, "sizeKB": round(unit_bytes / 1024, 1)},
            "errorLogs": len(self.error_log_keys()),
        }
