"""Durable key/blob stores for published artifacts.

Keys are slash-separated logical names (``ysba``, ``divisions/9U-select-all-tiers``).
Two scopes exist:

* snapshot keys, only ever replaced as a whole set by ``publish``;
* state keys (``last-run``, ``errors/...``), written one at a time with ``put``.
"""
from __future__ import annotations

import json
import os
import shutil
import tempfile
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterable, List, Mapping, Optional

from sqlalchemy import delete, select

from backend.app.core.logging import logger

SNAPSHOT_SCOPE = "snapshot"
STATE_SCOPE = "state"
LAST_RUN_KEY = "last-run"
ERRORS_PREFIX = "errors/"


def is_state_key(key: str) -> bool:
    return key == LAST_RUN_KEY or key.startswith(ERRORS_PREFIX)


def _check_key(key: str) -> str:
    parts = key.split("/")
    if not key or key.startswith("/") or any(p in ("", ".", "..") for p in parts):
        raise ValueError(f"Invalid artifact key: {key!r}")
    return key


def _dumps(payload: Any) -> str:
    return json.dumps(payload, indent=2, sort_keys=True, ensure_ascii=False) + "\n"


def _new_snapshot_id() -> str:
    stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%fZ")
    return f"{stamp}-{uuid.uuid4().hex[:6]}"


def _write_json(path: Path, payload: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(_dumps(payload), encoding="utf-8")


def _atomic_write_json(path: Path, payload: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(path.name + ".tmp")
    tmp_path.write_text(_dumps(payload), encoding="utf-8")
    tmp_path.replace(path)


class ArtifactStore:
    """Interface shared by the filesystem and database stores."""

    def publish(self, artifacts: Mapping[str, Any]) -> str:
        """Replace the whole snapshot with ``artifacts``; readers see old or new, never a mix."""
        raise NotImplementedError

    def put(self, key: str, payload: Any) -> None:
        raise NotImplementedError

    def get(self, key: str) -> Optional[Any]:
        raise NotImplementedError

    def keys(self, prefix: str = "") -> List[str]:
        raise NotImplementedError

    def delete(self, key: str) -> None:
        raise NotImplementedError

    def size(self, key: str) -> Optional[int]:
        raise NotImplementedError

    def current_snapshot(self) -> Optional[str]:
        raise NotImplementedError


class FilesystemArtifactStore(ArtifactStore):
    """JSON files under ``root``.

    Layout::

        root/snapshots/<id>/<key>.json   one directory per published snapshot
        root/latest -> snapshots/<id>    symlink swapped atomically on publish
        root/state/<key>.json            last-run and error logs
    """

    def __init__(self, root: Path | str, snapshot_keep: int = 5) -> None:
        self.root = Path(root)
        self.snapshot_keep = snapshot_keep
        self.snapshots_dir = self.root / "snapshots"
        self.latest = self.root / "latest"
        self.state_dir = self.root / "state"

    def _snapshot_path(self) -> Optional[Path]:
        if not self.latest.exists():
            return None
        return self.latest.resolve()

    def _path_for(self, key: str) -> Optional[Path]:
        _check_key(key)
        if is_state_key(key):
            return self.state_dir / f"{key}.json"
        snapshot = self._snapshot_path()
        if snapshot is None:
            return None
        return snapshot / f"{key}.json"

    def current_snapshot(self) -> Optional[str]:
        snapshot = self._snapshot_path()
        return snapshot.name if snapshot is not None else None

    def publish(self, artifacts: Mapping[str, Any]) -> str:
        for key in artifacts:
            _check_key(key)
            if is_state_key(key):
                raise ValueError(f"State key {key!r} cannot be part of a snapshot")

        self.snapshots_dir.mkdir(parents=True, exist_ok=True)
        snapshot_id = _new_snapshot_id()
        snapshot_dst = self.snapshots_dir / snapshot_id
        staging = Path(tempfile.mkdtemp(prefix=".staging-", dir=str(self.snapshots_dir)))
        tmp_link = self.root / f".latest-{uuid.uuid4().hex}"
        try:
            for key, payload in artifacts.items():
                _write_json(staging / f"{key}.json", payload)
            staging.replace(snapshot_dst)
            os.symlink(os.path.join("snapshots", snapshot_id), tmp_link, target_is_directory=True)
            os.replace(tmp_link, self.latest)
        except Exception:
            shutil.rmtree(staging, ignore_errors=True)
            if tmp_link.is_symlink():
                tmp_link.unlink()
            if snapshot_dst.exists() and self.current_snapshot() != snapshot_id:
                shutil.rmtree(snapshot_dst, ignore_errors=True)
            raise

        logger.info("Published snapshot %s (%s artifacts)", snapshot_id, len(artifacts))
        self.prune_snapshots()
        return snapshot_id

    def prune_snapshots(self) -> None:
        if self.snapshot_keep <= 0 or not self.snapshots_dir.exists():
            return
        current = self.current_snapshot()
        snapshots = sorted(
            child.name
            for child in self.snapshots_dir.iterdir()
            if child.is_dir() and not child.name.startswith(".")
        )
        for name in snapshots[: -self.snapshot_keep]:
            if name == current:
                continue
            shutil.rmtree(self.snapshots_dir / name, ignore_errors=True)
            logger.debug("Pruned snapshot %s", name)

    def put(self, key: str, payload: Any) -> None:
        if not is_state_key(_check_key(key)):
            raise ValueError(f"Only state keys can be written individually (got {key!r})")
        _atomic_write_json(self.state_dir / f"{key}.json", payload)

    def get(self, key: str) -> Optional[Any]:
        path = self._path_for(key)
        if path is None or not path.exists():
            return None
        return json.loads(path.read_text(encoding="utf-8"))

    def _keys_under(self, base: Optional[Path]) -> Iterable[str]:
        if base is None or not base.exists():
            return []
        return [p.relative_to(base).with_suffix("").as_posix() for p in base.rglob("*.json")]

    def keys(self, prefix: str = "") -> List[str]:
        found = [*self._keys_under(self._snapshot_path()), *self._keys_under(self.state_dir)]
        return sorted(k for k in found if k.startswith(prefix))

    def delete(self, key: str) -> None:
        if not is_state_key(_check_key(key)):
            raise ValueError(f"Snapshot keys are only removed by publish (got {key!r})")
        path = self.state_dir / f"{key}.json"
        if path.exists():
            path.unlink()

    def size(self, key: str) -> Optional[int]:
        path = self._path_for(key)
        if path is None or not path.exists():
            return None
        return path.stat().st_size


class DatabaseArtifactStore(ArtifactStore):
    """Artifacts as JSON rows in the ``artifacts`` table; publish is one transaction."""

    def __init__(self, session_factory: Optional[Callable] = None) -> None:
        if session_factory is None:
            from backend.app.db.session import SessionLocal

            session_factory = SessionLocal
        self.session_factory = session_factory

    def current_snapshot(self) -> Optional[str]:
        from backend.app.db.models import ArtifactRecord

        # Every snapshot row carries the id of the publish that wrote it.
        with self.session_factory() as session:
            stmt = (
                select(ArtifactRecord.snapshot_id)
                .where(ArtifactRecord.scope == SNAPSHOT_SCOPE, ArtifactRecord.snapshot_id.is_not(None))
                .limit(1)
            )
            return session.scalars(stmt).first()

    def publish(self, artifacts: Mapping[str, Any]) -> str:
        from backend.app.db.models import ArtifactRecord

        for key in artifacts:
            _check_key(key)
            if is_state_key(key):
                raise ValueError(f"State key {key!r} cannot be part of a snapshot")

        snapshot_id = _new_snapshot_id()
        now = datetime.now(timezone.utc)
        with self.session_factory() as session:
            with session.begin():
                session.execute(delete(ArtifactRecord).where(ArtifactRecord.scope == SNAPSHOT_SCOPE))
                session.add_all(
                    ArtifactRecord(
                        key=key, scope=SNAPSHOT_SCOPE, payload=payload, snapshot_id=snapshot_id, updated_at=now
                    )
                    for key, payload in artifacts.items()
                )
        logger.info("Published snapshot %s (%s artifacts)", snapshot_id, len(artifacts))
        return snapshot_id

    def put(self, key: str, payload: Any) -> None:
        from backend.app.db.models import ArtifactRecord

        if not is_state_key(_check_key(key)):
            raise ValueError(f"Only state keys can be written individually (got {key!r})")
        with self.session_factory() as session:
            with session.begin():
                session.merge(
                    ArtifactRecord(key=key, scope=STATE_SCOPE, payload=payload, updated_at=datetime.now(timezone.utc))
                )

    def get(self, key: str) -> Optional[Any]:
        from backend.app.db.models import ArtifactRecord

        with self.session_factory() as session:
            record = session.get(ArtifactRecord, _check_key(key))
            return record.payload if record is not None else None

    def keys(self, prefix: str = "") -> List[str]:
        from backend.app.db.models import ArtifactRecord

        with self.session_factory() as session:
            stmt = select(ArtifactRecord.key)
            if prefix:
                stmt = stmt.where(ArtifactRecord.key.startswith(prefix))
            return sorted(session.scalars(stmt).all())

    def delete(self, key: str) -> None:
        from backend.app.db.models import ArtifactRecord

        if not is_state_key(_check_key(key)):
            raise ValueError(f"Snapshot keys are only removed by publish (got {key!r})")
        with self.session_factory() as session:
            with session.begin():
                session.execute(delete(ArtifactRecord).where(ArtifactRecord.key == key))

    def size(self, key: str) -> Optional[int]:
        payload = self.get(key)
        if payload is None:
            return None
        return len(_dumps(payload).encode("utf-8"))


def build_store(kind: str, *, data_root: Path | str, snapshot_keep: int = 5) -> ArtifactStore:
    kind = (kind or "filesystem").strip().lower()
    if kind in ("filesystem", "fs", "file"):
        return FilesystemArtifactStore(data_root, snapshot_keep=snapshot_keep)
    if kind in ("database", "db", "sql"):
        return DatabaseArtifactStore()
    raise ValueError(f"Unknown artifact store: {kind!r}")
