from datetime import datetime, timezone

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from backend.app.db import models
from backend.app.db.base import Base
from backend.app.scraper.models import RunMetadata
from backend.app.scraper.store import DatabaseArtifactStore
from backend.app.scraper.writer import ArtifactWriter

NOW = datetime(2025, 6, 15, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def db_store():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    TestingSessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)
    Base.metadata.create_all(bind=engine, tables=[models.ArtifactRecord.__table__])
    return DatabaseArtifactStore(TestingSessionLocal)


def test_publish_replaces_whole_snapshot(db_store):
    db_store.publish({"ysba": {"run": 1}, "divisions/9U-t1": {"teams": 3}, "divisions/9U-t2": {"teams": 0}})
    db_store.put("last-run", {"runNumber": 1})

    db_store.publish({"ysba": {"run": 2}, "divisions/9U-t1": {"teams": 4}})

    assert db_store.get("ysba") == {"run": 2}
    assert db_store.get("divisions/9U-t2") is None
    assert db_store.keys("divisions/") == ["divisions/9U-t1"]
    assert db_store.get("last-run") == {"runNumber": 1}
    assert db_store.current_snapshot() is not None


def test_failed_publish_keeps_previous_rows(db_store):
    db_store.publish({"ysba": {"run": 1}})

    with pytest.raises(Exception):
        db_store.publish({"ysba": {"run": 2}, "metadata": {"bad": object()}})

    assert db_store.get("ysba") == {"run": 1}
    assert db_store.keys() == ["ysba"]


def test_state_keys_are_upserted_and_deleted(db_store):
    db_store.put("errors/error-1", {"message": "a"})
    db_store.put("errors/error-1", {"message": "b"})
    db_store.put("errors/error-2", {"message": "c"})

    assert db_store.get("errors/error-1") == {"message": "b"}
    assert db_store.size("errors/error-2") > 0

    db_store.delete("errors/error-1")

    assert db_store.keys("errors/") == ["errors/error-2"]
    with pytest.raises(ValueError):
        db_store.delete("ysba")


def test_current_snapshot_survives_a_new_store_instance(db_store):
    snapshot_id = db_store.publish({"ysba": {"run": 1}, "metadata": {"runNumber": 1}})

    restarted = DatabaseArtifactStore(db_store.session_factory)

    assert restarted.current_snapshot() == snapshot_id
    assert restarted.current_snapshot() == db_store.current_snapshot()


def test_empty_table_has_no_current_snapshot(db_store):
    db_store.put("last-run", {"runNumber": 1})

    assert db_store.current_snapshot() is None


def test_failure_after_restart_points_at_persisted_snapshot(db_store):
    snapshot_id = db_store.publish({"ysba": {"run": 1}})
    metadata = RunMetadata(
        run_number=2,
        started_at=NOW,
        finished_at=NOW,
        success_count=0,
        failure_count=1,
        total_units=1,
    )

    writer = ArtifactWriter(DatabaseArtifactStore(db_store.session_factory))
    writer.record_failure(metadata, "All 1 units failed")

    assert db_store.get("last-run")["snapshot"] == snapshot_id
    assert db_store.get("last-run")["status"] == "failed"
