"""Print what the artifact store currently holds.

    python -m backend.app.tools.artifact_summary [--store filesystem|database] [--data-root DIR]
"""
from __future__ import annotations

import argparse
import json
from pathlib import Path
from typing import Sequence

from backend.app.core.config import settings
from backend.app.scraper.store import build_store
from backend.app.scraper.writer import LAST_RUN_KEY, ArtifactWriter


def main(argv: Sequence[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Summarize published YSBA artifacts.")
    parser.add_argument("--store", choices=["filesystem", "database"], default=settings.artifact_store)
    parser.add_argument("--data-root", default=str(settings.data_root), help="Filesystem store root.")
    parser.add_argument("--json", action="store_true", help="Emit the summary as JSON.")
    args = parser.parse_args(argv)

    store = build_store(args.store, data_root=Path(args.data_root), snapshot_keep=settings.snapshot_keep)
    writer = ArtifactWriter(store, error_log_keep=settings.error_log_keep)
    summary = writer.file_summary()
    summary["lastRun"] = writer.read(LAST_RUN_KEY)

    if args.json:
        print(json.dumps(summary, indent=2, sort_keys=True))
        return 0

    print(f"Snapshot: {summary['snapshot'] or '(none)'}")
    for key, info in summary["artifacts"].items():
        marker = "ok" if info["exists"] else "--"
        print(f"  [{marker}] {key:<16} {info['sizeKB']:>8.1f} KB  {info['purpose']}")
    slices = summary["unitSlices"]
    print(f"  per-unit slices: {slices['count']} ({slices['sizeKB']:.1f} KB)")
    print(f"  error logs: {summary['errorLogs']}")
    last_run = summary["lastRun"]
    if last_run:
        print(
            f"Last run #{last_run.get('runNumber')}: {last_run.get('status')} "
            f"({last_run.get('successCount')}/{last_run.get('totalUnits')} units, {last_run.get('durationMs')}ms)"
        )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
