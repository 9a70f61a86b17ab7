"""
JSON exporter — Produces the full structured output of a repair run.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path

from .. import __version__
from ..engine.aggregator import RunReport


def export_json(report: RunReport, output_dir: Path) -> Path:
    """
    Write the run report (metadata, statistics, status, tables) to JSON.

    Returns:
        Path to the created JSON file.
    """
    output_dir.mkdir(parents=True, exist_ok=True)

    payload = {
        "metadata": {
            "engine": "M365 Link Repair Engine",
            "version": __version__,
            "run_id": report.run_id,
            "generated_utc": datetime.now(timezone.utc).isoformat(),
            "mode": "DRY-RUN" if report.dry_run else "REPAIR",
            **report.metadata,
        },
        **{k: v for k, v in report.to_dict().items() if k != "metadata"},
    }

    filepath = output_dir / f"link_repair_{report.run_id}.json"
    with open(filepath, "w", encoding="utf-8") as fh:
        json.dump(payload, fh, indent=2, default=str, ensure_ascii=False)

    return filepath
