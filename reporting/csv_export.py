"""
CSV exporter — One CSV file per report table.
"""

from __future__ import annotations

import csv
from pathlib import Path

from ..engine.aggregator import TABLE_NAMES, RunReport

# Column order for tables that can be empty (no row to infer headers from)
TABLE_FIELDS = {
    "Summary": ["metric", "value"],
    "References": [
        "document", "document_kind", "health", "reference", "reference_key",
        "link_kind", "repair", "method", "new_target", "score",
        "elapsed_seconds", "error",
    ],
    "Fixed": ["document", "fixed_count", "new_targets"],
    "Broken": ["document", "still_broken_count", "targets"],
    "Errors": ["document", "reference", "error"],
}


def export_csv(report: RunReport, output_dir: Path) -> list[Path]:
    """
    Write one ``utf-8-sig`` CSV per table so Excel opens them cleanly.

    Returns:
        List of created CSV file paths.
    """
    output_dir.mkdir(parents=True, exist_ok=True)
    created = []

    for name in TABLE_NAMES:
        rows = report.tables.get(name, [])
        path = output_dir / f"{name.lower()}_{report.run_id}.csv"
        with open(path, "w", newline="", encoding="utf-8-sig") as fh:
            writer = csv.DictWriter(fh, fieldnames=TABLE_FIELDS[name], extrasaction="ignore")
            writer.writeheader()
            for row in rows:
                writer.writerow({k: "" if v is None else v for k, v in row.items()})
        created.append(path)

    return created
