"""
XLSX exporter — One worksheet per report table, written with openpyxl.
"""

from __future__ import annotations

from pathlib import Path

from openpyxl import Workbook

from ..engine.aggregator import TABLE_NAMES, RunReport
from .csv_export import TABLE_FIELDS


def export_xlsx(report: RunReport, output_dir: Path) -> Path:
    output_dir.mkdir(parents=True, exist_ok=True)
    wb = Workbook()
    wb.remove(wb.active)

    for name in TABLE_NAMES:
        ws = wb.create_sheet(title=name)
        fields = TABLE_FIELDS[name]
        ws.append(fields)
        for row in report.tables.get(name, []):
            ws.append([row.get(f) for f in fields])

    filepath = output_dir / f"link_repair_{report.run_id}.xlsx"
    wb.save(filepath)
    wb.close()
    return filepath
