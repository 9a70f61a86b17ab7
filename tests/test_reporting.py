from __future__ import annotations

import csv
import json
from pathlib import Path

import pytest

from fakes import make_doc

from m365_link_repair.engine.aggregator import ResultAggregator, RunReport
from m365_link_repair.engine.models import (
    DocumentReport,
    HealthStatus,
    MatchMethod,
    RepairOutcome,
    ScanResult,
)
from m365_link_repair.engine.scanner import error_report
from m365_link_repair.reporting import (
    export_csv,
    export_json,
    export_markdown,
    export_xlsx,
)
from m365_link_repair.reporting.markdown_report import render_markdown


@pytest.fixture
def report() -> RunReport:
    doc = make_doc("/d/Summary.xlsx")
    aggregator = ResultAggregator()
    aggregator.consume(DocumentReport(document=doc, results=(
        ScanResult(
            document=doc.path, document_kind=doc.kind, health=HealthStatus.BROKEN,
            reference="Reprot2024.xlsx", reference_key="0", repair=RepairOutcome.FIXED,
            method=MatchMethod.FUZZY, new_target="/A/Report2024.xlsx", score=0.8,
        ),
        ScanResult(
            document=doc.path, document_kind=doc.kind, health=HealthStatus.BROKEN,
            reference="Gone|Old.xlsx", reference_key="1", repair=RepairOutcome.FAILED_TO_FIX,
        ),
    ), saved=True))
    aggregator.consume(error_report(make_doc("/d/Locked.xlsx"), OSError("locked by another user")))
    return aggregator.build_report("run-1", scan_root="/d", metadata={"run_key": "abc"})


def test_export_json(report: RunReport, tmp_path: Path) -> None:
    path = export_json(report, tmp_path)

    data = json.loads(path.read_text(encoding="utf-8"))
    assert path.name == "link_repair_run-1.json"
    assert data["status"] == "partial"
    assert data["exit_code"] == 1
    assert data["metadata"]["run_key"] == "abc"
    assert data["metadata"]["mode"] == "REPAIR"
    assert data["statistics"]["references_fixed"] == 1
    assert len(data["tables"]["References"]) == 3


def test_export_csv_writes_every_table(report: RunReport, tmp_path: Path) -> None:
    paths = export_csv(report, tmp_path)

    assert [p.name for p in paths] == [
        "summary_run-1.csv", "references_run-1.csv", "fixed_run-1.csv",
        "broken_run-1.csv", "errors_run-1.csv",
    ]
    with open(tmp_path / "errors_run-1.csv", encoding="utf-8-sig", newline="") as fh:
        rows = list(csv.DictReader(fh))
    assert rows == [{
        "document": "/d/Locked.xlsx",
        "reference": "",
        "error": "OSError: locked by another user",
    }]


def test_export_csv_with_empty_tables(tmp_path: Path) -> None:
    empty = ResultAggregator().build_report("run-2")

    paths = export_csv(empty, tmp_path)

    with open(paths[3], encoding="utf-8-sig", newline="") as fh:
        assert fh.read().strip() == "document,still_broken_count,targets"


def test_export_xlsx(report: RunReport, tmp_path: Path) -> None:
    openpyxl = pytest.importorskip("openpyxl")

    path = export_xlsx(report, tmp_path)

    wb = openpyxl.load_workbook(path)
    assert wb.sheetnames == ["Summary", "References", "Fixed", "Broken", "Errors"]
    fixed = list(wb["Fixed"].values)
    assert fixed[0] == ("document", "fixed_count", "new_targets")
    assert fixed[1] == ("/d/Summary.xlsx", 1, "/A/Report2024.xlsx")
    wb.close()


def test_markdown_report(report: RunReport, tmp_path: Path) -> None:
    path = export_markdown(report, tmp_path)
    text = path.read_text(encoding="utf-8")

    assert path.name == "link_repair_report_run-1.md"
    assert "# Link Repair Report" in text
    assert "| /d/Summary.xlsx | 1 | /A/Report2024.xlsx |" in text
    assert "Gone\\|Old.xlsx" in text
    assert "OSError: locked by another user" in text


def test_markdown_fatal_report() -> None:
    text = render_markdown(ResultAggregator().build_report("run-3", fatal_error="No scan root configured."))

    assert "**Setup failed:** No scan root configured." in text
    assert "No references were fixed." in text
