"""
Result aggregator — folds per-document reports into run statistics and the
report tables (Summary, References, Fixed, Broken, Errors).

Aggregation is order-independent: the same set of reports consumed in any
order yields the same statistics and tables.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from .models import (
    DocumentReport,
    EngineStatistics,
    HealthStatus,
    MatchMethod,
    RepairOutcome,
)

logger = logging.getLogger("m365_link_repair.engine.aggregator")


class RunStatus(str, Enum):
    ALL_FIXED = "all_fixed"
    ALL_PROPOSED = "all_proposed"   # dry run: every broken link has a proposed target
    PARTIAL = "partial"
    ALL_BROKEN = "all_broken"
    FATAL = "fatal"


EXIT_CODES = {
    RunStatus.ALL_FIXED: 0,
    RunStatus.ALL_PROPOSED: 0,
    RunStatus.PARTIAL: 1,
    RunStatus.ALL_BROKEN: 2,
    RunStatus.FATAL: 3,
}
EXIT_CANCELLED = 130

TABLE_NAMES = ("Summary", "References", "Fixed", "Broken", "Errors")


@dataclass
class RunReport:
    """Everything the reporting layer needs about one run."""
    run_id: str
    status: RunStatus
    statistics: EngineStatistics
    tables: dict[str, list[dict[str, Any]]]
    started_at: str
    completed_at: str
    scan_root: str = ""
    dry_run: bool = False
    cancelled: bool = False
    fatal_error: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def exit_code(self) -> int:
        if self.cancelled and self.status != RunStatus.FATAL:
            return EXIT_CANCELLED
        return EXIT_CODES[self.status]

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "status": self.status.value,
            "exit_code": self.exit_code,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "scan_root": self.scan_root,
            "dry_run": self.dry_run,
            "cancelled": self.cancelled,
            "fatal_error": self.fatal_error,
            "statistics": self.statistics.to_dict(),
            "tables": self.tables,
            "metadata": self.metadata,
        }


class ResultAggregator:
    """Owned by the dispatcher; workers never touch it."""

    def __init__(self):
        self.statistics = EngineStatistics()
        self._reports: dict[str, DocumentReport] = {}
        self.started_at = datetime.now(timezone.utc).isoformat()

    def __len__(self) -> int:
        return len(self._reports)

    @property
    def reports(self) -> list[DocumentReport]:
        return [self._reports[k] for k in sorted(self._reports)]

    def consume(self, report: DocumentReport) -> bool:
        """Fold one document's report in. A document is only ever counted once."""
        path = report.document.path
        if path in self._reports:
            logger.debug(f"Ignoring repeated report for {path}")
            return False
        self._reports[path] = report

        stats = self.statistics
        stats.files_processed += 1
        if report.failed:
            stats.files_with_errors += 1
        if report.saved:
            stats.files_saved += 1
        stats.resource_cleanups += report.cleanups

        for result in report.results:
            if result.is_document_error:
                continue
            stats.total_references += 1
            if result.health == HealthStatus.WORKING:
                stats.working_references += 1
            elif result.health == HealthStatus.ERROR:
                stats.reference_errors += 1
            else:
                stats.broken_references += 1
                if result.repair == RepairOutcome.FIXED:
                    stats.references_fixed += 1
                    if result.method == MatchMethod.EXACT:
                        stats.exact_matches += 1
                    elif result.method == MatchMethod.FUZZY:
                        stats.fuzzy_matches += 1
                elif result.repair == RepairOutcome.FAILED_TO_FIX:
                    stats.references_failed += 1
                elif result.new_target:
                    stats.references_proposed += 1
        return True

    def record_memory(self, sample_mb: float, reclaimed: bool = False):
        self.statistics.memory_samples_mb.append(round(sample_mb, 1))
        if reclaimed:
            self.statistics.memory_reclaims += 1

    def batch_completed(self):
        self.statistics.batches_completed += 1

    # ── Outcome ──────────────────────────────────────────────────────────

    def status(self, fatal: bool = False, dry_run: bool = False) -> RunStatus:
        stats = self.statistics
        if fatal:
            return RunStatus.FATAL
        if stats.broken_references == 0:
            return RunStatus.ALL_FIXED if stats.files_with_errors == 0 else RunStatus.PARTIAL
        # A dry run writes nothing, so its proposals stand in for fixes
        resolved = stats.references_proposed if dry_run else stats.references_fixed
        if resolved == 0:
            return RunStatus.ALL_BROKEN
        if resolved == stats.broken_references and stats.files_with_errors == 0:
            return RunStatus.ALL_PROPOSED if dry_run else RunStatus.ALL_FIXED
        return RunStatus.PARTIAL

    def build_tables(self, status: Optional[RunStatus] = None) -> dict[str, list[dict[str, Any]]]:
        reports = self.reports
        summary = [{"metric": k, "value": v} for k, v in self.statistics.to_dict().items()]
        if status is not None:
            summary.insert(0, {"metric": "status", "value": status.value})

        references: list[dict[str, Any]] = []
        fixed: dict[str, list[str]] = defaultdict(list)
        broken: dict[str, list[str]] = defaultdict(list)
        errors: list[dict[str, Any]] = []

        for report in reports:
            for r in sorted(report.results, key=lambda x: (x.reference_key, x.reference or "")):
                references.append(r.to_dict())
                if r.health == HealthStatus.ERROR:
                    errors.append({
                        "document": r.document,
                        "reference": r.reference or "",
                        "error": r.error or "",
                    })
                elif r.health == HealthStatus.BROKEN:
                    if r.repair == RepairOutcome.FIXED:
                        fixed[r.document].append(r.new_target or "")
                    else:
                        broken[r.document].append(r.reference or "")

        return {
            "Summary": summary,
            "References": references,
            "Fixed": [
                {"document": doc, "fixed_count": len(targets), "new_targets": "; ".join(targets)}
                for doc, targets in sorted(fixed.items())
            ],
            "Broken": [
                {"document": doc, "still_broken_count": len(targets), "targets": "; ".join(targets)}
                for doc, targets in sorted(broken.items())
            ],
            "Errors": errors,
        }

    def build_report(
        self,
        run_id: str,
        scan_root: str = "",
        dry_run: bool = False,
        cancelled: bool = False,
        fatal_error: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> RunReport:
        status = self.status(fatal=fatal_error is not None, dry_run=dry_run)
        return RunReport(
            run_id=run_id,
            status=status,
            statistics=self.statistics,
            tables=self.build_tables(status),
            started_at=self.started_at,
            completed_at=datetime.now(timezone.utc).isoformat(),
            scan_root=scan_root,
            dry_run=dry_run,
            cancelled=cancelled,
            fatal_error=fatal_error,
            metadata=metadata or {},
        )
