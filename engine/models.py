"""
Engine data models — documents, references, per-reference scan results,
per-batch bookkeeping and run-wide statistics.
"""

from __future__ import annotations

import ntpath
import posixpath
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Optional
from urllib.parse import unquote, urlparse

from ..config import SPREADSHEET_EXTENSIONS, DATABASE_EXTENSIONS


class DocumentKind(str, Enum):
    SPREADSHEET = "spreadsheet"
    DATABASE = "database"

    @classmethod
    def from_name(cls, name: str) -> Optional["DocumentKind"]:
        """Classify a file name by extension. Returns None for anything else."""
        suffix = posixpath.splitext(name.lower())[1]
        if suffix in SPREADSHEET_EXTENSIONS:
            return cls.SPREADSHEET
        if suffix in DATABASE_EXTENSIONS:
            return cls.DATABASE
        return None


class LinkKind(str, Enum):
    WORKBOOK_LINK = "workbook_link"    # Cross-workbook formula link
    TABLE_LINK = "table_link"          # Linked table in a database


class HealthStatus(str, Enum):
    WORKING = "Working"
    BROKEN = "Broken"
    ERROR = "Error"


class RepairOutcome(str, Enum):
    NOT_ATTEMPTED = "NotAttempted"
    FIXED = "Fixed"
    FAILED_TO_FIX = "FailedToFix"


class MatchMethod(str, Enum):
    EXACT = "ExactMatch"
    FUZZY = "FuzzyMatch"
    NONE = "None"


class BatchStatus(str, Enum):
    PENDING = "Pending"
    RUNNING = "Running"
    COMPLETED = "Completed"
    FAILED = "Failed"


def bare_file_name(target: str) -> str:
    """
    Extract the file name from a stored link target.

    Handles plain and Windows paths, file: URIs, http(s) URLs (SharePoint
    links carry the name in the path, sometimes percent-encoded) and Access
    connect strings such as ";DATABASE=C:\\data\\backend.accdb".
    """
    value = target.strip()
    if ";" in value and "=" in value:
        for part in value.split(";"):
            key, _, val = part.partition("=")
            if key.strip().upper() == "DATABASE" and val:
                value = val.strip()
                break
    if "://" in value or value.lower().startswith("file:"):
        value = unquote(urlparse(value).path)
    value = value.rstrip("/\\")
    return ntpath.basename(value)


@dataclass(frozen=True)
class Document:
    """A unit of work. Never mutated after indexing."""
    path: str
    name: str
    kind: DocumentKind
    size: int = 0
    modified: float = 0.0

    @classmethod
    def from_path(cls, path: str | Path) -> "Document":
        p = Path(path)
        kind = DocumentKind.from_name(p.name)
        if kind is None:
            raise ValueError(f"Not a supported document: {p}")
        try:
            st = p.stat()
            size, modified = st.st_size, st.st_mtime
        except OSError:
            size, modified = 0, 0.0
        return cls(path=str(p), name=p.name, kind=kind, size=size, modified=modified)

    @property
    def is_remote(self) -> bool:
        return self.path.lower().startswith(("http://", "https://"))

    def to_dict(self) -> dict:
        return {
            "path": self.path,
            "name": self.name,
            "kind": self.kind.value,
            "size": self.size,
            "modified": self.modified,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Document":
        return cls(
            path=data["path"],
            name=data["name"],
            kind=DocumentKind(data["kind"]),
            size=data.get("size", 0),
            modified=data.get("modified", 0.0),
        )


@dataclass(frozen=True)
class Reference:
    """An external link stored inside exactly one document."""
    document: str                  # Owning document path
    target: str                    # Literal stored target
    kind: LinkKind
    key: str = ""                  # Position/name of the link inside the document

    @property
    def file_name(self) -> str:
        return bare_file_name(self.target)

    def with_target(self, target: str) -> "Reference":
        return Reference(document=self.document, target=target, kind=self.kind, key=self.key)


@dataclass(frozen=True)
class ScanResult:
    """
    Outcome for one reference after a scan pass.

    A single shape serves both document kinds; ``document_kind`` is the
    discriminant. Document-level failures carry no reference fields.
    """
    document: str
    document_kind: DocumentKind
    health: HealthStatus
    reference: Optional[str] = None
    reference_key: str = ""
    link_kind: Optional[LinkKind] = None
    repair: RepairOutcome = RepairOutcome.NOT_ATTEMPTED
    method: MatchMethod = MatchMethod.NONE
    new_target: Optional[str] = None
    score: Optional[float] = None
    elapsed_seconds: float = 0.0
    error: Optional[str] = None

    @property
    def is_document_error(self) -> bool:
        return self.health == HealthStatus.ERROR and self.reference is None

    def to_dict(self) -> dict:
        return {
            "document": self.document,
            "document_kind": self.document_kind.value,
            "health": self.health.value,
            "reference": self.reference,
            "reference_key": self.reference_key,
            "link_kind": self.link_kind.value if self.link_kind else None,
            "repair": self.repair.value,
            "method": self.method.value,
            "new_target": self.new_target,
            "score": self.score,
            "elapsed_seconds": self.elapsed_seconds,
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ScanResult":
        link_kind = data.get("link_kind")
        return cls(
            document=data["document"],
            document_kind=DocumentKind(data["document_kind"]),
            health=HealthStatus(data["health"]),
            reference=data.get("reference"),
            reference_key=data.get("reference_key", ""),
            link_kind=LinkKind(link_kind) if link_kind else None,
            repair=RepairOutcome(data.get("repair", RepairOutcome.NOT_ATTEMPTED.value)),
            method=MatchMethod(data.get("method", MatchMethod.NONE.value)),
            new_target=data.get("new_target"),
            score=data.get("score"),
            elapsed_seconds=data.get("elapsed_seconds", 0.0),
            error=data.get("error"),
        )


@dataclass(frozen=True)
class DocumentReport:
    """Everything a worker hands back for one document. Returned by value."""
    document: Document
    results: tuple[ScanResult, ...] = ()
    saved: bool = False
    cleanups: int = 0
    backup_path: Optional[str] = None
    elapsed_seconds: float = 0.0

    @property
    def failed(self) -> bool:
        return any(r.health == HealthStatus.ERROR for r in self.results)

    def to_dict(self) -> dict:
        return {
            "document": self.document.to_dict(),
            "results": [r.to_dict() for r in self.results],
            "saved": self.saved,
            "cleanups": self.cleanups,
            "backup_path": self.backup_path,
            "elapsed_seconds": self.elapsed_seconds,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "DocumentReport":
        return cls(
            document=Document.from_dict(data["document"]),
            results=tuple(ScanResult.from_dict(r) for r in data.get("results", [])),
            saved=data.get("saved", False),
            cleanups=data.get("cleanups", 0),
            backup_path=data.get("backup_path"),
            elapsed_seconds=data.get("elapsed_seconds", 0.0),
        )


@dataclass
class BatchRunState:
    """Bookkeeping for one batch. Mutated only by the coordinator."""
    index: int
    documents: list[Document]
    completed: int = 0
    in_flight: int = 0
    failed: int = 0
    status: BatchStatus = BatchStatus.PENDING

    @property
    def size(self) -> int:
        return len(self.documents)

    def start(self):
        self.status = BatchStatus.RUNNING

    def mark_dispatched(self):
        self.in_flight += 1

    def mark_requeued(self):
        self.in_flight -= 1

    def mark_done(self, failed: bool = False):
        self.in_flight -= 1
        self.completed += 1
        if failed:
            self.failed += 1

    def finish(self, cancelled: bool = False):
        if self.in_flight:
            raise RuntimeError(f"Batch {self.index} finished with {self.in_flight} in flight")
        self.status = BatchStatus.FAILED if cancelled else BatchStatus.COMPLETED


@dataclass
class EngineStatistics:
    """Run-wide totals. Counters only ever increase."""
    files_processed: int = 0
    files_with_errors: int = 0
    files_saved: int = 0
    total_references: int = 0
    working_references: int = 0
    broken_references: int = 0
    reference_errors: int = 0
    references_fixed: int = 0
    references_failed: int = 0
    references_proposed: int = 0
    exact_matches: int = 0
    fuzzy_matches: int = 0
    resource_cleanups: int = 0
    memory_reclaims: int = 0
    batches_completed: int = 0
    memory_samples_mb: list[float] = field(default_factory=list)

    @property
    def still_broken(self) -> int:
        return self.broken_references - self.references_fixed

    @property
    def success_rate(self) -> float:
        """Fixed share of broken references, in percent."""
        if self.broken_references == 0:
            return 100.0
        return round(100.0 * self.references_fixed / self.broken_references, 1)

    @property
    def peak_memory_mb(self) -> float:
        return max(self.memory_samples_mb, default=0.0)

    def to_dict(self) -> dict[str, Any]:
        return {
            "files_processed": self.files_processed,
            "files_with_errors": self.files_with_errors,
            "files_saved": self.files_saved,
            "total_references": self.total_references,
            "working_references": self.working_references,
            "broken_references": self.broken_references,
            "reference_errors": self.reference_errors,
            "references_fixed": self.references_fixed,
            "references_failed": self.references_failed,
            "references_proposed": self.references_proposed,
            "still_broken": self.still_broken,
            "exact_matches": self.exact_matches,
            "fuzzy_matches": self.fuzzy_matches,
            "success_rate": self.success_rate,
            "resource_cleanups": self.resource_cleanups,
            "memory_reclaims": self.memory_reclaims,
            "batches_completed": self.batches_completed,
            "peak_memory_mb": round(self.peak_memory_mb, 1),
        }
