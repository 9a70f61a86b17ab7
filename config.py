"""
Configuration module for the M365 Link Repair Engine.
Defines all tunable parameters, Graph endpoints, and operational settings.
"""

from __future__ import annotations

import os
import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional
from datetime import datetime, timezone

from .errors import SetupError


# ─── Remote Library Sign-in ─────────────────────────────────────────────────

@dataclass
class CertificateAuth:
    """App-only sign-in with a PFX certificate (raw or base64 text)."""
    tenant_id: str
    client_id: str
    certificate_path: str = ""
    certificate_password: str = ""  # Falls back to env var, then a prompt
    thumbprint: str = ""

@dataclass
class DelegatedAuth:
    """Device-code sign-in on behalf of the operator."""
    tenant_id: str
    client_id: str
    scopes: list[str] = field(default_factory=lambda: ["Files.Read.All", "Sites.Read.All"])

@dataclass
class AuthConfig:
    """Only consulted when a remote candidate library is configured."""
    mode: str = "certificate"  # "certificate" or "delegated"
    certificate: Optional[CertificateAuth] = None
    delegated: Optional[DelegatedAuth] = None

    @classmethod
    def from_dict(cls, data: dict) -> "AuthConfig":
        auth = cls(mode=data.get("mode", "certificate"))
        if "certificate" in data:
            auth.certificate = CertificateAuth(**data["certificate"])
        if "delegated" in data:
            auth.delegated = DelegatedAuth(**data["delegated"])
        return auth


# ─── Graph API Settings ─────────────────────────────────────────────────────

GRAPH_BASE_URL = "https://graph.microsoft.com"
GRAPH_API_VERSION = "v1.0"

# Rate limiting / throttling
MAX_CONCURRENT_REQUESTS = 4       # Parallel requests to Graph
MAX_RETRIES = 5                   # Retry count for throttled requests
INITIAL_BACKOFF_SECONDS = 2.0     # First retry delay
MAX_BACKOFF_SECONDS = 120.0       # Cap on exponential backoff
BACKOFF_MULTIPLIER = 2.0          # Exponential factor

# Pagination
DEFAULT_PAGE_SIZE = 999           # Maximum items per page ($top)
MAX_PAGES_PER_ENDPOINT = 10000    # Safety cap on pagination loops


# ─── Document Kinds ─────────────────────────────────────────────────────────

SPREADSHEET_EXTENSIONS = (".xlsx", ".xlsm", ".xltx", ".xltm")
DATABASE_EXTENSIONS = (".accdb", ".mdb")

DEFAULT_EXCLUDED_DIRS = [
    ".git",
    "__pycache__",
    "$RECYCLE.BIN",
    "System Volume Information",
    ".Trash",
]


# ─── Engine Tunables ────────────────────────────────────────────────────────

DEFAULT_FUZZY_THRESHOLD = 0.8
BATCH_THRESHOLD = 5000             # Corpora above this are split into batches
DEFAULT_BATCH_SIZE = 1000
POLL_INTERVAL_SECONDS = 0.25       # Dispatcher wait between harvests
MAX_TASKS_PER_CHILD = 25           # Recycle worker processes to contain leaks
MEMORY_CEILING_MB = 2048.0
RECLAIM_EVERY_DOCUMENTS = 50

# Worker-side retry of the editing capability
WORKER_MAX_ATTEMPTS = 4
TRANSIENT_BACKOFF_SECONDS = 1.0
THROTTLED_BACKOFF_SECONDS = 5.0
WORKER_MAX_BACKOFF_SECONDS = 60.0


def default_max_workers() -> int:
    """One worker per processing unit, capped so native editors don't starve the host."""
    return max(1, min(os.cpu_count() or 1, 8))


# ─── Source Settings ────────────────────────────────────────────────────────

@dataclass
class RemoteSourceConfig:
    """SharePoint / OneDrive library used as a pool of repair candidates."""
    drive_id: str = ""
    site: str = ""                 # e.g. "contoso.sharepoint.com:/sites/Finance"
    folder: str = ""               # Optional folder path inside the drive

    @property
    def enabled(self) -> bool:
        return bool(self.drive_id or self.site)


@dataclass
class SourceConfig:
    """Where documents are scanned and where repair candidates are searched."""
    scan_root: str = ""
    candidate_roots: list[str] = field(default_factory=list)
    kinds: list[str] = field(default_factory=lambda: ["spreadsheet", "database"])
    exclude_dirs: list[str] = field(default_factory=lambda: list(DEFAULT_EXCLUDED_DIRS))
    remote: RemoteSourceConfig = field(default_factory=RemoteSourceConfig)

    def effective_candidate_roots(self) -> list[str]:
        return self.candidate_roots or ([self.scan_root] if self.scan_root else [])


# ─── Matching / Repair Settings ─────────────────────────────────────────────

@dataclass
class MatchingConfig:
    """Controls exact and fuzzy candidate selection."""
    fuzzy_enabled: bool = True
    threshold: float = DEFAULT_FUZZY_THRESHOLD
    metric: str = "charset"        # "charset" or "ratio"


@dataclass
class RepairConfig:
    """Controls document mutation."""
    dry_run: bool = False
    backup_enabled: bool = True
    backup_dir: str = ""           # Defaults to <output>/backups


# ─── Worker Pool / Memory / Retry ───────────────────────────────────────────

@dataclass
class PoolConfig:
    """Bounded pool of isolated workers."""
    max_workers: int = field(default_factory=default_max_workers)
    mode: str = "process"          # "process" or "thread"
    batch_threshold: int = BATCH_THRESHOLD
    batch_size: int = DEFAULT_BATCH_SIZE
    poll_interval: float = POLL_INTERVAL_SECONDS
    max_tasks_per_child: int = MAX_TASKS_PER_CHILD


@dataclass
class MemoryConfig:
    """Reclamation cadence and ceiling for the dispatcher and its workers."""
    ceiling_mb: float = MEMORY_CEILING_MB
    reclaim_every: int = RECLAIM_EVERY_DOCUMENTS


@dataclass
class RetryConfig:
    """Bounded retries of transient editing-capability failures."""
    max_attempts: int = WORKER_MAX_ATTEMPTS
    transient_backoff: float = TRANSIENT_BACKOFF_SECONDS
    throttled_backoff: float = THROTTLED_BACKOFF_SECONDS
    max_backoff: float = WORKER_MAX_BACKOFF_SECONDS
    multiplier: float = BACKOFF_MULTIPLIER


# ─── Resume / Output ────────────────────────────────────────────────────────

@dataclass
class ResumeConfig:
    """Resumability record for interrupted runs."""
    enabled: bool = True
    state_dir: str = ""            # Defaults to a sibling of the run dirs


@dataclass
class OutputConfig:
    """Output directory and format settings."""
    base_dir: str = ""
    timestamp: str = ""
    formats: list[str] = field(default_factory=lambda: [
        "json", "csv", "markdown", "xlsx"
    ])

    def __post_init__(self):
        if not self.timestamp:
            self.timestamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
        if not self.base_dir:
            self.base_dir = os.path.join(
                os.getcwd(),
                f"link_repair_{self.timestamp}"
            )

    @property
    def run_dir(self) -> Path:
        return Path(self.base_dir)

    @property
    def reports_dir(self) -> Path:
        return self.run_dir / "reports"

    @property
    def logs_dir(self) -> Path:
        return self.run_dir / "logs"

    def create_directories(self):
        for d in [self.reports_dir, self.logs_dir]:
            d.mkdir(parents=True, exist_ok=True)


# ─── Master Configuration ───────────────────────────────────────────────────

_SECTIONS = ("source", "matching", "repair", "pool", "memory", "retry", "resume", "output")


@dataclass
class EngineConfig:
    """Top-level configuration for the entire engine."""
    auth: AuthConfig = field(default_factory=AuthConfig)
    source: SourceConfig = field(default_factory=SourceConfig)
    matching: MatchingConfig = field(default_factory=MatchingConfig)
    repair: RepairConfig = field(default_factory=RepairConfig)
    pool: PoolConfig = field(default_factory=PoolConfig)
    memory: MemoryConfig = field(default_factory=MemoryConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    resume: ResumeConfig = field(default_factory=ResumeConfig)
    output: OutputConfig = field(default_factory=OutputConfig)
    verbose: bool = False

    @property
    def backup_dir(self) -> Path:
        if self.repair.backup_dir:
            return Path(self.repair.backup_dir)
        return self.output.run_dir / "backups"

    @property
    def state_dir(self) -> Path:
        if self.resume.state_dir:
            return Path(self.resume.state_dir)
        # Beside, not inside, the per-run dir so a rerun finds the record
        return self.output.run_dir.parent / ".link_repair_state"

    @classmethod
    def from_file(cls, path: str | Path) -> "EngineConfig":
        """Load configuration from a JSON file."""
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
        return cls.from_dict(data)

    @classmethod
    def from_dict(cls, data: dict) -> "EngineConfig":
        config = cls()
        if "auth" in data:
            config.auth = AuthConfig.from_dict(data["auth"])
        for section in _SECTIONS:
            if section not in data:
                continue
            target = getattr(config, section)
            for k, v in data[section].items():
                if k == "remote" and section == "source":
                    target.remote = RemoteSourceConfig(**v)
                elif hasattr(target, k):
                    setattr(target, k, v)
        config.verbose = data.get("verbose", False)
        return config

    def validate(self) -> None:
        """Reject settings the engine cannot run with."""
        if not self.source.scan_root:
            raise SetupError("No scan root configured.")
        unknown = set(self.source.kinds) - {"spreadsheet", "database"}
        if unknown or not self.source.kinds:
            raise SetupError(f"Unsupported document kinds: {sorted(unknown) or '(none)'}")
        if not 0.0 < self.matching.threshold <= 1.0:
            raise SetupError(f"Fuzzy threshold must be in (0, 1], got {self.matching.threshold}")
        if self.matching.metric not in ("charset", "ratio"):
            raise SetupError(f"Unknown similarity metric: {self.matching.metric}")
        if self.pool.mode not in ("process", "thread"):
            raise SetupError(f"Unknown pool mode: {self.pool.mode}")
        if self.pool.max_workers < 1 or self.pool.batch_size < 1:
            raise SetupError("max_workers and batch_size must be positive.")
        if self.retry.max_attempts < 1:
            raise SetupError("retry.max_attempts must be at least 1.")


# ─── Required Graph API Permissions (Least Privilege, Read-Only) ─────────

REQUIRED_PERMISSIONS = {
    "Files.Read.All": "List documents in OneDrive and SharePoint libraries",
    "Sites.Read.All": "Resolve SharePoint sites and their default drives",
}
