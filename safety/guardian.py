"""
Repair Guardian — Enforces the engine's mutation rules.
Keeps all Graph traffic read-only, blocks document writes in dry-run mode,
and takes a uniquely named backup before a document is first modified.
"""

from __future__ import annotations

import logging
import re
import shutil
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

logger = logging.getLogger("m365_link_repair.safety")

# ─── Remote store is read-only ───────────────────────────────────────────────

READ_METHODS = frozenset({"GET", "HEAD", "OPTIONS"})

# Drive item actions that change content or state
MUTATING_ACTIONS = re.compile(
    r"/(content|createUploadSession|copy|checkin|checkout|restore|invite)$",
    re.IGNORECASE,
)


class SafetyViolation(Exception):
    """A write against the remote store was attempted."""


def backup_name(path: Path, stamp: Optional[str] = None) -> str:
    """``Budget.xlsx`` → ``Budget.20240101T120000Z_1a2b3c4d.bak.xlsx``."""
    stamp = stamp or datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
    return f"{path.stem}.{stamp}_{uuid.uuid4().hex[:8]}.bak{path.suffix}"


class RepairGuardian:
    """
    Validates outbound HTTP requests and local document mutations.
    Maintains an audit log of checks, blocked writes and backups taken.
    """

    def __init__(self, dry_run: bool = False, backup_dir: Optional[Path] = None,
                 backups_enabled: bool = True):
        self.dry_run = dry_run
        self.backup_dir = Path(backup_dir) if backup_dir else None
        self.backups_enabled = backups_enabled and backup_dir is not None
        self.violations: list[dict] = []
        self.backups: list[str] = []
        self.checks_performed: int = 0
        self.started_at: str = datetime.now(timezone.utc).isoformat()

    # ── Remote store ───────────────────────────────────────────────────────

    def validate_request(self, method: str, url: str) -> bool:
        """True for a read; anything else is recorded and raises SafetyViolation."""
        self.checks_performed += 1
        verb = method.upper()
        if verb in READ_METHODS:
            return True

        reason = "drive item action" if MUTATING_ACTIONS.search(url) else "write method"
        self._record_violation(verb, url, reason)
        raise SafetyViolation(f"Refused {reason} against the remote store: {verb} {url}")

    # ── Local documents ────────────────────────────────────────────────────

    def allow_mutation(self, path: str) -> bool:
        """False in dry-run mode; the caller proposes instead of writing."""
        self.checks_performed += 1
        return not self.dry_run

    def backup(self, path: str) -> Optional[str]:
        """
        Copy ``path`` into the backup folder under a name unique to this
        attempt. Returns the backup path, or None when backups are off.
        Backups are never removed by the engine.
        """
        if not self.backups_enabled or self.backup_dir is None:
            return None
        source = Path(path)
        self.backup_dir.mkdir(parents=True, exist_ok=True)
        destination = self.backup_dir / backup_name(source)
        shutil.copy2(source, destination)
        self.backups.append(str(destination))
        logger.info(f"Backup created: {source} -> {destination}")
        return str(destination)

    def adopt_backups(self, paths):
        """Record backups taken by per-document guardians in the workers."""
        self.backups.extend(paths)

    def _record_violation(self, method: str, url: str, reason: str):
        entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "method": method,
            "url": url,
            "reason": reason,
        }
        self.violations.append(entry)
        logger.critical(f"Blocked {reason}: {method} {url}")

    def get_audit_record(self) -> dict:
        return {
            "repair_guardian": {
                "dry_run": self.dry_run,
                "started_at": self.started_at,
                "checks_performed": self.checks_performed,
                "backups_taken": len(self.backups),
                "violations_detected": len(self.violations),
                "violations": self.violations,
                "status": "CLEAN" if not self.violations else "VIOLATIONS_DETECTED",
            }
        }
