"""
SQLite-backed resumability record.
Stores the reports of every completed batch so an interrupted run can skip
them and still report on the whole corpus.
"""

from __future__ import annotations

import hashlib
import json
import logging
import sqlite3
import time
from pathlib import Path
from typing import Iterable, Optional

from ..engine.models import Document, DocumentReport

logger = logging.getLogger("m365_link_repair.cache")


def run_key(scan_root: str, candidate_roots: Iterable[str], kinds: Iterable[str],
            batch_size: int, dry_run: bool = False, matching: Optional[dict] = None,
            remote: str = "") -> str:
    """
    Identify a run by the inputs that decide its batch layout and its outcomes.

    A dry run and a repairing run never share a record, and neither do runs
    with different matching settings or remote candidates.
    """
    material = json.dumps(
        {
            "scan_root": str(scan_root),
            "candidate_roots": [str(r) for r in candidate_roots],
            "kinds": sorted(kinds),
            "batch_size": batch_size,
            "dry_run": bool(dry_run),
            "matching": matching or {},
            "remote": remote,
        },
        sort_keys=True,
    )
    return hashlib.sha1(material.encode("utf-8")).hexdigest()


def batch_digest(documents: Iterable[Document]) -> str:
    """Fingerprint of a batch's membership; a changed corpus invalidates the record."""
    h = hashlib.sha1()
    for doc in documents:
        h.update(doc.path.encode("utf-8"))
        h.update(b"\0")
    return h.hexdigest()


class ResumeStore:
    """
    Persistent run/batch record backed by SQLite.
    Features:
      - One row per run key, one row per completed batch
      - Batch rows carry the serialized DocumentReports
      - Connection-per-call; only the dispatcher writes
    """

    def __init__(self, state_dir: str | Path):
        self.state_dir = Path(state_dir)
        self.state_dir.mkdir(parents=True, exist_ok=True)
        self.db_path = self.state_dir / "resume.db"
        self._init_db()

    def _init_db(self):
        """Initialize the resume database schema."""
        with sqlite3.connect(str(self.db_path)) as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS runs (
                    run_key TEXT PRIMARY KEY,
                    target TEXT NOT NULL,
                    started_at REAL NOT NULL,
                    updated_at REAL NOT NULL,
                    metadata TEXT
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS batches (
                    run_key TEXT NOT NULL,
                    batch_index INTEGER NOT NULL,
                    digest TEXT NOT NULL,
                    completed_at REAL NOT NULL,
                    document_count INTEGER DEFAULT 0,
                    reports TEXT NOT NULL,
                    PRIMARY KEY (run_key, batch_index)
                )
            """)
            conn.commit()

    def start_run(self, key: str, target: str, metadata: Optional[dict] = None) -> bool:
        """Register a run. Returns True when an earlier record for it exists."""
        with sqlite3.connect(str(self.db_path)) as conn:
            existing = conn.execute(
                "SELECT run_key FROM runs WHERE run_key = ?", (key,)
            ).fetchone()
            now = time.time()
            if existing:
                conn.execute("UPDATE runs SET updated_at = ? WHERE run_key = ?", (now, key))
            else:
                conn.execute(
                    """
                    INSERT INTO runs (run_key, target, started_at, updated_at, metadata)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (key, target, now, now, json.dumps(metadata or {})),
                )
            conn.commit()
        if existing:
            logger.info(f"Resuming interrupted run for {target}")
        return existing is not None

    def completed_batches(self, key: str) -> dict[int, str]:
        """Completed batch index → membership digest."""
        with sqlite3.connect(str(self.db_path)) as conn:
            rows = conn.execute(
                "SELECT batch_index, digest FROM batches WHERE run_key = ?", (key,)
            ).fetchall()
        return {r[0]: r[1] for r in rows}

    def load_batch(self, key: str, batch_index: int) -> list[DocumentReport]:
        with sqlite3.connect(str(self.db_path)) as conn:
            row = conn.execute(
                "SELECT reports FROM batches WHERE run_key = ? AND batch_index = ?",
                (key, batch_index),
            ).fetchone()
        if row is None:
            return []
        return [DocumentReport.from_dict(d) for d in json.loads(row[0])]

    def load_reports(self, key: str) -> list[DocumentReport]:
        """Every stored report of a run, in batch order."""
        with sqlite3.connect(str(self.db_path)) as conn:
            rows = conn.execute(
                "SELECT reports FROM batches WHERE run_key = ? ORDER BY batch_index",
                (key,),
            ).fetchall()
        reports = []
        for (data,) in rows:
            reports.extend(DocumentReport.from_dict(d) for d in json.loads(data))
        return reports

    def record_batch(self, key: str, batch_index: int, digest: str,
                     reports: list[DocumentReport]):
        """Persist a fully drained batch."""
        data = json.dumps([r.to_dict() for r in reports], default=str)
        with sqlite3.connect(str(self.db_path)) as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO batches
                    (run_key, batch_index, digest, completed_at, document_count, reports)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (key, batch_index, digest, time.time(), len(reports), data),
            )
            conn.execute("UPDATE runs SET updated_at = ? WHERE run_key = ?", (time.time(), key))
            conn.commit()
        logger.debug(f"Recorded batch {batch_index} ({len(reports)} documents)")

    def discard_batch(self, key: str, batch_index: int):
        with sqlite3.connect(str(self.db_path)) as conn:
            conn.execute(
                "DELETE FROM batches WHERE run_key = ? AND batch_index = ?", (key, batch_index)
            )
            conn.commit()

    def clear(self, key: str):
        """Forget a run once it has completed cleanly."""
        with sqlite3.connect(str(self.db_path)) as conn:
            conn.execute("DELETE FROM batches WHERE run_key = ?", (key,))
            conn.execute("DELETE FROM runs WHERE run_key = ?", (key,))
            conn.commit()
        logger.info("Resume record cleared.")

    def list_runs(self) -> list[dict]:
        """Runs with an outstanding resume record."""
        with sqlite3.connect(str(self.db_path)) as conn:
            rows = conn.execute(
                """
                SELECT r.run_key, r.target, r.started_at, r.updated_at,
                       (SELECT COUNT(*) FROM batches b WHERE b.run_key = r.run_key)
                FROM runs r ORDER BY r.updated_at DESC
                """
            ).fetchall()
        return [
            {
                "run_key": r[0],
                "target": r[1],
                "started_at": r[2],
                "updated_at": r[3],
                "completed_batches": r[4],
            }
            for r in rows
        ]
