"""
Worker side of the pool — processes one document per task.

In process mode the WorkerContext is shipped once per worker through the
executor initializer; each task then only carries the Document.
"""

from __future__ import annotations

import gc
import logging
import logging.handlers
import signal
import time
from dataclasses import dataclass, field
from typing import Callable, Optional

from ..config import MatchingConfig, RetryConfig
from ..editors import default_editor_factory
from ..safety.guardian import RepairGuardian
from .index import CandidatePool
from .models import Document, DocumentReport
from .scanner import error_report, scan_document

logger = logging.getLogger("m365_link_repair.engine.worker")


@dataclass(frozen=True)
class WorkerContext:
    """Read-only inputs every worker needs. Must stay picklable."""
    pool: CandidatePool
    matching: MatchingConfig = field(default_factory=MatchingConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    dry_run: bool = False
    backups_enabled: bool = True
    backup_dir: Optional[str] = None
    editor_factory: Callable = default_editor_factory
    reclaim_after_document: bool = True


_context: Optional[WorkerContext] = None


def init_worker(context: WorkerContext, log_queue=None, log_level: int = logging.INFO):
    """
    Executor initializer for worker processes.

    A spawned worker starts with no logging handlers; when ``log_queue`` is
    given every record is forwarded to the dispatcher, which writes it to
    the console and the run log.
    """
    global _context
    _context = context
    if log_queue is not None:
        root = logging.getLogger()
        for handler in list(root.handlers):
            root.removeHandler(handler)
        root.addHandler(logging.handlers.QueueHandler(log_queue))
        root.setLevel(log_level)
    # Ctrl+C is handled by the dispatcher; workers finish their current document
    signal.signal(signal.SIGINT, signal.SIG_IGN)


def process_document(document: Document, context: Optional[WorkerContext] = None) -> DocumentReport:
    """Scan and repair ``document``. Never raises."""
    ctx = context or _context
    if ctx is None:
        raise RuntimeError("Worker context not initialised")

    started = time.perf_counter()
    try:
        editor = ctx.editor_factory(document.kind, ctx.pool)
        guardian = RepairGuardian(
            dry_run=ctx.dry_run,
            backup_dir=ctx.backup_dir,
            backups_enabled=ctx.backups_enabled,
        )
        report = scan_document(document, editor, ctx.pool, ctx.matching, guardian, ctx.retry)
    except Exception as e:
        logger.exception(f"Worker failed on {document.path}")
        report = error_report(document, e, time.perf_counter() - started)
    finally:
        editor = None
        if ctx.reclaim_after_document:
            gc.collect()
    return report
