"""
Progress sinks — where the dispatcher reports run progress.

The dispatcher calls these from its own loop only, so implementations need
no locking.
"""

from __future__ import annotations

import logging
import time
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from ..engine.models import BatchRunState, DocumentReport

logger = logging.getLogger("m365_link_repair.progress")


class ProgressSink:
    """No-op sink; subclasses override what they care about."""

    def run_started(self, total_documents: int, total_batches: int):
        pass

    def batch_started(self, state: "BatchRunState", total_batches: int):
        pass

    def document_done(self, report: "DocumentReport", processed: int, total: int):
        pass

    def batch_skipped(self, state: "BatchRunState", total_batches: int):
        pass

    def batch_finished(self, state: "BatchRunState", memory_mb: float):
        pass

    def run_finished(self, processed: int, total: int, cancelled: bool):
        pass


class ConsoleProgress(ProgressSink):
    """Phase-banner style console output with a throttled document counter."""

    def __init__(self, every_seconds: float = 2.0):
        self.every_seconds = every_seconds
        self._last = 0.0
        self._started = time.monotonic()

    def run_started(self, total_documents: int, total_batches: int):
        self._started = time.monotonic()
        print(f"\n  Processing {total_documents} documents in {total_batches} batch(es)...\n")

    def batch_started(self, state, total_batches: int):
        if total_batches > 1:
            print(f"  ▶  Batch {state.index + 1}/{total_batches}: {state.size} documents")

    def batch_skipped(self, state, total_batches: int):
        print(f"  ⏭  Batch {state.index + 1}/{total_batches}: already completed, skipping")

    def document_done(self, report, processed: int, total: int):
        now = time.monotonic()
        if processed == total or now - self._last >= self.every_seconds:
            self._last = now
            pct = 100.0 * processed / total if total else 100.0
            print(f"     {processed}/{total} documents ({pct:5.1f}%)", flush=True)

    def batch_finished(self, state, memory_mb: float):
        marker = "✅" if state.failed == 0 else "⚠ "
        print(f"  {marker} Batch {state.index + 1} {state.status.value.lower()}: "
              f"{state.completed} documents, {state.failed} with errors, "
              f"memory {memory_mb:.0f} MB")

    def run_finished(self, processed: int, total: int, cancelled: bool):
        elapsed = time.monotonic() - self._started
        label = "cancelled" if cancelled else "finished"
        print(f"\n  Processing {label}: {processed}/{total} documents in {elapsed:.1f}s")


class LoggingProgress(ProgressSink):
    """Progress as log records, for unattended runs."""

    def __init__(self, every_documents: int = 100):
        self.every_documents = max(1, every_documents)

    def run_started(self, total_documents: int, total_batches: int):
        logger.info(f"Run started: {total_documents} documents, {total_batches} batches")

    def batch_started(self, state, total_batches: int):
        logger.info(f"Batch {state.index + 1}/{total_batches} started ({state.size} documents)")

    def batch_skipped(self, state, total_batches: int):
        logger.info(f"Batch {state.index + 1}/{total_batches} skipped (resumed)")

    def document_done(self, report, processed: int, total: int):
        if processed % self.every_documents == 0 or processed == total:
            logger.info(f"Progress: {processed}/{total} documents")

    def batch_finished(self, state, memory_mb: float):
        logger.info(
            f"Batch {state.index + 1} {state.status.value}: {state.completed} documents, "
            f"{state.failed} failed, memory {memory_mb:.0f} MB"
        )

    def run_finished(self, processed: int, total: int, cancelled: bool):
        logger.info(f"Run {'cancelled' if cancelled else 'finished'}: {processed}/{total} documents")
