"""
Resource lifecycle guard — scoped acquisition of editing resources and
memory reclamation between documents and batches.
"""

from __future__ import annotations

import gc
import logging
import os
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Iterator, Optional

import psutil

from ..editors.base import DocumentEditor, ResourceHandle
from .models import Document

logger = logging.getLogger("m365_link_repair.engine.guard")

_MB = 1024 * 1024


@dataclass
class ReleaseCounter:
    """Acquire/release tally for one worker."""
    acquired: int = 0
    released: int = 0
    release_errors: list[str] = field(default_factory=list)


@contextmanager
def scoped_document(
    editor: DocumentEditor,
    document: Document,
    counter: Optional[ReleaseCounter] = None,
    opener=None,
) -> Iterator[ResourceHandle]:
    """
    Open ``document`` and guarantee ``editor.close`` on every exit path.

    ``opener`` lets the caller wrap the acquisition (retries); it receives no
    arguments and must return the handle.
    """
    handle = opener() if opener else editor.open(document)
    if counter is not None:
        counter.acquired += 1
    try:
        yield handle
    finally:
        try:
            editor.close(handle)
        except Exception as e:
            logger.warning(f"Editor close failed for {document.path}: {type(e).__name__}: {e}")
        if counter is not None:
            counter.released += 1
            counter.release_errors.extend(handle.release_errors)


def reclaim() -> int:
    """Force a full garbage collection pass. Returns unreachable objects found."""
    return gc.collect()


class MemoryMonitor:
    """
    Samples resident memory of this process plus its worker children and
    decides when an early reclamation pass is needed.
    """

    def __init__(self, ceiling_mb: float, reclaim_every: int = 50, pid: Optional[int] = None):
        self.ceiling_mb = ceiling_mb
        self.reclaim_every = max(1, reclaim_every)
        self._process = psutil.Process(pid or os.getpid())
        self._since_last = 0

    def sample_mb(self) -> float:
        total = 0
        try:
            total += self._process.memory_info().rss
            for child in self._process.children(recursive=True):
                try:
                    total += child.memory_info().rss
                except (psutil.NoSuchProcess, psutil.AccessDenied):
                    pass
        except psutil.NoSuchProcess:
            pass
        return total / _MB

    def document_done(self) -> bool:
        """Count one harvested document. True every ``reclaim_every`` documents."""
        self._since_last += 1
        if self._since_last >= self.reclaim_every:
            self._since_last = 0
            return True
        return False

    def over_ceiling(self, sample_mb: float) -> bool:
        return self.ceiling_mb > 0 and sample_mb > self.ceiling_mb
