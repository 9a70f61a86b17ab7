"""
Base document source — Abstract interface for everything that lists
documents, either to scan or to offer as repair candidates.
"""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from typing import Iterable, Optional

from ..engine.models import Document, DocumentKind

logger = logging.getLogger("m365_link_repair.sources")

# Office lock files and the engine's own in-flight save files
IGNORED_PREFIXES = ("~$", ".~lr_")


class DocumentSource(ABC):
    """
    Lists supported documents under a root.

    Subclasses implement ``_list``; ``list`` adds timing, kind filtering
    and a stable ordering by path.
    """

    name: str = "base"

    def __init__(self, kinds: Iterable[str | DocumentKind] = ("spreadsheet", "database")):
        self.kinds = {DocumentKind(k) for k in kinds}
        self.skipped: list[str] = []

    def accepts(self, file_name: str) -> Optional[DocumentKind]:
        """The document kind for ``file_name`` if this source should list it."""
        if file_name.startswith(IGNORED_PREFIXES):
            return None
        kind = DocumentKind.from_name(file_name)
        return kind if kind in self.kinds else None

    async def list(self, root: str) -> list[Document]:
        started = time.monotonic()
        logger.info(f"[{self.name}] Listing documents under {root}...")
        documents = sorted(await self._list(root), key=lambda d: d.path)
        logger.info(
            f"[{self.name}] {len(documents)} documents in {time.monotonic() - started:.2f}s"
            + (f", {len(self.skipped)} locations skipped" if self.skipped else "")
        )
        return documents

    @abstractmethod
    async def _list(self, root: str) -> list[Document]:
        raise NotImplementedError
