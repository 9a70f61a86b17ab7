"""
Local / UNC directory source — recursive walk of a file-system tree.
"""

from __future__ import annotations

import asyncio
import logging
import os
from typing import Iterable

from ..config import DEFAULT_EXCLUDED_DIRS
from ..engine.models import Document
from ..errors import SetupError
from .base import DocumentSource

logger = logging.getLogger("m365_link_repair.sources.local")


class LocalDirectorySource(DocumentSource):
    name = "local"

    def __init__(self, kinds=("spreadsheet", "database"),
                 exclude_dirs: Iterable[str] = DEFAULT_EXCLUDED_DIRS):
        super().__init__(kinds)
        self.exclude_dirs = {d.lower() for d in exclude_dirs}

    async def _list(self, root: str) -> list[Document]:
        if not os.path.isdir(root):
            raise SetupError(f"Directory not found or not accessible: {root}")
        return await asyncio.to_thread(self._walk, root)

    def _walk(self, root: str) -> list[Document]:
        documents = []
        for dirpath, dirnames, filenames in os.walk(root, onerror=self._on_error):
            dirnames[:] = sorted(d for d in dirnames if d.lower() not in self.exclude_dirs)
            for file_name in sorted(filenames):
                if self.accepts(file_name) is None:
                    continue
                documents.append(Document.from_path(os.path.join(dirpath, file_name)))
        return documents

    def _on_error(self, error: OSError):
        self.skipped.append(str(error.filename))
        logger.warning(f"Skipping unreadable directory {error.filename}: {error.strerror}")
