"""Editors package — native editing capability per document kind."""

from __future__ import annotations

from ..engine.index import CandidatePool
from ..engine.models import DocumentKind
from .base import DocumentEditor, ResourceHandle
from .spreadsheet import SpreadsheetEditor
from .access import AccessEditor

ALL_EDITORS = {
    DocumentKind.SPREADSHEET: SpreadsheetEditor,
    DocumentKind.DATABASE: AccessEditor,
}


def default_editor_factory(kind: DocumentKind, pool: CandidatePool) -> DocumentEditor:
    """Build the editor for ``kind``. Module-level so worker processes can unpickle it."""
    return ALL_EDITORS[kind](known_locations=pool.known_locations)


__all__ = [
    "DocumentEditor",
    "ResourceHandle",
    "SpreadsheetEditor",
    "AccessEditor",
    "ALL_EDITORS",
    "default_editor_factory",
]
