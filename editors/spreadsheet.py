"""
Spreadsheet editor — cross-workbook links in OOXML workbooks.

Each external link part (xl/externalLinks/externalLinkN.xml) carries one
relationship whose Target is the linked workbook. Rewriting that target is
the file-level equivalent of Excel's "Change Source".

openpyxl loads the workbook and reads the links. Saving never goes through
``Workbook.save``: only the relinked ``externalLinkN.xml.rels`` parts are
replaced and every other package entry is copied across unchanged, so
drawings, controls and anything else openpyxl does not model survive.
"""

from __future__ import annotations

import logging
import os
import tempfile
import zipfile
from pathlib import Path
from urllib.parse import unquote, urlparse

import openpyxl
from openpyxl.packaging.relationship import RelationshipList, get_dependents, get_rels_path
from openpyxl.packaging.workbook import WorkbookPackage
from openpyxl.xml.constants import ARC_ROOT_RELS, ARC_WORKBOOK, REL_NS
from openpyxl.xml.functions import fromstring, tostring

from ..engine.models import DocumentKind, LinkKind, Reference
from .base import DocumentEditor, ResourceHandle

logger = logging.getLogger("m365_link_repair.editors.spreadsheet")

_OOXML_SUFFIXES = (".xlsx", ".xlsm", ".xltx", ".xltm", ".xlsb")
_MACRO_SUFFIXES = (".xlsm", ".xltm")
_XML_DECLARATION = b'<?xml version="1.0" encoding="UTF-8" standalone="yes"?>\n'


def resolve_local_target(target: str, document_path: str) -> Path | None:
    """
    Map a stored link target to a local path. None for http(s) targets.

    Relative targets are resolved against the owning workbook's folder, as
    Excel does.
    """
    value = target.strip()
    lowered = value.lower()
    if lowered.startswith(("http://", "https://")):
        return None
    if lowered.startswith("file:"):
        parsed = urlparse(value)
        path = unquote(parsed.path)
        if parsed.netloc:
            path = f"//{parsed.netloc}{path}"
        elif len(path) > 2 and path[0] == "/" and path[2] == ":":
            path = path[1:]                      # /C:/dir/x.xlsx
        value = path
    p = Path(value)
    if not p.is_absolute() and not value.startswith(("\\\\", "//")):
        p = Path(document_path).parent / p
    return p


def probe_workbook(path: Path) -> bool:
    """Integrity probe: the target exists and looks like a workbook."""
    try:
        if not path.is_file():
            return False
        if path.suffix.lower() in _OOXML_SUFFIXES:
            return zipfile.is_zipfile(path)
        return path.stat().st_size > 0
    except OSError:
        return False


def external_link_rels(archive: zipfile.ZipFile) -> list[str]:
    """Rels part of every external link, in the order openpyxl loads the links."""
    office = next(get_dependents(archive, ARC_ROOT_RELS).find(f"{REL_NS}/officeDocument"), None)
    workbook_part = office.Target if office is not None else ARC_WORKBOOK

    package = WorkbookPackage.from_tree(fromstring(archive.read(workbook_part)))
    rels = get_dependents(archive, get_rels_path(workbook_part))
    return [get_rels_path(rels.get(ref.id).Target) for ref in package.externalReferences]


def relink_part(xml: bytes, new_target: str) -> bytes:
    """Point the link relationship in an ``externalLinkN.xml.rels`` part at ``new_target``."""
    rels = RelationshipList.from_tree(fromstring(xml))
    link = rels[0]
    link.Target = new_target
    link.TargetMode = "External"
    return _XML_DECLARATION + tostring(rels.to_tree())


class SpreadsheetEditor(DocumentEditor):
    kind = DocumentKind.SPREADSHEET
    name = "openpyxl"

    def _acquire(self, handle: ResourceHandle):
        path = handle.document.path
        keep_vba = Path(path).suffix.lower() in _MACRO_SUFFIXES
        wb = openpyxl.load_workbook(path, keep_links=True, keep_vba=keep_vba)
        handle.push("workbook", wb, wb.close)
        with zipfile.ZipFile(path) as archive:
            handle.push("link_parts", external_link_rels(archive))
        handle.push("relinked", {})

    def enumerate_references(self, handle: ResourceHandle) -> list[Reference]:
        wb = handle.get("workbook")
        refs = []
        for idx, link in enumerate(wb._external_links):
            if link.file_link is None:
                continue
            refs.append(Reference(
                document=handle.document.path,
                target=link.file_link.Target,
                kind=LinkKind.WORKBOOK_LINK,
                key=str(idx),
            ))
        return refs

    def check_health(self, handle: ResourceHandle, reference: Reference) -> bool:
        target = reference.target
        local = resolve_local_target(target, handle.document.path)
        if local is None:
            return target in self.known_locations
        return probe_workbook(local)

    def current_target(self, handle: ResourceHandle, reference: Reference) -> str:
        return self._link(handle, reference).file_link.Target

    def rewrite(self, handle: ResourceHandle, reference: Reference, new_target: str):
        link = self._link(handle, reference)
        link.file_link.Target = new_target
        link.file_link.TargetMode = "External"
        handle.get("relinked")[int(reference.key)] = new_target
        handle.dirty = True

    def save(self, handle: ResourceHandle):
        """Copy the package to a sibling temp file with the relinked parts replaced, then swap it in."""
        parts = handle.get("link_parts")
        replacements = {parts[idx]: target for idx, target in handle.get("relinked").items()}
        target = Path(handle.document.path)
        fd, tmp = tempfile.mkstemp(prefix=".~lr_", suffix=target.suffix, dir=str(target.parent))
        os.close(fd)
        try:
            with zipfile.ZipFile(target) as src, zipfile.ZipFile(tmp, "w") as dst:
                for info in src.infolist():
                    data = src.read(info)
                    if info.filename in replacements:
                        data = relink_part(data, replacements[info.filename])
                    dst.writestr(info, data)
            os.replace(tmp, target)
        except BaseException:
            try:
                os.unlink(tmp)
            except OSError:
                pass
            raise
        handle.get("relinked").clear()
        handle.dirty = False
        logger.debug(f"Saved {len(replacements)} relinked part(s) in {target}")

    def _link(self, handle: ResourceHandle, reference: Reference):
        wb = handle.get("workbook")
        return wb._external_links[int(reference.key)]
