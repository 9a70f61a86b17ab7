"""
Access editor — linked tables in .accdb/.mdb databases, driven through COM
automation of Access.Application (Windows only, pywin32).

Acquisition order is COM apartment → Access instance → open database; the
handle releases them in reverse. A leaked Access instance stays alive as
MSACCESS.EXE, so every step registers its own releaser.
"""

from __future__ import annotations

import logging
import sys

from ..engine.models import DocumentKind, LinkKind, Reference, bare_file_name
from ..errors import ThrottledError, TransientInfrastructureError
from .base import DocumentEditor, ResourceHandle

logger = logging.getLogger("m365_link_repair.editors.access")

# HRESULTs Access/COM return while the server is busy
_RPC_E_CALL_REJECTED = -2147418111
_RPC_E_SERVERCALL_RETRYLATER = -2147417846
_CO_E_SERVER_EXEC_FAILURE = -2146959355

_DB_ATTACHED_TABLE = 1073741824    # dbAttachedTable
_DB_ATTACHED_ODBC = 536870912      # dbAttachedODBC


def _replace_connect_path(connect: str, new_path: str) -> str:
    parts = connect.split(";")
    for i, part in enumerate(parts):
        key, _, _ = part.partition("=")
        if key.strip().upper() == "DATABASE":
            parts[i] = f"DATABASE={new_path}"
            return ";".join(parts)
    return f"{connect.rstrip(';')};DATABASE={new_path}"


class AccessEditor(DocumentEditor):
    kind = DocumentKind.DATABASE
    name = "access-com"
    persists_each_rewrite = True      # RefreshLink commits the link

    def _acquire(self, handle: ResourceHandle):
        if sys.platform != "win32":
            raise RuntimeError("Access databases can only be edited on Windows")
        import pythoncom  # pylint: disable=import-outside-toplevel
        import pywintypes  # pylint: disable=import-outside-toplevel
        import win32com.client  # pylint: disable=import-outside-toplevel

        pythoncom.CoInitialize()
        handle.push("com", pythoncom, pythoncom.CoUninitialize)

        try:
            app = win32com.client.DispatchEx("Access.Application")
        except pywintypes.com_error as e:
            raise self._translate(e) from e
        app.Visible = False
        handle.push("application", app, lambda: self._quit(app))

        try:
            app.OpenCurrentDatabase(handle.document.path, False)
        except pywintypes.com_error as e:
            raise self._translate(e) from e
        handle.push("database", app.CurrentDb(), app.CloseCurrentDatabase)
        handle.objects["com_error"] = pywintypes.com_error

    @staticmethod
    def _quit(app):
        app.Quit(2)   # acQuitSaveNone; links are persisted by RefreshLink

    @staticmethod
    def _translate(error) -> Exception:
        hresult = error.args[0] if error.args else None
        if hresult in (_RPC_E_CALL_REJECTED, _RPC_E_SERVERCALL_RETRYLATER):
            return ThrottledError(f"Access is busy: {error}")
        if hresult == _CO_E_SERVER_EXEC_FAILURE:
            return TransientInfrastructureError(f"Access failed to start: {error}")
        return error

    def _tabledef(self, handle: ResourceHandle, name: str):
        db = handle.get("database")
        db.TableDefs.Refresh()
        return db.TableDefs(name)

    def enumerate_references(self, handle: ResourceHandle) -> list[Reference]:
        db = handle.get("database")
        refs = []
        for td in db.TableDefs:
            connect = td.Connect or ""
            if not connect or td.Attributes & _DB_ATTACHED_ODBC:
                continue
            if not td.Attributes & _DB_ATTACHED_TABLE:
                continue
            refs.append(Reference(
                document=handle.document.path,
                target=connect,
                kind=LinkKind.TABLE_LINK,
                key=td.Name,
            ))
        return refs

    def check_health(self, handle: ResourceHandle, reference: Reference) -> bool:
        """Open the linked table and read its cardinality."""
        db = handle.get("database")
        com_error = handle.get("com_error")
        try:
            rs = db.OpenRecordset(reference.key)
        except com_error as e:
            logger.debug(f"Linked table {reference.key} unreachable: {e}")
            return False
        try:
            if not rs.EOF:
                rs.MoveLast()
            _ = rs.RecordCount
            return True
        except com_error:
            return False
        finally:
            rs.Close()

    def current_target(self, handle: ResourceHandle, reference: Reference) -> str:
        return self._tabledef(handle, reference.key).Connect

    def rewrite(self, handle: ResourceHandle, reference: Reference, new_target: str):
        """
        Point the table at ``new_target``. Accepts either a full connect string
        (used to restore the original) or a bare database path.
        """
        td = self._tabledef(handle, reference.key)
        if new_target.lstrip().startswith(";") or "DATABASE=" in new_target.upper():
            connect = new_target
        else:
            connect = _replace_connect_path(td.Connect, new_target)
        td.Connect = connect
        try:
            td.RefreshLink()
        except handle.get("com_error") as e:
            # Access keeps the new Connect even when RefreshLink fails
            logger.debug(f"RefreshLink failed for {reference.key} -> {bare_file_name(connect)}: {e}")
        handle.dirty = True

    def save(self, handle: ResourceHandle):
        # RefreshLink persists each link; nothing is pending at document level
        handle.dirty = False
