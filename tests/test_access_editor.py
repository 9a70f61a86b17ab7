from __future__ import annotations

import pytest

from fakes import make_doc

from m365_link_repair.editors import access
from m365_link_repair.editors.access import AccessEditor, _replace_connect_path
from m365_link_repair.editors.base import ResourceHandle
from m365_link_repair.engine.models import DocumentKind, LinkKind, Reference
from m365_link_repair.errors import ThrottledError, TransientInfrastructureError

BACKEND = ";DATABASE=\\\\fs01\\data\\Backend.accdb"


class FakeComError(Exception):
    pass


class FakeTableDef:
    def __init__(self, name, connect="", attributes=0, refresh_fails=False):
        self.Name = name
        self.Connect = connect
        self.Attributes = attributes
        self.refresh_fails = refresh_fails
        self.refreshed = 0

    def RefreshLink(self):
        self.refreshed += 1
        if self.refresh_fails:
            raise FakeComError(-2146825797, "could not find file")


class FakeTableDefs:
    def __init__(self, tabledefs):
        self._tabledefs = {td.Name: td for td in tabledefs}
        self.refreshes = 0

    def __iter__(self):
        return iter(self._tabledefs.values())

    def __call__(self, name):
        return self._tabledefs[name]

    def Refresh(self):
        self.refreshes += 1


class FakeRecordset:
    def __init__(self, eof=False, fail_move=False):
        self.EOF = eof
        self.RecordCount = 3
        self.fail_move = fail_move
        self.closed = False

    def MoveLast(self):
        if self.fail_move:
            raise FakeComError(-2147467259, "network path lost")

    def Close(self):
        self.closed = True


class FakeDatabase:
    def __init__(self, tabledefs, recordsets=None):
        self.TableDefs = FakeTableDefs(tabledefs)
        self.recordsets = recordsets or {}

    def OpenRecordset(self, name):
        rs = self.recordsets.get(name)
        if rs is None:
            raise FakeComError(-2146825797, f"cannot open {name}")
        return rs


def _handle(db: FakeDatabase) -> ResourceHandle:
    handle = ResourceHandle(make_doc("D:/Apps/Front.accdb", DocumentKind.DATABASE))
    handle.push("database", db)
    handle.objects["com_error"] = FakeComError
    return handle


@pytest.mark.parametrize("connect, expected", [
    (";DATABASE=C:\\old\\Backend.accdb", ";DATABASE=D:\\new\\Backend.accdb"),
    ("MS Access;PWD=x;database=C:\\old\\Backend.accdb", "MS Access;PWD=x;DATABASE=D:\\new\\Backend.accdb"),
    ("MS Access;PWD=x;", "MS Access;PWD=x;DATABASE=D:\\new\\Backend.accdb"),
])
def test_replace_connect_path(connect: str, expected: str) -> None:
    assert _replace_connect_path(connect, "D:\\new\\Backend.accdb") == expected


@pytest.mark.parametrize("hresult, expected", [
    (-2147418111, ThrottledError),
    (-2147417846, ThrottledError),
    (-2146959355, TransientInfrastructureError),
])
def test_busy_access_errors_are_retryable(hresult: int, expected: type) -> None:
    assert isinstance(AccessEditor._translate(FakeComError(hresult, "busy")), expected)


def test_other_com_errors_pass_through() -> None:
    error = FakeComError(-2147352567, "exception occurred")

    assert AccessEditor._translate(error) is error


def test_only_attached_access_tables_are_references() -> None:
    db = FakeDatabase([
        FakeTableDef("Customers", BACKEND, access._DB_ATTACHED_TABLE),
        FakeTableDef("Orders", "ODBC;DSN=Sales", access._DB_ATTACHED_ODBC),
        FakeTableDef("Local", "", 0),
        FakeTableDef("MSysObjects", "", -2147483646),
    ])

    refs = AccessEditor().enumerate_references(_handle(db))

    assert [(r.key, r.target, r.kind) for r in refs] == [("Customers", BACKEND, LinkKind.TABLE_LINK)]
    assert refs[0].file_name == "Backend.accdb"


def test_health_check_reads_the_linked_table() -> None:
    good = FakeRecordset()
    flaky = FakeRecordset(fail_move=True)
    db = FakeDatabase([], recordsets={"Customers": good, "Orders": flaky, "Empty": FakeRecordset(eof=True)})
    editor = AccessEditor()
    handle = _handle(db)

    def ref(name):
        return Reference(document=handle.document.path, target=BACKEND,
                         kind=LinkKind.TABLE_LINK, key=name)

    assert editor.check_health(handle, ref("Customers"))
    assert editor.check_health(handle, ref("Empty"))
    assert not editor.check_health(handle, ref("Orders"))
    assert not editor.check_health(handle, ref("Missing"))
    assert good.closed and flaky.closed


def test_rewrite_with_a_path_keeps_the_connect_options() -> None:
    td = FakeTableDef("Customers", "MS Access;PWD=x;DATABASE=C:\\old\\Backend.accdb", access._DB_ATTACHED_TABLE)
    editor = AccessEditor()
    handle = _handle(FakeDatabase([td]))
    (reference,) = editor.enumerate_references(handle)

    editor.rewrite(handle, reference, "E:\\Archive\\Backend.accdb")

    assert td.Connect == "MS Access;PWD=x;DATABASE=E:\\Archive\\Backend.accdb"
    assert td.refreshed == 1
    assert handle.dirty
    assert editor.current_target(handle, reference) == td.Connect


def test_rewrite_with_a_connect_string_restores_it_verbatim() -> None:
    td = FakeTableDef("Customers", ";DATABASE=E:\\Archive\\Backend.accdb", access._DB_ATTACHED_TABLE,
                      refresh_fails=True)
    editor = AccessEditor()
    handle = _handle(FakeDatabase([td]))
    (reference,) = editor.enumerate_references(handle)

    editor.rewrite(handle, reference, BACKEND)

    assert td.Connect == BACKEND
    assert td.refreshed == 1


def test_each_rewrite_is_committed_so_save_is_a_no_op() -> None:
    editor = AccessEditor()
    handle = _handle(FakeDatabase([]))
    handle.dirty = True

    editor.save(handle)

    assert editor.persists_each_rewrite
    assert not handle.dirty


def test_opening_off_windows_fails(monkeypatch) -> None:
    monkeypatch.setattr(access.sys, "platform", "linux")
    editor = AccessEditor()

    with pytest.raises(RuntimeError, match="only be edited on Windows"):
        editor.open(make_doc("D:/Apps/Front.accdb", DocumentKind.DATABASE))
