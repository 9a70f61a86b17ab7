from __future__ import annotations

import asyncio
from pathlib import Path

import httpx
import pytest

from m365_link_repair.config import RemoteSourceConfig
from m365_link_repair.engine.models import DocumentKind
from m365_link_repair.errors import SetupError
from m365_link_repair.graph.client import GraphAPIError, GraphClient
from m365_link_repair.safety.guardian import RepairGuardian
from m365_link_repair.sources import GraphDriveSource, LocalDirectorySource

ROOT_CHILDREN = "/v1.0/drives/drv1/root/children"
SUB_CHILDREN = "/v1.0/drives/drv1/items/fold-1/children"
LOCKED_CHILDREN = "/v1.0/drives/drv1/items/fold-2/children"


def _touch(path: Path) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(b"x")
    return path


def test_local_source_lists_supported_documents(tmp_path: Path) -> None:
    _touch(tmp_path / "Budget.xlsx")
    _touch(tmp_path / "~$Budget.xlsx")
    _touch(tmp_path / ".~lr_abc.xlsx")
    _touch(tmp_path / "notes.txt")
    _touch(tmp_path / "backend.accdb")
    _touch(tmp_path / "sub" / "Macros.xlsm")
    _touch(tmp_path / ".git" / "Hidden.xlsx")
    _touch(tmp_path / "Archive" / "Old.xlsx")

    source = LocalDirectorySource(exclude_dirs=[".git", "archive"])
    docs = asyncio.run(source.list(str(tmp_path)))

    assert [d.name for d in docs] == ["Budget.xlsx", "backend.accdb", "Macros.xlsm"]
    assert docs[1].kind == DocumentKind.DATABASE
    assert docs == sorted(docs, key=lambda d: d.path)


def test_local_source_filters_kinds(tmp_path: Path) -> None:
    _touch(tmp_path / "Budget.xlsx")
    _touch(tmp_path / "backend.accdb")

    docs = asyncio.run(LocalDirectorySource(kinds=["database"]).list(str(tmp_path)))

    assert [d.name for d in docs] == ["backend.accdb"]


def test_local_source_missing_root(tmp_path: Path) -> None:
    with pytest.raises(SetupError):
        asyncio.run(LocalDirectorySource().list(str(tmp_path / "missing")))


def _item(item_id: str, name: str, folder: bool = False) -> dict:
    item = {
        "id": item_id,
        "name": name,
        "webUrl": f"https://contoso.sharepoint.com/sites/Fin/Shared%20Documents/{name}",
        "size": 10,
        "lastModifiedDateTime": "2024-05-01T10:00:00+00:00",
    }
    item["folder" if folder else "file"] = {}
    return item


class DriveHandler:
    """Serves a small drive: root (two pages) → one readable and one locked folder."""

    def __init__(self, throttle_first: bool = False):
        self.throttle_first = throttle_first
        self.requests: list[str] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        self.requests.append(path)
        assert request.method == "GET"
        if self.throttle_first:
            self.throttle_first = False
            return httpx.Response(429, headers={"Retry-After": "3"})

        if path.startswith("/v1.0/sites/contoso.sharepoint.com"):
            return httpx.Response(200, json={"id": "site-1"})
        if path == "/v1.0/sites/site-1/drive":
            return httpx.Response(200, json={"id": "drv1"})
        if path == ROOT_CHILDREN and request.url.params.get("page") == "2":
            return httpx.Response(200, json={"value": [_item("i2", "Budget.xlsx")]})
        if path == ROOT_CHILDREN:
            return httpx.Response(200, json={
                "value": [
                    _item("fold-1", "Reports", folder=True),
                    _item("fold-2", "Restricted", folder=True),
                    _item("i1", "Report2024.xlsx"),
                    _item("i0", "readme.docx"),
                ],
                "@odata.nextLink": "https://graph.microsoft.com/v1.0/drives/drv1/root/children?page=2",
            })
        if path == SUB_CHILDREN:
            return httpx.Response(200, json={"value": [_item("i3", "backend.accdb")]})
        if path == LOCKED_CHILDREN:
            return httpx.Response(403, json={"error": {"message": "Access denied"}})
        return httpx.Response(404, json={"error": {"message": "itemNotFound"}})


async def _list_remote(handler, remote: RemoteSourceConfig, sleeps=None):
    async def fake_sleep(seconds):
        if sleeps is not None:
            sleeps.append(seconds)

    client = GraphClient("token", RepairGuardian(dry_run=True),
                         transport=httpx.MockTransport(handler), sleep=fake_sleep)
    async with client:
        source = GraphDriveSource(client, remote)
        docs = await source.list(remote.folder)
    return source, docs, client


def test_graph_source_walks_drive_breadth_first() -> None:
    handler = DriveHandler()

    source, docs, _ = asyncio.run(_list_remote(handler, RemoteSourceConfig(drive_id="drv1")))

    assert sorted(d.name for d in docs) == ["Budget.xlsx", "Report2024.xlsx", "backend.accdb"]
    assert all(d.path.startswith("https://contoso.sharepoint.com/") for d in docs)
    assert source.skipped == ["drives/drv1/items/fold-2/children"]
    assert handler.requests.index(SUB_CHILDREN) > handler.requests.index(ROOT_CHILDREN)


def test_graph_source_resolves_site_library() -> None:
    remote = RemoteSourceConfig(site="contoso.sharepoint.com:/sites/Fin")

    _, docs, _ = asyncio.run(_list_remote(DriveHandler(), remote))

    assert len(docs) == 3


def test_graph_source_unreachable_root_is_setup_error() -> None:
    remote = RemoteSourceConfig(drive_id="nope")

    with pytest.raises(SetupError):
        asyncio.run(_list_remote(DriveHandler(), remote))


def test_graph_client_honours_retry_after() -> None:
    sleeps: list[float] = []

    _, docs, client = asyncio.run(
        _list_remote(DriveHandler(throttle_first=True), RemoteSourceConfig(drive_id="drv1"), sleeps)
    )

    assert sleeps == [3.0]
    assert len(docs) == 3
    assert client.get_stats()["throttle_events"] == 1


def test_graph_client_raises_on_server_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, json={"error": {"message": "boom"}})

    async def go():
        async with GraphClient("token", RepairGuardian(dry_run=True),
                               transport=httpx.MockTransport(handler)) as client:
            await client.get("drives/drv1")

    with pytest.raises(GraphAPIError) as info:
        asyncio.run(go())
    assert info.value.status_code == 500
