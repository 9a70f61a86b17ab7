"""
SharePoint / OneDrive source — breadth-first walk of a drive through Graph.

Remote documents are offered as repair candidates only; their web URLs
become the new link targets.
"""

from __future__ import annotations

import logging
from collections import deque
from datetime import datetime
from typing import Iterable
from urllib.parse import quote

from ..config import RemoteSourceConfig
from ..engine.models import Document
from ..errors import SetupError
from ..graph.client import GraphAPIError, GraphClient
from .base import DocumentSource

logger = logging.getLogger("m365_link_repair.sources.graph")

ITEM_FIELDS = "id,name,size,webUrl,lastModifiedDateTime,folder,file"


def _timestamp(value: str) -> float:
    try:
        return datetime.fromisoformat(value).timestamp()
    except (TypeError, ValueError):
        return 0.0


class GraphDriveSource(DocumentSource):
    name = "graph"

    def __init__(self, graph: GraphClient, remote: RemoteSourceConfig,
                 kinds: Iterable[str] = ("spreadsheet", "database")):
        super().__init__(kinds)
        self.graph = graph
        self.remote = remote

    async def resolve_drive_id(self) -> str:
        """Configured drive id, or the default library of the configured site."""
        if self.remote.drive_id:
            return self.remote.drive_id
        if not self.remote.site:
            raise SetupError("Remote source needs a drive_id or a site.")

        try:
            site = await self.graph.get(f"sites/{self.remote.site}")
            drive = await self.graph.get(f"sites/{site['id']}/drive") if site.get("id") else {}
        except GraphAPIError as e:
            raise SetupError(f"SharePoint site not accessible: {self.remote.site} ({e})") from e
        if not drive.get("id"):
            raise SetupError(f"Site {self.remote.site} has no default document library")
        return drive["id"]

    async def _list(self, root: str) -> list[Document]:
        drive_id = await self.resolve_drive_id()
        folder = (root or self.remote.folder).strip("/")
        if folder:
            start = f"drives/{drive_id}/root:/{quote(folder)}:/children"
        else:
            start = f"drives/{drive_id}/root/children"

        documents = []
        queue = deque([start])
        while queue:
            endpoint = queue.popleft()
            try:
                async for item in self.graph.iter_items(
                    endpoint, params={"$select": ITEM_FIELDS}
                ):
                    if "folder" in item:
                        queue.append(f"drives/{drive_id}/items/{item['id']}/children")
                        continue
                    if "file" not in item or self.accepts(item.get("name", "")) is None:
                        continue
                    documents.append(Document(
                        path=item["webUrl"],
                        name=item["name"],
                        kind=self.accepts(item["name"]),
                        size=item.get("size", 0),
                        modified=_timestamp(item.get("lastModifiedDateTime", "")),
                    ))
            except GraphAPIError as e:
                if endpoint == start:
                    raise SetupError(f"Remote library not accessible: {e}") from e
                if e.status_code in (403, 404):
                    self.skipped.append(endpoint)
                    logger.warning(f"Skipping inaccessible folder {endpoint}: {e}")
                    continue
                raise
        return documents
