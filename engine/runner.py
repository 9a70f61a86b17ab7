"""
Run orchestration — sources → candidate pool → coordinator → aggregated
RunReport. Only SetupError aborts a run; it still yields a report built
from whatever an interrupted earlier run left in the resume record.
"""

from __future__ import annotations

import logging
import os
import uuid
from typing import Awaitable, Callable, Optional

import httpx

from ..auth.authenticator import AuthenticationError, Authenticator
from ..cache.store import ResumeStore, run_key
from ..config import EngineConfig
from ..editors import default_editor_factory
from ..errors import SetupError
from ..graph.client import GraphAPIError, GraphClient
from ..reporting.progress import ProgressSink
from ..safety.guardian import RepairGuardian, SafetyViolation
from ..sources import GraphDriveSource, LocalDirectorySource
from .aggregator import ResultAggregator, RunReport
from .coordinator import CancellationToken, WorkerPoolCoordinator
from .guard import MemoryMonitor
from .index import CandidatePool, build_index
from .models import Document
from .worker import WorkerContext, process_document

logger = logging.getLogger("m365_link_repair.engine")


def _same_dir(a: str, b: str) -> bool:
    return os.path.normcase(os.path.abspath(a)) == os.path.normcase(os.path.abspath(b))


class LinkRepairEngine:
    """One configured run of the engine."""

    def __init__(
        self,
        config: EngineConfig,
        progress: Optional[ProgressSink] = None,
        cancel_token: Optional[CancellationToken] = None,
        editor_factory: Callable = default_editor_factory,
        worker_fn: Callable = process_document,
        token_provider: Optional[Callable[[], Awaitable[str]]] = None,
        graph_transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.config = config
        self.progress = progress or ProgressSink()
        self.cancel_token = cancel_token or CancellationToken()
        self.editor_factory = editor_factory
        self.worker_fn = worker_fn
        self.token_provider = token_provider
        self.graph_transport = graph_transport
        self.run_id = f"{config.output.timestamp}_{uuid.uuid4().hex[:8]}"
        # Run-level audit: remote request checks here, document backups folded in at the end
        self.guardian = RepairGuardian(dry_run=config.repair.dry_run)
        self.pool: Optional[CandidatePool] = None
        self.skipped_locations: list[str] = []

    @property
    def run_key(self) -> str:
        src = self.config.source
        matching = self.config.matching
        return run_key(
            src.scan_root,
            src.effective_candidate_roots(),
            src.kinds,
            self.config.pool.batch_size,
            dry_run=self.config.repair.dry_run,
            matching={
                "fuzzy_enabled": matching.fuzzy_enabled,
                "threshold": matching.threshold,
                "metric": matching.metric,
            },
            remote="|".join(filter(None, (src.remote.drive_id, src.remote.site, src.remote.folder))),
        )

    async def run(self) -> RunReport:
        cfg = self.config
        aggregator = ResultAggregator()
        store: Optional[ResumeStore] = None
        key = self.run_key

        try:
            cfg.validate()
            if cfg.resume.enabled:
                store = self._open_store()
                store.start_run(key, cfg.source.scan_root, {"run_id": self.run_id})
            scan_documents = await self._list_scan_documents()
            self.pool = await self._build_pool(scan_documents)
        except SetupError as e:
            logger.error(f"Setup failed: {e}")
            if store is not None:
                for report in store.load_reports(key):
                    aggregator.consume(report)
                if len(aggregator):
                    logger.info(f"Reporting {len(aggregator)} documents from the interrupted run")
            return aggregator.build_report(
                self.run_id,
                scan_root=cfg.source.scan_root,
                dry_run=cfg.repair.dry_run,
                fatal_error=str(e),
                metadata=self._metadata(key),
            )

        context = WorkerContext(
            pool=self.pool,
            matching=cfg.matching,
            retry=cfg.retry,
            dry_run=cfg.repair.dry_run,
            backups_enabled=cfg.repair.backup_enabled,
            backup_dir=str(cfg.backup_dir),
            editor_factory=self.editor_factory,
        )
        coordinator = WorkerPoolCoordinator(
            context,
            cfg.pool,
            aggregator,
            memory=MemoryMonitor(cfg.memory.ceiling_mb, cfg.memory.reclaim_every),
            progress=self.progress,
            cancel_token=self.cancel_token,
            resume_store=store,
            resume_key=key,
            worker_fn=self.worker_fn,
        )
        await coordinator.run(scan_documents)

        cancelled = self.cancel_token.cancelled and not coordinator.completed
        if store is not None and not cancelled:
            store.clear(key)

        self.guardian.adopt_backups(r.backup_path for r in aggregator.reports if r.backup_path)
        metadata = self._metadata(key)
        metadata.update({
            "documents_scanned": len(scan_documents),
            "batches": len(coordinator.batches),
            "backups_taken": len(self.guardian.backups),
        })
        return aggregator.build_report(
            self.run_id,
            scan_root=cfg.source.scan_root,
            dry_run=cfg.repair.dry_run,
            cancelled=cancelled,
            metadata=metadata,
        )

    def _open_store(self) -> ResumeStore:
        try:
            return ResumeStore(self.config.state_dir)
        except OSError as e:
            raise SetupError(f"Cannot open the resume record in {self.config.state_dir}: {e}") from e

    async def _list_scan_documents(self) -> list[Document]:
        src = self.config.source
        if src.scan_root.lower().startswith(("http://", "https://")):
            raise SetupError(
                "The scan root must be a local or synced folder; "
                "remote libraries can only supply repair candidates."
            )
        source = LocalDirectorySource(src.kinds, src.exclude_dirs)
        documents = await source.list(src.scan_root)
        self.skipped_locations.extend(source.skipped)
        return documents

    async def _build_pool(self, scan_documents: list[Document]) -> CandidatePool:
        src = self.config.source
        candidates: list[Document] = []
        for root in src.effective_candidate_roots():
            if _same_dir(root, src.scan_root):
                candidates.extend(scan_documents)
                continue
            source = LocalDirectorySource(src.kinds, src.exclude_dirs)
            candidates.extend(await source.list(root))
            self.skipped_locations.extend(source.skipped)
        candidates.extend(await self._list_remote_candidates())
        return build_index(candidates)

    async def _list_remote_candidates(self) -> list[Document]:
        remote = self.config.source.remote
        if not remote.enabled:
            return []

        try:
            if self.token_provider is not None:
                token = await self.token_provider()
            else:
                token = await Authenticator(self.config.auth).acquire_token()
        except AuthenticationError as e:
            raise SetupError(f"Authentication for the remote library failed: {e}") from e

        try:
            async with GraphClient(token, self.guardian, transport=self.graph_transport) as client:
                source = GraphDriveSource(client, remote, self.config.source.kinds)
                documents = await source.list(remote.folder)
                logger.debug(f"Graph listing stats: {client.get_stats()}")
        except (GraphAPIError, SafetyViolation, httpx.HTTPError) as e:
            raise SetupError(f"Remote library listing failed: {e}") from e
        self.skipped_locations.extend(source.skipped)
        return documents

    def _metadata(self, key: str) -> dict:
        cfg = self.config
        metadata = {
            "run_key": key,
            "candidate_roots": cfg.source.effective_candidate_roots(),
            "remote_source": cfg.source.remote.drive_id or cfg.source.remote.site or None,
            "kinds": list(cfg.source.kinds),
            "fuzzy_enabled": cfg.matching.fuzzy_enabled,
            "threshold": cfg.matching.threshold,
            "metric": cfg.matching.metric,
            "workers": cfg.pool.max_workers,
            "mode": cfg.pool.mode,
            "candidate_pool_names": len(self.pool) if self.pool is not None else 0,
            "duplicate_names": len(self.pool.duplicate_names) if self.pool is not None else 0,
            "skipped_locations": list(self.skipped_locations),
            "backup_dir": str(cfg.backup_dir) if cfg.repair.backup_enabled else None,
        }
        metadata.update(self.guardian.get_audit_record())
        return metadata
