"""
Worker pool coordinator — the single dispatcher that feeds documents to a
bounded pool of isolated workers, harvests their reports and reclaims
memory between batches.

Large corpora are split into fixed-size batches processed strictly one
after another; each batch is fully drained (nothing in flight) and its
workers torn down before the next one starts.
"""

from __future__ import annotations

import asyncio
import logging
import logging.handlers
import multiprocessing
import threading
from collections import deque
from concurrent.futures import BrokenExecutor, Executor, ProcessPoolExecutor, ThreadPoolExecutor
from typing import Callable, Iterable, Optional

from ..cache.store import ResumeStore, batch_digest
from ..config import PoolConfig
from ..reporting.progress import ProgressSink
from .aggregator import ResultAggregator
from .guard import MemoryMonitor, reclaim
from .models import BatchRunState, BatchStatus, Document, DocumentReport
from .scanner import error_report
from .worker import WorkerContext, init_worker, process_document

logger = logging.getLogger("m365_link_repair.engine.coordinator")


class CancellationToken:
    """Cooperative cancellation, safe to trigger from a signal handler."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self):
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


class WorkerCrashed(Exception):
    """The worker process died while handling a document."""


def partition_documents(documents: Iterable[Document], batch_threshold: int,
                        batch_size: int) -> list[list[Document]]:
    """
    Sort by path and split into batches when the corpus exceeds
    ``batch_threshold``. A corpus at or under the threshold is one batch.
    """
    docs = sorted(documents, key=lambda d: d.path)
    if not docs:
        return []
    if len(docs) <= batch_threshold:
        return [docs]
    return [docs[i:i + batch_size] for i in range(0, len(docs), batch_size)]


class WorkerPoolCoordinator:
    """
    Owns the executor, the batch states and the aggregator feed.

    Only this object mutates batch state and the aggregator; workers just
    return DocumentReports by value.
    """

    def __init__(
        self,
        context: WorkerContext,
        pool_config: PoolConfig,
        aggregator: ResultAggregator,
        memory: Optional[MemoryMonitor] = None,
        progress: Optional[ProgressSink] = None,
        cancel_token: Optional[CancellationToken] = None,
        resume_store: Optional[ResumeStore] = None,
        resume_key: str = "",
        worker_fn: Callable[..., DocumentReport] = process_document,
        on_batch_event: Optional[Callable[[BatchRunState], None]] = None,
    ):
        self.context = context
        self.config = pool_config
        self.aggregator = aggregator
        self.memory = memory
        self.progress = progress or ProgressSink()
        self.cancel_token = cancel_token or CancellationToken()
        self.resume_store = resume_store
        self.resume_key = resume_key
        self.worker_fn = worker_fn
        self.on_batch_event = on_batch_event

        self.batches: list[BatchRunState] = []
        self.processed = 0
        self.total = 0
        self._executor: Optional[Executor] = None
        self._retired: list[Executor] = []
        self._pool_broken = False
        self._crash_retried: set[str] = set()
        self.executor_recycles = 0
        self._log_queue = None
        self._log_listener: Optional[logging.handlers.QueueListener] = None

    @property
    def cancelled(self) -> bool:
        return self.cancel_token.cancelled

    @property
    def completed(self) -> bool:
        return bool(self.batches) and all(
            b.status == BatchStatus.COMPLETED for b in self.batches
        )

    # ── Run ──────────────────────────────────────────────────────────────

    async def run(self, documents: Iterable[Document]) -> list[BatchRunState]:
        parts = partition_documents(documents, self.config.batch_threshold, self.config.batch_size)
        self.batches = [BatchRunState(index=i, documents=docs) for i, docs in enumerate(parts)]
        self.total = sum(b.size for b in self.batches)
        done = self.resume_store.completed_batches(self.resume_key) if self.resume_store else {}

        logger.info(
            f"Dispatching {self.total} documents in {len(self.batches)} batch(es) "
            f"to {self.config.max_workers} {self.config.mode} worker(s)"
        )
        self.progress.run_started(self.total, len(self.batches))

        self._start_log_forwarding()
        try:
            for state in self.batches:
                if self.cancelled:
                    logger.warning("Cancellation requested; no further batches will start.")
                    break

                digest = batch_digest(state.documents)
                if state.index in done:
                    if done[state.index] == digest:
                        self._replay(state)
                        continue
                    logger.info(f"Batch {state.index} changed since the interrupted run; reprocessing")
                    self.resume_store.discard_batch(self.resume_key, state.index)

                reports = await self._run_batch(state)
                if state.status != BatchStatus.COMPLETED:
                    break
                if self.resume_store:
                    self.resume_store.record_batch(self.resume_key, state.index, digest, reports)
        finally:
            self._stop_log_forwarding()

        self.progress.run_finished(self.processed, self.total, self.cancelled)
        return self.batches

    def _replay(self, state: BatchRunState):
        """Fold a batch completed by an earlier, interrupted run back in."""
        reports = self.resume_store.load_batch(self.resume_key, state.index)
        state.start()
        for report in reports:
            self.aggregator.consume(report)
            state.mark_dispatched()
            state.mark_done(report.failed)
        state.finish()
        self.aggregator.batch_completed()
        self.processed += state.completed
        self.progress.batch_skipped(state, len(self.batches))
        self._emit(state)
        logger.info(f"Batch {state.index} restored from the resume record ({len(reports)} documents)")

    async def _run_batch(self, state: BatchRunState) -> list[DocumentReport]:
        loop = asyncio.get_running_loop()
        state.start()
        self._emit(state)
        self.progress.batch_started(state, len(self.batches))

        queue = deque(state.documents)
        pending: dict[asyncio.Future, Document] = {}
        reports: list[DocumentReport] = []
        cancelled = False
        self._executor = self._new_executor()

        try:
            while queue or pending:
                if self.cancelled and queue:
                    logger.warning(
                        f"Batch {state.index}: cancelled with {len(queue)} documents not dispatched"
                    )
                    queue.clear()
                    cancelled = True

                while queue and len(pending) < self.config.max_workers:
                    document = queue.popleft()
                    pending[self._submit(loop, document)] = document
                    state.mark_dispatched()

                if not pending:
                    break

                finished, _ = await asyncio.wait(
                    pending.keys(),
                    timeout=self.config.poll_interval,
                    return_when=asyncio.FIRST_COMPLETED,
                )
                for future in finished:
                    document = pending.pop(future)
                    report = self._harvest(future, document)
                    if report is None:
                        state.mark_requeued()
                        queue.appendleft(document)
                        continue
                    state.mark_done(report.failed)
                    reports.append(report)
                    self.aggregator.consume(report)
                    self.processed += 1
                    self.progress.document_done(report, self.processed, self.total)
                    if self.memory is not None and self.memory.document_done():
                        self._check_memory()
        finally:
            self._shutdown_executors()

        reclaim()
        sample = self.memory.sample_mb() if self.memory is not None else 0.0
        if self.memory is not None:
            self.aggregator.record_memory(sample, reclaimed=True)

        state.finish(cancelled=cancelled)
        if not cancelled:
            self.aggregator.batch_completed()
        self.progress.batch_finished(state, sample)
        self._emit(state)
        logger.info(
            f"Batch {state.index} {state.status.value}: {state.completed}/{state.size} documents, "
            f"{state.failed} with errors"
        )
        return reports

    # ── Executors ────────────────────────────────────────────────────────

    def _new_executor(self) -> Executor:
        self._pool_broken = False
        if self.config.mode == "thread":
            return ThreadPoolExecutor(
                max_workers=self.config.max_workers,
                thread_name_prefix="link-repair",
            )
        kwargs = {}
        if self.config.max_tasks_per_child > 0:
            kwargs["max_tasks_per_child"] = self.config.max_tasks_per_child
        return ProcessPoolExecutor(
            max_workers=self.config.max_workers,
            mp_context=multiprocessing.get_context("spawn"),
            initializer=init_worker,
            initargs=(self.context, self._log_queue, logging.getLogger().getEffectiveLevel()),
            **kwargs,
        )

    def _dispatch(self, loop: asyncio.AbstractEventLoop, document: Document) -> asyncio.Future:
        if self._pool_broken:
            self._replace_executor()
        if self.config.mode == "thread":
            return loop.run_in_executor(self._executor, self.worker_fn, document, self.context)
        return loop.run_in_executor(self._executor, self.worker_fn, document)

    def _submit(self, loop: asyncio.AbstractEventLoop, document: Document) -> asyncio.Future:
        try:
            return self._dispatch(loop, document)
        except BrokenExecutor:
            logger.warning("Worker pool is broken; starting a fresh one")
            self._pool_broken = True
        try:
            return self._dispatch(loop, document)
        except Exception as e:
            future = loop.create_future()
            future.set_result(error_report(document, e))
            return future

    def _harvest(self, future: asyncio.Future, document: Document) -> Optional[DocumentReport]:
        """The worker's report, or None when the document should be dispatched again."""
        try:
            return future.result()
        except BrokenExecutor as e:
            self._pool_broken = True
            if document.path not in self._crash_retried:
                self._crash_retried.add(document.path)
                logger.warning(f"Worker died while processing {document.path}; retrying once")
                return None
            logger.error(f"Worker died twice on {document.path}; giving up on it")
            return error_report(document, WorkerCrashed(str(e) or "worker process terminated"))
        except Exception as e:
            logger.error(f"Unexpected failure processing {document.path}: {type(e).__name__}: {e}")
            return error_report(document, e)

    def _replace_executor(self):
        if self._executor is not None:
            self._executor.shutdown(wait=False)
            self._retired.append(self._executor)
        self._executor = self._new_executor()

    def _shutdown_executors(self):
        for executor in self._retired + ([self._executor] if self._executor else []):
            try:
                executor.shutdown(wait=True)
            except Exception as e:
                logger.warning(f"Executor shutdown failed: {type(e).__name__}: {e}")
        self._retired = []
        self._executor = None

    def _start_log_forwarding(self):
        """Relay worker-process log records to this process's handlers."""
        if self.config.mode != "process" or self._log_listener is not None:
            return
        self._log_queue = multiprocessing.get_context("spawn").Queue()
        self._log_listener = logging.handlers.QueueListener(
            self._log_queue, *logging.getLogger().handlers, respect_handler_level=True
        )
        self._log_listener.start()

    def _stop_log_forwarding(self):
        if self._log_listener is None:
            return
        self._log_listener.stop()
        self._log_queue.close()
        self._log_listener = None
        self._log_queue = None

    # ── Memory ───────────────────────────────────────────────────────────

    def _check_memory(self):
        reclaim()
        sample = self.memory.sample_mb()
        if self.memory.over_ceiling(sample):
            logger.warning(
                f"Memory {sample:.0f} MB above ceiling {self.memory.ceiling_mb:.0f} MB; recycling workers"
            )
            # Retired workers finish what they hold; new documents go to fresh ones
            self._replace_executor()
            self.executor_recycles += 1
        self.aggregator.record_memory(sample, reclaimed=True)

    def _emit(self, state: BatchRunState):
        if self.on_batch_event is not None:
            self.on_batch_event(state)
