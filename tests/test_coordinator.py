from __future__ import annotations

import asyncio
import logging
import threading
from concurrent.futures.process import BrokenProcessPool
from pathlib import Path

from fakes import FakeEditor, make_doc, make_pool

from m365_link_repair.cache.store import ResumeStore
from m365_link_repair.config import PoolConfig
from m365_link_repair.engine.aggregator import ResultAggregator, RunStatus
from m365_link_repair.engine.coordinator import (
    CancellationToken,
    WorkerPoolCoordinator,
    partition_documents,
)
from m365_link_repair.engine.guard import MemoryMonitor
from m365_link_repair.engine.index import CandidatePool
from m365_link_repair.engine.models import (
    BatchStatus,
    DocumentReport,
    HealthStatus,
    ScanResult,
)
from m365_link_repair.engine.worker import WorkerContext, process_document


def _docs(count: int) -> list:
    return [make_doc(f"/corpus/D{i:05d}.xlsx") for i in range(count)]


def _pool_config(**overrides) -> PoolConfig:
    config = PoolConfig(max_workers=4, mode="thread", poll_interval=0.01)
    for k, v in overrides.items():
        setattr(config, k, v)
    return config


def _working_report(document) -> DocumentReport:
    return DocumentReport(
        document=document,
        results=(ScanResult(
            document=document.path,
            document_kind=document.kind,
            health=HealthStatus.WORKING,
            reference="Other.xlsx",
            reference_key="0",
        ),),
    )


class RecordingWorker:
    """Thread-safe stand-in for process_document."""

    def __init__(self, crash_on=(), fail_on=(), on_call=None):
        self.crash_on = set(crash_on)
        self.fail_on = set(fail_on)
        self.on_call = on_call
        self.calls: list[str] = []
        self.lock = threading.Lock()

    def __call__(self, document, context=None):
        with self.lock:
            self.calls.append(document.path)
        if self.on_call is not None:
            self.on_call(document)
        if document.path in self.crash_on:
            raise BrokenProcessPool("A child process terminated abruptly")
        if document.path in self.fail_on:
            raise ValueError("unexpected worker state")
        return _working_report(document)


def _coordinator(worker, aggregator, config=None, **kwargs) -> WorkerPoolCoordinator:
    return WorkerPoolCoordinator(
        WorkerContext(pool=CandidatePool()),
        config or _pool_config(),
        aggregator,
        worker_fn=worker,
        **kwargs,
    )


def test_partition_at_threshold_is_one_batch() -> None:
    batches = partition_documents(_docs(5000), batch_threshold=5000, batch_size=1000)
    assert [len(b) for b in batches] == [5000]


def test_partition_above_threshold_uses_fixed_batches() -> None:
    batches = partition_documents(_docs(5001), batch_threshold=5000, batch_size=1000)
    assert [len(b) for b in batches] == [1000] * 5 + [1]


def test_partition_sorts_by_path() -> None:
    docs = _docs(5)
    batches = partition_documents(reversed(docs), batch_threshold=3, batch_size=2)
    assert [[d.path for d in b] for b in batches] == [
        [docs[0].path, docs[1].path],
        [docs[2].path, docs[3].path],
        [docs[4].path],
    ]


def test_partition_of_nothing() -> None:
    assert partition_documents([], 10, 2) == []


def test_large_corpus_runs_batches_strictly_in_sequence() -> None:
    docs = _docs(12000)
    worker = RecordingWorker()
    aggregator = ResultAggregator()
    events = []
    coordinator = _coordinator(
        worker,
        aggregator,
        _pool_config(max_workers=8),
        on_batch_event=lambda s: events.append((s.index, s.status, s.in_flight)),
    )

    batches = asyncio.run(coordinator.run(docs))

    assert len(batches) == 12
    assert all(b.status == BatchStatus.COMPLETED for b in batches)
    assert all(b.in_flight == 0 and b.completed == 1000 for b in batches)
    expected = []
    for i in range(12):
        expected.append((i, BatchStatus.RUNNING, 0))
        expected.append((i, BatchStatus.COMPLETED, 0))
    assert events == expected
    assert len(worker.calls) == 12000
    assert len(set(worker.calls)) == 12000
    assert len(aggregator) == 12000
    assert aggregator.statistics.batches_completed == 12
    assert coordinator.completed


def test_crashing_document_is_retried_once_then_reported() -> None:
    docs = _docs(10)
    bad = docs[4].path
    worker = RecordingWorker(crash_on={bad})
    aggregator = ResultAggregator()

    asyncio.run(_coordinator(worker, aggregator).run(docs))

    assert worker.calls.count(bad) == 2
    assert len(aggregator) == 10
    report = next(r for r in aggregator.reports if r.document.path == bad)
    (result,) = report.results
    assert result.health == HealthStatus.ERROR
    assert result.error.startswith("WorkerCrashed")
    assert aggregator.statistics.files_with_errors == 1


def test_unexpected_worker_exception_becomes_document_error() -> None:
    docs = _docs(6)
    bad = docs[2].path
    worker = RecordingWorker(fail_on={bad})
    aggregator = ResultAggregator()

    batches = asyncio.run(_coordinator(worker, aggregator).run(docs))

    assert worker.calls.count(bad) == 1
    assert batches[0].failed == 1
    report = next(r for r in aggregator.reports if r.document.path == bad)
    assert "unexpected worker state" in report.results[0].error


def test_cancelled_run_resumes_from_the_last_completed_batch(tmp_path: Path) -> None:
    docs = _docs(30)
    store = ResumeStore(tmp_path / "state")
    store.start_run("key", "/corpus")
    config = _pool_config(max_workers=2, batch_threshold=10, batch_size=10)

    token = CancellationToken()

    def cancel_in_second_batch(document):
        if document.path == docs[12].path:
            token.cancel()

    first_worker = RecordingWorker(on_call=cancel_in_second_batch)
    first = _coordinator(
        first_worker, ResultAggregator(), config,
        cancel_token=token, resume_store=store, resume_key="key",
    )
    batches = asyncio.run(first.run(docs))

    assert batches[0].status == BatchStatus.COMPLETED
    assert batches[1].status == BatchStatus.FAILED
    assert batches[1].in_flight == 0
    assert batches[1].completed < 10
    assert batches[2].status == BatchStatus.PENDING
    assert not first.completed
    assert set(store.completed_batches("key")) == {0}

    second_worker = RecordingWorker()
    aggregator = ResultAggregator()
    second = _coordinator(
        second_worker, aggregator, config, resume_store=store, resume_key="key",
    )
    asyncio.run(second.run(docs))

    assert sorted(second_worker.calls) == [d.path for d in docs[10:]]
    assert len(aggregator) == 30
    assert aggregator.statistics.batches_completed == 3
    assert second.completed
    assert set(store.completed_batches("key")) == {0, 1, 2}


def test_changed_batch_is_reprocessed_on_resume(tmp_path: Path) -> None:
    docs = _docs(20)
    store = ResumeStore(tmp_path / "state")
    store.record_batch("key", 0, "stale-digest", [_working_report(d) for d in docs[:10]])
    config = _pool_config(batch_threshold=10, batch_size=10)
    worker = RecordingWorker()

    asyncio.run(_coordinator(
        worker, ResultAggregator(), config, resume_store=store, resume_key="key",
    ).run(docs))

    assert len(worker.calls) == 20


def test_cancel_before_start_dispatches_nothing() -> None:
    token = CancellationToken()
    token.cancel()
    worker = RecordingWorker()

    batches = asyncio.run(
        _coordinator(worker, ResultAggregator(), cancel_token=token).run(_docs(5))
    )

    assert worker.calls == []
    assert batches[0].status == BatchStatus.PENDING


def test_end_to_end_with_real_worker() -> None:
    report_path = "/A/Report2024.xlsx"
    docs = _docs(40)
    editor = FakeEditor(
        links={d.path: ["Reprot2024.xlsx"] for d in docs},
        existing={report_path},
    )
    context = WorkerContext(
        pool=make_pool(report_path),
        backups_enabled=False,
        editor_factory=lambda kind, pool: editor,
        reclaim_after_document=False,
    )
    aggregator = ResultAggregator()
    coordinator = WorkerPoolCoordinator(
        context, _pool_config(), aggregator, worker_fn=process_document,
    )

    asyncio.run(coordinator.run(docs))

    stats = aggregator.statistics
    assert stats.files_processed == 40
    assert stats.references_fixed == 40
    assert stats.fuzzy_matches == 40
    assert stats.files_saved == 40
    assert editor.acquired == editor.closes == 40
    assert aggregator.status() == RunStatus.ALL_FIXED


class HighMemory(MemoryMonitor):
    """Always reports usage above the ceiling."""

    def __init__(self, reclaim_every: int):
        super().__init__(ceiling_mb=100.0, reclaim_every=reclaim_every)
        self.samples = 0

    def sample_mb(self) -> float:
        self.samples += 1
        return 512.0


def test_memory_pressure_recycles_workers_without_losing_documents() -> None:
    docs = _docs(10)
    worker = RecordingWorker()
    aggregator = ResultAggregator()
    monitor = HighMemory(reclaim_every=3)
    coordinator = _coordinator(worker, aggregator, _pool_config(max_workers=2), memory=monitor)

    asyncio.run(coordinator.run(docs))

    assert coordinator.executor_recycles == 3
    assert aggregator.statistics.memory_reclaims == 4
    assert aggregator.statistics.memory_samples_mb == [512.0] * 4
    assert monitor.samples == 4
    assert sorted(worker.calls) == [d.path for d in docs]
    assert len(aggregator) == 10
    assert coordinator.completed


class Collecting(logging.Handler):
    def __init__(self):
        super().__init__()
        self.messages: list[str] = []

    def emit(self, record):
        self.messages.append(record.getMessage())


def test_process_mode_relays_worker_log_records() -> None:
    handler = Collecting()
    root = logging.getLogger()
    root.addHandler(handler)
    coordinator = _coordinator(RecordingWorker(), ResultAggregator(), _pool_config(mode="process"))
    try:
        coordinator._start_log_forwarding()
        coordinator._log_queue.put(logging.makeLogRecord({
            "name": "m365_link_repair.engine.worker",
            "msg": "Worker failed on /corpus/D00001.xlsx",
            "levelno": logging.ERROR,
            "levelname": "ERROR",
        }))
        coordinator._stop_log_forwarding()
    finally:
        root.removeHandler(handler)

    assert "Worker failed on /corpus/D00001.xlsx" in handler.messages
    assert coordinator._log_listener is None


def test_thread_mode_needs_no_log_relay() -> None:
    coordinator = _coordinator(RecordingWorker(), ResultAggregator())

    coordinator._start_log_forwarding()

    assert coordinator._log_queue is None
