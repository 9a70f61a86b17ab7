from __future__ import annotations

import asyncio
from pathlib import Path

import httpx

from fakes import FakeEditor

from m365_link_repair.cache.store import ResumeStore
from m365_link_repair.config import EngineConfig
from m365_link_repair.engine.aggregator import RunStatus
from m365_link_repair.engine.coordinator import CancellationToken
from m365_link_repair.engine.models import Document
from m365_link_repair.engine import runner
from m365_link_repair.engine.runner import LinkRepairEngine
from m365_link_repair.engine.scanner import error_report
from m365_link_repair.reporting.progress import ProgressSink

REMOTE_REPORT = "https://contoso.sharepoint.com/sites/Fin/Shared%20Documents/Report2024.xlsx"


def _config(tmp_path: Path, scan_root: Path | str) -> EngineConfig:
    config = EngineConfig()
    config.source.scan_root = str(scan_root)
    config.output.base_dir = str(tmp_path / "out")
    config.pool.mode = "thread"
    config.pool.max_workers = 2
    config.pool.poll_interval = 0.01
    return config


def _corpus(tmp_path: Path) -> tuple[Path, Path, Path]:
    scan = tmp_path / "scan"
    scan.mkdir()
    summary = scan / "Summary.xlsx"
    report = scan / "Report2024.xlsx"
    summary.write_bytes(b"summary")
    report.write_bytes(b"report")
    return scan, summary, report


def test_local_run_repairs_and_clears_resume_record(tmp_path: Path) -> None:
    scan, summary, report = _corpus(tmp_path)
    editor = FakeEditor(links={str(summary): ["Reprot2024.xlsx"]}, existing={str(report)})
    config = _config(tmp_path, scan)
    engine = LinkRepairEngine(config, editor_factory=lambda kind, pool: editor)

    result = asyncio.run(engine.run())

    assert result.status == RunStatus.ALL_FIXED
    assert result.exit_code == 0
    assert result.statistics.files_processed == 2
    assert result.statistics.fuzzy_matches == 1
    assert editor.stored[str(summary)] == [str(report)]
    assert result.metadata["backups_taken"] == 1
    assert result.metadata["repair_guardian"]["backups_taken"] == 1
    assert result.metadata["repair_guardian"]["status"] == "CLEAN"
    assert len(list(config.backup_dir.iterdir())) == 1
    assert ResumeStore(config.state_dir).list_runs() == []


def test_dry_run_writes_nothing(tmp_path: Path) -> None:
    scan, summary, report = _corpus(tmp_path)
    editor = FakeEditor(links={str(summary): ["Reprot2024.xlsx"]}, existing={str(report)})
    config = _config(tmp_path, scan)
    config.repair.dry_run = True

    result = asyncio.run(LinkRepairEngine(config, editor_factory=lambda kind, pool: editor).run())

    assert result.dry_run is True
    assert result.statistics.references_proposed == 1
    assert result.status == RunStatus.ALL_PROPOSED
    assert result.exit_code == 0
    assert editor.saves == 0
    assert not config.backup_dir.exists()


def test_missing_scan_root_is_fatal(tmp_path: Path) -> None:
    config = _config(tmp_path, tmp_path / "does-not-exist")

    result = asyncio.run(LinkRepairEngine(config).run())

    assert result.status == RunStatus.FATAL
    assert result.exit_code == 3
    assert "not found" in result.fatal_error


def test_remote_scan_root_is_rejected(tmp_path: Path) -> None:
    config = _config(tmp_path, "https://contoso.sharepoint.com/sites/Fin/Shared%20Documents")

    result = asyncio.run(LinkRepairEngine(config).run())

    assert result.status == RunStatus.FATAL
    assert "scan root" in result.fatal_error


def test_fatal_run_reports_interrupted_progress(tmp_path: Path) -> None:
    scan, summary, report = _corpus(tmp_path)
    editor = FakeEditor(links={str(summary): ["Reprot2024.xlsx"]}, existing={str(report)})
    config = _config(tmp_path, scan)
    engine = LinkRepairEngine(config, editor_factory=lambda kind, pool: editor)

    store = ResumeStore(config.state_dir)
    store.start_run(engine.run_key, str(scan))
    store.record_batch(engine.run_key, 0, "d0", [error_report(Document.from_path(summary), OSError("locked"))])
    summary.unlink()
    report.unlink()
    scan.rmdir()

    result = asyncio.run(engine.run())

    assert result.status == RunStatus.FATAL
    assert result.statistics.files_processed == 1
    assert result.tables["Errors"][0]["error"] == "OSError: locked"


def test_remote_library_supplies_candidates(tmp_path: Path) -> None:
    scan = tmp_path / "scan"
    scan.mkdir()
    summary = scan / "Summary.xlsx"
    summary.write_bytes(b"summary")

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.headers["Authorization"] == "Bearer remote-token"
        if request.url.path == "/v1.0/drives/drv1/root/children":
            return httpx.Response(200, json={"value": [{
                "id": "i1",
                "name": "Report2024.xlsx",
                "file": {},
                "webUrl": REMOTE_REPORT,
                "size": 10,
            }]})
        return httpx.Response(404)

    async def token_provider() -> str:
        return "remote-token"

    editor = FakeEditor(links={str(summary): ["Report2024.xlsx"]}, existing={REMOTE_REPORT})
    config = _config(tmp_path, scan)
    config.source.remote.drive_id = "drv1"
    config.repair.backup_enabled = False
    engine = LinkRepairEngine(
        config,
        editor_factory=lambda kind, pool: editor,
        token_provider=token_provider,
        graph_transport=httpx.MockTransport(handler),
    )

    result = asyncio.run(engine.run())

    assert result.status == RunStatus.ALL_FIXED
    assert result.tables["Fixed"][0]["new_targets"] == REMOTE_REPORT
    assert result.metadata["remote_source"] == "drv1"
    audit = result.metadata["repair_guardian"]
    assert audit["checks_performed"] >= 1
    assert audit["violations_detected"] == 0
    assert audit["backups_taken"] == 0


def test_unreachable_remote_library_is_fatal(tmp_path: Path) -> None:
    scan, _, _ = _corpus(tmp_path)
    config = _config(tmp_path, scan)
    config.source.remote.drive_id = "drv1"

    async def token_provider() -> str:
        return "remote-token"

    engine = LinkRepairEngine(
        config,
        token_provider=token_provider,
        graph_transport=httpx.MockTransport(lambda request: httpx.Response(403)),
    )

    result = asyncio.run(engine.run())

    assert result.status == RunStatus.FATAL
    assert "Remote library" in result.fatal_error


class _UploadingSource:
    def __init__(self, client, remote, kinds):
        self.client = client
        self.skipped: list[str] = []

    async def list(self, folder):
        self.client.guardian.validate_request(
            "PUT", "https://graph.microsoft.com/v1.0/drives/drv1/root:/Report2024.xlsx:/content"
        )
        return []


def test_blocked_remote_write_is_in_the_run_audit(tmp_path: Path, monkeypatch) -> None:
    scan, _, _ = _corpus(tmp_path)
    config = _config(tmp_path, scan)
    config.source.remote.drive_id = "drv1"
    monkeypatch.setattr(runner, "GraphDriveSource", _UploadingSource)

    async def token_provider() -> str:
        return "remote-token"

    result = asyncio.run(LinkRepairEngine(config, token_provider=token_provider).run())

    assert result.status == RunStatus.FATAL
    assert "Refused" in result.fatal_error
    audit = result.metadata["repair_guardian"]
    assert audit["status"] == "VIOLATIONS_DETECTED"
    assert audit["violations"][0]["method"] == "PUT"


class _CancelAfterFirstBatch(ProgressSink):
    def __init__(self, token: CancellationToken):
        self.token = token

    def batch_finished(self, state, memory_mb):
        self.token.cancel()


def test_interrupted_dry_run_is_not_resumed_by_a_repair_run(tmp_path: Path) -> None:
    scan = tmp_path / "scan"
    scan.mkdir()
    first = scan / "A.xlsx"
    report = scan / "Report2024.xlsx"
    first.write_bytes(b"a")
    report.write_bytes(b"report")
    editor = FakeEditor(links={str(first): ["Reprot2024.xlsx"]}, existing={str(report)})
    config = _config(tmp_path, scan)
    config.pool.batch_threshold = 1
    config.pool.batch_size = 1
    config.repair.dry_run = True
    token = CancellationToken()

    dry = asyncio.run(LinkRepairEngine(
        config, progress=_CancelAfterFirstBatch(token), cancel_token=token,
        editor_factory=lambda kind, pool: editor,
    ).run())

    assert dry.cancelled
    assert dry.statistics.references_proposed == 1
    assert ResumeStore(config.state_dir).list_runs()[0]["completed_batches"] == 1

    config.repair.dry_run = False
    real = asyncio.run(LinkRepairEngine(config, editor_factory=lambda kind, pool: editor).run())

    assert real.status == RunStatus.ALL_FIXED
    assert real.statistics.references_fixed == 1
    assert editor.stored[str(first)] == [str(report)]


def test_rerun_with_a_new_output_dir_resumes_the_interrupted_run(tmp_path: Path) -> None:
    scan = tmp_path / "scan"
    scan.mkdir()
    first = scan / "A.xlsx"
    report = scan / "Report2024.xlsx"
    first.write_bytes(b"a")
    report.write_bytes(b"report")
    editor = FakeEditor(links={str(first): ["Reprot2024.xlsx"]}, existing={str(report)})
    config = _config(tmp_path, scan)
    config.pool.batch_threshold = 1
    config.pool.batch_size = 1
    token = CancellationToken()

    interrupted = asyncio.run(LinkRepairEngine(
        config, progress=_CancelAfterFirstBatch(token), cancel_token=token,
        editor_factory=lambda kind, pool: editor,
    ).run())
    assert interrupted.cancelled
    assert editor.saves == 1

    rerun = _config(tmp_path, scan)
    rerun.output.base_dir = str(tmp_path / "out-second")
    rerun.pool.batch_threshold = 1
    rerun.pool.batch_size = 1
    assert rerun.state_dir == config.state_dir

    result = asyncio.run(LinkRepairEngine(rerun, editor_factory=lambda kind, pool: editor).run())

    assert result.status == RunStatus.ALL_FIXED
    assert result.statistics.files_processed == 2
    assert result.statistics.references_fixed == 1
    assert editor.saves == 1
    assert ResumeStore(rerun.state_dir).list_runs() == []
