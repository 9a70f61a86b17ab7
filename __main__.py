"""
M365 Link Repair Engine — Main Orchestrator

Usage:
    python -m m365_link_repair D:\\Finance                       # scan and repair in place
    python -m m365_link_repair D:\\Finance --dry-run             # propose repairs only
    python -m m365_link_repair D:\\Finance --candidates E:\\Archive F:\\Shared
    python -m m365_link_repair D:\\Finance --site contoso.sharepoint.com:/sites/Finance
    python -m m365_link_repair --config config.json
    python -m m365_link_repair --list-resume                  # show interrupted runs

Exit codes: 0 all fixed (or, on a dry run, all proposed), 1 partial, 2 all broken, 3 setup failure, 130 cancelled.
Every modified document is backed up first; backups are never deleted.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path

from . import __version__
from .cache.store import ResumeStore
from .config import CertificateAuth, DelegatedAuth, EngineConfig
from .engine.aggregator import EXIT_CODES, RunReport, RunStatus
from .engine.coordinator import CancellationToken
from .engine.runner import LinkRepairEngine
from .reporting import (
    ConsoleProgress,
    LoggingProgress,
    export_csv,
    export_json,
    export_markdown,
    export_xlsx,
)

ALL_FORMATS = ["json", "csv", "markdown", "xlsx"]


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="m365_link_repair",
        description="Find and repair broken external links in workbooks and Access databases",
    )
    parser.add_argument(
        "scan_root",
        nargs="?",
        help="Folder to scan (local, UNC or OneDrive/SharePoint synced)",
    )
    parser.add_argument(
        "--candidates",
        nargs="+",
        metavar="DIR",
        help="Folders searched for repair targets (default: the scan root)",
    )
    parser.add_argument(
        "--config", "-c",
        type=Path,
        help="Path to JSON configuration file",
    )
    parser.add_argument(
        "--kinds",
        nargs="+",
        choices=["spreadsheet", "database"],
        help="Document kinds to process (default: both)",
    )

    matching = parser.add_argument_group("matching")
    matching.add_argument("--threshold", type=float, help="Fuzzy similarity floor (default 0.8)")
    matching.add_argument("--no-fuzzy", action="store_true", help="Exact name matches only")
    matching.add_argument("--metric", choices=["charset", "ratio"], help="Fuzzy similarity metric")

    pool = parser.add_argument_group("workers")
    pool.add_argument("--workers", type=int, help="Number of parallel workers")
    pool.add_argument("--mode", choices=["process", "thread"], help="Worker isolation")
    pool.add_argument("--batch-size", type=int, help="Documents per batch on large corpora")

    repair = parser.add_argument_group("repair")
    repair.add_argument("--dry-run", action="store_true", help="Propose repairs, write nothing")
    repair.add_argument("--no-backup", action="store_true", help="Do not back up documents before editing")
    repair.add_argument("--backup-dir", type=Path, help="Backup folder (default: <output>/backups)")
    repair.add_argument("--no-resume", action="store_true", help="Ignore and do not keep a resume record")

    remote = parser.add_argument_group("remote candidates")
    target = remote.add_mutually_exclusive_group()
    target.add_argument("--drive-id", help="OneDrive/SharePoint drive ID to search for candidates")
    target.add_argument("--site", help="SharePoint site, e.g. contoso.sharepoint.com:/sites/Finance")
    remote.add_argument("--folder", help="Folder inside the remote drive")
    remote.add_argument("--delegated", action="store_true", help="Use device-code sign-in")
    remote.add_argument("--tenant-id", help="Tenant ID for the remote library")
    remote.add_argument("--client-id", help="App registration client ID")
    remote.add_argument("--cert-path", type=Path, help="Path to the (base64) PFX certificate")

    parser.add_argument(
        "--output-dir", "-o",
        type=Path,
        help="Output directory for reports and logs (default: ./link_repair_output); "
             "the resume record is kept beside it",
    )
    parser.add_argument(
        "--formats",
        nargs="+",
        choices=ALL_FORMATS,
        help="Report formats to generate (default: all)",
    )
    parser.add_argument(
        "--list-resume",
        action="store_true",
        help="List interrupted runs that a rerun would resume, then exit",
    )
    parser.add_argument("--quiet", "-q", action="store_true", help="Progress to the log only")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    return parser.parse_args(argv)


def build_config(args: argparse.Namespace) -> EngineConfig:
    """Build engine configuration from a config file, then apply CLI overrides."""
    if args.config:
        if not args.config.exists():
            print(f"\n❌ Config file not found: {args.config}")
            sys.exit(EXIT_CODES[RunStatus.FATAL])
        config = EngineConfig.from_file(args.config)
    else:
        config = EngineConfig()

    src = config.source
    if args.scan_root:
        src.scan_root = args.scan_root
    if args.candidates:
        src.candidate_roots = list(args.candidates)
    if args.kinds:
        src.kinds = list(args.kinds)
    if args.drive_id:
        src.remote.drive_id = args.drive_id
    if args.site:
        src.remote.site = args.site
    if args.folder:
        src.remote.folder = args.folder

    if args.threshold is not None:
        config.matching.threshold = args.threshold
    if args.no_fuzzy:
        config.matching.fuzzy_enabled = False
    if args.metric:
        config.matching.metric = args.metric

    if args.workers:
        config.pool.max_workers = args.workers
    if args.mode:
        config.pool.mode = args.mode
    if args.batch_size:
        config.pool.batch_size = args.batch_size

    if args.dry_run:
        config.repair.dry_run = True
    if args.no_backup:
        config.repair.backup_enabled = False
    if args.backup_dir:
        config.repair.backup_dir = str(args.backup_dir)
    if args.no_resume:
        config.resume.enabled = False

    if args.output_dir:
        config.output.base_dir = str(args.output_dir)
    elif not args.config:
        config.output.base_dir = str(Path("link_repair_output").resolve())
    if args.formats:
        config.output.formats = list(args.formats)
    config.verbose = config.verbose or args.verbose

    if args.delegated:
        config.auth.mode = "delegated"
    if args.tenant_id and args.client_id:
        if config.auth.mode == "delegated":
            config.auth.delegated = DelegatedAuth(tenant_id=args.tenant_id, client_id=args.client_id)
        else:
            config.auth.certificate = CertificateAuth(
                tenant_id=args.tenant_id,
                client_id=args.client_id,
                certificate_path=str(args.cert_path or "./base64.txt"),
            )
    elif args.cert_path and config.auth.certificate:
        config.auth.certificate.certificate_path = str(args.cert_path)

    return config


def setup_logging(config: EngineConfig, run_id: str) -> Path:
    """Console at WARNING (DEBUG with --verbose), full log file per run."""
    log_path = config.output.logs_dir / f"link_repair_{run_id}.log"
    root = logging.getLogger()
    root.setLevel(logging.DEBUG)

    console = logging.StreamHandler(sys.stderr)
    console.setLevel(logging.DEBUG if config.verbose else logging.WARNING)
    console.setFormatter(logging.Formatter("  %(levelname)-8s %(message)s"))

    logfile = logging.FileHandler(log_path, encoding="utf-8")
    logfile.setLevel(logging.DEBUG if config.verbose else logging.INFO)
    logfile.setFormatter(logging.Formatter(
        "%(asctime)s %(levelname)-8s [%(processName)s] %(name)s: %(message)s"
    ))

    root.addHandler(console)
    root.addHandler(logfile)
    return log_path


def generate_reports(report: RunReport, output_dir: Path, formats: list[str]) -> list[Path]:
    """Generate all requested report formats."""
    created = []

    if "json" in formats:
        path = export_json(report, output_dir)
        created.append(path)
        print(f"  📄 JSON:       {path}")

    if "csv" in formats:
        paths = export_csv(report, output_dir)
        created.extend(paths)
        for p in paths:
            print(f"  📊 CSV:        {p}")

    if "markdown" in formats:
        path = export_markdown(report, output_dir)
        created.append(path)
        print(f"  📝 Markdown:   {path}")

    if "xlsx" in formats:
        path = export_xlsx(report, output_dir)
        created.append(path)
        print(f"  📗 Workbook:   {path}")

    return created


def print_summary(report: RunReport):
    stats = report.statistics
    print(f"  Status:           {report.status.value}" + (" (cancelled)" if report.cancelled else ""))
    print(f"  Files processed:  {stats.files_processed}")
    print(f"  Files w/ errors:  {stats.files_with_errors}")
    print(f"  References:       {stats.total_references} "
          f"({stats.working_references} working, {stats.broken_references} broken)")
    print(f"  Fixed:            {stats.references_fixed} "
          f"({stats.exact_matches} exact, {stats.fuzzy_matches} fuzzy)")
    if report.dry_run:
        print(f"  Proposed:         {stats.references_proposed}")
    print(f"  Still broken:     {stats.still_broken}")
    print(f"  Errors:           {stats.reference_errors + stats.files_with_errors}")
    print(f"  Success rate:     {stats.success_rate:.1f}%")
    print(f"  Peak memory:      {stats.peak_memory_mb:.0f} MB")
    audit = report.metadata.get("repair_guardian")
    if audit:
        print(f"  Backups taken:    {audit['backups_taken']}")
        if audit["violations_detected"]:
            print(f"  Blocked writes:   {audit['violations_detected']}")


def list_resume_records(config: EngineConfig) -> int:
    """Print the runs with an outstanding resume record."""
    runs = ResumeStore(config.state_dir).list_runs() if config.state_dir.exists() else []
    print(f"\n📂 Resume records in {config.state_dir.resolve()}")
    if not runs:
        print("  No interrupted runs.")
        return 0
    for run in runs:
        print(f"  {run['run_key'][:12]}  {run['target']}")
        print(f"      started {run['started_at']}, last batch {run['updated_at']}, "
              f"{run['completed_batches']} batch(es) done")
    return 0


async def main_async(argv: list[str] | None = None) -> int:
    """Async entry point. Returns the process exit code."""
    args = parse_args(argv)
    config = build_config(args)
    if args.list_resume:
        return list_resume_records(config)
    config.output.create_directories()

    cancel_token = CancellationToken()
    progress = LoggingProgress() if args.quiet else ConsoleProgress()
    engine = LinkRepairEngine(config, progress=progress, cancel_token=cancel_token)
    log_path = setup_logging(config, engine.run_id)

    print("=" * 70)
    print(f" M365 Link Repair Engine v{__version__}")
    print(" Mode: " + ("DRY RUN — no document will be modified" if config.repair.dry_run
                      else "REPAIR — documents are backed up before editing"))
    print("=" * 70)
    print(f"\n📋 Run ID:  {engine.run_id}")
    print(f"📂 Scan:    {config.source.scan_root or '(not set)'}")
    print(f"🔎 Search:  {', '.join(config.source.effective_candidate_roots()) or '(not set)'}"
          + (f" + {config.source.remote.drive_id or config.source.remote.site}"
             if config.source.remote.enabled else ""))
    print(f"📁 Output:  {config.output.run_dir.resolve()}")
    print(f"🪵 Log:     {log_path}")

    def _request_cancel(signum, frame):
        if cancel_token.cancelled:
            raise KeyboardInterrupt
        print("\n  ⏹  Cancelling — finishing documents in progress (Ctrl+C again to abort)...")
        cancel_token.cancel()

    previous = signal.signal(signal.SIGINT, _request_cancel)

    print("\n" + "=" * 70)
    print(" PHASE 1: INDEX, SCAN & REPAIR")
    print("=" * 70)
    try:
        report = await engine.run()
    finally:
        signal.signal(signal.SIGINT, previous)

    if report.fatal_error:
        print(f"\n  ❌ Setup failed: {report.fatal_error}")

    print("\n" + "=" * 70)
    print(" PHASE 2: REPORT GENERATION")
    print("=" * 70 + "\n")
    created_files = generate_reports(report, config.output.reports_dir, config.output.formats)

    print("\n" + "=" * 70)
    print(" RUN COMPLETE" if not report.cancelled else " RUN CANCELLED")
    print("=" * 70 + "\n")
    print_summary(report)
    print(f"\n  Files: {len(created_files)} reports generated")
    print(f"  Path:  {config.output.reports_dir.resolve()}")
    print()
    return report.exit_code


def main():
    """Synchronous entry point for `python -m m365_link_repair`."""
    sys.exit(asyncio.run(main_async()))


if __name__ == "__main__":
    main()
