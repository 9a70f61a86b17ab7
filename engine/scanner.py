"""
Reference scanner — opens one document, health-checks every external
reference in stored order, repairs the broken ones and saves once.
"""

from __future__ import annotations

import dataclasses
import logging
import time
from typing import Callable, Optional

from ..config import MatchingConfig, RetryConfig
from ..editors.base import DocumentEditor
from ..errors import DocumentError
from ..safety.guardian import RepairGuardian
from .guard import ReleaseCounter, scoped_document
from .index import CandidatePool
from .models import (
    Document,
    DocumentReport,
    HealthStatus,
    Reference,
    RepairOutcome,
    ScanResult,
)
from .repairer import ReferenceRepairer
from .retry import call_with_retry

logger = logging.getLogger("m365_link_repair.engine.scanner")


def error_report(document: Document, error: BaseException, elapsed: float = 0.0,
                 cleanups: int = 0) -> DocumentReport:
    """A document that could not be processed: exactly one Error result."""
    result = ScanResult(
        document=document.path,
        document_kind=document.kind,
        health=HealthStatus.ERROR,
        elapsed_seconds=round(elapsed, 3),
        error=f"{type(error).__name__}: {error}",
    )
    return DocumentReport(document=document, results=(result,), cleanups=cleanups,
                          elapsed_seconds=round(elapsed, 3))


def scan_document(
    document: Document,
    editor: DocumentEditor,
    pool: CandidatePool,
    matching: MatchingConfig,
    guardian: RepairGuardian,
    retry: Optional[RetryConfig] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> DocumentReport:
    """
    Scan and repair one document end to end.

    Never raises: open/enumerate failures become a single Error result, a
    failing reference becomes an Error result for that reference only.
    """
    started = time.perf_counter()
    counter = ReleaseCounter()
    repairer = ReferenceRepairer(editor, pool, matching, guardian)
    results: list[ScanResult] = []
    persisted: list[tuple[int, Reference]] = []
    saved = False

    def _open():
        return call_with_retry(
            editor.open, document,
            operation=f"open {document.name}", config=retry, sleep=sleep,
        )

    try:
        with scoped_document(editor, document, counter, opener=_open) as handle:
            try:
                references = editor.enumerate_references(handle)
            except Exception as e:
                raise DocumentError(document.path, f"cannot enumerate references: {e}") from e
            logger.debug(f"{document.name}: {len(references)} external references")

            for reference in references:
                result, mutated = _process_reference(editor, handle, reference, repairer, document)
                if mutated:
                    persisted.append((len(results), reference))
                results.append(result)

            if persisted and repairer.restore_failed:
                results = _abandon(editor, handle, results, persisted,
                                   "Document not saved because a failed repair could not be rolled back")
            elif persisted:
                try:
                    call_with_retry(
                        editor.save, handle,
                        operation=f"save {document.name}", config=retry, sleep=sleep,
                    )
                    saved = True
                except Exception as e:
                    logger.error(f"Saving {document.path} failed: {type(e).__name__}: {e}")
                    results = _abandon(editor, handle, results, persisted,
                                       f"Save failed: {type(e).__name__}: {e}")
    except Exception as e:
        elapsed = time.perf_counter() - started
        logger.warning(f"Could not process {document.path}: {type(e).__name__}: {e}")
        return error_report(document, e, elapsed, cleanups=counter.released)

    return DocumentReport(
        document=document,
        results=tuple(results),
        saved=saved,
        cleanups=counter.released,
        backup_path=repairer.backup_path,
        elapsed_seconds=round(time.perf_counter() - started, 3),
    )


def _process_reference(editor, handle, reference: Reference, repairer: ReferenceRepairer,
                       document: Document) -> tuple[ScanResult, bool]:
    started = time.perf_counter()
    base = dict(
        document=document.path,
        document_kind=document.kind,
        reference=reference.target,
        reference_key=reference.key,
        link_kind=reference.kind,
    )

    try:
        healthy = editor.check_health(handle, reference)
    except Exception as e:
        return ScanResult(
            health=HealthStatus.ERROR,
            elapsed_seconds=round(time.perf_counter() - started, 3),
            error=f"Health check failed: {type(e).__name__}: {e}",
            **base,
        ), False

    if healthy:
        return ScanResult(
            health=HealthStatus.WORKING,
            elapsed_seconds=round(time.perf_counter() - started, 3),
            **base,
        ), False

    try:
        attempt = repairer.repair(handle, reference, verified_broken=True)
    except Exception as e:
        logger.exception(f"Repair of {reference.target!r} in {document.path} crashed")
        return ScanResult(
            health=HealthStatus.BROKEN,
            repair=RepairOutcome.FAILED_TO_FIX,
            elapsed_seconds=round(time.perf_counter() - started, 3),
            error=f"{type(e).__name__}: {e}",
            **base,
        ), False

    return ScanResult(
        health=HealthStatus.BROKEN,
        repair=attempt.outcome,
        method=attempt.method,
        new_target=attempt.new_target,
        score=round(attempt.score, 4) if attempt.score is not None else None,
        elapsed_seconds=round(time.perf_counter() - started, 3),
        error=attempt.error,
        **base,
    ), attempt.mutated and attempt.fixed


def _demote(results: list[ScanResult], indices: list[int], reason: str) -> list[ScanResult]:
    """Turn unsaved Fixed results back into FailedToFix."""
    demoted = list(results)
    for i in indices:
        demoted[i] = dataclasses.replace(
            demoted[i], repair=RepairOutcome.FAILED_TO_FIX, new_target=None, error=reason
        )
    return demoted


def _abandon(editor, handle, results: list[ScanResult],
             persisted: list[tuple[int, Reference]], reason: str) -> list[ScanResult]:
    """
    Give up the fixes of a document that will not be saved.

    When the editor commits each rewrite on its own, the fixes are already in
    the file: put the original targets back before reporting them as not
    fixed. A fix that cannot be rolled back stays Fixed, since that is what
    the document now holds.
    """
    if not editor.persists_each_rewrite:
        return _demote(results, [i for i, _ in persisted], reason)

    results = list(results)
    undone = []
    for i, reference in reversed(persisted):
        try:
            editor.rewrite(handle, reference, reference.target)
        except Exception as e:
            logger.error(
                f"Could not roll back {reference.key} in {reference.document}: "
                f"{type(e).__name__}: {e}. The new link stays in place."
            )
            results[i] = dataclasses.replace(
                results[i], error=f"{reason}; rollback failed, the new link was kept"
            )
            continue
        undone.append(i)
    return _demote(results, undone, f"{reason}; link rolled back")
