"""
Reference repairer — relinks one broken reference to a pool candidate and
re-validates it, restoring the original target when anything goes wrong.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from ..config import MatchingConfig
from ..editors.base import DocumentEditor, ResourceHandle
from ..errors import ReferenceRepairFailure
from ..safety.guardian import RepairGuardian
from .index import CandidatePool
from .matcher import match_in_pool
from .models import MatchMethod, Reference, RepairOutcome

logger = logging.getLogger("m365_link_repair.engine.repairer")


@dataclass(frozen=True)
class RepairAttempt:
    outcome: RepairOutcome
    method: MatchMethod = MatchMethod.NONE
    new_target: Optional[str] = None
    score: Optional[float] = None
    mutated: bool = False
    error: Optional[str] = None

    @property
    def fixed(self) -> bool:
        return self.outcome == RepairOutcome.FIXED


class ReferenceRepairer:
    """
    Repairs references of one open document.

    One instance per document: it remembers whether the backup was taken
    and whether a restore ever failed (in which case the document must not
    be saved).
    """

    def __init__(
        self,
        editor: DocumentEditor,
        pool: CandidatePool,
        matching: MatchingConfig,
        guardian: RepairGuardian,
    ):
        self.editor = editor
        self.pool = pool
        self.matching = matching
        self.guardian = guardian
        self.backup_path: Optional[str] = None
        self.restore_failed = False
        self._backup_attempted = False

    def repair(
        self,
        handle: ResourceHandle,
        reference: Reference,
        verified_broken: bool = False,
    ) -> RepairAttempt:
        """
        Try exact then fuzzy candidates for ``reference``.

        A reference that already resolves is reported Fixed without being
        touched, which makes repeated runs no-ops.
        """
        if not verified_broken and self.editor.check_health(handle, reference):
            return RepairAttempt(RepairOutcome.FIXED, MatchMethod.NONE, reference.target)

        found = match_in_pool(
            reference.file_name,
            self.pool,
            threshold=self.matching.threshold,
            fuzzy_enabled=self.matching.fuzzy_enabled,
            metric=self.matching.metric,
            exclude=[handle.document.path],
        )
        if found is None:
            logger.debug(f"No candidate for {reference.target!r} in {handle.document.name}")
            return RepairAttempt(RepairOutcome.FAILED_TO_FIX, MatchMethod.NONE)

        match, location = found
        if not self.guardian.allow_mutation(handle.document.path):
            return RepairAttempt(
                RepairOutcome.NOT_ATTEMPTED, match.method, location, match.score
            )

        if not self._ensure_backup(handle):
            return RepairAttempt(
                RepairOutcome.FAILED_TO_FIX, match.method, score=match.score,
                error="Backup could not be created; document left untouched",
            )

        original = self.editor.current_target(handle, reference)
        try:
            self.editor.rewrite(handle, reference, location)
            if self.editor.check_health(handle, reference.with_target(location)):
                logger.info(
                    f"Relinked {reference.file_name} -> {location} in {handle.document.name} "
                    f"({match.method.value}, score {match.score:.2f})"
                )
                return RepairAttempt(
                    RepairOutcome.FIXED, match.method, location, match.score, mutated=True
                )
            failure = ReferenceRepairFailure(
                reference.target, location, "target still unresolved after relinking"
            )
        except Exception as e:
            failure = ReferenceRepairFailure(reference.target, location, f"{type(e).__name__}: {e}")

        self._restore(handle, reference, original)
        logger.warning(str(failure))
        return RepairAttempt(
            RepairOutcome.FAILED_TO_FIX, match.method, score=match.score, error=str(failure)
        )

    def _ensure_backup(self, handle: ResourceHandle) -> bool:
        if self._backup_attempted:
            return self.backup_path is not None or not self.guardian.backups_enabled
        self._backup_attempted = True
        try:
            self.backup_path = self.guardian.backup(handle.document.path)
        except OSError as e:
            logger.error(f"Backup of {handle.document.path} failed: {e}")
            return False
        return True

    def _restore(self, handle: ResourceHandle, reference: Reference, original: str):
        try:
            if self.editor.current_target(handle, reference) != original:
                self.editor.rewrite(handle, reference, original)
        except Exception as e:
            self.restore_failed = True
            logger.error(
                f"Could not restore {reference.target!r} in {handle.document.path}: "
                f"{type(e).__name__}: {e}. The document will not be saved."
            )
