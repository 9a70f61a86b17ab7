"""
Base editor class — Abstract interface for the native document editing
capability, plus the ResourceHandle that tracks what an open document holds.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, Callable, Optional

from ..engine.models import Document, DocumentKind, Reference

logger = logging.getLogger("m365_link_repair.editors")


class ResourceHandle:
    """
    Everything acquired to edit one document.

    Editors push one releaser per acquisition (COM apartment, application
    instance, open database, loaded workbook). ``close()`` runs them in
    reverse acquisition order exactly once. Release failures are logged and
    swallowed so they can never replace the outcome of the work itself.
    """

    def __init__(self, document: Document):
        self.document = document
        self.objects: dict[str, Any] = {}
        self.dirty = False
        self.closed = False
        self.released = 0
        self.release_errors: list[str] = []
        self._releasers: list[tuple[str, Callable[[], None]]] = []

    def push(self, name: str, obj: Any, release: Optional[Callable[[], None]] = None) -> Any:
        """Register an acquired object and how to give it back."""
        self.objects[name] = obj
        self._releasers.append((name, release or (lambda: None)))
        return obj

    def get(self, name: str) -> Any:
        return self.objects[name]

    def close(self) -> int:
        """Release everything, newest first. Returns the number of releases run."""
        if self.closed:
            return 0
        self.closed = True
        count = 0
        while self._releasers:
            name, release = self._releasers.pop()
            try:
                release()
            except Exception as e:
                msg = f"Failed to release {name} for {self.document.path}: {type(e).__name__}: {e}"
                self.release_errors.append(msg)
                logger.warning(msg)
            finally:
                self.objects.pop(name, None)
                count += 1
        self.released += count
        return count


class DocumentEditor(ABC):
    """
    Native editing capability for one document kind.

    Subclasses implement the six primitives; the engine treats every kind
    uniformly through them. ``open`` must release whatever it managed to
    acquire before re-raising a failure.
    """

    kind: DocumentKind
    name: str = "base"
    # True when rewrite() commits immediately and save() has nothing left to write
    persists_each_rewrite: bool = False

    def __init__(self, known_locations: frozenset[str] = frozenset()):
        self.known_locations = known_locations

    def open(self, document: Document) -> ResourceHandle:
        handle = ResourceHandle(document)
        try:
            self._acquire(handle)
        except BaseException:
            handle.close()
            raise
        return handle

    def close(self, handle: ResourceHandle) -> int:
        return handle.close()

    @abstractmethod
    def _acquire(self, handle: ResourceHandle):
        """Acquire the application/document resources into ``handle``."""
        raise NotImplementedError

    @abstractmethod
    def enumerate_references(self, handle: ResourceHandle) -> list[Reference]:
        raise NotImplementedError

    @abstractmethod
    def check_health(self, handle: ResourceHandle, reference: Reference) -> bool:
        """True when the reference's target currently resolves."""
        raise NotImplementedError

    @abstractmethod
    def rewrite(self, handle: ResourceHandle, reference: Reference, new_target: str):
        """Store ``new_target`` in place of the reference's current target."""
        raise NotImplementedError

    @abstractmethod
    def save(self, handle: ResourceHandle):
        raise NotImplementedError

    def current_target(self, handle: ResourceHandle, reference: Reference) -> str:
        """Target as stored right now. Editors override when they can read it back."""
        return reference.target
