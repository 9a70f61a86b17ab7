"""
Candidate pool — case-insensitive name → location index built once per run.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterable, Optional

from .models import Document

logger = logging.getLogger("m365_link_repair.engine.index")


@dataclass
class CandidatePool:
    """
    Every document eligible as a repair target, keyed by lower-cased name.

    Duplicate names keep all locations in registration order; the first
    registered location is the one offered for repair. Read-only once built
    and picklable, so it can be shipped to worker processes.
    """
    _by_name: dict[str, list[str]] = field(default_factory=dict)
    _display_names: dict[str, str] = field(default_factory=dict)
    _locations: set[str] = field(default_factory=set)

    def register(self, name: str, location: str):
        key = name.lower()
        if key not in self._by_name:
            self._by_name[key] = []
            self._display_names[key] = name
        if location not in self._by_name[key]:
            self._by_name[key].append(location)
            self._locations.add(location)

    def lookup(self, name: str) -> list[str]:
        """All locations registered under ``name`` (case-insensitive), oldest first."""
        return list(self._by_name.get(name.lower(), ()))

    def first(self, name: str, exclude: Iterable[str] = ()) -> Optional[str]:
        skip = set(exclude)
        for location in self._by_name.get(name.lower(), ()):
            if location not in skip:
                return location
        return None

    def names(self) -> list[str]:
        """Candidate names in registration order, original casing."""
        return list(self._display_names.values())

    def contains_location(self, location: str) -> bool:
        return location in self._locations

    @property
    def known_locations(self) -> frozenset[str]:
        return frozenset(self._locations)

    @property
    def duplicate_names(self) -> dict[str, list[str]]:
        return {
            self._display_names[k]: list(v)
            for k, v in self._by_name.items()
            if len(v) > 1
        }

    def __len__(self) -> int:
        return len(self._by_name)

    def __contains__(self, name: str) -> bool:
        return name.lower() in self._by_name


def build_index(documents: Iterable[Document]) -> CandidatePool:
    """Register every document under its file name, in the order given."""
    pool = CandidatePool()
    count = 0
    for doc in documents:
        pool.register(doc.name, doc.path)
        count += 1

    duplicates = pool.duplicate_names
    if duplicates:
        logger.info(
            f"{len(duplicates)} file names exist in more than one location; "
            "the first registered location is used for repairs."
        )
        for name, locations in list(duplicates.items())[:20]:
            logger.debug(f"Duplicate candidate {name}: {locations}")
    logger.info(f"Candidate pool built: {count} documents, {len(pool)} distinct names")
    return pool
