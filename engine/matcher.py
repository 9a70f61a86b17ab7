"""
Similarity matcher — exact lookup first, then a bag-of-characters fuzzy score.
"""

from __future__ import annotations

from dataclasses import dataclass
from difflib import SequenceMatcher
from typing import Callable, Iterable, Optional

from .index import CandidatePool
from .models import MatchMethod


def charset_similarity(a: str, b: str) -> float:
    """
    Distinct characters shared by both names over the longer name's length.

    Case-insensitive and cheap; not an edit distance. "Reprot2024.xlsx" and
    "Report2024.xlsx" share all 12 distinct characters over length 15 → 0.8.
    """
    a, b = a.lower(), b.lower()
    longest = max(len(a), len(b))
    if longest == 0:
        return 0.0
    return len(set(a) & set(b)) / longest


def ratio_similarity(a: str, b: str) -> float:
    """difflib ratio on lower-cased names."""
    return SequenceMatcher(None, a.lower(), b.lower(), autojunk=False).ratio()


METRICS: dict[str, Callable[[str, str], float]] = {
    "charset": charset_similarity,
    "ratio": ratio_similarity,
}


@dataclass(frozen=True)
class Match:
    name: str
    method: MatchMethod
    score: float


def best_fuzzy(
    target: str,
    candidates: Iterable[str],
    threshold: float,
    metric: str = "charset",
) -> Optional[Match]:
    """Highest-scoring candidate at or above ``threshold``; first one wins a tie."""
    score_fn = METRICS[metric]
    best: Optional[Match] = None
    for name in candidates:
        score = score_fn(target, name)
        if score < threshold:
            continue
        if best is None or score > best.score:
            best = Match(name=name, method=MatchMethod.FUZZY, score=score)
    return best


def find_match(
    target: str,
    candidates: Iterable[str],
    threshold: float,
    fuzzy_enabled: bool = True,
    metric: str = "charset",
) -> Optional[str]:
    """Contract-level helper: name of the chosen candidate, or None."""
    names = list(candidates)
    lowered = target.lower()
    for name in names:
        if name.lower() == lowered:
            return name
    if not fuzzy_enabled:
        return None
    match = best_fuzzy(target, names, threshold, metric)
    return match.name if match else None


def match_in_pool(
    target: str,
    pool: CandidatePool,
    threshold: float,
    fuzzy_enabled: bool = True,
    metric: str = "charset",
    exclude: Iterable[str] = (),
) -> Optional[tuple[Match, str]]:
    """
    Pick a candidate for ``target`` from the pool and resolve its location.

    Exact matches come from the index in O(1) and always win over fuzzy
    ones. Locations listed in ``exclude`` (the owning document) are never
    offered.
    """
    if not target:
        return None
    excluded = set(exclude)

    location = pool.first(target, exclude=excluded)
    if location is not None:
        return Match(name=target, method=MatchMethod.EXACT, score=1.0), location

    if not fuzzy_enabled:
        return None

    names = [n for n in pool.names() if pool.first(n, exclude=excluded) is not None]
    match = best_fuzzy(target, names, threshold, metric)
    if match is None:
        return None
    return match, pool.first(match.name, exclude=excluded)
