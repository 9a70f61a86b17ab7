from .models import (
    BatchRunState,
    BatchStatus,
    Document,
    DocumentKind,
    DocumentReport,
    EngineStatistics,
    HealthStatus,
    LinkKind,
    MatchMethod,
    Reference,
    RepairOutcome,
    ScanResult,
    bare_file_name,
)
from .index import CandidatePool, build_index
from .matcher import Match, charset_similarity, find_match, match_in_pool, ratio_similarity
from .aggregator import EXIT_CANCELLED, EXIT_CODES, ResultAggregator, RunReport, RunStatus

__all__ = [
    "BatchRunState",
    "BatchStatus",
    "Document",
    "DocumentKind",
    "DocumentReport",
    "EngineStatistics",
    "HealthStatus",
    "LinkKind",
    "MatchMethod",
    "Reference",
    "RepairOutcome",
    "ScanResult",
    "bare_file_name",
    "CandidatePool",
    "build_index",
    "Match",
    "charset_similarity",
    "ratio_similarity",
    "find_match",
    "match_in_pool",
    "EXIT_CANCELLED",
    "EXIT_CODES",
    "ResultAggregator",
    "RunReport",
    "RunStatus",
]
