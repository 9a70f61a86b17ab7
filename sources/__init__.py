from .base import DocumentSource, IGNORED_PREFIXES
from .local import LocalDirectorySource
from .graph_drive import GraphDriveSource

__all__ = [
    "DocumentSource",
    "IGNORED_PREFIXES",
    "LocalDirectorySource",
    "GraphDriveSource",
]
