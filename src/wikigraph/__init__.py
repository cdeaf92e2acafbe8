"""wikigraph: bidirectional link index for Markdown note corpora."""

from .engine import LinkEngine
from .errors import (
    DocumentReadError,
    RebuildInProgressError,
    WikigraphError,
)
from .sources import FilesystemSource, MemorySource

__version__ = "0.3.0"

__all__ = [
    "LinkEngine",
    "FilesystemSource",
    "MemorySource",
    "WikigraphError",
    "DocumentReadError",
    "RebuildInProgressError",
    "__version__",
]
