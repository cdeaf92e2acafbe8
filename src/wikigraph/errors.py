"""Exceptions raised by wikigraph."""

from __future__ import annotations


class WikigraphError(Exception):
    """Base class for wikigraph errors."""


class ConfigurationError(WikigraphError):
    """Raised when the corpus root or settings file cannot be used."""


class DocumentReadError(WikigraphError):
    """Raised by a document source when one document cannot be read."""

    def __init__(self, path: str, message: str) -> None:
        self.path = path
        self.message = message
        super().__init__(f"{path}: {message}")


class RebuildInProgressError(WikigraphError):
    """Raised when a rebuild is requested while another one is running.

    This is an expected condition; callers usually retry later or ignore it.
    """

    def __init__(self) -> None:
        super().__init__("Index rebuild already in progress")
