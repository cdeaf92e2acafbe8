"""Document sources: where the index store gets document text from.

A source enumerates documents and reads one document's text on demand. It
does not watch for changes; hosts call ``update``/``remove`` on the engine
when they observe them.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from .config import DEFAULT_EXTENSION
from .errors import DocumentReadError

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class SourceDocument:
    """One enumerated document.

    ``text`` may be left as None, in which case the store calls
    ``read_text`` for it.
    """

    path: str
    modified: float | None = None
    created: float | None = None
    size: int | None = None
    text: str | None = None


class DocumentSource(Protocol):
    def list_documents(self) -> Iterable[SourceDocument]: ...

    def read_text(self, path: str) -> str: ...


class FilesystemSource:
    """Markdown files below a root directory.

    Document ids are POSIX paths relative to the root. Files and
    directories whose name starts with "." or "_" are skipped.
    """

    def __init__(self, root: Path, extension: str = DEFAULT_EXTENSION) -> None:
        self.root = Path(root)
        self.extension = extension

    def list_documents(self) -> Iterator[SourceDocument]:
        if not self.root.exists() or not self.root.is_dir():
            log.warning("Corpus root %s is not a directory", self.root)
            return

        for md_file in sorted(self.root.rglob(f"*{self.extension}")):
            rel_path = md_file.relative_to(self.root).as_posix()
            if any(part.startswith((".", "_")) for part in rel_path.split("/")):
                continue
            if not md_file.is_file():
                continue

            try:
                stat = md_file.stat()
            except OSError as e:
                # Reported again (and counted) when the store reads the text
                log.debug("Cannot stat %s: %s", md_file, e)
                yield SourceDocument(path=rel_path)
                continue

            yield SourceDocument(
                path=rel_path,
                modified=stat.st_mtime,
                created=stat.st_ctime,
                size=stat.st_size,
            )

    def read_text(self, path: str) -> str:
        try:
            return (self.root / path).read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            raise DocumentReadError(path, str(e)) from e

    def document_id(self, file_path: Path) -> str:
        """Document id for a file below the root (for hosts that watch files)."""
        return Path(file_path).resolve().relative_to(self.root.resolve()).as_posix()


class MemorySource:
    """Documents held in a dict, for tests and embedding hosts."""

    def __init__(self, documents: Mapping[str, str] | None = None) -> None:
        self._documents: dict[str, str] = dict(documents or {})

    def set(self, path: str, text: str) -> None:
        self._documents[path] = text

    def delete(self, path: str) -> None:
        self._documents.pop(path, None)

    def list_documents(self) -> Iterator[SourceDocument]:
        for path in sorted(self._documents):
            text = self._documents[path]
            yield SourceDocument(path=path, size=len(text.encode("utf-8")), text=text)

    def read_text(self, path: str) -> str:
        try:
            return self._documents[path]
        except KeyError:
            raise DocumentReadError(path, "No such document") from None
