"""The corpus-wide link index.

Owns document records, the backlink map derived from resolved mentions, and
the tag map. Every mutation keeps the backlink map an exact mirror of the
resolved mentions: for each record D and each mention of D resolved to T,
D is in backlinks[T], and nothing else is.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Iterable
from types import MappingProxyType

from .config import INDEX_VERSION, EngineSettings
from .errors import DocumentReadError, RebuildInProgressError
from .models import (
    DocumentMetadata,
    DocumentRecord,
    IndexSnapshot,
    IndexStats,
    IndexSummary,
    Mention,
    RepairReport,
)
from .parser import document_name, fingerprint, parse_document
from .registry import ReferenceRegistry, name_key
from .resolver import Resolver
from .sources import DocumentSource, SourceDocument

log = logging.getLogger(__name__)

IndexListener = Callable[[IndexSnapshot], None]
ProgressCallback = Callable[[int, int], None]


def _targets(record: DocumentRecord) -> set[str]:
    return {m.target for m in record.outgoing if m.target is not None}


def _unresolved(mention: Mention) -> Mention:
    return mention.model_copy(update={"target": None, "exists": False})


class IndexStore:
    """Builds and maintains the link index for one document source.

    Args:
        source: Where documents are enumerated and read from.
        registry: Reference definitions; refilled on rebuild.
        resolver: Resolver bound to this store's document table.
        settings: Parser and resolver tunables.
    """

    def __init__(
        self,
        source: DocumentSource,
        registry: ReferenceRegistry,
        resolver: Resolver,
        settings: EngineSettings | None = None,
    ) -> None:
        self._source = source
        self._registry = registry
        self._resolver = resolver
        self._settings = settings or EngineSettings()

        # Flat tables keyed by document id
        self._documents: dict[str, DocumentRecord] = {}
        self._backlinks: dict[str, set[str]] = {}
        self._tags: dict[str, set[str]] = {}

        self._built_at: float | None = None
        self._last_build_duration_ms = 0.0
        self._failed: dict[str, str] = {}

        self._build_lock = threading.Lock()
        self._building = False
        # Mutations received during a rebuild: id -> (text, modified), None = removal
        self._pending: dict[str, tuple[str, float | None] | None] = {}
        self._pending_lock = threading.Lock()

        self._listeners: list[IndexListener] = []
        self._snapshot: IndexSnapshot | None = None

        self._resolver.bind(self._documents)

    # ─────────────────────────────────────────────────────────────────────
    # Full rebuild
    # ─────────────────────────────────────────────────────────────────────

    def rebuild(self, progress: ProgressCallback | None = None) -> IndexSnapshot:
        """Rebuild the whole index from the document source.

        Pass 1 parses every document (mentions stay unresolved) and fills the
        tag map and the registry. Pass 2 resolves every mention against the
        complete document set and only then fills the backlink map.

        Args:
            progress: Called with (done, total) after each document of pass 1.

        Returns:
            Snapshot of the new index.

        Raises:
            RebuildInProgressError: If another rebuild is running.
        """
        if not self._build_lock.acquire(blocking=False):
            raise RebuildInProgressError()

        self._building = True
        started = time.perf_counter()
        saved = (self._documents, self._backlinks, self._tags, self._failed, self._built_at)
        try:
            previous = self._documents
            documents: dict[str, DocumentRecord] = {}
            tags: dict[str, set[str]] = {}
            failed: dict[str, str] = {}

            listed = list(self._source.list_documents())
            total = len(listed)
            self._registry.clear()

            # First pass: parse everything, resolve nothing
            for done, doc in enumerate(listed, start=1):
                record = self._load(doc, previous.get(doc.path), failed)
                if record is not None:
                    documents[record.path] = record
                    for tag in record.tags:
                        tags.setdefault(tag, set()).add(record.path)
                    for definition in record.definitions:
                        self._registry.add_definition(definition)
                if progress is not None:
                    progress(done, total)

            # Second pass: resolve against the complete document set
            self._resolver.bind(documents)
            backlinks: dict[str, set[str]] = {}
            resolved_count = 0
            for path in sorted(documents):
                record = self._resolve_record(documents[path])
                documents[path] = record
                for target in _targets(record):
                    backlinks.setdefault(target, set()).add(path)
                resolved_count += sum(1 for m in record.outgoing if m.exists)

            self._documents = documents
            self._backlinks = backlinks
            self._tags = tags
            self._failed = failed
            self._built_at = time.time()

            repairs = self._repair()
            if repairs.total:
                log.warning("Rebuild validation repaired %d inconsistencies: %s", repairs.total, repairs)

            self._last_build_duration_ms = (time.perf_counter() - started) * 1000
            mention_count = sum(len(r.outgoing) for r in documents.values())
            log.info(
                "Index rebuilt: %d documents, %d mentions (%d resolved), %d backlink targets in %.1fms",
                len(documents),
                mention_count,
                resolved_count,
                len(backlinks),
                self._last_build_duration_ms,
            )
            if failed:
                log.warning("%d document(s) could not be read", len(failed))
        except Exception:
            # Keep serving the previous index
            self._documents, self._backlinks, self._tags, self._failed, self._built_at = saved
            self._restore_previous()
            raise
        finally:
            self._building = False
            self._build_lock.release()

        self._changed()
        self._drain_pending()
        return self.get_index()

    def _restore_previous(self) -> None:
        self._registry.clear()
        for record in self._documents.values():
            for definition in record.definitions:
                self._registry.add_definition(definition)
        self._resolver.bind(self._documents)

    def _load(
        self,
        doc: SourceDocument,
        previous: DocumentRecord | None,
        failed: dict[str, str],
    ) -> DocumentRecord | None:
        """Read and parse one document; None if it cannot be indexed."""
        text = doc.text
        if text is None:
            try:
                text = self._source.read_text(doc.path)
            except DocumentReadError as e:
                log.warning("Failed to read %s: %s", doc.path, e.message)
                failed[doc.path] = e.message
                return None

        content_hash = fingerprint(text)
        size = doc.size if doc.size is not None else len(text.encode("utf-8"))

        if previous is not None and previous.fingerprint == content_hash:
            # Same content: reuse the parse, redo only the resolution
            return previous.model_copy(
                update={
                    "outgoing": tuple(_unresolved(m) for m in previous.outgoing),
                    "indexed_at": time.time(),
                    "metadata": previous.metadata.model_copy(
                        update={"size": size, "modified": doc.modified, "created": doc.created}
                    ),
                }
            )

        try:
            return self._build_record(
                doc.path,
                text,
                content_hash,
                size=size,
                modified=doc.modified,
                created=doc.created,
            )
        except Exception as e:
            log.exception("Failed to index %s", doc.path)
            failed[doc.path] = str(e)
            return None

    def _build_record(
        self,
        path: str,
        text: str,
        content_hash: str,
        *,
        size: int,
        modified: float | None,
        created: float | None,
    ) -> DocumentRecord:
        parsed = parse_document(text, path, self._settings)
        for diagnostic in parsed.diagnostics:
            log.debug("%s:%d:%d: %s", path, diagnostic.line + 1, diagnostic.column + 1, diagnostic.message)

        name = document_name(path)
        return DocumentRecord(
            path=path,
            name=name,
            indexed_at=time.time(),
            fingerprint=content_hash,
            outgoing=tuple(parsed.mentions),
            tags=tuple(parsed.tags),
            definitions=tuple(parsed.definitions),
            diagnostics=tuple(parsed.diagnostics),
            metadata=DocumentMetadata(
                title=parsed.title or name,
                size=size,
                modified=modified,
                created=created,
            ),
        )

    # ─────────────────────────────────────────────────────────────────────
    # Incremental updates
    # ─────────────────────────────────────────────────────────────────────

    def update(self, document_id: str, text: str, modified: float | None = None) -> bool:
        """Re-index one document with new content.

        A no-op when the fingerprint is unchanged, so redundant calls are
        cheap. Received during a rebuild, the update is queued and applied
        once the rebuild finishes (the last content wins).

        Args:
            document_id: Document id.
            text: Current document text.
            modified: Modification time (defaults to now).

        Returns:
            True if the index changed.
        """
        if self._building:
            with self._pending_lock:
                self._pending[document_id] = (text, modified)
            log.debug("Queued update of %s until the rebuild finishes", document_id)
            return False

        content_hash = fingerprint(text)
        old = self._documents.get(document_id)
        if old is not None and old.fingerprint == content_hash:
            return False

        try:
            record = self._build_record(
                document_id,
                text,
                content_hash,
                size=len(text.encode("utf-8")),
                modified=modified if modified is not None else time.time(),
                created=old.metadata.created if old is not None else None,
            )
        except Exception as e:
            log.exception("Failed to index %s", document_id)
            self._failed[document_id] = str(e)
            return False

        if old is not None:
            self._detach_links(old)
            self._detach_tags(old)

        old_definitions = set(old.definitions) if old is not None else set()
        changed_names = {name_key(d.name) for d in old_definitions ^ set(record.definitions)}
        self._registry.remove_definitions_from(document_id)
        for definition in record.definitions:
            self._registry.add_definition(definition)

        self._documents[document_id] = record
        self._resolver.invalidate()
        record = self._resolve_record(record)
        self._documents[document_id] = record
        self._attach_links(record)
        self._attach_tags(record)

        dependents: set[str] = set()
        if old is None:
            dependents |= self._documents_matching(document_id)
        if changed_names:
            dependents |= self._documents_with(lambda m: name_key(m.raw) in changed_names)
        dependents.discard(document_id)
        self._reresolve(dependents)

        self._failed.pop(document_id, None)
        log.debug(
            "Updated %s: %d mentions, %d dependent document(s) re-resolved",
            document_id,
            len(record.outgoing),
            len(dependents),
        )
        self._changed()
        return True

    def remove(self, document_id: str) -> bool:
        """Remove a document from the index.

        Mentions in other documents that it resolved, or could have, are re-resolved.

        Returns:
            True if the document was indexed.
        """
        if self._building:
            with self._pending_lock:
                self._pending[document_id] = None
            log.debug("Queued removal of %s until the rebuild finishes", document_id)
            return False

        record = self._documents.pop(document_id, None)
        if record is None:
            self._failed.pop(document_id, None)
            log.debug("Remove of unindexed document %s ignored", document_id)
            return False

        self._detach_links(record)
        self._detach_tags(record)
        affected_names = self._registry.remove_definitions_from(document_id)

        # Former targets, plus mentions the removed name made ambiguous
        dependents = self._backlinks.pop(document_id, set())
        dependents |= self._documents_matching(document_id)
        if affected_names:
            dependents |= self._documents_with(lambda m: name_key(m.raw) in affected_names)
        dependents.discard(document_id)

        self._resolver.invalidate()
        self._reresolve(dependents)

        self._failed.pop(document_id, None)
        log.debug("Removed %s, %d dependent document(s) re-resolved", document_id, len(dependents))
        self._changed()
        return True

    def _resolve_record(self, record: DocumentRecord) -> DocumentRecord:
        outgoing = tuple(self._resolver.resolve(m, record.path).mention for m in record.outgoing)
        return record.model_copy(update={"outgoing": outgoing})

    def _reresolve(self, paths: Iterable[str]) -> None:
        for path in sorted(paths):
            record = self._documents.get(path)
            if record is None:
                continue
            self._detach_links(record)
            record = self._resolve_record(record)
            self._documents[path] = record
            self._attach_links(record)

    def _documents_with(self, predicate: Callable[[Mention], bool]) -> set[str]:
        return {
            path
            for path, record in self._documents.items()
            if any(predicate(m) for m in record.outgoing)
        }

    def _documents_matching(self, document_id: str) -> set[str]:
        """Documents with a mention that document_id could resolve or disambiguate."""
        return {
            path
            for path, record in self._documents.items()
            if any(self._resolver.could_match(m, document_id, path) for m in record.outgoing)
        }

    def _attach_links(self, record: DocumentRecord) -> None:
        for target in _targets(record):
            self._backlinks.setdefault(target, set()).add(record.path)

    def _detach_links(self, record: DocumentRecord) -> None:
        for target in _targets(record):
            sources = self._backlinks.get(target)
            if sources is None:
                continue
            sources.discard(record.path)
            if not sources:
                del self._backlinks[target]

    def _attach_tags(self, record: DocumentRecord) -> None:
        for tag in record.tags:
            self._tags.setdefault(tag, set()).add(record.path)

    def _detach_tags(self, record: DocumentRecord) -> None:
        for tag in record.tags:
            paths = self._tags.get(tag)
            if paths is None:
                continue
            paths.discard(record.path)
            if not paths:
                del self._tags[tag]

    def _drain_pending(self) -> None:
        while True:
            with self._pending_lock:
                if not self._pending:
                    return
                pending, self._pending = self._pending, {}
            for path, item in pending.items():
                if item is None:
                    self.remove(path)
                else:
                    self.update(path, item[0], modified=item[1])

    # ─────────────────────────────────────────────────────────────────────
    # Validation
    # ─────────────────────────────────────────────────────────────────────

    def validate(self) -> RepairReport:
        """Detect and repair index inconsistencies.

        Returns:
            What was repaired; an all-zero report means the index was sound.
        """
        report = self._repair()
        if report.total:
            log.warning("Index validation repaired %d inconsistencies: %s", report.total, report)
            self._changed()
        return report

    def _repair(self) -> RepairReport:
        report = RepairReport()

        # Mentions resolved to documents that are gone become broken
        for path, record in list(self._documents.items()):
            if any(m.target is not None and m.target not in self._documents for m in record.outgoing):
                outgoing = tuple(
                    _unresolved(m) if m.target is not None and m.target not in self._documents else m
                    for m in record.outgoing
                )
                self._documents[path] = record.model_copy(update={"outgoing": outgoing})

        expected: dict[str, set[str]] = {}
        for path, record in self._documents.items():
            for target in _targets(record):
                expected.setdefault(target, set()).add(path)

        for target in list(self._backlinks):
            if target not in self._documents:
                del self._backlinks[target]
                report.orphaned_targets += 1
                continue
            sources = self._backlinks[target]
            stale = sources - expected.get(target, set())
            if stale:
                sources -= stale
                report.stale_sources += len(stale)
            if not sources:
                del self._backlinks[target]

        for target, sources in expected.items():
            actual = self._backlinks.setdefault(target, set())
            missing = sources - actual
            if missing:
                actual |= missing
                report.missing_edges += len(missing)

        for tag in list(self._tags):
            paths = self._tags[tag]
            stale = {p for p in paths if p not in self._documents}
            if stale:
                paths -= stale
                report.stale_tag_documents += len(stale)
            if not paths:
                del self._tags[tag]
                report.empty_tags += 1

        if report.total:
            self._snapshot = None
        return report

    # ─────────────────────────────────────────────────────────────────────
    # Reads and notifications
    # ─────────────────────────────────────────────────────────────────────

    def get_index(self) -> IndexSnapshot:
        """Immutable snapshot of the current index."""
        if self._snapshot is None:
            self._snapshot = IndexSnapshot(
                documents=MappingProxyType(dict(self._documents)),
                backlinks=MappingProxyType(
                    {target: frozenset(sources) for target, sources in self._backlinks.items()}
                ),
                tags=MappingProxyType({tag: frozenset(paths) for tag, paths in self._tags.items()}),
                summary=IndexSummary(
                    version=INDEX_VERSION,
                    document_count=len(self._documents),
                    mention_count=sum(len(r.outgoing) for r in self._documents.values()),
                    built_at=self._built_at,
                ),
            )
        return self._snapshot

    def is_building(self) -> bool:
        return self._building

    def get_stats(self) -> IndexStats:
        return IndexStats(
            document_count=len(self._documents),
            mention_count=sum(len(r.outgoing) for r in self._documents.values()),
            tag_count=len(self._tags),
            last_build_duration_ms=self._last_build_duration_ms,
            failed_documents=len(self._failed),
        )

    @property
    def failures(self) -> dict[str, str]:
        """Documents that could not be read or parsed, with the reason."""
        return dict(self._failed)

    def subscribe(self, listener: IndexListener) -> Callable[[], None]:
        """Call listener with the new snapshot after every mutation.

        Returns:
            Function that unsubscribes the listener.
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _changed(self) -> None:
        self._snapshot = None
        self._registry.clear_cache()
        self._resolver.invalidate()
        snapshot = self.get_index()
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:
                log.exception("Index listener %r failed", listener)
