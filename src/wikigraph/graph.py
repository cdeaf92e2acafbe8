"""Read-only graph queries over an index snapshot."""

from __future__ import annotations

import logging
from collections import deque

from .models import BrokenMention, IndexSnapshot, Mention, ValidationReport

log = logging.getLogger(__name__)


class GraphQueryEngine:
    """Backlinks, forward links, distances and neighborhoods.

    Every resolved mention is an edge; distance and neighborhood queries
    treat edges as undirected. Results are computed against the snapshot
    passed to ``update_index``.
    """

    def __init__(self, snapshot: IndexSnapshot) -> None:
        self._snapshot = snapshot
        self._adjacency: dict[str, set[str]] | None = None
        self._distance_cache: dict[tuple[str, str], int] = {}

    def update_index(self, snapshot: IndexSnapshot) -> None:
        """Switch to a new snapshot and drop everything derived from the old one."""
        self._snapshot = snapshot
        self._adjacency = None
        self._distance_cache.clear()

    @property
    def snapshot(self) -> IndexSnapshot:
        return self._snapshot

    # ─────────────────────────────────────────────────────────────────────
    # Direct lookups
    # ─────────────────────────────────────────────────────────────────────

    def backlinks_of(self, document_id: str) -> list[str]:
        """Documents with a resolved mention of document_id, sorted."""
        return sorted(self._snapshot.backlinks.get(document_id, ()))

    def forward_links_of(self, document_id: str) -> list[Mention]:
        """Outgoing mentions of a document in document order."""
        record = self._snapshot.documents.get(document_id)
        if record is None:
            return []
        return list(record.outgoing)

    def documents_with_tag(self, tag: str) -> list[str]:
        return sorted(self._snapshot.tags.get(tag.lstrip("#").casefold(), ()))

    def tag_counts(self) -> dict[str, int]:
        """Number of documents per tag, most used first."""
        counts = {tag: len(paths) for tag, paths in self._snapshot.tags.items()}
        return dict(sorted(counts.items(), key=lambda item: (-item[1], item[0])))

    # ─────────────────────────────────────────────────────────────────────
    # Traversal
    # ─────────────────────────────────────────────────────────────────────

    def distance(self, source: str, target: str) -> int:
        """Shortest undirected hop count between two documents.

        Returns:
            0 when source == target, -1 when target is unreachable.
        """
        if source == target:
            return 0

        cache_key = (source, target) if source < target else (target, source)
        cached = self._distance_cache.get(cache_key)
        if cached is not None:
            return cached

        result = -1
        adjacency = self._neighbors()
        visited = {source}
        queue: deque[tuple[str, int]] = deque([(source, 0)])
        while queue:
            node, hops = queue.popleft()
            for neighbor in adjacency.get(node, ()):
                if neighbor == target:
                    result = hops + 1
                    queue.clear()
                    break
                if neighbor not in visited:
                    visited.add(neighbor)
                    queue.append((neighbor, hops + 1))

        self._distance_cache[cache_key] = result
        return result

    def connected_neighborhood(self, document_id: str, max_depth: int | None = None) -> dict[str, int]:
        """Documents reachable from document_id, mapped to their hop count.

        Args:
            document_id: Root document (excluded from the result).
            max_depth: Maximum hops; None means unbounded.

        Returns:
            Mapping of document id -> distance, ordered by distance then id.

        Raises:
            ValueError: If max_depth is negative.
        """
        if max_depth is not None and max_depth < 0:
            raise ValueError(f"max_depth must be >= 0, got {max_depth}")

        adjacency = self._neighbors()
        visited: dict[str, int] = {document_id: 0}
        queue: deque[tuple[str, int]] = deque([(document_id, 0)])
        while queue:
            node, depth = queue.popleft()
            if max_depth is not None and depth >= max_depth:
                continue
            for neighbor in sorted(adjacency.get(node, ())):
                if neighbor not in visited:
                    visited[neighbor] = depth + 1
                    queue.append((neighbor, depth + 1))

        del visited[document_id]
        return dict(sorted(visited.items(), key=lambda item: (item[1], item[0])))

    # ─────────────────────────────────────────────────────────────────────
    # Broken links
    # ─────────────────────────────────────────────────────────────────────

    def documents_with_broken_links(self) -> list[str]:
        return sorted(
            path
            for path, record in self._snapshot.documents.items()
            if any(not m.exists for m in record.outgoing)
        )

    def validate_all(self) -> ValidationReport:
        """Count valid and broken mentions across the corpus."""
        report = ValidationReport()
        for path in sorted(self._snapshot.documents):
            for mention in self._snapshot.documents[path].outgoing:
                if mention.exists:
                    report.valid += 1
                else:
                    report.broken += 1
                    report.details.append(
                        BrokenMention(source=path, target=mention.raw, mention=mention)
                    )
        log.debug("Validated %d mentions, %d broken", report.valid + report.broken, report.broken)
        return report

    def _neighbors(self) -> dict[str, set[str]]:
        if self._adjacency is None:
            adjacency: dict[str, set[str]] = {}
            for path, record in self._snapshot.documents.items():
                for mention in record.outgoing:
                    if mention.target is None or mention.target == path:
                        continue
                    adjacency.setdefault(path, set()).add(mention.target)
                    adjacency.setdefault(mention.target, set()).add(path)
            self._adjacency = adjacency
        return self._adjacency
