"""LinkEngine: the host-facing entry point.

Wires one registry, resolver, index store and graph query engine together
and keeps their caches in step with the index.

Example:
    engine = LinkEngine(FilesystemSource(Path("notes")))
    engine.rebuild()
    engine.backlinks_of("target.md")
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from pathlib import Path

from .config import EngineSettings, load_settings
from .graph import GraphQueryEngine
from .index_store import IndexListener, IndexStore, ProgressCallback
from .models import (
    Candidate,
    IndexSnapshot,
    IndexStats,
    Mention,
    ReferenceDefinition,
    RepairReport,
    ResolutionResult,
    ValidationReport,
)
from .registry import ReferenceRegistry
from .resolver import Resolver
from .sources import DocumentSource, FilesystemSource

log = logging.getLogger(__name__)


class LinkEngine:
    """Bidirectional link index over one document source.

    Args:
        source: Document source the index is built from.
        settings: Parser and resolver tunables (defaults if omitted).
    """

    def __init__(self, source: DocumentSource, settings: EngineSettings | None = None) -> None:
        self.settings = settings or EngineSettings()
        self.source = source
        self.registry = ReferenceRegistry()
        self.resolver = Resolver(self.registry, self.settings)
        self.store = IndexStore(source, self.registry, self.resolver, self.settings)
        self.graph = GraphQueryEngine(self.store.get_index())
        self.store.subscribe(self.graph.update_index)

    @classmethod
    def for_directory(cls, root: Path) -> LinkEngine:
        """Engine over a notes directory, using its .wikigraph.yaml if present."""
        settings = load_settings(Path(root))
        return cls(FilesystemSource(Path(root), settings.extension), settings)

    # Index store

    def rebuild(self, progress: ProgressCallback | None = None) -> IndexSnapshot:
        return self.store.rebuild(progress)

    def update(self, document_id: str, text: str, modified: float | None = None) -> bool:
        return self.store.update(document_id, text, modified)

    def remove(self, document_id: str) -> bool:
        return self.store.remove(document_id)

    def get_index(self) -> IndexSnapshot:
        return self.store.get_index()

    def is_building(self) -> bool:
        return self.store.is_building()

    def get_stats(self) -> IndexStats:
        return self.store.get_stats()

    def validate_index(self) -> RepairReport:
        return self.store.validate()

    def subscribe(self, listener: IndexListener) -> Callable[[], None]:
        """Receive the new snapshot after every successful mutation."""
        return self.store.subscribe(listener)

    # Resolver

    def resolve(self, mention: Mention, source: str | None = None) -> ResolutionResult:
        return self.resolver.resolve(mention, source)

    def resolve_target(self, raw_target: str, source: str | None = None) -> ResolutionResult:
        return self.resolver.resolve_target(raw_target, source)

    def get_candidates(
        self,
        raw_target: str,
        limit: int | None = None,
        source: str | None = None,
    ) -> list[Candidate]:
        return self.resolver.get_candidates(raw_target, limit, source)

    def is_linked(self, source: str, target: str) -> bool:
        return self.resolver.is_linked(source, target)

    def get_mention(self, source: str, target: str) -> Mention | None:
        return self.resolver.get_mention(source, target)

    # Registry

    def get_best_definition(self, name: str, context: str | None = None) -> ReferenceDefinition | None:
        return self.registry.get_best_match(name, context)

    # Graph queries

    def backlinks_of(self, document_id: str) -> list[str]:
        return self.graph.backlinks_of(document_id)

    def forward_links_of(self, document_id: str) -> list[Mention]:
        return self.graph.forward_links_of(document_id)

    def distance(self, source: str, target: str) -> int:
        return self.graph.distance(source, target)

    def connected_neighborhood(self, document_id: str, max_depth: int | None = None) -> dict[str, int]:
        return self.graph.connected_neighborhood(document_id, max_depth)

    def documents_with_broken_links(self) -> list[str]:
        return self.graph.documents_with_broken_links()

    def validate_all(self) -> ValidationReport:
        return self.graph.validate_all()

    def documents_with_tag(self, tag: str) -> list[str]:
        return self.graph.documents_with_tag(tag)

    def tag_counts(self) -> dict[str, int]:
        return self.graph.tag_counts()
