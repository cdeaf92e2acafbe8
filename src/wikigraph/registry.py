"""Named reference definitions and conflict resolution.

Several documents may declare the same reference name. All declarations are
kept; ``get_best_match`` picks one deterministically for a lookup context.
"""

from __future__ import annotations

import logging
import posixpath

from .models import ReferenceDefinition

log = logging.getLogger(__name__)


def name_key(name: str) -> str:
    """Lookup key for a reference name: trimmed, single-spaced, case-folded."""
    return " ".join(name.split()).casefold()


def _normalize_path(path: str) -> str:
    return path.replace("\\", "/").lower()


class ReferenceRegistry:
    """Holds every reference definition, grouped by name."""

    def __init__(self) -> None:
        # name key -> definitions in insertion order
        self._definitions: dict[str, list[ReferenceDefinition]] = {}
        # (name key, context document) -> chosen definition
        self._match_cache: dict[tuple[str, str | None], ReferenceDefinition] = {}

    def add_definition(self, definition: ReferenceDefinition) -> None:
        """Insert a definition, replacing the one with the same source and path.

        Raises:
            ValueError: If the definition name is blank.
        """
        key = name_key(definition.name)
        if not key:
            raise ValueError("Reference definition name must not be empty")

        candidates = self._definitions.setdefault(key, [])
        source = _normalize_path(definition.source)
        for i, existing in enumerate(candidates):
            if _normalize_path(existing.source) == source and existing.path == definition.path:
                candidates[i] = definition
                break
        else:
            candidates.append(definition)

        self._clear_cache_for(key)

    def remove_definitions_from(self, source: str) -> set[str]:
        """Remove every definition declared by a document.

        Args:
            source: Declaring document id.

        Returns:
            Name keys that lost at least one definition.
        """
        normalized = _normalize_path(source)
        affected: set[str] = set()

        for key in list(self._definitions):
            candidates = self._definitions[key]
            kept = [d for d in candidates if _normalize_path(d.source) != normalized]
            if len(kept) == len(candidates):
                continue
            affected.add(key)
            if kept:
                self._definitions[key] = kept
            else:
                del self._definitions[key]

        for key in affected:
            self._clear_cache_for(key)
        if affected:
            log.debug("Removed definitions of %s for %d name(s)", source, len(affected))
        return affected

    def get_best_match(self, name: str, context: str | None = None) -> ReferenceDefinition | None:
        """Pick the definition to use for a name.

        Resolution order:
        1. Definitions declared in the context document's directory
        2. Higher priority (default 0)
        3. Declaring document path, lexicographically

        Args:
            name: Reference name.
            context: Document the lookup is made from.

        Returns:
            The chosen definition, or None if the name is unknown.
        """
        key = name_key(name)
        candidates = self._definitions.get(key)
        if not candidates:
            return None
        if len(candidates) == 1:
            return candidates[0]

        cache_key = (key, context)
        cached = self._match_cache.get(cache_key)
        if cached is not None:
            return cached

        result = self._resolve_conflict(candidates, context)
        self._match_cache[cache_key] = result
        return result

    def has_name(self, name: str) -> bool:
        return name_key(name) in self._definitions

    def get_definitions(self, name: str) -> list[ReferenceDefinition]:
        return list(self._definitions.get(name_key(name), []))

    def get_all_definitions(self) -> dict[str, list[ReferenceDefinition]]:
        """Copy of all definitions keyed by name key."""
        return {key: list(candidates) for key, candidates in self._definitions.items()}

    def get_stats(self) -> dict[str, int]:
        total = sum(len(candidates) for candidates in self._definitions.values())
        conflicts = sum(1 for candidates in self._definitions.values() if len(candidates) > 1)
        return {
            "total_definitions": total,
            "names": len(self._definitions),
            "conflicts": conflicts,
            "cache_size": len(self._match_cache),
        }

    def clear_cache(self) -> None:
        self._match_cache.clear()

    def clear(self) -> None:
        self._definitions.clear()
        self._match_cache.clear()

    def _resolve_conflict(
        self,
        candidates: list[ReferenceDefinition],
        context: str | None,
    ) -> ReferenceDefinition:
        if context:
            context_dir = posixpath.dirname(_normalize_path(context))
            same_directory = [
                d for d in candidates if posixpath.dirname(_normalize_path(d.source)) == context_dir
            ]
            if same_directory:
                return self._select_by_priority(same_directory)

        return self._select_by_priority(candidates)

    @staticmethod
    def _select_by_priority(candidates: list[ReferenceDefinition]) -> ReferenceDefinition:
        return min(candidates, key=lambda d: (-d.priority, _normalize_path(d.source), d.path))

    def _clear_cache_for(self, key: str) -> None:
        for cache_key in [k for k in self._match_cache if k[0] == key]:
            del self._match_cache[cache_key]
