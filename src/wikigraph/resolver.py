"""Resolve mentions to documents.

Resolution order:
1. Reference definitions (named aliases declared in frontmatter)
2. Exact file-name match (case-sensitive)
3. Case-insensitive match
4. Fuzzy match (bounded edit distance)
5. Substring match (only when unambiguous)
"""

from __future__ import annotations

import logging
import posixpath
from collections.abc import Mapping
from typing import NamedTuple

from .config import EngineSettings
from .models import (
    Candidate,
    DocumentRecord,
    MatchType,
    Mention,
    Position,
    ReferenceDefinition,
    ResolutionResult,
    SourceRange,
)
from .parser.links import canonicalize_target
from .registry import ReferenceRegistry, name_key

log = logging.getLogger(__name__)

_TIER_RANK: dict[MatchType, int] = {
    "reference": 0,
    "exact": 1,
    "case_insensitive": 2,
    "fuzzy": 3,
    "substring": 4,
}


def levenshtein(a: str, b: str, max_distance: int | None = None) -> int:
    """Edit distance between two strings.

    When max_distance is given, any result above it is reported as
    max_distance + 1 and computation stops early.
    """
    if a == b:
        return 0
    if len(a) < len(b):
        a, b = b, a
    if max_distance is not None and len(a) - len(b) > max_distance:
        return max_distance + 1

    previous = list(range(len(b) + 1))
    for i, char_a in enumerate(a, start=1):
        current = [i]
        for j, char_b in enumerate(b, start=1):
            current.append(
                min(
                    previous[j] + 1,  # deletion
                    current[j - 1] + 1,  # insertion
                    previous[j - 1] + (char_a != char_b),  # substitution
                )
            )
        if max_distance is not None and min(current) > max_distance:
            return max_distance + 1
        previous = current

    return previous[-1]


class _NameEntry(NamedTuple):
    path: str
    basename: str
    path_lower: str
    basename_lower: str
    path_stem: str  # lower-case, extension removed
    basename_stem: str


class _Match(NamedTuple):
    target: str | None
    match_type: MatchType | None
    candidates: tuple[Candidate, ...]


class Resolver:
    """Maps mentions to document ids using the current document table.

    The table is shared with the index store; ``invalidate`` must be called
    whenever it changes.
    """

    def __init__(
        self,
        registry: ReferenceRegistry,
        settings: EngineSettings | None = None,
        documents: Mapping[str, DocumentRecord] | None = None,
    ) -> None:
        self._registry = registry
        self._settings = settings or EngineSettings()
        self._documents: Mapping[str, DocumentRecord] = documents if documents is not None else {}
        self._cache: dict[tuple[str, str | None, str | None], _Match] = {}
        self._entries: list[_NameEntry] | None = None

    def bind(self, documents: Mapping[str, DocumentRecord]) -> None:
        """Resolve against a different document table."""
        self._documents = documents
        self.invalidate()

    def invalidate(self) -> None:
        """Drop cached resolutions; the document set may have changed."""
        self._cache.clear()
        self._entries = None

    @property
    def cache_size(self) -> int:
        return len(self._cache)

    # ─────────────────────────────────────────────────────────────────────
    # Resolution
    # ─────────────────────────────────────────────────────────────────────

    def resolve(self, mention: Mention, source: str | None = None) -> ResolutionResult:
        """Resolve one mention.

        Args:
            mention: Mention produced by the parser.
            source: Document containing the mention (defaults to mention.source).

        Returns:
            ResolutionResult with a resolved copy of the mention.
        """
        source = source or mention.source
        canonical = canonicalize_target(mention.raw, self._settings.extension)
        target_key = self._target_key(canonical, source)
        by_name = self._registry.has_name(mention.raw)

        cache_key = (
            target_key,
            name_key(mention.raw) if by_name else None,
            posixpath.dirname(source) if by_name else None,
        )
        match = self._cache.get(cache_key)
        if match is None:
            match = self._match(mention.raw, target_key, source, by_name)
            self._cache[cache_key] = match

        resolved = mention.model_copy(
            update={
                "canonical": canonical,
                "target": match.target,
                "exists": match.target is not None,
            }
        )
        return ResolutionResult(
            mention=resolved,
            target=match.target,
            exists=match.target is not None,
            match_type=match.match_type,
            candidates=list(match.candidates),
        )

    def resolve_target(self, raw_target: str, source: str | None = None) -> ResolutionResult:
        """Resolve a bare link target as if source contained [[raw_target]]."""
        text = f"[[{raw_target}]]"
        origin = Position(line=0, column=0)
        mention = Mention(
            raw=raw_target.strip(),
            canonical=canonicalize_target(raw_target, self._settings.extension),
            source=source or "",
            start=0,
            end=len(text),
            range=SourceRange(start=origin, end=Position(line=0, column=len(text))),
            form="wikilink",
            display=raw_target.strip(),
        )
        return self.resolve(mention, source or "")

    def get_candidates(
        self,
        raw_target: str,
        limit: int | None = None,
        source: str | None = None,
    ) -> list[Candidate]:
        """Rank documents that could be meant by a link target.

        Reference definitions come first, then exact, case-insensitive,
        fuzzy and substring matches; ties go to the smaller distance, then
        the smaller id.
        """
        if limit is None:
            limit = self._settings.candidate_limit
        canonical = canonicalize_target(raw_target, self._settings.extension)
        target_key = self._target_key(canonical, source or "")
        return self._rank_candidates(raw_target, target_key, source, limit)

    def find_best_match(self, target_key: str) -> tuple[str | None, MatchType | None]:
        """Tiered file-name match for a canonical target.

        Returns:
            Tuple of (document id, tier) or (None, None).
        """
        return self._match_tiers(target_key)

    def could_match(self, mention: Mention, path: str, source: str | None = None) -> bool:
        """Whether a document at path takes part in resolving mention.

        True when the mention names a reference definition, or when path
        matches its target under any file-name tier (including a substring
        hit that only makes the match ambiguous). Adding or removing a
        document can change only the mentions for which this holds.
        """
        if self._registry.has_name(mention.raw):
            return True

        canonical = canonicalize_target(mention.raw, self._settings.extension)
        target_key = self._target_key(canonical, source or mention.source)
        if not target_key:
            return False

        entry = self._name_entry(path)
        by_path = "/" in target_key
        lower = target_key.lower()
        if self._matches_insensitive(entry, lower, by_path):
            return True

        target_stem = self._strip_extension(lower)
        stem = entry.path_stem if by_path else entry.basename_stem
        max_distance = self._settings.fuzzy_max_distance
        if levenshtein(target_stem, stem, max_distance) <= max_distance:
            return True
        return bool(target_stem) and target_stem in stem

    def is_linked(self, source: str, target: str) -> bool:
        """Whether source has a resolved mention of target."""
        return self.get_mention(source, target) is not None

    def get_mention(self, source: str, target: str) -> Mention | None:
        """First resolved mention in source that points at target."""
        record = self._documents.get(source)
        if record is None:
            return None
        for mention in record.outgoing:
            if mention.target == target:
                return mention
        return None

    # ─────────────────────────────────────────────────────────────────────
    # Matching internals
    # ─────────────────────────────────────────────────────────────────────

    def _match(self, raw: str, target_key: str, source: str, by_name: bool) -> _Match:
        candidates = tuple(
            self._rank_candidates(raw, target_key, source, self._settings.candidate_limit)
        )

        if by_name:
            definition = self._registry.get_best_match(raw, source)
            if definition is not None:
                target = self._definition_target(definition)
                if target is not None:
                    return _Match(target, "reference", candidates)
                log.debug(
                    "Reference '%s' from %s points at missing %s",
                    raw,
                    definition.source,
                    definition.path,
                )

        target, match_type = self._match_tiers(target_key)
        return _Match(target, match_type, candidates)

    def _definition_target(self, definition: ReferenceDefinition) -> str | None:
        if definition.path in self._documents:
            return definition.path
        # Definitions are explicit: no fuzzy or substring guessing
        target, _ = self._match_tiers(definition.path.lower(), loose=False)
        return target

    def _match_tiers(
        self, target_key: str, loose: bool = True
    ) -> tuple[str | None, MatchType | None]:
        if not target_key:
            return None, None

        entries = self._name_entries()
        by_path = "/" in target_key
        lower = target_key.lower()

        exact = sorted(e.path for e in entries if (e.path if by_path else e.basename) == target_key)
        if exact:
            return exact[0], "exact"

        insensitive = sorted(e.path for e in entries if self._matches_insensitive(e, lower, by_path))
        if insensitive:
            return insensitive[0], "case_insensitive"

        if not loose:
            return None, None

        target_stem = self._strip_extension(lower)
        max_distance = self._settings.fuzzy_max_distance
        best: tuple[int, str] | None = None
        for entry in entries:
            stem = entry.path_stem if by_path else entry.basename_stem
            distance = levenshtein(target_stem, stem, max_distance)
            if distance <= max_distance and (best is None or (distance, entry.path) < best):
                best = (distance, entry.path)
        if best is not None:
            return best[1], "fuzzy"

        # Several substring hits stay unresolved; they surface as candidates
        substring = [
            e.path
            for e in entries
            if target_stem and target_stem in (e.path_stem if by_path else e.basename_stem)
        ]
        if len(substring) == 1:
            return substring[0], "substring"
        return None, None

    def _rank_candidates(
        self,
        raw: str,
        target_key: str,
        source: str | None,
        limit: int,
    ) -> list[Candidate]:
        if limit <= 0:
            return []

        ranked: dict[str, tuple[int, int, str, MatchType]] = {}

        if self._registry.has_name(raw):
            best = self._registry.get_best_match(raw, source)
            definitions = self._registry.get_definitions(raw)
            definitions.sort(key=lambda d: d is not best)
            for position, definition in enumerate(definitions):
                target = self._definition_target(definition)
                if target is not None and target not in ranked:
                    ranked[target] = (_TIER_RANK["reference"], position, target, "reference")

        if target_key:
            by_path = "/" in target_key
            lower = target_key.lower()
            target_stem = self._strip_extension(lower)
            max_distance = self._settings.fuzzy_max_distance

            for entry in self._name_entries():
                if entry.path in ranked:
                    continue
                name = entry.path if by_path else entry.basename
                stem = entry.path_stem if by_path else entry.basename_stem
                match_type: MatchType | None = None
                distance = 0
                if name == target_key:
                    match_type = "exact"
                elif self._matches_insensitive(entry, lower, by_path):
                    match_type = "case_insensitive"
                else:
                    distance = levenshtein(target_stem, stem, max_distance)
                    if distance <= max_distance:
                        match_type = "fuzzy"
                    elif target_stem and target_stem in stem:
                        match_type = "substring"
                        distance = len(stem) - len(target_stem)
                if match_type is not None:
                    ranked[entry.path] = (_TIER_RANK[match_type], distance, entry.path, match_type)

        ordered = sorted(ranked.values())[:limit]
        return [
            Candidate(
                path=path,
                title=self._title_of(path),
                match_type=match_type,
                distance=0 if match_type == "reference" else distance,
            )
            for _, distance, path, match_type in ordered
        ]

    def _target_key(self, canonical: str, source: str) -> str:
        """Canonical target, with ./ and ../ targets joined to the source directory."""
        if canonical.startswith(("./", "../")):
            joined = posixpath.normpath(posixpath.join(posixpath.dirname(source), canonical))
            return "" if joined in (".", "") else joined.lstrip("/")
        return canonical

    @staticmethod
    def _matches_insensitive(entry: _NameEntry, lower: str, by_path: bool) -> bool:
        if by_path:
            return entry.path_lower == lower or entry.path_lower.endswith(f"/{lower}")
        return entry.basename_lower == lower

    def _strip_extension(self, name: str) -> str:
        extension = self._settings.extension.lower()
        if extension and name.endswith(extension):
            return name[: -len(extension)]
        return name

    def _name_entries(self) -> list[_NameEntry]:
        if self._entries is None:
            self._entries = [self._name_entry(path) for path in self._documents]
        return self._entries

    def _name_entry(self, path: str) -> _NameEntry:
        basename = posixpath.basename(path)
        path_lower = path.lower()
        basename_lower = basename.lower()
        return _NameEntry(
            path=path,
            basename=basename,
            path_lower=path_lower,
            basename_lower=basename_lower,
            path_stem=self._strip_extension(path_lower),
            basename_stem=self._strip_extension(basename_lower),
        )

    def _title_of(self, path: str) -> str:
        record = self._documents.get(path)
        if record is None:
            return posixpath.splitext(posixpath.basename(path))[0]
        return record.metadata.title
