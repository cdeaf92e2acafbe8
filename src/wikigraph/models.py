"""Pydantic models for the link index."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

MentionForm = Literal["wikilink", "markdown"]
MatchType = Literal["reference", "exact", "case_insensitive", "fuzzy", "substring"]


class Position(BaseModel):
    """Zero-based line/column position in a document."""

    model_config = ConfigDict(frozen=True)

    line: int
    column: int


class SourceRange(BaseModel):
    """Start/end positions of a construct in a document."""

    model_config = ConfigDict(frozen=True)

    start: Position
    end: Position


class Mention(BaseModel):
    """One inline reference from a document to another.

    Created unresolved by the parser; the resolver returns a resolved copy
    with ``target`` and ``exists`` filled in.
    """

    model_config = ConfigDict(frozen=True)

    raw: str  # Target text as written
    canonical: str  # Canonicalized target, e.g. "my-note.md"
    source: str  # Owning document id
    target: str | None = None  # Resolved document id
    start: int  # Character offset of the construct
    end: int
    range: SourceRange
    form: MentionForm
    exists: bool = False
    display: str  # Text shown to readers


class ParseDiagnostic(BaseModel):
    """A malformed construct skipped by the parser."""

    model_config = ConfigDict(frozen=True)

    message: str
    offset: int
    line: int
    column: int


class ReferenceDefinition(BaseModel):
    """A named alias declared by a document, pointing at a target document."""

    model_config = ConfigDict(frozen=True)

    name: str
    path: str  # Target document id
    title: str | None = None
    source: str  # Declaring document id
    priority: int = 0


class ParseResult(BaseModel):
    """Everything the parser extracts from one document."""

    mentions: list[Mention] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)
    definitions: list[ReferenceDefinition] = Field(default_factory=list)
    title: str | None = None
    diagnostics: list[ParseDiagnostic] = Field(default_factory=list)


class DocumentMetadata(BaseModel):
    """Descriptive metadata of an indexed document."""

    model_config = ConfigDict(frozen=True)

    title: str
    size: int = 0  # Bytes of UTF-8 text
    modified: float | None = None  # Epoch seconds
    created: float | None = None


class DocumentRecord(BaseModel):
    """One corpus entry in the index."""

    model_config = ConfigDict(frozen=True)

    path: str  # Unique document id
    name: str  # File name without extension
    indexed_at: float
    fingerprint: str
    outgoing: tuple[Mention, ...] = ()
    tags: tuple[str, ...] = ()
    definitions: tuple[ReferenceDefinition, ...] = ()
    diagnostics: tuple[ParseDiagnostic, ...] = ()
    metadata: DocumentMetadata


class Candidate(BaseModel):
    """A ranked alternative target for a mention."""

    model_config = ConfigDict(frozen=True)

    path: str
    title: str
    match_type: MatchType
    distance: int = 0


class ResolutionResult(BaseModel):
    """Outcome of resolving one mention."""

    mention: Mention
    target: str | None = None
    exists: bool = False
    match_type: MatchType | None = None
    candidates: list[Candidate] = Field(default_factory=list)


class IndexSummary(BaseModel):
    """Aggregate counters of an index."""

    model_config = ConfigDict(frozen=True)

    version: str
    document_count: int = 0
    mention_count: int = 0
    built_at: float | None = None  # Time of the last full rebuild


class IndexStats(BaseModel):
    """Statistics reported by the index store."""

    document_count: int
    mention_count: int
    tag_count: int
    last_build_duration_ms: float
    failed_documents: int = 0


class BrokenMention(BaseModel):
    """A mention whose target does not exist."""

    source: str
    target: str
    mention: Mention


class ValidationReport(BaseModel):
    """Corpus-wide count of valid and broken mentions."""

    valid: int = 0
    broken: int = 0
    details: list[BrokenMention] = Field(default_factory=list)


class RepairReport(BaseModel):
    """Repairs made by the index validation pass."""

    orphaned_targets: int = 0  # Backlink keys that are not documents
    stale_sources: int = 0  # Backlink sources that no longer claim the target
    missing_edges: int = 0  # Resolved mentions without a backlink entry
    stale_tag_documents: int = 0
    empty_tags: int = 0

    @property
    def total(self) -> int:
        return (
            self.orphaned_targets
            + self.stale_sources
            + self.missing_edges
            + self.stale_tag_documents
            + self.empty_tags
        )


@dataclass(frozen=True)
class IndexSnapshot:
    """Read-only view of the index at one point in time.

    The mappings are read-only proxies over private copies and every record
    is a frozen model, so holders cannot change the store through it.
    """

    documents: Mapping[str, DocumentRecord]
    backlinks: Mapping[str, frozenset[str]]
    tags: Mapping[str, frozenset[str]]
    summary: IndexSummary

    def to_dict(self) -> dict[str, Any]:
        """Serialize to plain data with ordered source and document lists."""
        return {
            "documents": {
                path: record.model_dump(mode="json")
                for path, record in sorted(self.documents.items())
            },
            "backlinks": {
                target: sorted(sources) for target, sources in sorted(self.backlinks.items())
            },
            "tags": {tag: sorted(paths) for tag, paths in sorted(self.tags.items())},
            "summary": self.summary.model_dump(mode="json"),
        }
