"""Markdown parsing: mentions, tags, frontmatter and reference definitions."""

from ..models import Mention, ParseDiagnostic, ParseResult, ReferenceDefinition
from .links import LineIndex, canonicalize_target, extract_mentions, extract_tags
from .markdown import document_name, fingerprint, parse_document, resolve_definition_path

__all__ = [
    "parse_document",
    "fingerprint",
    "document_name",
    "canonicalize_target",
    "extract_mentions",
    "extract_tags",
    "resolve_definition_path",
    "LineIndex",
    "Mention",
    "ParseDiagnostic",
    "ParseResult",
    "ReferenceDefinition",
]
