"""Document parsing: frontmatter, title, reference definitions and mentions."""

from __future__ import annotations

import hashlib
import posixpath
import re
from typing import Any

import frontmatter
import yaml

from ..config import DEFAULT_EXTENSION, EngineSettings
from ..models import ParseDiagnostic, ParseResult, ReferenceDefinition
from .links import LineIndex, extract_mentions, extract_tags

# Leading YAML block delimited by --- lines (python-frontmatter's boundary)
FRONTMATTER_PATTERN = re.compile(
    r"\A---[ \t]*\r?\n(?:.*?\r?\n)??---[ \t]*(?:\r?\n|\Z)",
    re.DOTALL,
)
FRONTMATTER_OPENING = re.compile(r"\A---[ \t]*\r?\n")

# First "# Heading" line
H1_PATTERN = re.compile(r"^#[ \t]+(.+?)[ \t#]*$", re.MULTILINE)


def fingerprint(content: str) -> str:
    """SHA-256 hex digest of the document text, used for change detection."""
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


def document_name(document_id: str) -> str:
    """File name without extension, e.g. "notes/My Note.md" -> "My Note"."""
    return posixpath.splitext(posixpath.basename(document_id))[0]


def parse_document(
    content: str,
    document_id: str,
    settings: EngineSettings | None = None,
) -> ParseResult:
    """Parse one document.

    Pure function: malformed constructs are skipped and reported as
    diagnostics, nothing is raised for them.

    Args:
        content: Full document text.
        document_id: Id of the document (corpus-relative path).
        settings: Parser switches and default extension.

    Returns:
        ParseResult with unresolved mentions, tags, reference definitions,
        title and diagnostics.
    """
    settings = settings or EngineSettings()
    lines = LineIndex(content)
    diagnostics: list[ParseDiagnostic] = []

    body_start = 0
    metadata: dict[str, Any] = {}
    fm_match = FRONTMATTER_PATTERN.match(content)
    if fm_match:
        body_start = fm_match.end()
        try:
            post = frontmatter.loads(content)
        except (yaml.YAMLError, TypeError, ValueError) as e:
            diagnostics.append(lines.diagnostic(f"Invalid frontmatter: {e}", 0))
        else:
            if isinstance(post.metadata, dict):
                metadata = post.metadata
    elif FRONTMATTER_OPENING.match(content):
        diagnostics.append(lines.diagnostic("Unterminated frontmatter: no closing --- line", 0))

    mentions, link_diagnostics = extract_mentions(
        content,
        document_id,
        line_index=lines,
        skip_until=body_start,
        wikilinks=settings.enable_wikilinks,
        markdown_links=settings.enable_markdown_links,
        extension=settings.extension,
    )
    diagnostics.extend(link_diagnostics)

    tags = set(extract_tags(content, body_start))
    tags.update(_frontmatter_tags(metadata.get("tags")))

    title = _extract_title(content[body_start:], metadata, document_id)

    definitions, definition_errors = _extract_definitions(
        metadata, document_id, title, settings.extension
    )
    diagnostics.extend(lines.diagnostic(message, 0) for message in definition_errors)

    return ParseResult(
        mentions=mentions,
        tags=sorted(tags),
        definitions=definitions,
        title=title,
        diagnostics=sorted(diagnostics, key=lambda d: d.offset),
    )


def _frontmatter_tags(value: Any) -> list[str]:
    if isinstance(value, str):
        value = re.split(r"[,\s]+", value)
    if not isinstance(value, list):
        return []
    tags = []
    for tag in value:
        if tag is None:
            continue
        name = str(tag).strip().lstrip("#").casefold()
        if name:
            tags.append(name)
    return tags


def _extract_title(body: str, metadata: dict[str, Any], document_id: str) -> str:
    """Title from frontmatter, else the first H1 heading, else the file name."""
    title = metadata.get("title")
    if title is not None and str(title).strip():
        return str(title).strip()

    h1_match = H1_PATTERN.search(body)
    if h1_match:
        return h1_match.group(1).strip()

    return document_name(document_id)


def resolve_definition_path(path: str, document_id: str, extension: str = DEFAULT_EXTENSION) -> str:
    """Turn a definition path into a document id.

    Paths starting with ./ or ../ are relative to the declaring document's
    directory; anything else is relative to the corpus root.
    """
    normalized = path.strip().replace("\\", "/")
    if normalized.startswith(("./", "../")):
        normalized = posixpath.join(posixpath.dirname(document_id), normalized)
    else:
        normalized = normalized.lstrip("/")

    normalized = posixpath.normpath(normalized) if normalized else ""
    if normalized in ("", "."):
        return ""
    if not posixpath.splitext(normalized)[1]:
        normalized = f"{normalized}{extension}"
    return normalized


def _extract_definitions(
    metadata: dict[str, Any],
    document_id: str,
    title: str,
    extension: str,
) -> tuple[list[ReferenceDefinition], list[str]]:
    """Collect reference definitions from the links: and aliases: fields.

    Supported shapes::

        links:
          shared: notes/target.md
          api: {path: reference/api.md, title: API, priority: 2}
        links:
          - {name: shared, path: notes/target.md}
        aliases: [Other Name]

    Returns:
        Tuple of (definitions, error messages for malformed entries).
    """
    definitions: list[ReferenceDefinition] = []
    errors: list[str] = []

    raw_links = metadata.get("links")
    entries: list[tuple[Any, Any]] = []
    if isinstance(raw_links, dict):
        entries = list(raw_links.items())
    elif isinstance(raw_links, list):
        for item in raw_links:
            if isinstance(item, dict) and "name" in item:
                entries.append((item["name"], item))
            else:
                errors.append(f"Reference definition without a name: {item!r}")
    elif raw_links is not None:
        errors.append("Frontmatter 'links' must be a mapping or a list")

    for name, value in entries:
        name_str = str(name).strip() if name is not None else ""
        if not name_str:
            errors.append("Reference definition with an empty name")
            continue

        if isinstance(value, str):
            value = {"path": value}
        if not isinstance(value, dict) or not value.get("path"):
            errors.append(f"Reference definition '{name_str}' has no path")
            continue

        priority = value.get("priority", 0)
        try:
            priority = int(priority) if priority is not None else 0
        except (TypeError, ValueError):
            errors.append(f"Reference definition '{name_str}' has a non-numeric priority")
            continue

        target = resolve_definition_path(str(value["path"]), document_id, extension)
        if not target:
            errors.append(f"Reference definition '{name_str}' has an empty path")
            continue

        definitions.append(
            ReferenceDefinition(
                name=name_str,
                path=target,
                title=str(value["title"]) if value.get("title") is not None else None,
                source=document_id,
                priority=priority,
            )
        )

    aliases = metadata.get("aliases", [])
    if isinstance(aliases, str):
        aliases = [aliases]
    if isinstance(aliases, list):
        for alias in aliases:
            if alias is None or not str(alias).strip():
                continue
            definitions.append(
                ReferenceDefinition(
                    name=str(alias).strip(),
                    path=document_id,
                    title=title,
                    source=document_id,
                )
            )

    return definitions, errors
