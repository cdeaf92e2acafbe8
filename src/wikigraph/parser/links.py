"""Mention and tag extraction.

Handles [[wikilink]], [[wikilink|display]] and [display](target) links,
plus #tags. Offsets are character offsets into the full document text.
"""

from __future__ import annotations

import re
from bisect import bisect_left, bisect_right
from urllib.parse import unquote

from ..config import DEFAULT_EXTENSION
from ..models import Mention, ParseDiagnostic, Position, SourceRange

# [[target]] or [[target|display]]; the target may be empty so it can be reported
WIKILINK_PATTERN = re.compile(r"\[\[([^\[\]|]*)(?:\|([^\[\]]*))?\]\]")

# [display](target); a leading ! marks an image
MARKDOWN_LINK_PATTERN = re.compile(r"(!?)\[([^\]]*)\]\(([^)]*)\)")

# #tag at line start or after whitespace
TAG_PATTERN = re.compile(r"(?:^|(?<=\s))#([\w-]+)", re.MULTILINE)

# URL schemes (http:, https:, mailto:, ...) mark external links
_SCHEME_PATTERN = re.compile(r"^[a-zA-Z][a-zA-Z0-9+.-]*:")
# Optional link title: [x](target "Title")
_LINK_TITLE_PATTERN = re.compile(r"""\s+(?:"[^"]*"|'[^']*')\s*$""")

_LINE_BREAK = re.compile(r"\r\n|\r|\n")
_SEPARATOR_RUN = re.compile(r"[\s_]+")
_DASH_RUN = re.compile(r"-{2,}")
_DASHES_AROUND_SLASH = re.compile(r"-*/+-*")


class LineIndex:
    """Offset to line/column conversion for one text.

    Treats \\n, \\r\\n and a lone \\r as a single line break each.
    """

    def __init__(self, text: str) -> None:
        self._length = len(text)
        self._starts = [0]
        self._starts.extend(match.end() for match in _LINE_BREAK.finditer(text))

    def position(self, offset: int) -> Position:
        offset = max(0, min(offset, self._length))
        line = bisect_right(self._starts, offset) - 1
        return Position(line=line, column=offset - self._starts[line])

    def range(self, start: int, end: int) -> SourceRange:
        return SourceRange(start=self.position(start), end=self.position(end))

    def diagnostic(self, message: str, offset: int) -> ParseDiagnostic:
        pos = self.position(offset)
        return ParseDiagnostic(message=message, offset=offset, line=pos.line, column=pos.column)


def canonicalize_target(raw: str, extension: str = DEFAULT_EXTENSION) -> str:
    """Normalize a link target into a file-like identifier.

    Examples:
        "My Note"        -> "my-note.md"
        "TODO"           -> "todo.md"
        "my_note.md"     -> "my-note.md"
        "Projects/Q3 plan" -> "projects/q3-plan.md"

    Args:
        raw: Link target as written.
        extension: Extension appended when absent.

    Returns:
        Canonical target, or "" when nothing is left after normalization.
    """
    normalized = raw.strip().lower().replace("\\", "/")
    normalized = _SEPARATOR_RUN.sub("-", normalized)
    normalized = _DASH_RUN.sub("-", normalized)
    normalized = _DASHES_AROUND_SLASH.sub("/", normalized)
    normalized = normalized.strip("-/")

    if normalized in ("", ".", ".."):
        return ""

    extension = extension.lower()
    if extension and not normalized.endswith(extension):
        normalized = f"{normalized}{extension}"

    return normalized


def extract_mentions(
    content: str,
    source: str,
    *,
    line_index: LineIndex | None = None,
    skip_until: int = 0,
    wikilinks: bool = True,
    markdown_links: bool = True,
    extension: str = DEFAULT_EXTENSION,
) -> tuple[list[Mention], list[ParseDiagnostic]]:
    """Extract unresolved mentions from document text.

    Args:
        content: Full document text.
        source: Id of the document the text belongs to.
        line_index: Precomputed LineIndex for content.
        skip_until: Constructs starting before this offset are ignored
            (used to skip the frontmatter block).
        wikilinks: Extract [[...]] mentions.
        markdown_links: Extract [...](...) mentions.
        extension: Default extension for canonical targets.

    Returns:
        Tuple of (mentions in document order, diagnostics).
    """
    lines = line_index or LineIndex(content)
    mentions: list[Mention] = []
    diagnostics: list[ParseDiagnostic] = []

    wiki_spans: list[tuple[int, int]] = [
        match.span() for match in WIKILINK_PATTERN.finditer(content, skip_until)
    ]

    if wikilinks:
        for match in WIKILINK_PATTERN.finditer(content, skip_until):
            target = match.group(1).strip()
            if not target:
                diagnostics.append(lines.diagnostic("Empty wikilink target", match.start()))
                continue

            canonical = canonicalize_target(target, extension)
            if not canonical:
                diagnostics.append(
                    lines.diagnostic(f"Wikilink target '{target}' is not a valid name", match.start())
                )
                continue

            display = (match.group(2) or "").strip() or target
            mentions.append(
                Mention(
                    raw=target,
                    canonical=canonical,
                    source=source,
                    start=match.start(),
                    end=match.end(),
                    range=lines.range(match.start(), match.end()),
                    form="wikilink",
                    display=display,
                )
            )

        diagnostics.extend(_unterminated_wikilinks(content, wiki_spans, lines, skip_until))

    if markdown_links:
        wiki_starts = [start for start, _ in wiki_spans]
        for match in MARKDOWN_LINK_PATTERN.finditer(content, skip_until):
            if match.group(1):  # image
                continue
            if _inside_spans(match.start(), wiki_starts, wiki_spans):
                continue

            target = _clean_markdown_target(match.group(3))
            if target is None:
                continue
            if not target:
                diagnostics.append(lines.diagnostic("Empty link target", match.start()))
                continue

            canonical = canonicalize_target(target, extension)
            if not canonical:
                diagnostics.append(
                    lines.diagnostic(f"Link target '{target}' is not a valid name", match.start())
                )
                continue

            display = match.group(2).strip() or target
            mentions.append(
                Mention(
                    raw=target,
                    canonical=canonical,
                    source=source,
                    start=match.start(),
                    end=match.end(),
                    range=lines.range(match.start(), match.end()),
                    form="markdown",
                    display=display,
                )
            )

    mentions.sort(key=lambda m: m.start)
    diagnostics.sort(key=lambda d: d.offset)
    return mentions, diagnostics


def extract_tags(content: str, skip_until: int = 0) -> list[str]:
    """Extract tags from content.

    Returns:
        Sorted list of unique, case-folded tag names.
    """
    tags = {match.group(1).casefold() for match in TAG_PATTERN.finditer(content, skip_until)}
    tags.discard("")
    return sorted(tags)


def _clean_markdown_target(target: str) -> str | None:
    """Reduce an inline link target to a document reference.

    Returns:
        The cleaned target, "" for an empty target, or None when the link
        does not reference a document (external URL or in-page anchor).
    """
    target = target.strip()
    if not target:
        return ""

    if target.startswith("<") and target.endswith(">"):
        target = target[1:-1].strip()
    else:
        target = _LINK_TITLE_PATTERN.sub("", target)

    if target.startswith("#"):
        return None
    if _SCHEME_PATTERN.match(target):
        return None

    target = target.split("#", 1)[0].split("?", 1)[0]
    return unquote(target).strip()


def _inside_spans(offset: int, starts: list[int], spans: list[tuple[int, int]]) -> bool:
    idx = bisect_right(starts, offset) - 1
    return idx >= 0 and spans[idx][0] <= offset < spans[idx][1]


def _unterminated_wikilinks(
    content: str,
    spans: list[tuple[int, int]],
    lines: LineIndex,
    skip_until: int,
) -> list[ParseDiagnostic]:
    starts = [start for start, _ in spans]
    diagnostics: list[ParseDiagnostic] = []
    position = content.find("[[", skip_until)
    while position != -1:
        # "[[[x]]" opens at the second bracket; treat the extra one as text
        nearest = bisect_left(starts, position)
        opens_link = nearest < len(starts) and starts[nearest] in (position, position + 1)
        if opens_link:
            position = content.find("[[", spans[nearest][1])
            continue
        if not _inside_spans(position, starts, spans):
            diagnostics.append(lines.diagnostic("Unterminated wikilink", position))
        position = content.find("[[", position + 2)
    return diagnostics
