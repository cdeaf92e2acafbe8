"""Shared test fixtures for the wikigraph test suite.

Design:
- tmp_corpus: isolated notes directory with a .wikigraph.yaml marker
- create_note: helper writing a note (optionally with frontmatter)
- memory_engine: LinkEngine over an in-memory source, already rebuilt
- runner: CliRunner for CLI tests
"""

from __future__ import annotations

from collections.abc import Callable
from pathlib import Path

import pytest
from click.testing import CliRunner

from wikigraph.engine import LinkEngine
from wikigraph.models import IndexSnapshot
from wikigraph.sources import MemorySource


# ─────────────────────────────────────────────────────────────────────────────
# Core Fixtures
# ─────────────────────────────────────────────────────────────────────────────


@pytest.fixture
def runner() -> CliRunner:
    """CLI runner with isolated environment."""
    return CliRunner()


@pytest.fixture
def tmp_corpus(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Create an isolated notes directory and point WIKIGRAPH_ROOT at it.

    Usage:
        def test_something(tmp_corpus):
            (tmp_corpus / "note.md").write_text("# Note")
    """
    root = tmp_path / "notes"
    root.mkdir()
    (root / ".wikigraph.yaml").write_text("fuzzy_max_distance: 3\n", encoding="utf-8")
    monkeypatch.setenv("WIKIGRAPH_ROOT", str(root))
    return root


@pytest.fixture
def create_note(tmp_corpus: Path) -> Callable[..., Path]:
    """Return a helper that writes a note below tmp_corpus.

    Usage:
        create_note("projects/plan.md", "See [[Design]]", title="Plan", tags=["work"])
    """

    def _create(
        rel_path: str,
        content: str = "",
        title: str | None = None,
        tags: list[str] | None = None,
    ) -> Path:
        path = tmp_corpus / rel_path
        path.parent.mkdir(parents=True, exist_ok=True)

        if title or tags:
            lines = ["---"]
            if title:
                lines.append(f"title: {title}")
            if tags:
                lines.append(f"tags: [{', '.join(tags)}]")
            lines.append("---")
            lines.append("")
            content = "\n".join(lines) + content

        path.write_text(content, encoding="utf-8")
        return path

    return _create


@pytest.fixture
def memory_engine() -> Callable[[dict[str, str]], LinkEngine]:
    """Return a factory building a rebuilt LinkEngine over in-memory documents."""

    def _build(documents: dict[str, str]) -> LinkEngine:
        engine = LinkEngine(MemorySource(documents))
        engine.rebuild()
        return engine

    return _build


# ─────────────────────────────────────────────────────────────────────────────
# Assertions
# ─────────────────────────────────────────────────────────────────────────────


def assert_backlinks_consistent(snapshot: IndexSnapshot) -> None:
    """Backlinks mirror resolved mentions exactly, in both directions."""
    expected: dict[str, set[str]] = {}
    for path, record in snapshot.documents.items():
        for mention in record.outgoing:
            assert mention.exists == (mention.target is not None)
            if mention.target is not None:
                assert mention.target in snapshot.documents
                expected.setdefault(mention.target, set()).add(path)

    actual = {target: set(sources) for target, sources in snapshot.backlinks.items()}
    assert actual == expected


@pytest.fixture
def check_consistency() -> Callable[[IndexSnapshot], None]:
    """The backlink consistency assertion, as a fixture."""
    return assert_backlinks_consistent
