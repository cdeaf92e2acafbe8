"""Tests for the index store: rebuild, incremental updates, validation."""

from __future__ import annotations

import logging
from collections.abc import Iterator

import pytest

from wikigraph.config import EngineSettings
from wikigraph.errors import DocumentReadError, RebuildInProgressError
from wikigraph.index_store import IndexStore
from wikigraph.registry import ReferenceRegistry
from wikigraph.resolver import Resolver
from wikigraph.sources import MemorySource, SourceDocument


def _store(documents: dict[str, str]) -> tuple[IndexStore, MemorySource]:
    source = MemorySource(documents)
    registry = ReferenceRegistry()
    settings = EngineSettings()
    store = IndexStore(source, registry, Resolver(registry, settings), settings)
    store.rebuild()
    return store, source


def _targets(store: IndexStore, path: str) -> list[str | None]:
    return [m.target for m in store.get_index().documents[path].outgoing]


class FlakySource(MemorySource):
    """Lists documents without text; reading "bad.md" fails."""

    def list_documents(self) -> Iterator[SourceDocument]:
        for document in super().list_documents():
            yield SourceDocument(path=document.path)

    def read_text(self, path: str) -> str:
        if path == "bad.md":
            raise DocumentReadError(path, "Permission denied")
        return super().read_text(path)


# ─────────────────────────────────────────────────────────────────────────────
# Rebuild
# ─────────────────────────────────────────────────────────────────────────────


class TestRebuild:
    def test_resolves_and_builds_backlinks(self, check_consistency):
        store, _ = _store({"a.md": "Link to [[b]]", "b.md": "Back to [[a]] #topic"})
        snapshot = store.get_index()

        assert set(snapshot.documents) == {"a.md", "b.md"}
        assert dict(snapshot.backlinks) == {"a.md": frozenset({"b.md"}), "b.md": frozenset({"a.md"})}
        assert dict(snapshot.tags) == {"topic": frozenset({"b.md"})}
        assert snapshot.summary.document_count == 2
        assert snapshot.summary.mention_count == 2
        assert snapshot.summary.built_at is not None
        check_consistency(snapshot)

    def test_mentions_resolved_against_complete_document_set(self):
        # "a.md" is parsed before "z-last.md" exists in the table
        store, _ = _store({"a.md": "[[z-last]]", "z-last.md": ""})
        assert _targets(store, "a.md") == ["z-last.md"]

    def test_progress_reported(self):
        source = MemorySource({"a.md": "", "b.md": "", "c.md": ""})
        registry = ReferenceRegistry()
        store = IndexStore(source, registry, Resolver(registry))
        calls: list[tuple[int, int]] = []

        store.rebuild(progress=lambda done, total: calls.append((done, total)))

        assert calls == [(1, 3), (2, 3), (3, 3)]

    def test_read_failure_skips_document(self, caplog):
        source = FlakySource({"good.md": "[[other-page]]", "bad.md": "x", "other-page.md": ""})
        registry = ReferenceRegistry()
        store = IndexStore(source, registry, Resolver(registry))

        with caplog.at_level(logging.WARNING, logger="wikigraph"):
            store.rebuild()

        assert set(store.get_index().documents) == {"good.md", "other-page.md"}
        assert store.get_stats().failed_documents == 1
        assert store.failures == {"bad.md": "Permission denied"}
        assert "bad.md" in caplog.text

    def test_idempotent(self):
        store, _ = _store(
            {
                "a.md": "[[b]] #one",
                "b.md": "[[c]] [[completely-missing-page]] #two",
                "c.md": "[[a]]",
            }
        )
        first = store.get_index().to_dict()
        store.rebuild()
        second = store.get_index().to_dict()

        assert first["documents"].keys() == second["documents"].keys()
        assert first["backlinks"] == second["backlinks"]
        assert first["tags"] == second["tags"]

    def test_rebuild_picks_up_source_changes(self):
        store, source = _store({"a.md": "[[b]]", "b.md": ""})
        source.set("a.md", "[[c]]")
        source.set("c.md", "")
        source.delete("b.md")

        store.rebuild()

        assert _targets(store, "a.md") == ["c.md"]
        assert "b.md" not in store.get_index().documents

    def test_concurrent_rebuild_rejected(self):
        source = MemorySource({"a.md": ""})
        registry = ReferenceRegistry()
        store = IndexStore(source, registry, Resolver(registry))
        seen: list[object] = []

        def progress(done: int, total: int) -> None:
            seen.append(store.is_building())
            with pytest.raises(RebuildInProgressError):
                store.rebuild()

        store.rebuild(progress=progress)

        assert seen == [True]
        assert store.is_building() is False

    def test_failed_rebuild_keeps_previous_index(self):
        store, source = _store({"index.md": "---\nlinks:\n  home: a.md\n---\n", "a.md": ""})
        source.set("b.md", "")

        def progress(done: int, total: int) -> None:
            raise RuntimeError("interrupted")

        with pytest.raises(RuntimeError):
            store.rebuild(progress=progress)

        assert set(store.get_index().documents) == {"index.md", "a.md"}
        assert store.is_building() is False
        assert store.update("c.md", "[[home]]") is True
        assert _targets(store, "c.md") == ["a.md"]

    def test_failure_after_resolution_keeps_previous_tables(self, monkeypatch, check_consistency):
        store, source = _store({"a.md": "[[b]]", "b.md": ""})
        before = store.get_index()
        source.set("c.md", "[[a]]")

        def fail() -> None:
            raise RuntimeError("repair failed")

        monkeypatch.setattr(store, "_repair", fail)
        with pytest.raises(RuntimeError):
            store.rebuild()

        index = store.get_index()
        assert set(index.documents) == {"a.md", "b.md"}
        assert dict(index.backlinks) == dict(before.backlinks)
        check_consistency(index)

    def test_mutations_during_rebuild_are_queued(self, check_consistency):
        source = MemorySource({"a.md": "", "b.md": ""})
        registry = ReferenceRegistry()
        store = IndexStore(source, registry, Resolver(registry))
        results: list[bool] = []

        def progress(done: int, total: int) -> None:
            if done == 1:
                results.append(store.update("c.md", "first [[b]]"))
                results.append(store.update("c.md", "last [[a]]"))
                results.append(store.remove("b.md"))

        store.rebuild(progress=progress)

        assert results == [False, False, False]
        snapshot = store.get_index()
        assert set(snapshot.documents) == {"a.md", "c.md"}
        assert snapshot.backlinks["a.md"] == frozenset({"c.md"})
        check_consistency(snapshot)


# ─────────────────────────────────────────────────────────────────────────────
# Incremental updates
# ─────────────────────────────────────────────────────────────────────────────


class TestUpdate:
    def test_unchanged_fingerprint_is_noop(self):
        store, _ = _store({"a.md": "[[b]]", "b.md": ""})
        events = []
        store.subscribe(events.append)
        before = store.get_index()

        assert store.update("a.md", "[[b]]") is False
        assert events == []
        assert store.get_index() is before

    def test_index_failure_counted(self, monkeypatch):
        store, _ = _store({"a.md": ""})

        def explode(*args, **kwargs):
            raise RuntimeError("parser crashed")

        monkeypatch.setattr("wikigraph.index_store.parse_document", explode)

        assert store.update("b.md", "[[a]]") is False
        assert store.get_stats().failed_documents == 1
        assert store.failures == {"b.md": "parser crashed"}
        assert "b.md" not in store.get_index().documents

    def test_failure_cleared_by_successful_update(self, monkeypatch):
        store, _ = _store({"a.md": ""})

        def explode(*args, **kwargs):
            raise RuntimeError("boom")

        monkeypatch.setattr("wikigraph.index_store.parse_document", explode)
        store.update("b.md", "x")
        monkeypatch.undo()

        assert store.update("b.md", "x") is True
        assert store.get_stats().failed_documents == 0

    def test_moves_backlinks(self, check_consistency):
        store, _ = _store({"a.md": "[[b]]", "b.md": "", "c.md": ""})

        assert store.update("a.md", "[[c]]") is True

        snapshot = store.get_index()
        assert "b.md" not in snapshot.backlinks
        assert snapshot.backlinks["c.md"] == frozenset({"a.md"})
        check_consistency(snapshot)

    def test_replaces_tags(self):
        store, _ = _store({"a.md": "#old", "b.md": "#old #shared"})
        store.update("a.md", "#new")

        tags = store.get_index().tags
        assert tags["old"] == frozenset({"b.md"})
        assert tags["new"] == frozenset({"a.md"})

        store.update("b.md", "#shared")
        assert "old" not in store.get_index().tags

    def test_new_document_fixes_broken_mentions(self, check_consistency):
        store, _ = _store({"a.md": "See [[zebra-notes]]"})
        assert _targets(store, "a.md") == [None]

        assert store.update("zebra-notes.md", "# Zebra") is True

        assert _targets(store, "a.md") == ["zebra-notes.md"]
        assert store.get_index().backlinks["zebra-notes.md"] == frozenset({"a.md"})
        check_consistency(store.get_index())

    def test_new_document_replaces_fuzzy_match(self, check_consistency):
        store, _ = _store({"a.md": "[[planning]]", "plannin.md": ""})
        assert _targets(store, "a.md") == ["plannin.md"]

        store.update("planning.md", "")

        assert _targets(store, "a.md") == ["planning.md"]
        check_consistency(store.get_index())

    def test_changed_definition_reresolves_dependents(self, check_consistency):
        store, _ = _store(
            {
                "index.md": "---\nlinks:\n  shared: target-one.md\n---\n",
                "a.md": "[[shared]]",
                "target-one.md": "",
                "target-two.md": "",
            }
        )
        assert _targets(store, "a.md") == ["target-one.md"]

        store.update("index.md", "---\nlinks:\n  shared: target-two.md\n---\n")

        assert _targets(store, "a.md") == ["target-two.md"]
        check_consistency(store.get_index())

    def test_self_link(self, check_consistency):
        store, _ = _store({"loop.md": "[[loop]]"})
        assert store.get_index().backlinks["loop.md"] == frozenset({"loop.md"})

        store.update("loop.md", "no links")
        assert "loop.md" not in store.get_index().backlinks
        check_consistency(store.get_index())


class TestRemove:
    def test_strips_backlinks_and_breaks_mentions(self, check_consistency):
        store, _ = _store({"a.md": "[[target-doc]]", "target-doc.md": "x"})

        assert store.remove("target-doc.md") is True

        snapshot = store.get_index()
        assert "target-doc.md" not in snapshot.documents
        assert "target-doc.md" not in snapshot.backlinks
        assert _targets(store, "a.md") == [None]
        check_consistency(snapshot)

    def test_dependents_repoint(self, check_consistency):
        store, _ = _store({"a.md": "[[guide]]", "guide.md": "", "guides.md": ""})
        store.remove("guide.md")

        assert _targets(store, "a.md") == ["guides.md"]
        check_consistency(store.get_index())

    def test_source_removed_from_backlinks(self):
        store, _ = _store({"a.md": "[[b]]", "c.md": "[[b]]", "b.md": ""})
        store.remove("a.md")
        assert store.get_index().backlinks["b.md"] == frozenset({"c.md"})

    def test_empty_tag_deleted(self):
        store, _ = _store({"a.md": "#solo #shared", "b.md": "#shared"})
        store.remove("a.md")

        tags = store.get_index().tags
        assert "solo" not in tags
        assert tags["shared"] == frozenset({"b.md"})

    def test_definitions_removed(self):
        store, _ = _store(
            {
                "index.md": "---\nlinks:\n  shared: target-one.md\n---\n",
                "a.md": "[[shared]]",
                "target-one.md": "",
            }
        )
        store.remove("index.md")
        assert _targets(store, "a.md") == [None]

    def test_unknown_document(self):
        store, _ = _store({"a.md": ""})
        events = []
        store.subscribe(events.append)

        assert store.remove("missing.md") is False
        assert events == []


# ─────────────────────────────────────────────────────────────────────────────
# Reads, notifications, validation
# ─────────────────────────────────────────────────────────────────────────────


class TestSnapshot:
    def test_read_only(self):
        store, _ = _store({"a.md": "[[b]]", "b.md": ""})
        snapshot = store.get_index()

        with pytest.raises(TypeError):
            snapshot.documents["x.md"] = snapshot.documents["a.md"]  # type: ignore[index]
        with pytest.raises(AttributeError):
            snapshot.backlinks["b.md"].add("x.md")  # type: ignore[attr-defined]

    def test_old_snapshot_unchanged_by_update(self):
        store, _ = _store({"a.md": "[[b]]", "b.md": ""})
        before = store.get_index()

        store.update("a.md", "nothing")

        assert before.backlinks["b.md"] == frozenset({"a.md"})
        assert "b.md" not in store.get_index().backlinks

    def test_to_dict_sorted(self):
        store, _ = _store({"z.md": "[[target]]", "a.md": "[[target]]", "target.md": ""})
        data = store.get_index().to_dict()

        assert data["backlinks"]["target.md"] == ["a.md", "z.md"]
        assert list(data["documents"]) == ["a.md", "target.md", "z.md"]
        assert data["summary"]["document_count"] == 3


class TestSubscribe:
    def test_listener_receives_new_snapshot(self):
        store, _ = _store({"a.md": ""})
        received = []
        unsubscribe = store.subscribe(received.append)

        store.update("b.md", "new")
        assert len(received) == 1
        assert "b.md" in received[0].documents

        unsubscribe()
        store.update("c.md", "newer")
        assert len(received) == 1

    def test_failing_listener_does_not_block_others(self, caplog):
        store, _ = _store({"a.md": ""})
        received = []

        def broken_listener(snapshot):
            raise RuntimeError("boom")

        store.subscribe(broken_listener)
        store.subscribe(received.append)

        with caplog.at_level(logging.ERROR, logger="wikigraph"):
            store.update("b.md", "new")

        assert len(received) == 1
        assert "listener" in caplog.text


class TestValidate:
    def test_clean_index(self):
        store, _ = _store({"a.md": "[[b]] #t", "b.md": ""})
        assert store.validate().total == 0

    def test_repairs(self, check_consistency):
        store, _ = _store({"a.md": "[[b]] #t", "b.md": "", "c.md": "[[b]]"})
        store._backlinks["ghost.md"] = {"a.md"}
        store._backlinks["b.md"].discard("c.md")
        store._backlinks["a.md"] = {"b.md"}
        store._tags["t"].add("ghost.md")
        store._tags["empty"] = set()

        report = store.validate()

        assert report.orphaned_targets == 1
        assert report.missing_edges == 1
        assert report.stale_sources == 1
        assert report.stale_tag_documents == 1
        assert report.empty_tags == 1
        check_consistency(store.get_index())
        assert store.validate().total == 0

    def test_demotes_mentions_to_missing_documents(self, check_consistency):
        store, _ = _store({"a.md": "[[b]]", "b.md": ""})
        del store._documents["b.md"]

        store.validate()

        assert _targets(store, "a.md") == [None]
        check_consistency(store.get_index())


class TestStats:
    def test_counts(self):
        store, _ = _store({"a.md": "[[b]] [[c]] #x", "b.md": "#y", "c.md": ""})
        stats = store.get_stats()

        assert stats.document_count == 3
        assert stats.mention_count == 2
        assert stats.tag_count == 2
        assert stats.last_build_duration_ms >= 0
        assert stats.failed_documents == 0
