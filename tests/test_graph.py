"""Tests for graph queries over the index."""

from __future__ import annotations

import pytest

# a -> b -> c, e -> a, d isolated
CHAIN = {
    "a.md": "Start [[b]] #topic",
    "b.md": "Middle [[c]] #Topic #other",
    "c.md": "End",
    "d.md": "Alone #other",
    "e.md": "Before [[a]]",
}


@pytest.fixture
def engine(memory_engine):
    return memory_engine(CHAIN)


class TestDirectLookups:
    def test_backlinks_of(self, engine):
        assert engine.backlinks_of("b.md") == ["a.md"]
        assert engine.backlinks_of("e.md") == []
        assert engine.backlinks_of("missing.md") == []

    def test_forward_links_of(self, engine):
        mentions = engine.forward_links_of("a.md")
        assert [(m.raw, m.target) for m in mentions] == [("b", "b.md")]
        assert engine.forward_links_of("missing.md") == []


class TestDistance:
    @pytest.mark.parametrize(
        "source,target,expected",
        [
            ("a.md", "a.md", 0),
            ("a.md", "b.md", 1),
            ("a.md", "c.md", 2),
            ("c.md", "a.md", 2),
            ("e.md", "c.md", 3),
            ("a.md", "d.md", -1),
            ("a.md", "missing.md", -1),
        ],
    )
    def test_undirected_hops(self, engine, source, target, expected):
        assert engine.distance(source, target) == expected

    def test_cycles_terminate(self, memory_engine):
        engine = memory_engine({"a.md": "[[b]]", "b.md": "[[c]]", "c.md": "[[a]]", "x.md": ""})
        assert engine.distance("a.md", "c.md") == 1
        assert engine.distance("a.md", "x.md") == -1

    def test_cache_cleared_on_mutation(self, engine):
        assert engine.distance("a.md", "d.md") == -1

        engine.update("d.md", "Now linked to [[c]]")

        assert engine.distance("a.md", "d.md") == 3


class TestConnectedNeighborhood:
    def test_unbounded(self, engine):
        assert engine.connected_neighborhood("a.md") == {"b.md": 1, "e.md": 1, "c.md": 2}

    def test_bounded(self, engine):
        assert engine.connected_neighborhood("a.md", 1) == {"b.md": 1, "e.md": 1}

    def test_zero_depth(self, engine):
        assert engine.connected_neighborhood("a.md", 0) == {}

    def test_negative_depth_rejected(self, engine):
        with pytest.raises(ValueError):
            engine.connected_neighborhood("a.md", -1)

    def test_isolated(self, engine):
        assert engine.connected_neighborhood("d.md") == {}


class TestBrokenLinks:
    def test_documents_with_broken_links(self, memory_engine):
        engine = memory_engine(
            {
                "ok.md": "[[target]]",
                "target.md": "",
                "bad.md": "[[target]] [[completely-missing-page]]",
            }
        )
        assert engine.documents_with_broken_links() == ["bad.md"]

    def test_validate_all(self, memory_engine):
        """Scenario E: ten valid mentions and one broken one."""
        documents = {f"n{i}.md": "Back to [[hub]]" for i in range(1, 6)}
        documents["hub.md"] = (
            "[[n1]] [[n2]] [[n3]] [[n4]] [[n5]]\n" "Also [[completely-missing-page]]"
        )
        engine = memory_engine(documents)

        report = engine.validate_all()

        assert report.valid == 10
        assert report.broken == 1
        assert len(report.details) == 1
        detail = report.details[0]
        assert detail.source == "hub.md"
        assert detail.target == "completely-missing-page"
        assert detail.mention.range.start.line == 1


class TestTags:
    def test_documents_with_tag(self, engine):
        assert engine.documents_with_tag("#TOPIC") == ["a.md", "b.md"]
        assert engine.documents_with_tag("nothing") == []

    def test_tag_counts(self, engine):
        assert engine.tag_counts() == {"other": 2, "topic": 2}
