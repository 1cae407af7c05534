"""
Tests for the association engine.

Scenario notes:
- kafka.md carries Distributed systems, Stream processing, Event sourcing
- order.md carries Distributed systems, Event sourcing, Idempotency
- recipe.md shares nothing with either
"""

import random

import pytest

from memoecho.associations import AssociationEngine, extract_wikilink_concepts
from memoecho.config import AssociationConfig, ExtractionConfig
from memoecho.extractor import ConceptExtractor

from conftest import ScriptedGeneration, concepts_json

KAFKA = ["Distributed systems", "Stream processing", "Event sourcing"]
ORDER = ["Distributed systems", "Event sourcing", "Idempotency"]
RECIPE = ["Fermentation"]


@pytest.fixture
def engine():
    engine = AssociationEngine()
    engine.index_note_concepts("kafka.md", KAFKA, [0.9, 0.9, 0.9])
    engine.index_note_concepts("order.md", ORDER, [0.8, 0.8, 0.8])
    engine.index_note_concepts("recipe.md", RECIPE, [0.9])
    return engine


class TestDiscovery:

    def test_pair_sharing_two_concepts(self, engine):
        found = engine.discover_associations()
        assert len(found) == 1
        assoc = found[0]
        assert {assoc.source_note_id, assoc.target_note_id} == {"kafka.md", "order.md"}
        assert sorted(assoc.shared_concepts) == ["Distributed systems", "Event sourcing"]
        # mean of (0.9 + 0.8) / 2 plus min(2 / 5, 0.2)
        assert assoc.confidence == pytest.approx(1.0)

    def test_min_shared_filters(self, engine):
        engine.update_config(min_shared_concepts=3)
        assert engine.discover_associations() == []

    def test_min_shared_two_keeps_pair(self, engine):
        engine.update_config(min_shared_concepts=2)
        assert len(engine.discover_associations()) == 1

    def test_confidence_formula(self):
        engine = AssociationEngine()
        engine.index_note_concepts("a.md", ["Caching"], [0.6])
        engine.index_note_concepts("b.md", ["Caching"], [0.7])
        found = engine.discover_associations()
        # (0.6 + 0.7) / 2 + min(1 / 5, 0.2)
        assert found[0].confidence == pytest.approx(0.85)

    def test_min_confidence_filters(self):
        engine = AssociationEngine(config=AssociationConfig(min_confidence=0.9))
        engine.index_note_concepts("a.md", ["Caching"], [0.6])
        engine.index_note_concepts("b.md", ["Caching"], [0.7])
        assert engine.discover_associations() == []

    def test_pair_reported_once(self, engine):
        engine.index_note_concepts("c.md", KAFKA)
        keys = [a.key for a in engine.discover_associations()]
        assert len(keys) == len(set(keys))

    def test_ranked_by_shared_count_then_confidence(self):
        engine = AssociationEngine()
        engine.index_note_concepts("hub.md", ["A1", "B2", "C3"], [0.9, 0.9, 0.9])
        engine.index_note_concepts("one.md", ["A1"], [0.9])
        engine.index_note_concepts("two.md", ["A1", "B2"], [0.6, 0.6])
        engine.index_note_concepts("low.md", ["C3"], [0.5])
        found = engine.discover_associations()
        others = [a.target_note_id if a.source_note_id == "hub.md" else a.source_note_id
                  for a in found if "hub.md" in (a.source_note_id, a.target_note_id)]
        assert others[0] == "two.md"
        assert others.index("one.md") < others.index("low.md")

    def test_max_associations_caps(self):
        engine = AssociationEngine(config=AssociationConfig(max_associations=2))
        for i in range(5):
            engine.index_note_concepts(f"n{i}.md", ["Shared"])
        assert len(engine.discover_associations()) == 2

    def test_for_note_is_symmetric(self, engine):
        from_kafka = engine.discover_associations_for_note("kafka.md")
        from_order = engine.discover_associations_for_note("order.md")
        assert [a.key for a in from_kafka] == [a.key for a in from_order]
        assert engine.discover_associations_for_note("recipe.md") == []

    def test_shared_cjk_concept(self):
        engine = AssociationEngine()
        engine.index_note_concepts("kafka.md", ["幂等性", "事件驱动"])
        engine.index_note_concepts("order.md", ["幂等性", "数据一致性"])

        found = engine.discover_associations()
        assert len(found) == 1
        assert found[0].shared_concepts == ["幂等性"]
        assert found[0].confidence > 0.5

        engine.update_config(min_shared_concepts=2)
        assert engine.discover_associations() == []

    @pytest.mark.parametrize("exclude_self", [True, False])
    def test_never_pairs_a_note_with_itself(self, exclude_self):
        engine = AssociationEngine(config=AssociationConfig(exclude_self_associations=exclude_self))
        engine.index_note_concepts("a.md", ["Caching", "Caching"], [0.9, 0.9])
        engine.index_note_concepts("b.md", ["Caching"], [0.9])
        found = engine.discover_associations()
        assert [a.key for a in found] == ["a.md|b.md"]
        assert all(a.source_note_id != a.target_note_id for a in found)

    def test_confidence_bounded_on_random_index(self):
        rng = random.Random(7)
        pool = [f"Concept {i}" for i in range(8)]
        engine = AssociationEngine(config=AssociationConfig(min_confidence=0.0, max_associations=1000))
        for n in range(30):
            concepts = rng.sample(pool, rng.randint(1, 6))
            engine.index_note_concepts(f"n{n}.md", concepts, [rng.random() for _ in concepts])

        found = engine.discover_associations()
        assert found
        assert all(0.0 <= a.confidence <= 1.0 for a in found)
        assert len({a.key for a in found}) == len(found)

    def test_fewer_than_two_notes(self):
        engine = AssociationEngine()
        engine.index_note_concepts("a.md", ["Caching"])
        assert engine.discover_associations() == []


class TestIndexing:

    def test_reindex_replaces_concepts(self, engine):
        engine.index_note_concepts("kafka.md", ["Fermentation"])
        assert engine.get_note_concepts("kafka.md") == ["Fermentation"]
        assert "kafka.md" not in engine.get_notes_for_concept("Event sourcing")
        found = engine.discover_associations()
        assert {a.key for a in found} == {"kafka.md|recipe.md"}

    def test_reindex_is_idempotent(self, engine):
        before = [(a.key, a.confidence) for a in engine.discover_associations()]
        engine.index_note_concepts("kafka.md", KAFKA, [0.9, 0.9, 0.9])
        after = [(a.key, a.confidence) for a in engine.discover_associations()]
        assert before == after
        assert engine.get_notes_for_concept("Distributed systems") == ["order.md", "kafka.md"]

    def test_remove_note(self, engine):
        engine.remove_note("order.md")
        assert engine.discover_associations() == []
        assert engine.get_notes_for_concept("Idempotency") == []
        assert engine.get_note_concepts("order.md") == []
        assert "Idempotency" not in {e.concept for e in engine.export_concept_index()}
        assert engine.get_stats().total_notes == 2

    def test_remove_unknown_note_is_noop(self, engine):
        engine.remove_note("missing.md")
        assert engine.get_stats().total_notes == 3

    def test_default_confidences(self):
        engine = AssociationEngine()
        engine.index_note_concepts("a.md", ["Caching", "Sharding"], [0.9])
        entry = engine.export_concept_index()[0]
        assert entry.avg_confidence == pytest.approx(0.75)

    def test_empty_concepts_not_indexed(self):
        engine = AssociationEngine()
        assert engine.index_note_concepts("a.md", []) == (False, [])
        assert engine.get_stats().total_notes == 0

    def test_average_confidence_tracks_notes(self, engine):
        index = {e.concept: e for e in engine.export_concept_index()}
        assert index["Event sourcing"].avg_confidence == pytest.approx(0.85)
        engine.remove_note("order.md")
        index = {e.concept: e for e in engine.export_concept_index()}
        assert index["Event sourcing"].avg_confidence == pytest.approx(0.9)

    def test_clear_index(self, engine):
        engine.clear_index()
        assert engine.get_stats().total_notes == 0
        assert engine.export_concept_index() == []


class TestIndexNote:

    def test_extracts_and_adds_wikilinks(self):
        provider = ScriptedGeneration([concepts_json("Stream processing")])
        engine = AssociationEngine(ConceptExtractor(provider))
        indexed, concepts = engine.index_note(
            "kafka.md", "Topics and partitions, see [[_me/Event sourcing|ES]].", "Kafka",
        )
        assert indexed
        assert concepts == ["Stream processing", "Event sourcing"]

    def test_nothing_found(self):
        engine = AssociationEngine(ConceptExtractor(ScriptedGeneration([concepts_json()])))
        assert engine.index_note("a.md", "plain text") == (False, [])

    def test_rule_fallback_then_link_confidence(self):
        extractor = ConceptExtractor(
            ScriptedGeneration([ConnectionError("down")]),
            ExtractionConfig(min_confidence=0.5),
        )
        engine = AssociationEngine(extractor)
        indexed, concepts = engine.index_note("a.md", "Uses [[Kafka]] heavily")
        assert indexed
        assert concepts == ["Kafka"]
        assert engine.export_concept_index()[0].avg_confidence == pytest.approx(0.85)

    def test_extractor_error_reported_not_raised(self):
        class Broken:
            def extract(self, content, title=None):
                raise ValueError("bad")

        engine = AssociationEngine(Broken())
        assert engine.index_note("a.md", "text") == (False, [])

    def test_requires_extractor(self):
        with pytest.raises(RuntimeError):
            AssociationEngine().index_note("a.md", "text")


class TestStats:

    def test_three_note_chain(self):
        engine = AssociationEngine()
        engine.index_note_concepts("a.md", ["A1"])
        engine.index_note_concepts("b.md", ["A1", "B2"])
        engine.index_note_concepts("c.md", ["B2"])
        stats = engine.get_stats()
        assert stats.total_notes == 3
        assert stats.total_concepts == 2
        assert stats.total_associations == 3
        assert stats.avg_concepts_per_note == pytest.approx(4 / 3)
        assert stats.avg_notes_per_concept == pytest.approx(2.0)

    def test_empty(self):
        stats = AssociationEngine().get_stats()
        assert stats.total_associations == 0
        assert stats.avg_concepts_per_note == 0.0


class TestConfig:

    def test_invalid_update_keeps_previous(self, engine):
        with pytest.raises(ValueError):
            engine.update_config(min_shared_concepts=0)
        assert engine.get_config().min_shared_concepts == 1

    def test_get_config_is_a_copy(self, engine):
        engine.get_config().max_associations = 1
        assert engine.config.max_associations == 20


class TestWikilinks:

    def test_strips_alias_heading_and_path(self):
        content = "[[_me/Docker|containers]] and [[Kafka#Partitions]] and [[Plain]]"
        assert extract_wikilink_concepts(content) == ["Docker", "Kafka", "Plain"]

    def test_deduplicates(self):
        assert extract_wikilink_concepts("[[A1]] [[A1]] [[x/A1]]") == ["A1"]

    def test_ignores_empty_links(self):
        assert extract_wikilink_concepts("[[]] [[|alias]] text") == []
