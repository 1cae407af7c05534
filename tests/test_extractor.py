"""
Tests for concept extraction and LLM response parsing.
"""

import pytest

from memoecho.config import ExtractionConfig
from memoecho.extractor import (
    ConceptExtractor,
    concepts_from_payload,
    language_name,
    normalize_concept,
    parse_llm_json,
)
from memoecho.types import ExtractedConcept

from conftest import ScriptedGeneration, concepts_json


class TestParseLlmJson:
    """Three-tier parsing never raises."""

    def test_strict_json(self):
        assert parse_llm_json('{"concepts": []}') == {"concepts": []}

    def test_code_fence_stripped(self):
        raw = '```json\n{"concepts":[{"name":"Event sourcing","confidence":0.9,"reason":"r"}]}\n```'
        result = parse_llm_json(raw)
        assert result["concepts"][0]["name"] == "Event sourcing"

    def test_truncated_mid_string_is_closed(self):
        raw = '{"concepts":[{"name":"Idempotency","confidence":0.9,"reason":"Safe ret'
        result = parse_llm_json(raw)
        assert result["concepts"][0]["name"] == "Idempotency"
        assert result["concepts"][0]["reason"].startswith("Safe ret")

    def test_truncated_after_comma(self):
        raw = '{"concepts":[{"name":"Consensus","confidence":0.8,"reason":"x"},'
        result = parse_llm_json(raw)
        assert [c["name"] for c in result["concepts"]] == ["Consensus"]

    def test_trailing_text_after_object_ignored(self):
        raw = 'Here you go: {"concepts":[]} hope that helps'
        assert parse_llm_json(raw) == {"concepts": []}

    def test_regex_salvage(self):
        # Missing comma between the objects defeats both parse tiers
        raw = (
            '{"concepts": [{"name": "Backpressure", "confidence": 0.85, "reason": "flow control"} '
            '{"name": "Batching", "confidence": 0.8, "reason": "throughput"}]}'
        )
        result = parse_llm_json(raw)
        assert [c["name"] for c in result["concepts"]] == ["Backpressure", "Batching"]
        assert result["concepts"][0]["confidence"] == 0.85

    def test_garbage_yields_empty(self):
        assert parse_llm_json("I cannot help with that.") == {"concepts": []}

    def test_empty_and_none(self):
        assert parse_llm_json("") == {"concepts": []}
        assert parse_llm_json(None) == {"concepts": []}


class TestConceptsFromPayload:

    def test_object_items(self):
        concepts, note_type, skip = concepts_from_payload(
            {"concepts": [{"name": " ## Stream processing ", "confidence": 0.8, "reason": "r"}],
             "noteType": "article"}
        )
        assert concepts == [ExtractedConcept("Stream processing", 0.8, "r")]
        assert note_type == "article"
        assert skip is None

    def test_string_items_with_parallel_confidences(self):
        concepts, _, _ = concepts_from_payload(
            {"concepts": ["Consensus", "Replication"], "confidences": [0.95]}
        )
        assert [c.confidence for c in concepts] == [0.95, 0.9]

    def test_bare_list(self):
        concepts, _, _ = concepts_from_payload(["Caching"])
        assert concepts[0].name == "Caching"

    def test_skip_reason(self):
        _, _, skip = concepts_from_payload({"concepts": [], "skipReason": "vocabulary list"})
        assert skip == "vocabulary list"

    def test_out_of_range_confidence_clamped(self):
        concepts, _, _ = concepts_from_payload({"concepts": [{"name": "Sharding", "confidence": 7}]})
        assert concepts[0].confidence == 1.0

    def test_non_list_concepts(self):
        concepts, _, _ = concepts_from_payload({"concepts": "oops"})
        assert concepts == []


def test_normalize_concept():
    assert normalize_concept("  ** event   sourcing ") == "event sourcing"
    assert normalize_concept("#tag") == "tag"


def test_language_name():
    assert language_name("zh") == "Chinese"
    assert language_name("auto") == "the note's primary language"
    assert language_name("pt") == "pt"


class TestPrompts:

    def test_auto_language_asks_for_same_language(self):
        extractor = ConceptExtractor(config=ExtractionConfig(language="auto"))
        assert "same language as the note" in extractor.build_system_prompt()

    def test_fixed_language_named(self):
        extractor = ConceptExtractor(config=ExtractionConfig(language="zh"))
        assert "in Chinese only" in extractor.build_system_prompt()
        assert "in Chinese only" in extractor.build_user_prompt("text")

    def test_content_truncated(self):
        extractor = ConceptExtractor(config=ExtractionConfig(max_content_chars=10))
        prompt = extractor.build_user_prompt("abcdefghijKLMNOP", "Title")
        assert "abcdefghij..." in prompt
        assert "KLMNOP" not in prompt

    def test_existing_concepts_listed(self):
        extractor = ConceptExtractor()
        prompt = extractor.build_user_prompt("text", existing_concepts=["Caching", "Sharding"])
        assert "Caching, Sharding" in prompt
        assert "None" in extractor.build_user_prompt("text")

    def test_plain_prompt_when_not_abstract(self):
        extractor = ConceptExtractor(config=ExtractionConfig(focus_on_abstract=False))
        prompt = extractor.build_user_prompt("body", "My title")
        assert "Title: My title" in prompt
        assert "<note_content>" not in prompt


class TestExtract:

    def test_llm_path(self):
        provider = ScriptedGeneration([concepts_json("Event sourcing", "Idempotency")])
        result = ConceptExtractor(provider).extract("content", "title", max_concepts=3)
        assert result.source == "llm"
        assert result.names == ["Event sourcing", "Idempotency"]
        assert result.confidence == pytest.approx(0.9)
        assert result.note_type == "article"

    def test_passes_limits_to_provider(self):
        provider = ScriptedGeneration([concepts_json("Caching")])
        config = ExtractionConfig(max_tokens=256, timeout=5.0)
        ConceptExtractor(provider, config).extract("content")
        assert provider.calls[0]["max_tokens"] == 256
        assert provider.calls[0]["timeout"] == 5.0

    def test_max_concepts_caps_result(self):
        provider = ScriptedGeneration([concepts_json("A1", "B2", "C3", "D4")])
        result = ConceptExtractor(provider).extract("content", max_concepts=2)
        assert result.names == ["A1", "B2"]

    def test_llm_failure_falls_back_to_rules(self):
        provider = ScriptedGeneration([TimeoutError("took too long")])
        config = ExtractionConfig(min_confidence=0.5)
        result = ConceptExtractor(provider, config).extract(
            "## Stream Processing\n\nUses **Backpressure** and [[Kafka]] #streaming",
            "Kafka notes",
        )
        assert result.source == "rules"
        assert set(result.names) >= {"Stream Processing", "Backpressure", "Kafka"}
        assert all(c.confidence == 0.6 for c in result.concepts)

    def test_none_response_uses_rules(self):
        config = ExtractionConfig(min_confidence=0.5)
        result = ConceptExtractor(ScriptedGeneration(), config).extract("## Sharding\n")
        assert result.source == "rules"
        assert result.names == ["Sharding"]

    def test_rules_filtered_by_default_threshold(self):
        result = ConceptExtractor().extract("## Sharding\n", "Databases")
        assert result.source == "rules"
        assert result.concepts == []
        assert result.confidence == 0.6

    def test_rules_skip_date_titles_and_path_links(self):
        config = ExtractionConfig(min_confidence=0.5)
        result = ConceptExtractor(config=config).extract("See [[_me/Docker]]", "2024-01-05 log")
        assert result.concepts == []

    def test_malformed_response_still_parses(self):
        raw = '```json\n{"concepts":[{"name":"Consensus","confidence":0.92,"reason":"Raft'
        result = ConceptExtractor(ScriptedGeneration([raw])).extract("content")
        assert result.names == ["Consensus"]


class TestFilterConcepts:

    def test_drops_low_confidence_generic_and_bad_length(self):
        extractor = ConceptExtractor()
        concepts = [
            ExtractedConcept("Distributed systems", 0.9),
            ExtractedConcept("Weak idea", 0.5),
            ExtractedConcept("Project overview", 0.95),
            ExtractedConcept("X", 0.9),
            ExtractedConcept("A" * 31, 0.9),
        ]
        kept, overall = extractor.filter_concepts(concepts)
        assert [c.name for c in kept] == ["Distributed systems"]
        assert overall == pytest.approx(0.9)

    def test_deduplicates_case_insensitively(self):
        kept, _ = ConceptExtractor().filter_concepts([
            ExtractedConcept("Caching", 0.9), ExtractedConcept("caching", 0.8),
        ])
        assert len(kept) == 1

    def test_empty_result_confidence(self):
        kept, overall = ConceptExtractor().filter_concepts([])
        assert kept == []
        assert overall == 0.6


class TestUpdateConfig:

    def test_valid_update(self):
        extractor = ConceptExtractor()
        extractor.update_config(min_confidence=0.4, language="fr")
        assert extractor.config.min_confidence == 0.4
        assert "in French only" in extractor.build_system_prompt()

    def test_invalid_update_keeps_previous(self):
        extractor = ConceptExtractor()
        with pytest.raises(ValueError):
            extractor.update_config(min_confidence=1.5)
        with pytest.raises(ValueError):
            extractor.update_config(no_such_field=1)
        assert extractor.config.min_confidence == 0.7
