"""
Concept extraction from note text.

The extractor asks an LLM for a handful of abstract concepts and parses
whatever comes back. LLM output is often fenced, truncated, or otherwise
malformed, so parsing degrades through three tiers (strict, repaired,
regex salvage) and never raises. When the LLM call itself fails, a
rule-based pass over headers, bold text, wikilinks, hashtags and the title
takes over. Both paths go through the same quality filter.
"""

import json
import logging
import re
from typing import Any, Optional

from .config import ExtractionConfig, updated
from .types import NOTE_TYPES, ConceptExtraction, ExtractedConcept

logger = logging.getLogger(__name__)

DEFAULT_AI_CONFIDENCE = 0.9
RULE_CONFIDENCE = 0.6
EMPTY_CONFIDENCE = 0.6
RULE_REASON = "Rule-based extraction"

LANGUAGE_NAMES = {
    "en": "English",
    "zh": "Chinese",
    "ja": "Japanese",
    "ko": "Korean",
    "es": "Spanish",
    "fr": "French",
    "de": "German",
}

_HEADER = re.compile(r"^#{1,3}\s+(.+)$", re.MULTILINE)
_BOLD = re.compile(r"\*\*([^*]+)\*\*")
_WIKILINK = re.compile(r"\[\[([^\]|]+)(?:\|[^\]]+)?\]\]")
_HASHTAG = re.compile(r"#[a-zA-Z\u4e00-\u9fa5][a-zA-Z0-9\u4e00-\u9fa5\-_]*")
_DATE_TITLE = re.compile(r"^\d{4}-\d{2}-\d{2}")
_LEADING_MARKS = re.compile(r"^[#\-*]+")
_WHITESPACE = re.compile(r"\s+")
_FENCE = re.compile(r"```(?:json)?\s*\n?|\n?```")
_TRAILING_COMMA = re.compile(r",\s*([}\]])")
_FRAGMENT = re.compile(
    r'\{\s*"name"\s*:\s*"([^"]+)"\s*,\s*"confidence"\s*:\s*([\d.]+)\s*,\s*"reason"\s*:\s*"([^"]*)'
)


def language_name(code: str) -> str:
    """Human name for a language code; unknown codes pass through."""
    if code == "auto":
        return "the note's primary language"
    return LANGUAGE_NAMES.get(code, code)


def normalize_concept(text: str) -> str:
    """Trim, drop leading markdown marks, collapse whitespace."""
    text = _LEADING_MARKS.sub("", text.strip())
    return _WHITESPACE.sub(" ", text).strip()


# ---------------------------------------------------------------------------
# Response parsing
# ---------------------------------------------------------------------------

def _close_json(text: str) -> str:
    """
    Cut `text` to its first top-level object and close whatever a
    truncation left open: a string literal, then objects and arrays in
    nesting order.
    """
    stack: list[str] = []
    in_string = False
    escaped = False
    end = len(text)

    for i, ch in enumerate(text):
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == "{":
            stack.append("}")
        elif ch == "[":
            stack.append("]")
        elif ch in "}]":
            if stack and stack[-1] == ch:
                stack.pop()
            if not stack:
                end = i + 1
                break

    candidate = text[:end]
    if in_string and stack:
        if escaped:
            candidate = candidate[:-1]
        candidate += '"'
    candidate = candidate.rstrip()
    while candidate.endswith((",", ":")):
        candidate = candidate[:-1].rstrip()
    candidate += "".join(reversed(stack))
    return _TRAILING_COMMA.sub(r"\1", candidate)


def _salvage_fragments(text: str) -> dict:
    concepts = []
    for name, confidence, reason in _FRAGMENT.findall(text):
        try:
            value = float(confidence)
        except ValueError:
            value = DEFAULT_AI_CONFIDENCE
        concepts.append({"name": name, "confidence": value, "reason": reason})
    if concepts:
        logger.info("Salvaged %d concept(s) from unparseable response", len(concepts))
    return {"concepts": concepts}


def parse_llm_json(response: str) -> Any:
    """
    Parse an LLM response that should be JSON.

    Tier 1 is a strict parse. Tier 2 strips code fences, cuts to the
    outermost object and closes truncated strings and brackets. Tier 3
    pulls complete concept objects out with a regex. Never raises; the
    worst case is {"concepts": []}.
    """
    trimmed = (response or "").strip()
    try:
        return json.loads(trimmed)
    except json.JSONDecodeError:
        pass

    unfenced = _FENCE.sub("", trimmed).strip()
    start = unfenced.find("{")
    if start >= 0:
        candidate = _close_json(unfenced[start:])
        try:
            return json.loads(candidate)
        except json.JSONDecodeError as e:
            logger.debug("Repaired JSON still invalid: %s", e)

    return _salvage_fragments(unfenced)


def _as_confidence(value: Any, default: float = DEFAULT_AI_CONFIDENCE) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    if number != number or number <= 0:  # NaN or missing
        return default
    return min(number, 1.0)


def concepts_from_payload(payload: Any) -> tuple[list[ExtractedConcept], str, Optional[str]]:
    """
    Read concepts, note type and skip reason from a parsed response.

    Accepts {"concepts": [objects]}, {"concepts": [strings], "confidences":
    [...]}, or a bare list of either.
    """
    note_type = "normal"
    skip_reason = None
    confidences: list = []

    if isinstance(payload, dict):
        items = payload.get("concepts")
        if isinstance(payload.get("confidences"), list):
            confidences = payload["confidences"]
        if isinstance(payload.get("noteType"), str) and payload["noteType"] in NOTE_TYPES:
            note_type = payload["noteType"]
        if payload.get("skipReason"):
            skip_reason = str(payload["skipReason"])
    else:
        items = payload

    if not isinstance(items, list):
        return [], note_type, skip_reason

    concepts = []
    for i, item in enumerate(items):
        if isinstance(item, dict):
            name = normalize_concept(str(item.get("name") or ""))
            confidence = _as_confidence(item.get("confidence"))
            reason = str(item.get("reason") or "")
        elif isinstance(item, str):
            name = normalize_concept(item)
            confidence = _as_confidence(confidences[i] if i < len(confidences) else None)
            reason = ""
        else:
            continue
        if name:
            concepts.append(ExtractedConcept(name=name, confidence=confidence, reason=reason))
    return concepts, note_type, skip_reason


# ---------------------------------------------------------------------------
# Extractor
# ---------------------------------------------------------------------------

class ConceptExtractor:
    """
    Turns note text into confidence-scored concepts.

    Args:
        provider: GenerationProvider, or None to always use the rules
        config: ExtractionConfig; re-injected later with update_config()
    """

    def __init__(self, provider=None, config: Optional[ExtractionConfig] = None):
        self._provider = provider
        self.config = config or ExtractionConfig()
        self.config.validate()

    def update_config(self, **changes) -> ExtractionConfig:
        """Apply validated changes; on error the current config stays."""
        self.config = updated(self.config, **changes)
        return self.config

    def set_config(self, config: ExtractionConfig) -> None:
        config.validate()
        self.config = config

    def set_provider(self, provider) -> None:
        """Swap the generation provider; None means rules only."""
        self._provider = provider

    # -- prompts -----------------------------------------------------------

    def build_system_prompt(self) -> str:
        language = self.config.language
        prompt = (
            "You are a knowledge analyst who names the high-level ideas a note is about.\n\n"
            "Extract STABLE, HIGHLY ABSTRACT concepts that can link this note to "
            "others in a knowledge graph.\n\n"
            "## What to extract\n\n"
            "- Academic disciplines (cognitive science, distributed systems)\n"
            "- Methodologies (first principles, agile development)\n"
            "- Theoretical frameworks (complex systems theory)\n"
            "- Professional domains (user experience design, data engineering)\n\n"
            "Prefer reusable concepts that are likely to appear in many notes.\n\n"
            "## What NOT to extract\n\n"
            "- Proper nouns and product or technology names, unless they are concepts\n"
            "- Dates and other temporal references\n"
            "- Personal references\n"
            "- Generic words such as summary or overview\n"
            "- Details that only make sense inside this one note"
        )
        if language == "auto":
            prompt += (
                "\n\n## Language Consistency\n\n"
                "Use the same language as the note content."
            )
        else:
            prompt += (
                "\n\n## Output Language\n\n"
                f"Extract ALL concepts in {language_name(language)} only, "
                "translating them if the note is written in another language."
            )
        return prompt

    def build_user_prompt(
        self,
        content: str,
        title: Optional[str] = None,
        existing_concepts: Optional[list[str]] = None,
        max_concepts: Optional[int] = None,
    ) -> str:
        limit = self.config.max_content_chars
        body = content[:limit] + "..." if len(content) > limit else content
        count = max_concepts or self.config.max_concepts

        if not self.config.focus_on_abstract:
            header = f"Title: {title}\n\n" if title else ""
            return (
                'Extract key concepts from this note. Return JSON: {"concepts": ["concept1", "concept2"]}\n\n'
                "Rules:\n"
                "- Extract 3-5 main concepts that represent core topics\n"
                "- Concepts are nouns or noun phrases of 1-3 words\n"
                "- Prefer specific terms over generic ones\n\n"
                f"{header}Content:\n{body}\n\nJSON response:"
            )

        existing = ", ".join(existing_concepts) if existing_concepts else "None"
        if self.config.language == "auto":
            language_rule = "Write concepts in the same language as the note content"
        else:
            language_rule = f"Return concepts in {language_name(self.config.language)} only"

        return (
            f"Extract {count} high-level concepts from this note.\n\n"
            f"<note_title>\n{title or ''}\n</note_title>\n\n"
            f"<note_content>\n{body}\n</note_content>\n\n"
            f"<existing_concepts>\n{existing}\n</existing_concepts>\n\n"
            "## Instructions\n\n"
            "1. Read the note and identify its main themes\n"
            f"2. Name {count} concepts at the HIGHEST defensible abstraction level\n"
            "3. Reuse an existing concept when yours means the same thing\n"
            f"4. {language_rule}\n\n"
            "## Response Format\n\n"
            "Return one line of minified JSON:\n"
            '{"concepts":[{"name":"concept name","confidence":0.95,"reason":"why it fits"}],'
            '"noteType":"article|vocabulary|daily|image-collection|template|normal","skipReason":null}\n\n'
            "- reason is one sentence of at most 120 characters\n"
            "- output JSON only, with no commentary"
        )

    # -- extraction --------------------------------------------------------

    def extract(
        self,
        content: str,
        title: Optional[str] = None,
        existing_concepts: Optional[list[str]] = None,
        max_concepts: Optional[int] = None,
    ) -> ConceptExtraction:
        """
        Extract concepts from a note.

        Falls back to rule-based extraction when the LLM is unavailable,
        times out, or errors. Never raises for LLM trouble.
        """
        if self._provider is None:
            return self.extract_with_rules(content, title, max_concepts)

        system = self.build_system_prompt()
        user = self.build_user_prompt(content, title, existing_concepts, max_concepts)
        try:
            raw = self._provider.generate(
                system,
                user,
                max_tokens=self.config.max_tokens,
                timeout=self.config.timeout,
            )
        except Exception as e:
            logger.warning("Concept extraction failed, falling back to rules: %s", e)
            return self.extract_with_rules(content, title, max_concepts)

        if raw is None:
            logger.debug("Provider %s returned nothing; using rules", type(self._provider).__name__)
            return self.extract_with_rules(content, title, max_concepts)

        logger.debug("LLM concept response (%d chars): %s", len(raw), raw[:400])
        concepts, note_type, skip_reason = concepts_from_payload(parse_llm_json(raw))
        kept, overall = self.filter_concepts(concepts, max_concepts)
        return ConceptExtraction(
            concepts=kept,
            note_type=note_type,
            skip_reason=skip_reason,
            confidence=overall,
            source="llm",
        )

    def extract_with_rules(
        self,
        content: str,
        title: Optional[str] = None,
        max_concepts: Optional[int] = None,
    ) -> ConceptExtraction:
        """Gather candidate concepts from markdown structure."""
        found: dict[str, None] = {}

        def add(text: str, min_len: int = 2) -> None:
            text = text.strip()
            if min_len < len(text) < 30:
                name = normalize_concept(text)
                if name:
                    found.setdefault(name, None)

        for match in _HEADER.finditer(content):
            add(match.group(1))
        for match in _BOLD.finditer(content):
            add(match.group(1))
        for match in _WIKILINK.finditer(content):
            target = match.group(1).strip()
            if "/" not in target:
                add(target)
        for match in _HASHTAG.finditer(content):
            add(match.group(0)[1:], min_len=1)
        if title and 2 < len(title) < 50 and not _DATE_TITLE.match(title):
            name = normalize_concept(title)
            if name:
                found.setdefault(name, None)

        candidates = [
            ExtractedConcept(name=name, confidence=RULE_CONFIDENCE, reason=RULE_REASON)
            for name in found
        ]
        kept, overall = self.filter_concepts(candidates, max_concepts)
        return ConceptExtraction(
            concepts=kept,
            note_type="normal",
            skip_reason=None,
            confidence=overall,
            source="rules",
        )

    def filter_concepts(
        self,
        concepts: list[ExtractedConcept],
        max_concepts: Optional[int] = None,
    ) -> tuple[list[ExtractedConcept], float]:
        """
        Drop low-confidence, generic, and badly sized concepts.

        Returns the survivors (deduplicated, capped at max_concepts) and
        their mean confidence, or 0.6 if nothing survived.
        """
        generic = [g.lower() for g in self.config.exclude_generic if g]
        seen: set[str] = set()
        kept: list[ExtractedConcept] = []
        for concept in concepts:
            if concept.confidence < self.config.min_confidence:
                continue
            lowered = concept.name.lower()
            if any(g in lowered for g in generic):
                continue
            if not 2 <= len(concept.name) <= 30:
                continue
            if lowered in seen:
                continue
            seen.add(lowered)
            kept.append(concept)

        kept = kept[: max_concepts or self.config.max_concepts]
        if not kept:
            return [], EMPTY_CONFIDENCE
        return kept, sum(c.confidence for c in kept) / len(kept)
