"""
Data types for the concept graph.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional


# Note types reported by the detector and the extractor
NOTE_TYPES = frozenset({
    "article", "normal", "vocabulary", "daily", "image-collection", "template",
})


def utc_now() -> str:
    """Current UTC timestamp in canonical format: YYYY-MM-DDTHH:MM:SS.

    All stored timestamps are UTC without timezone suffix.
    """
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S")


def parse_utc_timestamp(ts: str) -> datetime:
    """Parse a stored timestamp string to a timezone-aware UTC datetime.

    Handles the canonical format (no suffix) as well as values carrying
    microseconds, 'Z', or '+00:00' suffixes.
    """
    ts = ts.replace("Z", "+00:00")
    dt = datetime.fromisoformat(ts)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def pair_key(note_a: str, note_b: str) -> str:
    """Canonical key for an unordered note pair."""
    if note_a < note_b:
        return f"{note_a}|{note_b}"
    return f"{note_b}|{note_a}"


@dataclass
class Note:
    """
    A note read from storage.

    Attributes:
        id: Stable identifier (vault-relative path for Markdown notes)
        path: Vault-relative path used by skip rules
        title: Display title (file stem)
        content: Body text with frontmatter removed
        tags: Tags from frontmatter and inline hashtags
    """
    id: str
    path: str
    title: str
    content: str
    tags: list[str] = field(default_factory=list)


@dataclass
class NoteTypeDetection:
    """Outcome of note-type gating."""
    type: str
    confidence: float
    should_skip: bool
    reason: str = ""


@dataclass
class ExtractedConcept:
    """A concept proposed by the extractor, before registry resolution."""
    name: str
    confidence: float
    reason: str = ""


@dataclass
class ConceptExtraction:
    """
    Result of one extraction call.

    `confidence` is the mean confidence of the surviving concepts, or the
    low default (0.6) when filtering left nothing. `source` tells whether
    the LLM answered ("llm") or the rule-based fallback ran ("rules").
    """
    concepts: list[ExtractedConcept]
    note_type: str = "normal"
    skip_reason: Optional[str] = None
    confidence: float = 0.0
    source: str = "llm"

    @property
    def names(self) -> list[str]:
        return [c.name for c in self.concepts]

    @property
    def confidences(self) -> list[float]:
        return [c.confidence for c in self.concepts]


@dataclass
class ConceptMatch:
    """Resolution of one extracted term against the dictionary or registry."""
    original_term: str
    matched_concept: str
    match_type: str
    confidence: float


@dataclass
class ConceptRecord:
    """A registry entry. Identity lives in its concept and summary vectors."""
    concept: str
    summary: str
    link: str
    usage_count: int = 1
    first_seen_at: str = ""
    last_used_at: str = ""

    def to_metadata(self) -> dict:
        return {
            "concept": self.concept,
            "summary": self.summary,
            "link": self.link,
            "usage_count": self.usage_count,
            "first_seen_at": self.first_seen_at,
            "last_used_at": self.last_used_at,
        }

    @classmethod
    def from_metadata(cls, data: dict) -> "ConceptRecord":
        return cls(
            concept=str(data.get("concept", "")),
            summary=str(data.get("summary", "")),
            link=str(data.get("link", "")),
            usage_count=int(data.get("usage_count", 1)),
            first_seen_at=str(data.get("first_seen_at", "")),
            last_used_at=str(data.get("last_used_at", "")),
        )


@dataclass
class ScoredConcept:
    """A concept store search hit."""
    id: str
    score: float
    record: ConceptRecord


@dataclass
class RegistryMatch:
    """Outcome of ConceptRegistry.register_or_match."""
    matched: bool
    concept: str
    summary: str
    similarity: float
    is_new: bool


@dataclass
class ExtractedConceptWithMatch:
    """An extracted concept together with how it resolved."""
    name: str
    confidence: float
    reason: str
    match: ConceptMatch


@dataclass
class ConfirmedConcept:
    """A concept the caller accepted for a note."""
    name: str
    is_new: bool = False
    create_page: bool = False
    aliases: list[str] = field(default_factory=list)
    confidence: float = 0.75


@dataclass
class ExtractionResult:
    """Pipeline output for one note."""
    skipped: bool
    reason: str = ""
    note_type: str = "normal"
    concepts: list[ExtractedConceptWithMatch] = field(default_factory=list)


@dataclass
class NoteAssociation:
    """
    An undirected association between two notes that share concepts.

    (a, b) and (b, a) denote the same association; `key` is canonical.
    """
    source_note_id: str
    target_note_id: str
    shared_concepts: list[str]
    confidence: float
    discovered_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def key(self) -> str:
        return pair_key(self.source_note_id, self.target_note_id)


@dataclass
class ConceptIndexEntry:
    """Inverted-index entry: which notes carry a concept."""
    concept: str
    note_ids: list[str] = field(default_factory=list)
    avg_confidence: float = 0.0
    last_updated: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class AssociationStats:
    """Index statistics. `total_associations` is the n·(n-1)/2 pair count."""
    total_notes: int
    total_concepts: int
    total_associations: int
    avg_concepts_per_note: float
    avg_notes_per_concept: float


@dataclass
class PreferenceState:
    """User overrides applied on top of discovered associations."""
    ignored_associations: set[str] = field(default_factory=set)
    deleted_concepts: dict[str, set[str]] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "ignored_associations": sorted(self.ignored_associations),
            "deleted_concepts": {
                k: sorted(v) for k, v in sorted(self.deleted_concepts.items()) if v
            },
        }

    @classmethod
    def from_dict(cls, data: dict) -> "PreferenceState":
        deleted = data.get("deleted_concepts") or {}
        return cls(
            ignored_associations=set(data.get("ignored_associations") or []),
            deleted_concepts={str(k): set(v or []) for k, v in deleted.items()},
        )


@dataclass
class SyncReport:
    """Aggregate outcome of a batch pass."""
    processed: int = 0
    skipped: int = 0
    failed: int = 0
    stopped: bool = False
    failures: dict[str, str] = field(default_factory=dict)
