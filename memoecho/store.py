"""
Concept stores: vector-indexed storage behind the concept registry.

Each concept carries two embeddings, one of its name and one of its
summary. ChromaConceptStore keeps them in two cosine collections that share
ids; InMemoryConceptStore keeps everything in dicts for tests and
throwaway runs.
"""

import logging
import math
from pathlib import Path
from typing import Optional

from .providers.base import ConceptStoreUnavailable, get_registry
from .types import ConceptRecord, ScoredConcept, utc_now

logger = logging.getLogger(__name__)

# Weights for the loose search fusion of name and summary similarity
CONCEPT_WEIGHT = 0.5
SUMMARY_WEIGHT = 0.5


def cosine_similarity(a: list[float], b: list[float]) -> float:
    """Cosine similarity, clamped to [0, 1]."""
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return max(0.0, min(1.0, dot / (norm_a * norm_b)))


def fused_score(concept_similarity: float, summary_similarity: float) -> float:
    return CONCEPT_WEIGHT * concept_similarity + SUMMARY_WEIGHT * summary_similarity


class InMemoryConceptStore:
    """
    Dict-backed concept store.

    Scans every record on search, which is fine for tests and small
    vaults. Nothing survives the process.
    """

    def __init__(self):
        self._records: dict[str, ConceptRecord] = {}
        self._concept_vectors: dict[str, list[float]] = {}
        self._summary_vectors: dict[str, list[float]] = {}

    def upsert_concept(
        self,
        concept: str,
        summary: str,
        link: str,
        concept_vector: list[float],
        summary_vector: list[float],
    ) -> None:
        now = utc_now()
        existing = self._records.get(concept)
        if existing is None:
            self._records[concept] = ConceptRecord(
                concept=concept, summary=summary, link=link,
                usage_count=1, first_seen_at=now, last_used_at=now,
            )
        else:
            existing.summary = summary
            existing.link = link
            existing.last_used_at = now
        self._concept_vectors[concept] = list(concept_vector)
        self._summary_vectors[concept] = list(summary_vector)

    def search_similar_strict(
        self,
        concept_vector: list[float],
        *,
        limit: int = 1,
        threshold: float = 0.90,
    ) -> list[ScoredConcept]:
        hits = []
        for name, vector in self._concept_vectors.items():
            score = cosine_similarity(concept_vector, vector)
            if score >= threshold:
                hits.append(ScoredConcept(id=name, score=score, record=self._records[name]))
        hits.sort(key=lambda h: h.score, reverse=True)
        return hits[:limit]

    def search_similar_loose(
        self,
        concept_vector: list[float],
        summary_vector: list[float],
        *,
        limit: int = 1,
        threshold: float = 0.85,
    ) -> list[ScoredConcept]:
        hits = []
        for name in self._records:
            score = fused_score(
                cosine_similarity(concept_vector, self._concept_vectors[name]),
                cosine_similarity(summary_vector, self._summary_vectors[name]),
            )
            if score >= threshold:
                hits.append(ScoredConcept(id=name, score=score, record=self._records[name]))
        hits.sort(key=lambda h: h.score, reverse=True)
        return hits[:limit]

    def scroll(
        self,
        *,
        limit: int = 100,
        offset: Optional[str] = None,
    ) -> tuple[list[ConceptRecord], Optional[str]]:
        names = sorted(self._records)
        start = int(offset) if offset else 0
        page = names[start:start + limit]
        next_offset = str(start + limit) if start + limit < len(names) else None
        return [self._records[n] for n in page], next_offset

    def get_concept(self, concept: str) -> Optional[ConceptRecord]:
        return self._records.get(concept)

    def update_usage_with_vectors(
        self,
        concept: str,
        concept_vector: list[float],
        summary_vector: list[float],
    ) -> None:
        record = self._records.get(concept)
        if record is None:
            raise KeyError(f"Unknown concept: {concept}")
        record.usage_count += 1
        record.last_used_at = utc_now()
        self._concept_vectors[concept] = list(concept_vector)
        self._summary_vectors[concept] = list(summary_vector)

    def count(self) -> int:
        return len(self._records)


class ChromaConceptStore:
    """
    Persistent concept store on ChromaDB.

    Two collections hold the name vectors and the summary vectors; both
    use cosine space and share the concept name as id. Metadata lives on
    the name collection.

    Pass `host` to talk to a Chroma server instead of a local directory.
    Transport failures raise ConceptStoreUnavailable.
    """

    def __init__(
        self,
        path: Path | str | None = None,
        host: str | None = None,
        port: int = 8000,
        collection_prefix: str = "memoecho",
    ):
        try:
            import chromadb
            from chromadb.config import Settings
        except ImportError:
            raise RuntimeError("ChromaConceptStore requires 'chromadb' library")

        if host:
            self.location = f"http://{host}:{port}"
        else:
            if path is None:
                raise ValueError("ChromaConceptStore needs either a path or a host")
            self.location = str(Path(path) / "chroma")

        settings = Settings(anonymized_telemetry=False)
        try:
            if host:
                self._client = chromadb.HttpClient(host=host, port=port, settings=settings)
            else:
                Path(self.location).mkdir(parents=True, exist_ok=True)
                self._client = chromadb.PersistentClient(path=self.location, settings=settings)
            self._concepts = self._client.get_or_create_collection(
                name=f"{collection_prefix}_concepts",
                metadata={"hnsw:space": "cosine"},
            )
            self._summaries = self._client.get_or_create_collection(
                name=f"{collection_prefix}_summaries",
                metadata={"hnsw:space": "cosine"},
            )
        except Exception as e:
            raise ConceptStoreUnavailable(
                f"Cannot open concept store at {self.location}: {e}",
                location=self.location,
            ) from e
        logger.debug("Opened concept store at %s", self.location)

    def _call(self, fn, *args, **kwargs):
        """Run a Chroma operation, converting transport failures."""
        import httpx

        try:
            return fn(*args, **kwargs)
        except (ConnectionError, OSError, httpx.TransportError) as e:
            raise ConceptStoreUnavailable(
                f"Concept store at {self.location} is unreachable: {e}",
                location=self.location,
            ) from e

    @staticmethod
    def _to_list(vector) -> list[float]:
        return [float(x) for x in vector]

    def _fetch_vectors(self, collection, ids: list[str]) -> dict[str, list[float]]:
        if not ids:
            return {}
        result = self._call(collection.get, ids=ids, include=["embeddings"])
        embeddings = result.get("embeddings")
        if embeddings is None:
            return {}
        return {i: self._to_list(v) for i, v in zip(result["ids"], embeddings)}

    def _fetch_records(self, ids: list[str]) -> dict[str, ConceptRecord]:
        if not ids:
            return {}
        result = self._call(self._concepts.get, ids=ids, include=["metadatas"])
        return {
            i: ConceptRecord.from_metadata(m or {})
            for i, m in zip(result["ids"], result["metadatas"])
        }

    def _query_ids(self, collection, vector: list[float], n: int) -> list[str]:
        total = self._call(collection.count)
        if total == 0:
            return []
        result = self._call(
            collection.query,
            query_embeddings=[vector],
            n_results=min(n, total),
            include=["distances"],
        )
        return list(result["ids"][0])

    def upsert_concept(
        self,
        concept: str,
        summary: str,
        link: str,
        concept_vector: list[float],
        summary_vector: list[float],
    ) -> None:
        now = utc_now()
        existing = self.get_concept(concept)
        if existing is None:
            record = ConceptRecord(
                concept=concept, summary=summary, link=link,
                usage_count=1, first_seen_at=now, last_used_at=now,
            )
        else:
            record = existing
            record.summary = summary
            record.link = link
            record.last_used_at = now

        self._call(
            self._concepts.upsert,
            ids=[concept],
            embeddings=[list(concept_vector)],
            metadatas=[record.to_metadata()],
            documents=[concept],
        )
        self._call(
            self._summaries.upsert,
            ids=[concept],
            embeddings=[list(summary_vector)],
            documents=[summary],
        )

    def search_similar_strict(
        self,
        concept_vector: list[float],
        *,
        limit: int = 1,
        threshold: float = 0.90,
    ) -> list[ScoredConcept]:
        total = self._call(self._concepts.count)
        if total == 0:
            return []
        result = self._call(
            self._concepts.query,
            query_embeddings=[concept_vector],
            n_results=min(limit, total),
            include=["metadatas", "distances"],
        )
        hits = []
        for id_, meta, distance in zip(
            result["ids"][0], result["metadatas"][0], result["distances"][0]
        ):
            # Chroma cosine distance is 1 - similarity
            score = max(0.0, min(1.0, 1.0 - float(distance)))
            if score >= threshold:
                hits.append(ScoredConcept(id=id_, score=score,
                                          record=ConceptRecord.from_metadata(meta or {})))
        return hits

    def search_similar_loose(
        self,
        concept_vector: list[float],
        summary_vector: list[float],
        *,
        limit: int = 1,
        threshold: float = 0.85,
    ) -> list[ScoredConcept]:
        # Candidates from both spaces, rescored exactly on the fused metric
        pool = max(limit * 10, 20)
        candidates = list(dict.fromkeys(
            self._query_ids(self._concepts, concept_vector, pool)
            + self._query_ids(self._summaries, summary_vector, pool)
        ))
        if not candidates:
            return []

        concept_vectors = self._fetch_vectors(self._concepts, candidates)
        summary_vectors = self._fetch_vectors(self._summaries, candidates)
        scored = []
        for id_ in candidates:
            if id_ not in concept_vectors or id_ not in summary_vectors:
                continue
            score = fused_score(
                cosine_similarity(concept_vector, concept_vectors[id_]),
                cosine_similarity(summary_vector, summary_vectors[id_]),
            )
            if score >= threshold:
                scored.append((id_, score))
        scored.sort(key=lambda item: item[1], reverse=True)
        scored = scored[:limit]

        records = self._fetch_records([id_ for id_, _ in scored])
        return [
            ScoredConcept(id=id_, score=score, record=records[id_])
            for id_, score in scored
            if id_ in records
        ]

    def scroll(
        self,
        *,
        limit: int = 100,
        offset: Optional[str] = None,
    ) -> tuple[list[ConceptRecord], Optional[str]]:
        start = int(offset) if offset else 0
        result = self._call(
            self._concepts.get,
            limit=limit,
            offset=start,
            include=["metadatas"],
        )
        records = [ConceptRecord.from_metadata(m or {}) for m in result["metadatas"]]
        next_offset = str(start + limit) if len(records) == limit else None
        return records, next_offset

    def get_concept(self, concept: str) -> Optional[ConceptRecord]:
        return self._fetch_records([concept]).get(concept)

    def update_usage_with_vectors(
        self,
        concept: str,
        concept_vector: list[float],
        summary_vector: list[float],
    ) -> None:
        record = self.get_concept(concept)
        if record is None:
            raise KeyError(f"Unknown concept: {concept}")
        record.usage_count += 1
        record.last_used_at = utc_now()
        self._call(
            self._concepts.update,
            ids=[concept],
            embeddings=[list(concept_vector)],
            metadatas=[record.to_metadata()],
        )
        self._call(
            self._summaries.update,
            ids=[concept],
            embeddings=[list(summary_vector)],
        )

    def count(self) -> int:
        return self._call(self._concepts.count)


# Register stores
_registry = get_registry()
_registry.register_concept_store("chroma", ChromaConceptStore)
_registry.register_concept_store("memory", InMemoryConceptStore)
