"""
Re-ranking of retrieval candidates.

The default ``WeightedSumStrategy`` scores each candidate as::

    similarity_weight * raw
    + lexical_weight * lexical
    + kind_weight[chunk_kind]
    + proximity_weight * proximity

``lexical`` is the share of query identifiers (camelCase and snake_case split)
present in the chunk text. ``proximity`` is the best raw score of another
candidate in the same file within ``proximity_lines`` lines. With a positive
similarity weight the final score is monotonic in raw similarity.
"""

from __future__ import annotations

import re
from abc import ABC, abstractmethod
from collections import defaultdict
from typing import Optional, Sequence

from .config import RetrievalSettings
from .errors import ConfigurationError
from .models import RankedChunk, RetrievalCandidate

_WORD_RE = re.compile(r"[A-Za-z0-9]+")
_CAMEL_RE = re.compile(r"[A-Z]+(?=[A-Z][a-z])|[A-Z]?[a-z]+|[A-Z]+|[0-9]+")


def identifier_terms(text: str) -> set[str]:
    """Lowercased terms with identifiers split at case and underscore boundaries."""
    terms: set[str] = set()
    for word in _WORD_RE.findall(text):
        lowered = word.lower()
        if len(lowered) > 1:
            terms.add(lowered)
        for piece in _CAMEL_RE.findall(word):
            if len(piece) > 1:
                terms.add(piece.lower())
    return terms


def lexical_overlap(query_terms: set[str], text: str) -> float:
    if not query_terms:
        return 0.0
    return len(query_terms & identifier_terms(text)) / len(query_terms)


def line_distance(a: RetrievalCandidate, b: RetrievalCandidate) -> int:
    """Lines between two spans; 0 when they touch or overlap."""
    return max(0, max(a.ref.start_line, b.ref.start_line) - min(a.ref.end_line, b.ref.end_line))


class RerankStrategy(ABC):
    @abstractmethod
    def score(self, query_text: str, candidates: Sequence[RetrievalCandidate]) -> list[float]:
        """Final scores aligned with ``candidates``."""


class WeightedSumStrategy(RerankStrategy):
    def __init__(self, settings: Optional[RetrievalSettings] = None):
        self.settings = settings or RetrievalSettings()
        if self.settings.similarity_weight <= 0:
            raise ConfigurationError("retrieval.similarity_weight must be positive")
        self.kind_weights = self.settings.kind_weight_map

    def _proximity(
        self, candidate: RetrievalCandidate, same_file: Sequence[RetrievalCandidate]
    ) -> float:
        best = 0.0
        for other in same_file:
            if other is candidate or other.ref == candidate.ref:
                continue
            if line_distance(candidate, other) <= self.settings.proximity_lines:
                best = max(best, other.raw_score)
        return best

    def score(self, query_text: str, candidates: Sequence[RetrievalCandidate]) -> list[float]:
        s = self.settings
        query_terms = identifier_terms(query_text)
        by_file: dict[str, list[RetrievalCandidate]] = defaultdict(list)
        for c in candidates:
            by_file[c.ref.file_path].append(c)

        scores = []
        for c in candidates:
            lexical = lexical_overlap(query_terms, c.text) if s.lexical_weight else 0.0
            proximity = self._proximity(c, by_file[c.ref.file_path]) if s.proximity_weight else 0.0
            scores.append(
                s.similarity_weight * c.raw_score
                + s.lexical_weight * lexical
                + self.kind_weights.get(c.ref.chunk_kind.value, 0.0)
                + s.proximity_weight * proximity
            )
        return scores


class Reranker:
    def __init__(self, strategy: Optional[RerankStrategy] = None):
        self.strategy = strategy or WeightedSumStrategy()

    def rerank(
        self, query_text: str, candidates: Sequence[RetrievalCandidate]
    ) -> list[RankedChunk]:
        """Order candidates by final score descending, ties by ``(file_path, start_line)``."""
        scores = self.strategy.score(query_text, candidates)
        if len(scores) != len(candidates):
            raise ValueError(
                f"Rerank strategy returned {len(scores)} scores for {len(candidates)} candidates"
            )
        ranked = [
            RankedChunk(ref=c.ref, text=c.text, raw_score=c.raw_score, final_score=float(score))
            for c, score in zip(candidates, scores)
        ]
        ranked.sort(key=lambda r: (-r.final_score, r.ref.file_path, r.ref.start_line, r.ref.part))
        return ranked
