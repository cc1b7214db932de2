import logging
from collections import defaultdict
from decimal import Decimal, ROUND_HALF_EVEN
from typing import Dict, List, Optional, Sequence, Tuple
from medsense.config.settings import RetrievalConfig, settings
from medsense.core.chunk.date_extractor import date_year
from medsense.core.chunk.deduplicator import dedup_key
from medsense.core.embed.similarity import cosine_similarity
from medsense.core.retrieve.query_analyser import contains_keyword, names_match, significant_words
from medsense.models.chunk import ScoredChunk, StoredChunk
from medsense.models.query import LabValueIntent, QueryAnalysis, RankedSelection

logger = logging.getLogger(__name__)

UNKNOWN_YEAR = "unknown"


def sort_key(item: ScoredChunk) -> Tuple[Decimal, str, int, int]:
    """Score descending, then document id, chunk index and scan order."""
    return (-item.score, item.chunk.document_id, item.chunk.chunk_index, item.original_index)


def chunk_year(chunk: StoredChunk) -> str:
    for value in chunk.dates:
        year = date_year(value)
        if year:
            return year
    return UNKNOWN_YEAR


class HybridRanker:
    """
    Deterministic hybrid ranking over the whole corpus.
    Scores are fixed-point Decimals: cosine similarity is quantized first, and
    every multiplicative boost is applied to the quantized value and quantized
    again, so the same corpus and query always produce the same order.
    """

    def __init__(self, config: Optional[RetrievalConfig] = None):
        self.config = config or settings.retrieval
        self.quantum = Decimal(1).scaleb(-self.config.score_places)
        self.document_boost = Decimal(str(self.config.document_boost))
        self.header_word_boost = Decimal(str(self.config.header_word_boost))
        self.date_boost = Decimal(str(self.config.date_boost))
        self.keyword_boost = Decimal(str(self.config.keyword_boost))

    def quantize(self, value) -> Decimal:
        if not isinstance(value, Decimal):
            value = Decimal(value)
        return value.quantize(self.quantum, rounding=ROUND_HALF_EVEN)

    def score_chunk(self, query_vector: Sequence[float], analysis: QueryAnalysis, chunk: StoredChunk) -> Decimal:
        score = self.quantize(cosine_similarity(query_vector, chunk.embedding))

        # 1. Named document
        if analysis.document_name and names_match(analysis.document_name, chunk.document_name):
            score = self.quantize(score * self.document_boost)

        # 2. Header words shared with the question
        if chunk.section_header and analysis.terms:
            shared = set(analysis.terms) & set(significant_words(chunk.section_header))
            if shared:
                score = self.quantize(score * (1 + self.header_word_boost * len(shared)))

        # 3. Date overlap
        if analysis.dates and set(analysis.dates) & set(chunk.dates):
            score = self.quantize(score * self.date_boost)

        # 4. Lab keyword present in the chunk
        if analysis.lab_keyword and contains_keyword(chunk.text, analysis.lab_keyword):
            score = self.quantize(score * self.keyword_boost)

        return score

    def score(self, query_vector: Sequence[float], analysis: QueryAnalysis, chunks: List[StoredChunk]) -> List[ScoredChunk]:
        scored = [
            ScoredChunk(chunk=chunk, score=self.score_chunk(query_vector, analysis, chunk), original_index=i)
            for i, chunk in enumerate(chunks)
        ]
        return sorted(scored, key=sort_key)

    def select(self, scored: List[ScoredChunk], analysis: QueryAnalysis) -> RankedSelection:
        """Lab-value questions take every keyword chunk; anything else is capped by score."""
        if isinstance(analysis.intent, LabValueIntent):
            selection = self._select_exhaustive(scored, analysis.intent.keyword)
            if selection is not None:
                return selection
            logger.info(f"No chunk mentions '{analysis.intent.keyword}'; using balanced selection")
        return self._select_balanced(scored)

    def _select_balanced(self, scored: List[ScoredChunk]) -> RankedSelection:
        per_document: Dict[str, int] = defaultdict(int)
        selected = []
        for item in scored:
            doc_id = item.chunk.document_id
            if per_document[doc_id] >= self.config.per_document_top_k:
                continue
            per_document[doc_id] += 1
            selected.append(item)
            if len(selected) >= self.config.overall_top_k:
                break
        return RankedSelection(chunks=selected, mode="balanced")

    def _select_exhaustive(self, scored: List[ScoredChunk], keyword: str) -> Optional[RankedSelection]:
        hits = [item for item in scored if contains_keyword(item.chunk.text, keyword)]
        if not hits:
            return None

        groups: Dict[str, List[ScoredChunk]] = defaultdict(list)
        for item in hits:
            groups[chunk_year(item.chunk)].append(item)
        years = sorted(y for y in groups if y != UNKNOWN_YEAR)
        if UNKNOWN_YEAR in groups:
            years.append(UNKNOWN_YEAR)

        by_key = {item.key: item for item in scored}
        seen_keys = set()
        selected = []

        def add(item: ScoredChunk):
            if item.key not in seen_keys:
                seen_keys.add(item.key)
                selected.append(item)

        for year in years:
            seen_text = set()
            group_hits = []
            for item in sorted(groups[year], key=sort_key):
                text_key = dedup_key(item.chunk.text)
                if text_key in seen_text:
                    continue
                seen_text.add(text_key)
                group_hits.append(item)

            for item in group_hits:
                add(item)

            # Adjacent chunks often carry the rest of a historical results table
            neighbours = []
            for item in group_hits:
                doc_id, index = item.key
                for offset in (-1, 1):
                    neighbour = by_key.get((doc_id, index + offset))
                    if neighbour is not None:
                        neighbours.append(neighbour)
            for item in sorted(neighbours, key=lambda n: (n.chunk.document_id, n.chunk.chunk_index)):
                add(item)

        logger.info(
            f"Exhaustive retrieval for '{keyword}': {len(hits)} keyword chunks across "
            f"{len(years)} year group(s), {len(selected)} selected with neighbours"
        )
        return RankedSelection(chunks=selected, mode="exhaustive", years=years)
