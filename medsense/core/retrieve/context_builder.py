import logging
import math
from typing import List, Optional
from medsense.config.settings import RetrievalConfig, settings
from medsense.core.chunk.date_extractor import date_sort_key, extract_dates_from_filename, extract_dates_from_text
from medsense.core.chunk.deduplicator import dedup_key
from medsense.core.retrieve.ranker import chunk_year
from medsense.models.chunk import StoredChunk
from medsense.models.query import AssembledContext, ContextBlock, RankedSelection

logger = logging.getLogger(__name__)

BLOCK_SEPARATOR = "\n\n---\n\n"


def estimate_tokens(text: str) -> int:
    return math.ceil(len(text) / 4)


def header_date(dates: List[str]) -> str:
    """Most specific date for a block header: day, then month, then bare year."""
    for parts in (3, 2):
        for value in dates:
            if len(value.split()) == parts:
                return value
    return dates[0]


class ContextAssembler:
    """
    Assembles the prompt context from the ranked selection.
    - Renders each chunk under a metadata header line.
    - Drops blocks whose normalized text prefix was already rendered.
    - Trims to the token budget; lab-value selections keep one block per year.
    - Collects the dates the answer is allowed to mention.
    """

    def __init__(self, config: Optional[RetrievalConfig] = None):
        self.config = config or settings.retrieval

    @staticmethod
    def render_header(chunk: StoredChunk) -> str:
        if chunk.dates:
            date_label = header_date(chunk.dates)
            if extract_dates_from_filename(chunk.document_name).primary_date == date_label:
                date_label = f"{date_label} (from filename)"
        else:
            date_label = "Unknown"
        section = chunk.section_header or "General"
        return f"[Document: {chunk.document_name} | Section: {section} | Date: {date_label} | Chunk {chunk.chunk_index}]"

    def build_blocks(self, selection: RankedSelection) -> List[ContextBlock]:
        seen_prefixes = set()
        blocks = []
        for item in selection.chunks:
            chunk = item.chunk
            prefix = dedup_key(chunk.text)[:self.config.dedup_prefix_chars]
            if prefix in seen_prefixes:
                continue
            seen_prefixes.add(prefix)
            header = self.render_header(chunk)
            blocks.append(ContextBlock(
                chunk=chunk,
                header=header,
                text=f"{header}\n{chunk.text}",
                year=chunk_year(chunk)
            ))

        dropped = len(selection.chunks) - len(blocks)
        if dropped:
            logger.info(f"Context dedup dropped {dropped} near-duplicate block(s)")
        return blocks

    def fit_budget(self, blocks: List[ContextBlock], preserve_years: bool, max_tokens: int) -> List[ContextBlock]:
        costs = [estimate_tokens(b.text + BLOCK_SEPARATOR) for b in blocks]
        if sum(costs) <= max_tokens:
            return blocks

        keep = set()
        used = 0
        if preserve_years:
            # The first block of every year is kept even if that alone exceeds the budget
            seen_years = set()
            for i, block in enumerate(blocks):
                if block.year not in seen_years:
                    seen_years.add(block.year)
                    keep.add(i)
                    used += costs[i]

        for i, cost in enumerate(costs):
            if i in keep:
                continue
            if used + cost > max_tokens:
                if preserve_years:
                    continue
                break
            keep.add(i)
            used += cost

        return [b for i, b in enumerate(blocks) if i in keep]

    def assemble(self, selection: RankedSelection, max_tokens: Optional[int] = None) -> AssembledContext:
        budget = max_tokens if max_tokens is not None else self.config.max_context_tokens
        blocks = self.build_blocks(selection)
        kept = self.fit_budget(blocks, preserve_years=selection.mode == "exhaustive", max_tokens=budget)

        truncated = len(kept) < len(blocks)
        if truncated:
            logger.warning(f"Context truncated to {len(kept)} of {len(blocks)} blocks (budget {budget} tokens)")

        available = []
        for block in kept:
            available.extend(block.chunk.dates)
            available.extend(extract_dates_from_text(block.chunk.text))
        available_dates = sorted(dict.fromkeys(available), key=date_sort_key)

        text = BLOCK_SEPARATOR.join(b.text for b in kept)
        return AssembledContext(
            text=text,
            blocks=kept,
            available_dates=available_dates,
            estimated_tokens=estimate_tokens(text),
            truncated=truncated
        )
