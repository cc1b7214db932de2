import logging
import re
from typing import Iterable, List, Optional
from medsense.config.settings import settings
from medsense.models.chunk import TextChunk

logger = logging.getLogger(__name__)

_WS = re.compile(r"\s+")


def dedup_key(text: str) -> str:
    """Trimmed, lowercased, whitespace-collapsed form used for exact-match dedup."""
    return _WS.sub(" ", text.strip().lower())


class Deduplicator:
    """
    Drops chunks whose normalized text was already seen, and chunks shorter
    than min_length. Order is preserved and a second pass changes nothing.
    """

    def __init__(self, min_length: Optional[int] = None):
        self.min_length = settings.chunking.dedup_min_chars if min_length is None else min_length

    def deduplicate(self, chunks: Iterable[TextChunk]) -> List[TextChunk]:
        seen = set()
        unique = []
        skipped_short = skipped_dup = 0

        for chunk in chunks:
            key = dedup_key(chunk.text)
            if len(key) < self.min_length:
                skipped_short += 1
                continue
            if key in seen:
                skipped_dup += 1
                continue
            seen.add(key)
            unique.append(chunk)

        if skipped_short or skipped_dup:
            logger.info(f"Dedup removed {skipped_dup} duplicate and {skipped_short} short chunks")
        return unique
