import bisect
import logging
from typing import List, Optional, Tuple
from medsense.config.settings import ChunkingConfig, settings
from medsense.models.chunk import ChunkingResult, TextChunk

logger = logging.getLogger(__name__)

class Chunker:
    """
    Implements header-aware sliding-window chunking over normalized text.
    - Detects section headers line by line.
    - Splits the text into overlapping windows of chunk_size characters.
    - Prefers sentence ends / newlines / spaces as window boundaries.
    - Tags every chunk with the header active at its start offset.
    """

    def __init__(self, config: Optional[ChunkingConfig] = None):
        # Re-validate so a config mutated after construction still fails here
        self.config = ChunkingConfig(**(config or settings.chunking).model_dump())

    def is_header(self, line: str) -> bool:
        stripped = line.strip()
        if not (self.config.header_min_chars <= len(stripped) <= self.config.header_max_chars):
            return False
        return stripped.isupper() or stripped.endswith(":")

    def detect_headers(self, text: str) -> List[Tuple[int, str]]:
        """Returns (offset, header) pairs in document order."""
        headers = []
        offset = 0
        for line in text.split("\n"):
            if self.is_header(line):
                headers.append((offset, line.strip().rstrip(":").strip()))
            offset += len(line) + 1
        return headers

    def chunk(self, text: str) -> ChunkingResult:
        """
        Main entry point for chunking a document's normalized text.
        """
        if not text or not text.strip():
            return ChunkingResult(chunks=[])

        size = self.config.chunk_size
        overlap = self.config.chunk_overlap
        headers = self.detect_headers(text)
        header_offsets = [h[0] for h in headers]
        total = len(text)

        # A document that fits in one window is kept whole regardless of the noise threshold
        if total <= size:
            return ChunkingResult(chunks=[TextChunk(
                text=text.strip(),
                header=self._header_at(headers, header_offsets, 0),
                start=0,
                end=total
            )])

        chunks: List[TextChunk] = []
        truncated = False
        start = 0
        while start < total:
            end = self._window_end(text, start)
            piece = text[start:end].strip()

            if len(piece) >= self.config.min_chunk_chars:
                if len(chunks) >= self.config.max_chunks_per_document:
                    truncated = True
                    break
                chunks.append(TextChunk(
                    text=piece,
                    header=self._header_at(headers, header_offsets, start),
                    start=start,
                    end=end
                ))

            if end >= total:
                break
            # Always move forward, even when the boundary landed inside the overlap
            start = max(end - overlap, start + 1)

        if truncated:
            logger.warning(
                f"Chunk limit reached ({self.config.max_chunks_per_document}); "
                f"text after offset {start} of {total} was not chunked"
            )
        logger.info(f"Created {len(chunks)} chunks from {total} chars")
        return ChunkingResult(chunks=chunks, truncated=truncated)

    def _window_end(self, text: str, start: int) -> int:
        size = self.config.chunk_size
        total = len(text)
        end = min(start + size, total)
        if end >= total:
            return total

        floor = start + size * 0.5
        # Sentence end, then newline, then any space; never earlier than half a window
        sentence = max(text.rfind(". ", start, end), text.rfind("? ", start, end), text.rfind("! ", start, end))
        if sentence != -1 and sentence + 1 > floor:
            return sentence + 1
        newline = text.rfind("\n", start, end)
        if newline != -1 and newline > floor:
            return newline
        space = text.rfind(" ", start, end)
        if space != -1 and space > floor:
            return space
        return end

    @staticmethod
    def _header_at(headers: List[Tuple[int, str]], offsets: List[int], position: int) -> str:
        idx = bisect.bisect_right(offsets, position) - 1
        return headers[idx][1] if idx >= 0 else ""
