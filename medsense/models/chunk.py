from decimal import Decimal
from typing import Any
from pydantic import BaseModel, field_validator
from medsense.core.embed.similarity import parse_embedding

class TextChunk(BaseModel):
    text: str
    header: str = ""                 # nearest preceding section header, "" if none
    start: int = 0                   # window offsets into the normalized text
    end: int = 0

class ChunkingResult(BaseModel):
    chunks: list[TextChunk]
    truncated: bool = False

class StoredChunk(BaseModel):
    id: str
    document_id: str
    document_name: str
    text: str
    chunk_index: int                 # 0-based, unique per document
    section_header: str = ""
    dates: list[str] = []            # primary date first, then year-sorted
    embedding: list[float]

    @field_validator("embedding", mode="before")
    @classmethod
    def _parse_embedding(cls, value: Any) -> list[float]:
        return parse_embedding(value)

    @field_validator("dates")
    @classmethod
    def _dedupe_dates(cls, value: list[str]) -> list[str]:
        return list(dict.fromkeys(value))

class ScoredChunk(BaseModel):
    chunk: StoredChunk
    score: Decimal
    original_index: int              # scan order, last tie-breaker

    @property
    def key(self) -> tuple[str, int]:
        return (self.chunk.document_id, self.chunk.chunk_index)
