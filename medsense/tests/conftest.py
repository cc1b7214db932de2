"""Shared fixtures: deterministic embedder, scripted LLM, in-memory stores, PDF builder."""

import re
import zlib
from typing import Dict, List, Optional

import fitz  # PyMuPDF
import pytest

from medsense.config.settings import EmbeddingConfig
from medsense.core.embed.embedder import BaseEmbedder
from medsense.models.chunk import StoredChunk
from medsense.storage.job_store import InMemoryJobStore
from medsense.storage.memory_store import InMemoryObjectStore, InMemoryRecordStore

VECTOR_DIM = 64
_WORD = re.compile(r"[a-z0-9]+")


class HashingEmbedder(BaseEmbedder):
    """Bag-of-words hashing vectors: same text, same vector, no model download."""

    def __init__(self, config: Optional[EmbeddingConfig] = None, fail_on: Optional[str] = None):
        super().__init__(config or make_embedding_config())
        self.fail_on = fail_on
        self.seen: List[str] = []
        self.batches: List[int] = []

    async def _encode(self, texts: List[str]) -> List[List[float]]:
        vectors = []
        self.batches.append(len(texts))
        for text in texts:
            self.seen.append(text)
            if self.fail_on and self.fail_on in text:
                raise RuntimeError("embedding service unavailable")
            vector = [0.0] * self.config.vector_dim
            for word in _WORD.findall(text.lower()):
                vector[zlib.crc32(word.encode("utf-8")) % self.config.vector_dim] += 1.0
            vectors.append(vector)
        return vectors


class ScriptedLLM:
    """Stands in for LLMClient: returns a fixed answer and records every request."""

    def __init__(self, answer: str = "Your HDL was 54 mg/dL on 26 Feb 2024.", error: Optional[Exception] = None):
        self.answer = answer
        self.error = error
        self.calls: List[List[Dict[str, str]]] = []

    async def complete(self, messages, sampling=None) -> str:
        self.calls.append(messages)
        if self.error:
            raise self.error
        return self.answer


def make_embedding_config(**overrides) -> EmbeddingConfig:
    values = dict(
        vector_dim=VECTOR_DIM,
        query_prefix="",
        batch_size=4,
        concurrency=2,
        inter_batch_delay=0.0,
    )
    values.update(overrides)
    return EmbeddingConfig(**values)


def make_pdf(pages: List[str]) -> bytes:
    """Builds a text-layer PDF with one page per string (blank string = blank page)."""
    doc = fitz.open()
    for text in pages:
        page = doc.new_page()
        if text:
            page.insert_text((72, 72), text, fontsize=10)
    data = doc.tobytes()
    doc.close()
    return data


def make_chunk(document_id: str,
               chunk_index: int,
               text: str,
               embedding: List[float],
               dates: Optional[List[str]] = None,
               document_name: str = "report.pdf",
               section_header: str = "") -> StoredChunk:
    return StoredChunk(
        id=f"{document_id}-{chunk_index}",
        document_id=document_id,
        document_name=document_name,
        text=text,
        chunk_index=chunk_index,
        section_header=section_header,
        dates=dates or [],
        embedding=embedding
    )


@pytest.fixture
def embedder():
    return HashingEmbedder()


@pytest.fixture
def record_store():
    return InMemoryRecordStore(vector_dim=VECTOR_DIM)


@pytest.fixture
def object_store():
    return InMemoryObjectStore()


@pytest.fixture
def job_store():
    return InMemoryJobStore()


@pytest.fixture
def llm():
    return ScriptedLLM()


LIPID_REPORT_LINES = [
    "LIPID PROFILE",
    "Patient: Jane Doe",
    "Sample collected on 26 Feb 2024 after overnight fasting.",
    "HDL 54 mg/dL, 26 Feb 2024",
    "LDL 110 mg/dL",
    "Triglycerides 120 mg/dL",
    "Reference ranges apply to adults.",
]


@pytest.fixture
def lipid_pdf() -> bytes:
    return make_pdf(["\n".join(LIPID_REPORT_LINES)])
