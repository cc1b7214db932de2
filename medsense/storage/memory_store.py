import logging
from typing import Dict, List, Optional
from medsense.core.errors import StorageError
from medsense.models.chunk import StoredChunk
from medsense.models.document import DocumentRecord
from medsense.storage.base import ObjectStore, RecordStore

logger = logging.getLogger(__name__)

class InMemoryRecordStore(RecordStore):
    """
    Process-local RecordStore used for the "memory" backend and in tests.
    The embedding length is fixed by vector_dim or by the first chunk inserted.
    """

    def __init__(self, vector_dim: Optional[int] = None):
        self.vector_dim = vector_dim
        self.documents: Dict[str, DocumentRecord] = {}
        self.chunks: Dict[str, StoredChunk] = {}

    async def insert_document(self, document: DocumentRecord) -> None:
        self.documents[document.id] = document

    async def get_document(self, document_id: str) -> Optional[DocumentRecord]:
        return self.documents.get(document_id)

    async def list_documents(self) -> List[DocumentRecord]:
        return sorted(self.documents.values(), key=lambda d: (d.created_at, d.name, d.id))

    async def delete_document(self, document_id: str) -> None:
        self.documents.pop(document_id, None)

    async def insert_chunks(self, chunks: List[StoredChunk]) -> None:
        for chunk in chunks:
            dim = len(chunk.embedding)
            if self.vector_dim is None:
                self.vector_dim = dim
            if dim != self.vector_dim:
                raise StorageError(
                    f"Chunk {chunk.chunk_index} of {chunk.document_id} has embedding length "
                    f"{dim}, corpus uses {self.vector_dim}"
                )
        for chunk in chunks:
            self.chunks[chunk.id] = chunk

    async def list_chunks(self, document_id: Optional[str] = None) -> List[StoredChunk]:
        selected = [
            c for c in self.chunks.values()
            if document_id is None or c.document_id == document_id
        ]
        return sorted(selected, key=lambda c: (c.document_id, c.chunk_index))

    async def count_chunks(self, document_id: str) -> int:
        return sum(1 for c in self.chunks.values() if c.document_id == document_id)

    async def delete_chunks(self, document_id: str) -> None:
        self.chunks = {cid: c for cid, c in self.chunks.items() if c.document_id != document_id}


class InMemoryObjectStore(ObjectStore):
    def __init__(self):
        self.objects: Dict[str, bytes] = {}

    async def put(self, key: str, data: bytes) -> str:
        self.objects[key] = data
        return key

    async def get(self, key: str) -> Optional[bytes]:
        return self.objects.get(key)

    async def delete(self, key: str) -> None:
        self.objects.pop(key, None)

    def signed_url(self, key: str, ttl: Optional[int] = None) -> str:
        return f"memory://{key}"
