from abc import ABC, abstractmethod
from typing import List, Optional
from medsense.models.chunk import StoredChunk
from medsense.models.document import DocumentRecord, UploadJob

class RecordStore(ABC):
    """Structured store for document rows and their chunks."""

    @abstractmethod
    async def insert_document(self, document: DocumentRecord) -> None:
        pass

    @abstractmethod
    async def get_document(self, document_id: str) -> Optional[DocumentRecord]:
        pass

    @abstractmethod
    async def list_documents(self) -> List[DocumentRecord]:
        pass

    @abstractmethod
    async def delete_document(self, document_id: str) -> None:
        pass

    @abstractmethod
    async def insert_chunks(self, chunks: List[StoredChunk]) -> None:
        pass

    @abstractmethod
    async def list_chunks(self, document_id: Optional[str] = None) -> List[StoredChunk]:
        """All chunks (with embeddings), optionally for a single document."""
        pass

    @abstractmethod
    async def count_chunks(self, document_id: str) -> int:
        pass

    @abstractmethod
    async def delete_chunks(self, document_id: str) -> None:
        pass

class ObjectStore(ABC):
    @abstractmethod
    async def put(self, key: str, data: bytes) -> str:
        """Stores the bytes and returns the storage reference."""
        pass

    @abstractmethod
    async def get(self, key: str) -> Optional[bytes]:
        pass

    @abstractmethod
    async def delete(self, key: str) -> None:
        pass

    @abstractmethod
    def signed_url(self, key: str, ttl: Optional[int] = None) -> str:
        pass

class JobStore(ABC):
    """Key-value store for upload jobs, with per-key expiry."""

    @abstractmethod
    def put(self, job: UploadJob) -> None:
        pass

    @abstractmethod
    def get(self, upload_id: str) -> Optional[UploadJob]:
        pass

    @abstractmethod
    def expire(self, upload_id: str, ttl: float) -> None:
        pass

    @abstractmethod
    def delete(self, upload_id: str) -> None:
        pass
