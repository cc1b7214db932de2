import asyncio
import json
import logging
import os
import threading
from typing import Callable, Dict, List, Optional, TypeVar
from qdrant_client import QdrantClient
from qdrant_client.http import models as rest
from medsense.config.settings import QdrantConfig, StorageConfig, settings
from medsense.core.errors import StorageError
from medsense.models.chunk import StoredChunk
from medsense.models.document import DocumentRecord
from medsense.storage.base import RecordStore

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _document_filter(document_id: str) -> rest.Filter:
    return rest.Filter(
        must=[
            rest.FieldCondition(
                key="document_id",
                match=rest.MatchValue(value=document_id)
            )
        ]
    )


class QdrantRecordStore(RecordStore):
    """
    Implements RecordStore with Qdrant for chunks and a JSON manifest for documents.
    - Every chunk is one point: id = chunk id, vector = embedding, payload = the rest.
    - The collection's vector size fixes the embedding length for the whole corpus.
    - Document rows are small and few, so they live in documents.json beside the index.
    """

    def __init__(self,
                 config: Optional[QdrantConfig] = None,
                 storage_config: Optional[StorageConfig] = None,
                 vector_dim: Optional[int] = None,
                 client: Optional[QdrantClient] = None):
        self.config = config or settings.qdrant
        self.storage_config = storage_config or settings.storage
        self.vector_dim = vector_dim or settings.embedding.vector_dim
        self.client = client or self._connect()
        self.manifest_path = self.storage_config.documents_path
        self._manifest_lock = threading.Lock()
        self._ensure_collection()

    def _connect(self) -> QdrantClient:
        if self.config.mode == "cloud":
            return QdrantClient(url=self.config.cloud_url, api_key=os.getenv("QDRANT_API_KEY"))
        if self.config.mode == "memory":
            return QdrantClient(location=":memory:")
        return QdrantClient(path=self.config.local_path)

    def _ensure_collection(self):
        collections = self.client.get_collections().collections
        if any(c.name == self.config.collection_name for c in collections):
            return
        logger.info(f"Creating Qdrant collection: {self.config.collection_name} (dim={self.vector_dim})")
        self.client.create_collection(
            collection_name=self.config.collection_name,
            vectors_config=rest.VectorParams(
                size=self.vector_dim,
                distance=rest.Distance.COSINE
            )
        )
        self.client.create_payload_index(
            collection_name=self.config.collection_name,
            field_name="document_id",
            field_schema=rest.PayloadSchemaType.KEYWORD
        )

    async def _run(self, description: str, fn: Callable[..., T], *args, **kwargs) -> T:
        try:
            return await asyncio.to_thread(fn, *args, **kwargs)
        except StorageError:
            raise
        except Exception as e:
            raise StorageError(f"Record store failed to {description}: {e}") from e

    # Documents

    def _load_manifest(self) -> Dict[str, dict]:
        if not os.path.exists(self.manifest_path):
            return {}
        with open(self.manifest_path, "r", encoding="utf-8") as f:
            return json.load(f)

    def _save_manifest(self, data: Dict[str, dict]) -> None:
        directory = os.path.dirname(self.manifest_path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        tmp_path = f"{self.manifest_path}.tmp"
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(data, f, ensure_ascii=False, indent=2)
        os.replace(tmp_path, self.manifest_path)

    def _update_manifest(self, update: Callable[[Dict[str, dict]], None]) -> None:
        with self._manifest_lock:
            data = self._load_manifest()
            update(data)
            self._save_manifest(data)

    async def insert_document(self, document: DocumentRecord) -> None:
        def _insert(data):
            data[document.id] = document.model_dump()
        await self._run("insert document", self._update_manifest, _insert)

    async def get_document(self, document_id: str) -> Optional[DocumentRecord]:
        data = await self._run("read documents", self._load_manifest)
        row = data.get(document_id)
        return DocumentRecord(**row) if row else None

    async def list_documents(self) -> List[DocumentRecord]:
        data = await self._run("read documents", self._load_manifest)
        documents = [DocumentRecord(**row) for row in data.values()]
        return sorted(documents, key=lambda d: (d.created_at, d.name, d.id))

    async def delete_document(self, document_id: str) -> None:
        def _delete(data):
            data.pop(document_id, None)
        await self._run("delete document", self._update_manifest, _delete)

    # Chunks

    async def insert_chunks(self, chunks: List[StoredChunk]) -> None:
        if not chunks:
            return
        points = []
        for chunk in chunks:
            if len(chunk.embedding) != self.vector_dim:
                raise StorageError(
                    f"Chunk {chunk.chunk_index} of {chunk.document_id} has embedding length "
                    f"{len(chunk.embedding)}, corpus uses {self.vector_dim}"
                )
            points.append(rest.PointStruct(
                id=chunk.id,
                vector=chunk.embedding,
                payload=chunk.model_dump(exclude={"embedding"})
            ))

        await self._run(
            "insert chunks",
            self.client.upsert,
            collection_name=self.config.collection_name,
            points=points
        )

    def _scroll_all(self, document_id: Optional[str]) -> List[StoredChunk]:
        chunks = []
        offset = None
        scroll_filter = _document_filter(document_id) if document_id else None
        while True:
            records, offset = self.client.scroll(
                collection_name=self.config.collection_name,
                scroll_filter=scroll_filter,
                limit=self.config.scroll_batch,
                offset=offset,
                with_payload=True,
                with_vectors=True
            )
            for record in records:
                chunks.append(StoredChunk(**record.payload, embedding=record.vector))
            if offset is None:
                break
        return chunks

    async def list_chunks(self, document_id: Optional[str] = None) -> List[StoredChunk]:
        chunks = await self._run("list chunks", self._scroll_all, document_id)
        return sorted(chunks, key=lambda c: (c.document_id, c.chunk_index))

    async def count_chunks(self, document_id: str) -> int:
        result = await self._run(
            "count chunks",
            self.client.count,
            collection_name=self.config.collection_name,
            count_filter=_document_filter(document_id),
            exact=True
        )
        return result.count

    async def delete_chunks(self, document_id: str) -> None:
        await self._run(
            "delete chunks",
            self.client.delete,
            collection_name=self.config.collection_name,
            points_selector=rest.FilterSelector(filter=_document_filter(document_id))
        )
