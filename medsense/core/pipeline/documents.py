import logging
from typing import List, Optional
from pydantic import BaseModel
from medsense.core.chunk.date_extractor import extract_dates_from_filename, extract_dates_from_text, merge_dates
from medsense.core.errors import DocumentNotFoundError, StorageError
from medsense.models.document import DocumentRecord
from medsense.storage.base import ObjectStore, RecordStore

logger = logging.getLogger(__name__)


class DateAuditEntry(BaseModel):
    document_id: str
    document_name: str
    chunk_index: int
    stored_dates: List[str]
    expected_dates: List[str]


class DocumentService:
    """Document listing, cascade delete and file access."""

    def __init__(self, record_store: RecordStore, object_store: ObjectStore):
        self.record_store = record_store
        self.object_store = object_store

    async def list_documents(self) -> List[DocumentRecord]:
        return await self.record_store.list_documents()

    async def get_document(self, document_id: str) -> DocumentRecord:
        document = await self.record_store.get_document(document_id)
        if document is None:
            raise DocumentNotFoundError(f"Document {document_id} not found")
        return document

    async def delete_document(self, document_id: str) -> None:
        """
        Removes the stored binary, then the chunks, then the document row.
        The row is only deleted once no chunk refers to it any more.
        """
        document = await self.get_document(document_id)

        await self.object_store.delete(document.storage_ref)
        await self.record_store.delete_chunks(document_id)

        remaining = await self.record_store.count_chunks(document_id)
        if remaining:
            raise StorageError(
                f"{remaining} chunk(s) of document {document_id} survived deletion; document row kept"
            )

        await self.record_store.delete_document(document_id)
        logger.info(f"Deleted document {document_id} ({document.name})")

    async def signed_url(self, document_id: str, ttl: Optional[int] = None) -> str:
        document = await self.get_document(document_id)
        return self.object_store.signed_url(document.storage_ref, ttl)

    async def audit_chunk_dates(self) -> List[DateAuditEntry]:
        """
        Lists chunks whose stored dates differ from what the current date
        rules would produce. Chunks are immutable, so this only reports;
        re-ingesting the document applies the current rules.
        """
        entries = []
        for chunk in await self.record_store.list_chunks():
            expected = merge_dates(
                extract_dates_from_text(chunk.text),
                extract_dates_from_filename(chunk.document_name)
            )
            if expected != chunk.dates:
                entries.append(DateAuditEntry(
                    document_id=chunk.document_id,
                    document_name=chunk.document_name,
                    chunk_index=chunk.chunk_index,
                    stored_dates=chunk.dates,
                    expected_dates=expected
                ))
        if entries:
            logger.warning(f"Date audit found {len(entries)} chunk(s) with outdated dates")
        return entries
