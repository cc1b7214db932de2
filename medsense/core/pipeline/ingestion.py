import asyncio
import logging
import mimetypes
import os
import re
import uuid
from datetime import datetime, timezone
from typing import Any, List, Optional, Tuple
from medsense.config.settings import EmbeddingConfig, settings
from medsense.core.chunk.chunker import Chunker
from medsense.core.chunk.date_extractor import extract_dates_from_filename, extract_dates_from_text, merge_dates
from medsense.core.chunk.deduplicator import Deduplicator
from medsense.core.embed.embedder import BaseEmbedder
from medsense.core.errors import EmbeddingError, EmptyDocumentError, ExtractionError, MedSenseError
from medsense.core.parse.normalizer import normalize_text
from medsense.core.parse.ocr_engine import OcrProgress
from medsense.core.parse.text_extractor import TextExtractor
from medsense.core.pipeline.progress import UploadTracker
from medsense.models.chunk import StoredChunk, TextChunk
from medsense.models.document import DocumentRecord, IngestionResult, UploadStage
from medsense.storage.base import ObjectStore, RecordStore

logger = logging.getLogger(__name__)

_UNSAFE_NAME = re.compile(r"[^\w.\-]+")

# Overall progress reserved for each stage
OCR_START, OCR_END = 15, 50
EMBED_START, EMBED_END = 65, 95


def resolve_media_type(filename: str, media_type: Optional[str]) -> str:
    declared = TextExtractor.normalise_media_type(media_type)
    if declared and declared != "application/octet-stream":
        return declared
    guessed, _ = mimetypes.guess_type(filename or "")
    return guessed or declared


def storage_key(document_id: str, filename: str) -> str:
    safe_name = _UNSAFE_NAME.sub("_", os.path.basename(filename or "")).strip("._") or "document"
    return f"{document_id}/{safe_name}"


class IngestionPipeline:
    """
    Orchestrates the ingestion process:
    read -> store binary -> extract (OCR) -> normalize -> chunk -> dedup -> dates
    -> document row -> embed + insert in batches

    Per-chunk embedding failures are counted and skipped. Any other failure
    removes whatever was already written (chunks, document row, binary)
    before the error is recorded on the upload job and re-raised.
    """

    def __init__(self,
                 record_store: RecordStore,
                 object_store: ObjectStore,
                 embedder: BaseEmbedder,
                 extractor: Optional[TextExtractor] = None,
                 chunker: Optional[Chunker] = None,
                 deduplicator: Optional[Deduplicator] = None,
                 config: Optional[EmbeddingConfig] = None):
        self.record_store = record_store
        self.object_store = object_store
        self.embedder = embedder
        self.extractor = extractor or TextExtractor()
        self.chunker = chunker or Chunker()
        self.deduplicator = deduplicator or Deduplicator()
        self.config = config or settings.embedding

    async def run(self,
                  data: bytes,
                  filename: str,
                  media_type: Optional[str] = None,
                  tracker: Optional[UploadTracker] = None,
                  document_id: Optional[str] = None) -> IngestionResult:
        document_id = document_id or str(uuid.uuid4())
        media_type = resolve_media_type(filename, media_type)
        key = storage_key(document_id, filename)
        stored_binary = False
        wrote_records = False

        def update_progress(stage: UploadStage, progress: int, message: str, **fields: Any):
            logger.info(f"[{document_id}] {progress}%: {message}")
            if tracker:
                tracker.advance(stage, progress, message=message, **fields)

        try:
            update_progress(UploadStage.reading, 5, f"Reading {filename}")
            if not self.extractor.supports(media_type):
                raise ExtractionError(f"Unsupported media type: {media_type or 'unknown'}")
            if not data:
                raise EmptyDocumentError("Document is empty")

            # 1. Original binary
            update_progress(UploadStage.uploading, 10, "Storing original document")
            storage_ref = await self.object_store.put(key, data)
            stored_binary = True

            # 2. Text (OCR for scanned PDFs)
            update_progress(UploadStage.ocr, OCR_START, "Extracting text")

            def on_ocr_progress(p: OcrProgress):
                progress = OCR_START + round(p.overall_progress * (OCR_END - OCR_START) / 100)
                update_progress(
                    UploadStage.ocr, progress,
                    f"Recognising page {p.current_page}/{p.total_pages}",
                    current_page=p.current_page,
                    total_pages=p.total_pages,
                    page_progress=p.page_progress
                )

            extraction = await self.extractor.extract(data, media_type, on_ocr_progress)
            text = normalize_text(extraction.text)
            if not text:
                raise EmptyDocumentError("No text left after normalization")

            # 3. Chunks, dedup and dates
            update_progress(UploadStage.chunking, 55, "Chunking text")
            chunking = self.chunker.chunk(text)
            pieces = self.deduplicator.deduplicate(chunking.chunks)
            if not pieces:
                raise EmptyDocumentError("No usable chunks after chunking and deduplication")

            filename_dates = extract_dates_from_filename(filename)
            drafts = [
                (index, piece, merge_dates(extract_dates_from_text(piece.text), filename_dates))
                for index, piece in enumerate(pieces)
            ]

            # 4. Document row
            update_progress(UploadStage.database, 60, "Saving document record")
            wrote_records = True
            await self.record_store.insert_document(DocumentRecord(
                id=document_id,
                name=filename,
                storage_ref=storage_ref,
                created_at=datetime.now(timezone.utc).isoformat(),
                media_type=media_type,
                page_count=extraction.page_count,
                ocr_used=extraction.ocr_used
            ))

            # 5. Embeddings, stored batch by batch
            update_progress(
                UploadStage.embedding, EMBED_START, f"Embedding {len(drafts)} chunks",
                chunks_processed=0, total_chunks=len(drafts)
            )
            stored, failed = await self._embed_and_store(document_id, filename, drafts, update_progress)
            if stored == 0:
                raise EmbeddingError(f"All {failed} chunks failed to embed")
            if failed:
                logger.warning(f"[{document_id}] {failed} of {len(drafts)} chunks failed to embed and were skipped")

            result = IngestionResult(
                document_id=document_id,
                name=filename,
                chunks_stored=stored,
                chunks_failed=failed,
                page_count=extraction.page_count,
                ocr_used=extraction.ocr_used,
                truncated=chunking.truncated
            )
            logger.info(f"[{document_id}] 100%: Ingestion completed ({stored} chunks stored)")
            if tracker:
                tracker.complete(result.model_dump(by_alias=True), f"Processed {filename}")
            return result

        except Exception as e:
            logger.exception(f"Ingestion failed for {document_id} ({filename})")
            await self._rollback(document_id, key, stored_binary, wrote_records)
            if tracker:
                reason = str(e) if isinstance(e, MedSenseError) else "internal error"
                tracker.fail(f"Failed to process {filename}: {reason}")
            raise

    async def _embed_and_store(self,
                               document_id: str,
                               filename: str,
                               drafts: List[Tuple[int, TextChunk, List[str]]],
                               update_progress) -> Tuple[int, int]:
        batch_size = max(1, self.config.batch_size)
        semaphore = asyncio.Semaphore(max(1, self.config.concurrency))
        stored = failed = processed = 0

        async def embed_single(index: int, piece: TextChunk) -> Optional[List[float]]:
            async with semaphore:
                try:
                    return await self.embedder.embed(piece.text)
                except EmbeddingError as e:
                    logger.warning(f"[{document_id}] chunk {index} skipped: {e}")
                    return None

        async def embed_batch(batch) -> List[Optional[List[float]]]:
            try:
                return await self.embedder.embed_batch([piece.text for _, piece, _ in batch])
            except EmbeddingError as e:
                logger.warning(f"[{document_id}] batch of {len(batch)} failed ({e}), embedding chunks one by one")
            return await asyncio.gather(*(embed_single(index, piece) for index, piece, _ in batch))

        def to_record(index: int, piece: TextChunk, dates: List[str], vector: List[float]) -> StoredChunk:
            return StoredChunk(
                id=str(uuid.uuid4()),
                document_id=document_id,
                document_name=filename,
                text=piece.text,
                chunk_index=index,
                section_header=piece.header,
                dates=dates,
                embedding=vector
            )

        for start in range(0, len(drafts), batch_size):
            batch = drafts[start:start + batch_size]
            vectors = await embed_batch(batch)

            chunks = [to_record(*draft, vector) for draft, vector in zip(batch, vectors) if vector is not None]
            failed += len(batch) - len(chunks)
            if chunks:
                await self.record_store.insert_chunks(chunks)
                stored += len(chunks)

            processed += len(batch)
            progress = EMBED_START + round(processed * (EMBED_END - EMBED_START) / len(drafts))
            update_progress(
                UploadStage.embedding, progress, f"Embedded {processed}/{len(drafts)} chunks",
                chunks_processed=processed, total_chunks=len(drafts)
            )

            if processed < len(drafts) and self.config.inter_batch_delay > 0:
                await asyncio.sleep(self.config.inter_batch_delay)

        return stored, failed

    async def _rollback(self, document_id: str, key: str, stored_binary: bool, wrote_records: bool) -> None:
        """Compensating deletes, newest artifact first. Cleanup failures are logged, not raised."""
        steps = []
        if wrote_records:
            steps.append(("chunks", self.record_store.delete_chunks, document_id))
            steps.append(("document record", self.record_store.delete_document, document_id))
        if stored_binary:
            steps.append(("stored binary", self.object_store.delete, key))

        for name, action, arg in steps:
            try:
                await action(arg)
                logger.warning(f"[{document_id}] rolled back {name}")
            except Exception:
                logger.exception(f"[{document_id}] rollback of {name} failed")
