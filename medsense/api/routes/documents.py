import logging
import mimetypes
from typing import List, Optional
from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import Response

from medsense.core.errors import DocumentNotFoundError, StorageError
from medsense.core.pipeline.documents import DateAuditEntry, DocumentService
from medsense.models.document import DocumentRecord
from medsense.storage.base import ObjectStore
from medsense.storage.file_store import LocalObjectStore

router = APIRouter()
logger = logging.getLogger(__name__)

def get_document_service(request: Request) -> DocumentService:
    return request.app.state.document_service

def get_object_store(request: Request) -> ObjectStore:
    return request.app.state.object_store

@router.get("/files", response_model=List[DocumentRecord], summary="List uploaded reports")
async def list_files(service: DocumentService = Depends(get_document_service)):
    try:
        return await service.list_documents()
    except StorageError:
        logger.exception("Failed to list documents.")
        raise HTTPException(status_code=500, detail="Could not retrieve documents from storage.")

@router.delete("/delete/{document_id}", summary="Delete a report, its chunks and its stored file")
async def delete_file(document_id: str, service: DocumentService = Depends(get_document_service)):
    logger.info(f"Deleting document {document_id}")
    try:
        await service.delete_document(document_id)
    except DocumentNotFoundError:
        raise HTTPException(status_code=404, detail="Document not found.")
    except StorageError:
        logger.exception(f"Deletion failed for {document_id}.")
        raise HTTPException(status_code=500, detail="Could not delete the document. Please try again.")
    return {"id": document_id, "success": True, "message": "File deleted."}

@router.get("/files/raw/{key:path}", summary="Download a stored file through a signed URL")
async def raw_file(
    key: str,
    expires: int = Query(...),
    signature: str = Query(...),
    object_store: ObjectStore = Depends(get_object_store)
):
    if not isinstance(object_store, LocalObjectStore):
        raise HTTPException(status_code=404, detail="File not found.")
    try:
        if not object_store.verify_signature(key, expires, signature):
            raise HTTPException(status_code=403, detail="Link is invalid or has expired.")
        data = await object_store.get(key)
    except StorageError:
        raise HTTPException(status_code=404, detail="File not found.")
    if data is None:
        raise HTTPException(status_code=404, detail="File not found.")

    media_type, _ = mimetypes.guess_type(key)
    return Response(content=data, media_type=media_type or "application/octet-stream")

@router.get("/files/{document_id}/url", summary="Get a time-limited link to a stored report")
async def file_url(
    document_id: str,
    ttl: Optional[int] = Query(None, gt=0),
    service: DocumentService = Depends(get_document_service)
):
    try:
        url = await service.signed_url(document_id, ttl)
    except DocumentNotFoundError:
        raise HTTPException(status_code=404, detail="Document not found.")
    except StorageError:
        logger.exception(f"Could not sign a URL for {document_id}.")
        raise HTTPException(status_code=500, detail="Could not create a link for this document.")
    return {"url": url}

@router.get("/maintenance/date-audit", response_model=List[DateAuditEntry], summary="Chunks whose stored dates are outdated")
async def date_audit(service: DocumentService = Depends(get_document_service)):
    try:
        return await service.audit_chunk_dates()
    except StorageError:
        logger.exception("Date audit failed.")
        raise HTTPException(status_code=500, detail="Could not read chunks from storage.")
