import json
import logging
import uuid
from fastapi import APIRouter, BackgroundTasks, Depends, File, HTTPException, Request, UploadFile
from fastapi.responses import StreamingResponse

from medsense.core.pipeline.ingestion import IngestionPipeline, resolve_media_type
from medsense.core.pipeline.progress import UploadTracker, progress_events
from medsense.storage.base import JobStore

router = APIRouter()
logger = logging.getLogger(__name__)

# Components are built once in the lifespan and read from app state
def get_ingestion_pipeline(request: Request) -> IngestionPipeline:
    return request.app.state.ingestion_pipeline

def get_job_store(request: Request) -> JobStore:
    return request.app.state.job_store

@router.post("/upload-and-ingest-stream", summary="Upload a report and ingest it in the background")
async def upload_and_ingest(
    background_tasks: BackgroundTasks,
    file: UploadFile = File(...),
    pipeline: IngestionPipeline = Depends(get_ingestion_pipeline),
    job_store: JobStore = Depends(get_job_store)
):
    """
    Reads the upload, registers an upload job and returns its id at once.
    Progress is followed on /upload-progress/{uploadId}.
    """
    filename = file.filename or ""
    if not filename:
        raise HTTPException(status_code=400, detail="A file name is required.")

    media_type = resolve_media_type(filename, file.content_type)
    if not pipeline.extractor.supports(media_type):
        raise HTTPException(status_code=400, detail="Only PDF, DOCX and plain-text files are supported.")

    try:
        data = await file.read()
    finally:
        await file.close()
    if not data:
        raise HTTPException(status_code=400, detail="The uploaded file is empty.")

    upload_id = str(uuid.uuid4())
    tracker = UploadTracker(job_store, upload_id, filename)
    tracker.start()
    logger.info(f"Upload {upload_id}: received '{filename}' ({len(data)} bytes, {media_type})")

    async def run_pipeline():
        try:
            await pipeline.run(data, filename, media_type, tracker)
        except Exception as e:
            # Already logged and recorded on the job by the pipeline
            logger.error(f"Background ingestion failed for upload {upload_id}: {e}")

    background_tasks.add_task(run_pipeline)
    return {"uploadId": upload_id}

@router.get("/upload-progress/{upload_id}", summary="Server-sent progress events for an upload")
async def upload_progress(upload_id: str, job_store: JobStore = Depends(get_job_store)):
    async def event_stream():
        async for event in progress_events(job_store, upload_id):
            yield f"data: {json.dumps(event)}\n\n"

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache"}
    )
