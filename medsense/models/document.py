from datetime import datetime, timezone
from enum import Enum
from typing import Any
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel
from medsense.core.errors import InvalidStageTransition

class DocumentRecord(BaseModel):
    id: str
    name: str
    storage_ref: str
    created_at: str                  # ISO 8601 UTC
    media_type: str = "application/pdf"
    page_count: int = 0
    ocr_used: bool = False

class IngestionResult(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    document_id: str
    name: str
    chunks_stored: int
    chunks_failed: int
    page_count: int
    ocr_used: bool
    truncated: bool = False

class UploadStage(str, Enum):
    start = "start"
    reading = "reading"
    uploading = "uploading"
    ocr = "ocr"
    chunking = "chunking"
    database = "database"
    embedding = "embedding"
    complete = "complete"
    error = "error"

# Forward order of the non-error stages. A job may repeat its current stage
# (progress ticks) or skip ahead, never move back.
STAGE_ORDER = [
    UploadStage.start,
    UploadStage.reading,
    UploadStage.uploading,
    UploadStage.ocr,
    UploadStage.chunking,
    UploadStage.database,
    UploadStage.embedding,
    UploadStage.complete,
]

TERMINAL_STAGES = {UploadStage.complete, UploadStage.error}

def can_transition(current: UploadStage, target: UploadStage) -> bool:
    if current in TERMINAL_STAGES:
        return False
    if target == UploadStage.error:
        return True
    return STAGE_ORDER.index(target) >= STAGE_ORDER.index(current)

def _now() -> str:
    return datetime.now(timezone.utc).isoformat()

class UploadJob(BaseModel):
    """
    Ephemeral progress record for one upload. Instances are treated as
    immutable: every update produces a new copy via advance().
    """
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    upload_id: str
    filename: str = ""
    stage: UploadStage = UploadStage.start
    progress: int = 0                # 0-100, never decreases
    current_page: int = 0
    total_pages: int = 0
    page_progress: int = 0
    chunks_processed: int = 0
    total_chunks: int = 0
    message: str = ""
    result: dict[str, Any] | None = None
    error: str | None = None
    updated_at: str = ""

    @property
    def is_terminal(self) -> bool:
        return self.stage in TERMINAL_STAGES

    def advance(self, stage: UploadStage, progress: int | None = None, **fields: Any) -> "UploadJob":
        if not can_transition(self.stage, stage):
            raise InvalidStageTransition(
                f"Upload {self.upload_id}: cannot move from '{self.stage.value}' to '{stage.value}'"
            )
        new_progress = self.progress if progress is None else max(self.progress, min(int(progress), 100))
        if stage == UploadStage.complete:
            new_progress = 100
        return self.model_copy(update={
            **fields,
            "stage": stage,
            "progress": new_progress,
            "updated_at": _now(),
        })

    def to_event(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)
