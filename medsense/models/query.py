from typing import Annotated, Literal, Union
from pydantic import BaseModel, Field
from medsense.models.chunk import ScoredChunk, StoredChunk

class ChatTurn(BaseModel):
    role: str                        # "user" | "assistant"
    content: str

class ChatRequest(BaseModel):
    message: str
    history: list[ChatTurn] = []

class ChatResponse(BaseModel):
    answer: str | None = None
    error: str | None = None

# Query intents: a tagged variant so ranking strategy selection is a dispatch
class LabValueIntent(BaseModel):
    kind: Literal["lab-value"] = "lab-value"
    keyword: str

class DocumentScopedIntent(BaseModel):
    kind: Literal["document-scoped"] = "document-scoped"
    name: str

class GeneralIntent(BaseModel):
    kind: Literal["general"] = "general"

QueryIntent = Annotated[
    Union[LabValueIntent, DocumentScopedIntent, GeneralIntent],
    Field(discriminator="kind"),
]

class QueryAnalysis(BaseModel):
    question: str
    intent: QueryIntent
    dates: list[str] = []            # canonical dates/years mentioned in the question
    terms: list[str] = []            # lowercase words longer than 3 characters
    lab_keyword: str | None = None
    document_name: str | None = None # document the question names, if any

class RankedSelection(BaseModel):
    chunks: list[ScoredChunk]
    mode: Literal["exhaustive", "balanced"]
    years: list[str] = []            # year groups covered in exhaustive mode

class ContextBlock(BaseModel):
    chunk: StoredChunk
    header: str
    text: str                        # rendered block: header line + chunk text
    year: str | None = None

class AssembledContext(BaseModel):
    text: str
    blocks: list[ContextBlock]
    available_dates: list[str]
    estimated_tokens: int
    truncated: bool = False

class ValidationReport(BaseModel):
    suspect_dates: list[str] = []

    @property
    def passed(self) -> bool:
        return not self.suspect_dates

class ChatResult(BaseModel):
    answer: str
    messages: list[dict[str, str]] = []
    context: AssembledContext | None = None
    validation: ValidationReport = ValidationReport()
    grounded: bool = True            # False when answered without retrieved context
