from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import BaseModel, model_validator
import yaml
import os

class ExtractionConfig(BaseModel):
    min_text_chars: int = 100           # below this the PDF is treated as scanned
    extract_tables: bool = True

class OcrConfig(BaseModel):
    dpi: int = 300
    lang: str = "eng"
    oem: int = 1
    psm: int = 6                        # single uniform block, suits report layouts
    concurrency: int = 2
    max_pages: int = 50

class ChunkingConfig(BaseModel):
    chunk_size: int = 1000
    chunk_overlap: int = 200
    min_chunk_chars: int = 100
    dedup_min_chars: int = 20
    max_chunks_per_document: int = 200
    header_min_chars: int = 5
    header_max_chars: int = 100

    @model_validator(mode="after")
    def _check_window(self):
        if self.chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        if self.chunk_overlap < 0:
            raise ValueError("chunk_overlap must not be negative")
        if self.chunk_overlap >= self.chunk_size:
            raise ValueError(
                f"chunk_overlap ({self.chunk_overlap}) must be smaller than chunk_size ({self.chunk_size})"
            )
        if self.min_chunk_chars < 0 or self.dedup_min_chars < 0:
            raise ValueError("minimum chunk lengths must not be negative")
        if self.max_chunks_per_document <= 0:
            raise ValueError("max_chunks_per_document must be positive")
        return self

class EmbeddingConfig(BaseModel):
    provider: str = "local"             # "local" | "openai"
    model_name: str = "BAAI/bge-large-en-v1.5"
    vector_dim: int = 1024
    query_prefix: str = "Represent this sentence for searching relevant passages: "
    normalise: bool = True
    max_input_chars: int = 8000
    batch_size: int = 16
    concurrency: int = 4
    inter_batch_delay: float = 0.2
    api_base_url: str = "https://api.openai.com/v1"
    api_model: str = "text-embedding-3-small"
    timeout: float = 30.0

class StorageConfig(BaseModel):
    backend: str = "qdrant"             # "qdrant" | "memory"
    uploads_path: str = "./data/uploads"
    documents_path: str = "./data/documents.json"
    signing_secret: str = "change-me"
    signed_url_base: str = "/api/files/raw"
    signed_url_ttl: int = 900

class QdrantConfig(BaseModel):
    mode: str = "local"
    local_path: str = "./data/qdrant_store"
    cloud_url: str = ""
    collection_name: str = "report_chunks"
    scroll_batch: int = 256

class RetrievalConfig(BaseModel):
    per_document_top_k: int = 20
    overall_top_k: int = 30
    min_relevance_score: float = 0.15
    score_places: int = 6
    document_boost: float = 1.5
    header_word_boost: float = 0.2
    date_boost: float = 1.3
    keyword_boost: float = 1.4
    max_context_tokens: int = 6000
    dedup_prefix_chars: int = 120
    max_history_turns: int = 10

class LLMConfig(BaseModel):
    provider: str = "openrouter"
    base_url: str = "https://openrouter.ai/api/v1"
    model: str = "mistralai/mistral-7b-instruct"
    fallback_model: str = "google/gemma-3-27b-it"
    max_tokens: int = 1024
    temperature: float = 0.0
    top_p: float = 1.0
    seed: int = 42
    timeout: float = 60.0

class JobsConfig(BaseModel):
    grace_seconds: float = 60.0
    poll_interval: float = 0.5
    stall_timeout: float = 60.0

class AppSettings(BaseSettings):
    extraction: ExtractionConfig = ExtractionConfig()
    ocr: OcrConfig = OcrConfig()
    chunking: ChunkingConfig = ChunkingConfig()
    embedding: EmbeddingConfig = EmbeddingConfig()
    storage: StorageConfig = StorageConfig()
    qdrant: QdrantConfig = QdrantConfig()
    retrieval: RetrievalConfig = RetrievalConfig()
    llm: LLMConfig = LLMConfig()
    jobs: JobsConfig = JobsConfig()
    openrouter_api_key: str = ""
    openai_api_key: str = ""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

SECTION_MODELS = {
    "extraction": ExtractionConfig,
    "ocr": OcrConfig,
    "chunking": ChunkingConfig,
    "embedding": EmbeddingConfig,
    "storage": StorageConfig,
    "qdrant": QdrantConfig,
    "retrieval": RetrievalConfig,
    "llm": LLMConfig,
    "jobs": JobsConfig,
}

def load_settings(config_path: str = "medsense/config/config.yaml") -> AppSettings:
    """Builds settings from the first config.yaml found; secrets come from the environment or .env."""
    candidates = [
        config_path,
        "config.yaml",
        os.path.join(os.path.dirname(__file__), "config.yaml")
    ]

    yaml_data = {}
    for path in candidates:
        if os.path.exists(path):
            with open(path, "r", encoding="utf-8") as f:
                yaml_data = yaml.safe_load(f) or {}
            break

    sections = {name: model(**(yaml_data.get(name) or {})) for name, model in SECTION_MODELS.items()}
    return AppSettings(**sections)

settings = load_settings()
