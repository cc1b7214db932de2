import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from medsense.config.settings import AppSettings, settings
from medsense.core.embed.embedder import create_embedder
from medsense.core.generate.llm_client import LLMClient
from medsense.core.pipeline.documents import DocumentService
from medsense.core.pipeline.ingestion import IngestionPipeline
from medsense.core.pipeline.retrieval import RetrievalPipeline
from medsense.storage.file_store import LocalObjectStore
from medsense.storage.job_store import InMemoryJobStore
from medsense.storage.memory_store import InMemoryObjectStore, InMemoryRecordStore
from medsense.storage.qdrant_store import QdrantRecordStore

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def build_components(config: AppSettings = settings) -> Dict[str, Any]:
    """Wires stores and pipelines from configuration."""
    if config.storage.backend == "memory":
        record_store = InMemoryRecordStore(vector_dim=config.embedding.vector_dim)
        object_store = InMemoryObjectStore()
    else:
        record_store = QdrantRecordStore(config.qdrant, config.storage, config.embedding.vector_dim)
        object_store = LocalObjectStore(config.storage)

    # Loads the embedding model once for the process
    embedder = create_embedder(config.embedding)
    llm_client = LLMClient(config.llm, config.openrouter_api_key)

    return {
        "record_store": record_store,
        "object_store": object_store,
        "job_store": InMemoryJobStore(),
        "embedder": embedder,
        "llm_client": llm_client,
        "ingestion_pipeline": IngestionPipeline(record_store, object_store, embedder),
        "retrieval_pipeline": RetrievalPipeline(record_store, embedder, llm_client),
        "document_service": DocumentService(record_store, object_store),
    }


@asynccontextmanager
async def lifespan(app: FastAPI):
    if not getattr(app.state, "components_ready", False):
        logger.info("Initializing MedSense storage and pipelines...")
        for name, component in build_components().items():
            setattr(app.state, name, component)
        app.state.components_ready = True
        logger.info("Initialization complete. All systems ready.")

    yield

    logger.info("Shutting down MedSense backend...")


def create_app(components: Optional[Dict[str, Any]] = None) -> FastAPI:
    app = FastAPI(
        title="MedSense API",
        description="Question answering over personal medical reports",
        version="1.0.0",
        lifespan=lifespan
    )

    if components:
        for name, component in components.items():
            setattr(app.state, name, component)
        app.state.components_ready = True

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://localhost:3000", "http://localhost:5173"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health", tags=["System"])
    def health_check():
        return {"status": "ok"}

    from medsense.api.routes import chat, documents, ingest

    app.include_router(ingest.router, prefix="/api", tags=["Ingestion"])
    app.include_router(chat.router, prefix="/api", tags=["Chat"])
    app.include_router(documents.router, prefix="/api", tags=["Documents"])
    return app


app = create_app()
