import asyncio
import logging
from abc import ABC, abstractmethod
from typing import List, Optional
import httpx
from sentence_transformers import SentenceTransformer
from medsense.config.settings import EmbeddingConfig, settings
from medsense.core.embed.similarity import parse_embedding
from medsense.core.errors import EmbeddingError, VectorValidationError

logger = logging.getLogger(__name__)

class BaseEmbedder(ABC):
    """
    Turns chunk text (or a query) into a fixed-length vector.
    - Empty input is rejected with EmbeddingError.
    - Overlong input is always cut to the first max_input_chars characters.
    - Any backend failure surfaces as EmbeddingError for that one input.
    """

    def __init__(self, config: Optional[EmbeddingConfig] = None):
        self.config = config or settings.embedding

    def prepare(self, text: str) -> str:
        if text is None or not text.strip():
            raise EmbeddingError("Cannot embed empty text")
        return text[:self.config.max_input_chars]

    async def embed(self, text: str) -> List[float]:
        return await self._embed_one(self.prepare(text))

    async def embed_query(self, text: str) -> List[float]:
        """
        Embeds a user question. BGE-style models expect an instruction
        prefix on queries but not on passages.
        """
        prepared = self.prepare(text)
        return await self._embed_one(f"{self.config.query_prefix}{prepared}")

    async def embed_batch(self, texts: List[str]) -> List[List[float]]:
        """
        Embeds several passages in one backend call. All or nothing: one bad
        input or a failed call raises EmbeddingError for the whole batch.
        """
        if not texts:
            return []
        return await self._encode_checked([self.prepare(t) for t in texts])

    async def _embed_one(self, text: str) -> List[float]:
        return (await self._encode_checked([text]))[0]

    async def _encode_checked(self, texts: List[str]) -> List[List[float]]:
        try:
            raw = await self._encode(texts)
        except EmbeddingError:
            raise
        except Exception as e:
            raise EmbeddingError(f"Embedding service failed: {e}") from e

        if len(raw) != len(texts):
            raise EmbeddingError(f"Embedding service returned {len(raw)} vectors for {len(texts)} inputs")
        vectors = []
        for item in raw:
            try:
                vector = parse_embedding(item)
            except VectorValidationError as e:
                raise EmbeddingError(f"Embedding service returned an invalid vector: {e}") from e
            if not vector:
                raise EmbeddingError("Embedding service returned an empty vector")
            vectors.append(vector)
        return vectors

    @abstractmethod
    async def _encode(self, texts: List[str]) -> List[List[float]]:
        pass


class SentenceTransformerEmbedder(BaseEmbedder):
    """
    Local embedding with sentence-transformers on CPU.
    The model is loaded once per process and shared between instances.
    """

    _models: dict = {}

    def __init__(self, config: Optional[EmbeddingConfig] = None):
        super().__init__(config)
        self.model = self._load_model(self.config.model_name)

    @classmethod
    def _load_model(cls, model_name: str) -> SentenceTransformer:
        if model_name not in cls._models:
            logger.info(f"Loading embedding model: {model_name}...")
            cls._models[model_name] = SentenceTransformer(model_name, device="cpu")
        return cls._models[model_name]

    async def _encode(self, texts: List[str]) -> List[List[float]]:
        embeddings = await asyncio.to_thread(
            self.model.encode,
            texts,
            batch_size=self.config.batch_size,
            show_progress_bar=False,
            normalize_embeddings=self.config.normalise
        )
        return [e.tolist() for e in embeddings]


class OpenAIEmbedder(BaseEmbedder):
    """Remote embedding through an OpenAI-compatible /embeddings endpoint."""

    def __init__(self, config: Optional[EmbeddingConfig] = None, api_key: Optional[str] = None):
        super().__init__(config)
        self.api_key = api_key if api_key is not None else settings.openai_api_key
        self.url = f"{self.config.api_base_url.rstrip('/')}/embeddings"
        if not self.api_key:
            logger.warning("OPENAI_API_KEY is not set. Embedding calls will fail.")

    async def _encode(self, texts: List[str]) -> List[List[float]]:
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json"
        }
        payload = {"model": self.config.api_model, "input": texts}

        async with httpx.AsyncClient(timeout=self.config.timeout) as client:
            response = await client.post(self.url, headers=headers, json=payload)
            response.raise_for_status()
            data = response.json()

        items = sorted(data.get("data", []), key=lambda item: item.get("index", 0))
        return [item["embedding"] for item in items]


def create_embedder(config: Optional[EmbeddingConfig] = None) -> BaseEmbedder:
    config = config or settings.embedding
    if config.provider == "openai":
        return OpenAIEmbedder(config)
    if config.provider == "local":
        return SentenceTransformerEmbedder(config)
    raise ValueError(f"Unknown embedding provider: {config.provider}")
