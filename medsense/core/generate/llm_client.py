import asyncio
import logging
import random
from typing import Any, Dict, List, Optional
import httpx
from medsense.config.settings import LLMConfig, settings
from medsense.core.errors import GenerationError

logger = logging.getLogger(__name__)

class LLMClient:
    """
    OpenRouter (OpenAI-compatible) chat completions client.
    Requests are deterministic: fixed temperature, top_p and seed.
    Retries 429s and transport errors with backoff, then tries the fallback model.
    """

    def __init__(self, config: Optional[LLMConfig] = None, api_key: Optional[str] = None):
        self.config = config or settings.llm
        self.api_key = api_key if api_key is not None else settings.openrouter_api_key
        self.base_url = f"{self.config.base_url.rstrip('/')}/chat/completions"
        self.headers = {
            "Authorization": f"Bearer {self.api_key}" if self.api_key else "",
            "X-Title": "MedSense",
            "Content-Type": "application/json"
        }
        self.max_retries = 3
        self.base_delay = 2.0

    def sampling_params(self, overrides: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        params = {
            "max_tokens": self.config.max_tokens,
            "temperature": self.config.temperature,
            "top_p": self.config.top_p,
            "seed": self.config.seed
        }
        params.update(overrides or {})
        return params

    async def complete(self, messages: List[Dict[str, str]], sampling: Optional[Dict[str, Any]] = None) -> str:
        if not self.api_key:
            logger.warning("OPENROUTER_API_KEY is not set. LLM calls will fail.")

        payload = {
            "model": self.config.model,
            "messages": messages,
            "stream": False,
            **self.sampling_params(sampling)
        }

        try:
            return await self._call_with_retries(payload)
        except Exception as e:
            if not self.config.fallback_model or self.config.fallback_model == payload["model"]:
                raise GenerationError(f"Completion failed: {e}") from e
            logger.warning(f"Primary model {payload['model']} failed: {e}. Trying fallback.")

        fallback = {**payload, "model": self.config.fallback_model}
        try:
            return await self._call_with_retries(fallback)
        except Exception as e:
            raise GenerationError(f"Completion failed on fallback model: {e}") from e

    def _backoff(self, attempt: int) -> float:
        return self.base_delay * (2 ** attempt) + random.uniform(0, 1)

    async def _call_with_retries(self, payload: Dict[str, Any]) -> str:
        last_error: Optional[Exception] = None
        async with httpx.AsyncClient(timeout=self.config.timeout) as client:
            for attempt in range(self.max_retries):
                try:
                    response = await client.post(self.base_url, headers=self.headers, json=payload)
                except httpx.TransportError as e:
                    last_error = e
                    if attempt < self.max_retries - 1:
                        delay = self._backoff(attempt)
                        logger.warning(f"Request failed: {e}. Retrying in {delay:.2f}s...")
                        await asyncio.sleep(delay)
                    continue

                if response.status_code == 429:
                    last_error = GenerationError("Rate limited (429)")
                    if attempt < self.max_retries - 1:
                        delay = self._backoff(attempt)
                        logger.warning(
                            f"Rate limited (429). Retrying in {delay:.2f}s... (Attempt {attempt + 1}/{self.max_retries})"
                        )
                        await asyncio.sleep(delay)
                    continue

                response.raise_for_status()
                data = response.json()
                content = data["choices"][0]["message"]["content"]
                if not content or not content.strip():
                    raise GenerationError(f"Model {payload['model']} returned an empty answer")
                return content

        raise GenerationError(f"Failed after {self.max_retries} attempts: {last_error}")
