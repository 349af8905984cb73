import os
from typing import Any

import httpx
from loguru import logger

from ctx_engine.core.errors import ConfigurationError, ProviderError

DEFAULT_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"


class GeminiEmbeddingProvider:
    """
    Concrete implementation of IEmbeddingProvider over the Gemini REST API.
    Uses batchEmbedContents so one HTTP round trip covers a whole slice of texts.
    Vectors are returned raw; normalization is the generator's job.
    """

    def __init__(
        self,
        model_name: str = "gemini-embedding-001",
        dimension: int = 768,
        api_key: str | None = None,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = 30.0,
        client: httpx.Client | None = None,
    ) -> None:
        self._api_key = api_key or os.getenv("GEMINI_API_KEY")
        if not self._api_key:
            raise ConfigurationError(
                "Gemini API key is required (set embedding.api_key or GEMINI_API_KEY)"
            )

        self._model_name = model_name.removeprefix("models/")
        self._dimension = dimension
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._client = client or httpx.Client(timeout=timeout)

    @property
    def model_name(self) -> str:
        return self._model_name

    @property
    def dimension(self) -> int:
        return self._dimension

    def embed_texts(
        self, texts: list[str], task: str, timeout: float | None = None
    ) -> list[list[float]]:
        """Embeds texts in one batch request, preserving input order."""
        if not texts:
            return []

        model_id = f"models/{self._model_name}"
        url = f"{self._base_url}/{model_id}:batchEmbedContents"
        payload = {
            "requests": [
                {
                    "model": model_id,
                    "content": {"parts": [{"text": text}]},
                    "taskType": task,
                    "outputDimensionality": self._dimension,
                }
                for text in texts
            ]
        }

        try:
            response = self._client.post(
                url,
                params={"key": self._api_key},
                json=payload,
                timeout=timeout if timeout is not None else self._timeout,
            )
            response.raise_for_status()
            result = response.json()
        except httpx.TimeoutException as e:
            raise ProviderError(f"Gemini embedding request timed out: {e}") from e
        except httpx.HTTPStatusError as e:
            raise ProviderError(
                f"Gemini API error: {e.response.status_code} - {e.response.text}"
            ) from e
        except (httpx.HTTPError, ValueError) as e:
            raise ProviderError(f"Gemini embedding request failed: {e}") from e

        vectors = self._extract_vectors(result)
        if len(vectors) != len(texts):
            raise ProviderError(f"Gemini returned {len(vectors)} embeddings for {len(texts)} inputs")
        logger.debug("Embedded {} texts with {}", len(texts), self._model_name)
        return vectors

    def _extract_vectors(self, result: dict[str, Any]) -> list[list[float]]:
        try:
            return [[float(x) for x in item["values"]] for item in result["embeddings"]]
        except (KeyError, TypeError) as e:
            raise ProviderError(f"Unexpected Gemini API response format: {result}") from e

    def close(self) -> None:
        self._client.close()
