"""Embedding model integration with the local Ollama server."""
import time
import logging
from typing import List, Optional
import httpx
from config import OLLAMA_HOST, EMBEDDING_MODEL, EMBEDDING_TIMEOUT

logger = logging.getLogger(__name__)


class EmbeddingError(RuntimeError):
    """Raised when the embedding backend is unreachable or returns no vector."""


class EmbeddingModel:
    """Async wrapper for the Ollama embeddings endpoint."""

    def __init__(
        self,
        host: str = OLLAMA_HOST,
        model_name: str = EMBEDDING_MODEL,
        timeout: float = EMBEDDING_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        """
        Initialize the embedding model client.

        Args:
            host: Ollama base URL
            model_name: Embedding model tag (default: nomic-embed-text)
            timeout: Request timeout in seconds
            transport: Optional httpx transport (used by tests)
        """
        self.host = host.rstrip("/")
        self.model_name = model_name
        self.timeout = timeout
        self.api_url = f"{self.host}/api/embeddings"
        self._transport = transport

        logger.info(f"Initialized EmbeddingModel with model: {model_name}")

    async def embed_text(self, text: str) -> List[float]:
        """
        Generate embedding for a single text string.

        Args:
            text: Text to embed

        Returns:
            Embedding vector as list of floats

        Raises:
            EmbeddingError: If the request fails or no embedding is returned
        """
        payload = {"model": self.model_name, "prompt": text}
        start_time = time.time()

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(self.api_url, json=payload)
        except httpx.TimeoutException as e:
            error_msg = f"Embedding request timed out after {self.timeout}s"
            logger.error(error_msg)
            raise EmbeddingError(error_msg) from e
        except httpx.RequestError as e:
            error_msg = f"Cannot reach Ollama at {self.host}: {str(e)}"
            logger.error(error_msg)
            raise EmbeddingError(error_msg) from e

        if response.status_code == 404:
            error_msg = f"Embedding model '{self.model_name}' not found. Pull it with Ollama first."
            logger.error(error_msg)
            raise EmbeddingError(error_msg)

        if response.status_code != 200:
            error_msg = f"Embedding request failed with status {response.status_code}: {response.text[:200]}"
            logger.error(error_msg)
            raise EmbeddingError(error_msg)

        embedding = response.json().get("embedding") or []
        if not embedding:
            error_msg = f"Ollama returned an empty embedding for model '{self.model_name}'"
            logger.error(error_msg)
            raise EmbeddingError(error_msg)

        elapsed = time.time() - start_time
        logger.debug(f"Generated {len(embedding)}-d embedding in {elapsed:.2f}s")
        return embedding

    async def warmup(self) -> bool:
        """
        Warm up the model with a dummy query so the first real search is not a cold start.

        Returns:
            True if warmup successful, False otherwise
        """
        try:
            logger.info("Warming up embedding model...")
            start_time = time.time()

            await self.embed_text("warmup query")

            elapsed = time.time() - start_time
            logger.info(f"Model warmup completed in {elapsed:.1f}s")
            return True

        except EmbeddingError as e:
            logger.error(f"Model warmup failed: {str(e)}")
            return False
