"""LLM Client for the local Ollama chat API."""
import json
import time
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List, Optional
import httpx
import logging
import tiktoken

from config import OLLAMA_HOST, STATUS_TIMEOUT, CHAT_TIMEOUT, STREAM_TIMEOUT
from models.chat import Message

logger = logging.getLogger(__name__)


@dataclass
class LLMError:
    """Structured error response from LLM operations."""
    code: str
    message: str
    details: Dict[str, Any]


class LLMClientError(Exception):
    """Custom exception for LLM client errors with structured error information."""

    def __init__(self, error: LLMError):
        self.error = error
        super().__init__(error.message)


class ModelLoadingError(LLMClientError):
    """The model is still being loaded into memory; the request can be retried."""


GENERAL_SYSTEM_PROMPT = """You are a helpful AI assistant. Answer the user's questions clearly and concisely.

IMPORTANT:
- RESPOND IN THE SAME LANGUAGE AS THE QUESTION
- Use markdown formatting in ALL responses:
  - Start sections with ## (example: ## Summary, ## Answer)
  - Use **bold** for important terms
  - Use - for bullet points
  - Add blank lines between sections"""

RAG_SYSTEM_PROMPT = """You are a helpful AI assistant that answers questions based on the provided document excerpts.

When answering:
1. RESPOND IN THE SAME LANGUAGE AS THE QUESTION
2. Provide detailed, comprehensive and complete answers using ALL relevant information from the document excerpts
3. Do not summarize away details - include every relevant fact and point from the sources
4. Cite the excerpts you use by their number, e.g. [1] or [2]
5. Use only the excerpts; if they don't fully answer the question, give what is available and say what is missing
6. If you need to make reasonable inferences from the excerpts, say so clearly
7. Use the previous conversation to understand follow-up questions

Use markdown formatting:
- Start sections with ## (example: ## Summary, ## Key Points, ## Detailed Explanation)
- Use **bold** for important terms
- Use - for bullet points
- Add blank lines between sections"""


class LLMClient:
    """Client for the Ollama chat API (streaming and non-streaming)."""

    # Prior messages folded into the prompt
    GENERAL_HISTORY_WINDOW = 5
    RAG_HISTORY_WINDOW = 10

    CONTEXT_WINDOW = 16384
    KEEP_ALIVE = "10m"

    def __init__(
        self,
        host: str = OLLAMA_HOST,
        status_timeout: float = STATUS_TIMEOUT,
        chat_timeout: float = CHAT_TIMEOUT,
        stream_timeout: float = STREAM_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        """
        Initialize LLM client for an Ollama server.

        Args:
            host: Ollama base URL (defaults to OLLAMA_HOST from environment)
            status_timeout: Timeout for connectivity checks, in seconds
            chat_timeout: Timeout for non-streaming completions, in seconds
            stream_timeout: Read timeout for streaming completions, in seconds
            transport: Optional httpx transport (used by tests)
        """
        self.host = host.rstrip("/")
        self.status_timeout = status_timeout
        self.chat_timeout = chat_timeout
        self.stream_timeout = stream_timeout
        self._transport = transport
        self._encoder = None
        logger.info(f"LLMClient initialized for {self.host}")

    async def chat_sync(
        self,
        model: str,
        messages: List[Message],
        temperature: float = 0.2,
        max_tokens: int = 2048,
        top_p: float = 0.7
    ) -> str:
        """
        Generate a complete (non-streaming) response.

        Returns:
            Response text

        Raises:
            LLMClientError: Structured error with code, message, and details
        """
        start_time = time.time()
        payload = self._build_payload(model, messages, temperature, max_tokens, top_p, stream=False)

        try:
            async with httpx.AsyncClient(timeout=self.chat_timeout, transport=self._transport) as client:
                response = await client.post(f"{self.host}/api/chat", json=payload)

            if response.status_code != 200:
                raise self._error(
                    "API_ERROR",
                    f"Chat request failed: {response.status_code} - {response.text[:200]}",
                    model, start_time
                )

            data = response.json()
            if data.get("error"):
                raise self._error("API_ERROR", f"Ollama error: {data['error']}", model, start_time)

            text = (data.get("message") or {}).get("content", "")
            if not text and data.get("done_reason") == "load":
                raise self._error("MODEL_LOADING", "Model is loading", model, start_time)

            logger.debug(f"chat_sync: model={model}, latency={self._latency_ms(start_time)}ms")
            return text

        except LLMClientError:
            raise
        except httpx.TimeoutException as e:
            raise self._error("TIMEOUT_ERROR", "Request timed out. Please try again.", model, start_time, e) from e
        except httpx.RequestError as e:
            raise self._error(
                "CONNECTION_ERROR",
                "Cannot connect to Ollama. Please ensure Ollama is running.",
                model, start_time, e
            ) from e
        except Exception as e:
            raise self._error("UNKNOWN_ERROR", f"Unexpected error during generation: {str(e)}", model, start_time, e) from e

    async def generate_stream(
        self,
        model: str,
        messages: List[Message],
        temperature: float = 0.2,
        max_tokens: int = 4096,
        top_p: float = 0.9
    ) -> AsyncIterator[Dict[str, Any]]:
        """
        Stream a response token by token.

        Yields:
            {"type": "token", "content": str} for each content delta, then one
            {"type": "metadata", "data": {...}} event with token counts and timings

        Raises:
            ModelLoadingError: If Ollama reports the model is still loading
            LLMClientError: For HTTP, connectivity and backend errors
        """
        start_time = time.time()
        payload = self._build_payload(model, messages, temperature, max_tokens, top_p, stream=True)
        timeout = httpx.Timeout(self.stream_timeout, connect=self.status_timeout)

        line_count = 0
        generated = []
        final: Dict[str, Any] = {}

        try:
            async with httpx.AsyncClient(timeout=timeout, transport=self._transport) as client:
                async with client.stream("POST", f"{self.host}/api/chat", json=payload) as response:
                    if response.status_code != 200:
                        body = (await response.aread()).decode("utf-8", errors="replace")
                        raise self._error(
                            "API_ERROR",
                            f"Chat request failed: {response.status_code} - {body[:200]}",
                            model, start_time
                        )

                    async for line in response.aiter_lines():
                        if not line.strip():
                            continue
                        try:
                            data = json.loads(line)
                        except json.JSONDecodeError:
                            logger.debug(f"Skipping malformed stream line: {line[:100]}")
                            continue

                        line_count += 1
                        if data.get("error"):
                            raise self._error("API_ERROR", f"Ollama error: {data['error']}", model, start_time)

                        if data.get("done") and data.get("done_reason") == "load":
                            raise self._error("MODEL_LOADING", "Model is loading", model, start_time)

                        content = (data.get("message") or {}).get("content")
                        if content:
                            generated.append(content)
                            yield {"type": "token", "content": content}

                        if data.get("done"):
                            final = data

        except LLMClientError:
            raise
        except httpx.TimeoutException as e:
            raise self._error("TIMEOUT_ERROR", "Request timed out. Please try again.", model, start_time, e) from e
        except httpx.RequestError as e:
            raise self._error(
                "CONNECTION_ERROR",
                "Cannot connect to Ollama. Please ensure Ollama is running.",
                model, start_time, e
            ) from e

        # Lines arrived but none carried content: the model was still loading
        if not generated and line_count > 0:
            raise self._error("MODEL_LOADING", "Model is loading", model, start_time)

        yield {"type": "metadata", "data": self._stream_metadata(model, final, "".join(generated), start_time)}

    async def check_status(self) -> Dict[str, Any]:
        """
        Check if Ollama is running and list its models. Uses the short status timeout.

        Returns:
            {"is_running": bool, "models": [names], "error": str or None}
        """
        try:
            async with httpx.AsyncClient(timeout=self.status_timeout, transport=self._transport) as client:
                version = await client.get(f"{self.host}/api/version")
                version.raise_for_status()
                tags = await client.get(f"{self.host}/api/tags")
                tags.raise_for_status()
            models = [m.get("name") for m in tags.json().get("models", []) if m.get("name")]
            return {"is_running": True, "models": models, "error": None}
        except httpx.HTTPError as e:
            logger.warning(f"Ollama status check failed: {e}")
            return {"is_running": False, "models": [], "error": str(e) or "Cannot connect to Ollama"}

    @classmethod
    def build_messages(
        cls,
        query: str,
        context: str,
        conversation_history: Optional[List[Message]] = None
    ) -> List[Message]:
        """
        Build the prompt messages for a query.

        Without context the general assistant persona is used with the last 5 history
        messages; with context the document persona is used with the last 10 and the
        excerpts are folded into the user turn.

        Args:
            query: User question
            context: Numbered excerpt block (may be empty)
            conversation_history: Prior messages, oldest first

        Returns:
            Messages ready for the chat API
        """
        history = conversation_history or []

        if not context or not context.strip():
            messages = [Message(role="system", content=GENERAL_SYSTEM_PROMPT)]
            if history:
                messages.extend(history[-cls.GENERAL_HISTORY_WINDOW:])
            messages.append(Message(role="user", content=query))
            return messages

        messages = [Message(role="system", content=RAG_SYSTEM_PROMPT)]
        if history:
            messages.extend(history[-cls.RAG_HISTORY_WINDOW:])
        messages.append(Message(
            role="user",
            content=f"""Document excerpts:

{context}

---

Question: {query}

Please answer based on the excerpts above."""
        ))
        return messages

    def _build_payload(
        self,
        model: str,
        messages: List[Message],
        temperature: float,
        max_tokens: int,
        top_p: float,
        stream: bool
    ) -> Dict[str, Any]:
        return {
            "model": model,
            "messages": [m.to_dict() for m in messages],
            "stream": stream,
            "keep_alive": self.KEEP_ALIVE,
            "options": {
                "temperature": temperature,
                "num_predict": max_tokens,
                "num_ctx": self.CONTEXT_WINDOW,
                "top_p": top_p,
                "repeat_penalty": 1.1,
                "repeat_last_n": 64,
            },
        }

    def _stream_metadata(self, model: str, final: Dict[str, Any], text: str, start_time: float) -> Dict[str, Any]:
        """Token rate from Ollama's eval counters, or a tiktoken estimate when they are missing."""
        latency_ms = self._latency_ms(start_time)
        eval_count = final.get("eval_count")
        eval_duration = final.get("eval_duration")  # nanoseconds

        if eval_count and eval_duration:
            total_tokens = int(eval_count)
            tokens_per_second = total_tokens / (eval_duration / 1e9)
        else:
            total_tokens = self._count_tokens(text)
            elapsed = max(latency_ms / 1000, 1e-6)
            tokens_per_second = total_tokens / elapsed

        return {
            "model": model,
            "total_tokens": total_tokens,
            "tokens_per_second": round(tokens_per_second, 2),
            "total_duration_ms": int(final.get("total_duration", 0) / 1e6),
            "eval_duration_ms": int((eval_duration or 0) / 1e6),
            "latency_ms": latency_ms,
        }

    def _count_tokens(self, text: str) -> int:
        if not text:
            return 0
        if self._encoder is None:
            self._encoder = tiktoken.get_encoding("o200k_base")
        return len(self._encoder.encode(text))

    def _error(
        self,
        code: str,
        message: str,
        model: str,
        start_time: float,
        original: Optional[Exception] = None
    ) -> LLMClientError:
        details = {"model": model, "latency_ms": self._latency_ms(start_time)}
        if original is not None:
            details["original_error"] = str(original)
            details["error_type"] = type(original).__name__
        error = LLMError(code=code, message=message, details=details)

        if code == "MODEL_LOADING":
            logger.info(f"Model {model} is still loading")
            return ModelLoadingError(error)

        logger.error(
            f"{code}: model={model}, latency={details['latency_ms']}ms, error={message}",
            exc_info=original is not None,
            extra={"error_code": code, "error_details": details}
        )
        return LLMClientError(error)

    @staticmethod
    def _latency_ms(start_time: float) -> int:
        return int((time.time() - start_time) * 1000)
