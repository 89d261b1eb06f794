"""
Streaming inference adapters.

Every adapter exposes ``stream(prompt)`` as an async iterator of plain-text
fragments. Runtimes disagree on what a fragment looks like (raw strings, message
chunks with a ``content`` field, NDJSON dicts), so all of them funnel through
``normalize_fragment`` before anything reaches the relay.
"""

import json
import logging
from typing import Any, AsyncIterator, Optional, Protocol

import httpx
import openai

from app.config import Settings
from app.core.errors import InferenceError

logger = logging.getLogger(__name__)


class InferenceAdapter(Protocol):
    model_name: str

    def stream(self, prompt: str) -> AsyncIterator[str]:
        ...


def normalize_fragment(value: Any) -> str:
    """
    Turn one raw fragment into text.

    None -> "", str -> itself, bytes -> UTF-8 text, objects with ``content``
    (LangChain message chunks) -> that content, dicts -> ``response`` (Ollama
    generate), ``message.content`` (Ollama chat), ``content`` or ``text``. Content
    given as a list of parts is joined. Any other shape raises InferenceError.
    """
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).decode("utf-8", errors="replace")
    if isinstance(value, dict):
        for key in ("response", "content", "text"):
            if key in value:
                return normalize_fragment(value[key])
        message = value.get("message")
        if isinstance(message, dict):
            return normalize_fragment(message.get("content"))
        if not value:
            return ""
        raise InferenceError(f"unrecognised fragment keys: {sorted(value)}")
    if isinstance(value, (list, tuple)):
        return "".join(normalize_fragment(part) for part in value)
    if hasattr(value, "content"):
        return normalize_fragment(getattr(value, "content"))
    raise InferenceError(f"unsupported fragment type: {type(value).__name__}")


class OllamaInferenceAdapter:
    """Ollama's native ``/api/generate`` endpoint, streamed as NDJSON."""

    def __init__(
        self,
        base_url: str,
        model: str,
        temperature: float = 0.7,
        timeout: Optional[float] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.model_name = model
        self.temperature = temperature
        self._client = client or httpx.AsyncClient(timeout=httpx.Timeout(timeout))
        self._owns_client = client is None

    async def stream(self, prompt: str) -> AsyncIterator[str]:
        body = {
            "model": self.model_name,
            "prompt": prompt,
            "stream": True,
            "options": {"temperature": self.temperature},
        }
        url = f"{self.base_url}/api/generate"

        try:
            async with self._client.stream("POST", url, json=body) as response:
                if response.status_code >= 400:
                    detail = (await response.aread()).decode("utf-8", errors="replace")
                    raise InferenceError(f"Ollama returned {response.status_code}: {detail[:200]}")

                async for line in response.aiter_lines():
                    if not line.strip():
                        continue
                    try:
                        data = json.loads(line)
                    except json.JSONDecodeError as e:
                        raise InferenceError(f"malformed stream line: {line[:200]!r}") from e
                    if not isinstance(data, dict):
                        raise InferenceError(f"unexpected stream line: {line[:200]!r}")

                    if data.get("error"):
                        raise InferenceError(f"Ollama error: {data['error']}")

                    fragment = normalize_fragment(data.get("response"))
                    if fragment:
                        yield fragment
                    if data.get("done"):
                        return
                raise InferenceError("stream ended before completion")
        except httpx.HTTPError as e:
            raise InferenceError(f"request to {url} failed: {e}") from e

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


class LangChainInferenceAdapter:
    """Any LangChain runnable with ``astream`` (chat models yield message chunks, LLMs yield str)."""

    def __init__(self, runnable: Any, model_name: str):
        self._runnable = runnable
        self.model_name = model_name

    async def stream(self, prompt: str) -> AsyncIterator[str]:
        try:
            async for chunk in self._runnable.astream(prompt):
                fragment = normalize_fragment(chunk)
                if fragment:
                    yield fragment
        except openai.APIError as e:
            raise InferenceError(f"model endpoint failed: {e}") from e
        except httpx.HTTPError as e:
            raise InferenceError(f"model endpoint unreachable: {e}") from e

    async def aclose(self) -> None:
        return None


def build_inference_adapter(settings: Settings) -> InferenceAdapter:
    backend = settings.INFERENCE_BACKEND.lower()
    if backend == "ollama":
        logger.info("Inference: Ollama %s at %s", settings.OLLAMA_MODEL, settings.OLLAMA_BASE_URL)
        return OllamaInferenceAdapter(
            base_url=settings.OLLAMA_BASE_URL,
            model=settings.OLLAMA_MODEL,
            temperature=settings.OLLAMA_TEMPERATURE,
            timeout=settings.INFERENCE_TIMEOUT_SECS,
        )
    if backend == "openai":
        # Ollama also serves the OpenAI chat API under /v1
        from langchain_openai import ChatOpenAI

        model = ChatOpenAI(
            model=settings.OLLAMA_MODEL,
            base_url=f"{settings.OLLAMA_BASE_URL.rstrip('/')}/v1",
            api_key="ollama",
            temperature=settings.OLLAMA_TEMPERATURE,
            timeout=settings.INFERENCE_TIMEOUT_SECS,
            streaming=True,
        )
        logger.info("Inference: OpenAI-compatible %s at %s/v1", settings.OLLAMA_MODEL, settings.OLLAMA_BASE_URL)
        return LangChainInferenceAdapter(model, settings.OLLAMA_MODEL)
    raise ValueError(f"Unknown INFERENCE_BACKEND: {settings.INFERENCE_BACKEND!r}")
