"""Ollama backend speaking the local server's newline-delimited JSON stream."""

from __future__ import annotations

import logging
from typing import Any, AsyncIterator, Optional

import httpx

from config import Config
from contracts import BackendName, GenerationRequest, ModelInfo, StreamChunk
from clipassist.errors import ClipAssistError, StreamingError

from .base import BaseBackend
from .stream_parser import NdjsonDecoder

logger = logging.getLogger(__name__)


def _normalize_host(host: str) -> str:
    host = host.strip().rstrip("/")
    if not host.startswith(("http://", "https://")):
        host = f"http://{host}"
    return host


class OllamaBackend(BaseBackend):
    """Local Ollama server backend.

    ``/api/generate`` streams one ``{"response": ..., "done": ...}`` object
    per line; the final line carries ``done_reason`` and token counts.
    """

    name = BackendName.OLLAMA
    label = "Ollama"

    def __init__(
        self,
        config: Optional[Config] = None,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        config = config or Config()
        super().__init__(
            config,
            timeout_ms=config.ollama_timeout_ms,
            default_model=config.ollama_model,
            transport=transport,
        )
        self.base_url = f"{_normalize_host(config.ollama_host)}/api"

    async def _fetch_models(self) -> list[ModelInfo]:
        data = await self._request_json("GET", f"{self.base_url}/tags")
        models = []
        for m in data.get("models", []) if isinstance(data, dict) else []:
            name = m.get("name") or m.get("model")
            if not name:
                continue
            models.append(
                ModelInfo(
                    name=name,
                    display_name=name,
                    size=m.get("size"),
                    modified=m.get("modified_at"),
                    description=(m.get("details") or {}).get("family", ""),
                )
            )
        return models

    async def validate_model(self, model_name: str) -> bool:
        try:
            data = await self._request_json(
                "POST", f"{self.base_url}/show", json={"model": model_name}
            )
        except ClipAssistError as e:
            logger.debug(f"Model validation failed for {model_name}: {e}")
            return False
        return isinstance(data, dict) and bool(data)

    def _build_http_request(
        self, client: httpx.AsyncClient, request: GenerationRequest
    ) -> httpx.Request:
        options: dict[str, Any] = {
            "temperature": request.temperature,
            "top_p": request.top_p,
            "top_k": request.top_k,
            "num_predict": request.max_tokens,
        }
        if request.stop:
            options["stop"] = list(request.stop)
        body = {
            "model": request.model,
            "prompt": request.prompt,
            "stream": request.stream,
            "options": options,
        }
        return client.build_request(
            "POST", f"{self.base_url}/generate", json=body, headers=self._headers()
        )

    async def _decode_stream(
        self, response: httpx.Response, request: GenerationRequest
    ) -> AsyncIterator[StreamChunk]:
        decoder = NdjsonDecoder()
        async for text in response.aiter_text():
            for obj in decoder.feed(text):
                yield self._chunk_from(obj, request)
        for obj in decoder.flush():
            yield self._chunk_from(obj, request)

    def _decode_body(self, data: Any, request: GenerationRequest) -> StreamChunk:
        if not isinstance(data, dict) or "response" not in data:
            raise StreamingError(
                "Invalid response format from Ollama",
                error_type="response-parsing-failed",
            )
        chunk = self._chunk_from(data, request)
        if not chunk.done:
            chunk = StreamChunk(text=chunk.text, done=True, model=chunk.model, finish_reason="stop")
        return chunk

    def _chunk_from(self, obj: dict[str, Any], request: GenerationRequest) -> StreamChunk:
        if obj.get("error"):
            raise StreamingError(f"Ollama stream error: {obj['error']}")

        text = obj.get("response") or ""
        if not obj.get("done"):
            return StreamChunk(text=text)

        usage = None
        if "eval_count" in obj or "prompt_eval_count" in obj:
            prompt_tokens = obj.get("prompt_eval_count") or 0
            completion_tokens = obj.get("eval_count") or 0
            usage = {
                "prompt_tokens": prompt_tokens,
                "completion_tokens": completion_tokens,
                "total_tokens": prompt_tokens + completion_tokens,
                "total_duration": obj.get("total_duration"),
            }
        return StreamChunk(
            text=text,
            done=True,
            model=obj.get("model") or request.model,
            finish_reason=obj.get("done_reason") or "stop",
            usage=usage,
        )
