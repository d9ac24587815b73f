"""Gemini backend speaking the Generative Language REST API."""

from __future__ import annotations

import logging
import os
from typing import Any, AsyncIterator, Callable, Optional

import httpx

from config import Config
from contracts import BackendName, GenerationRequest, ModelInfo, StreamChunk
from clipassist.errors import (
    ClipAssistError,
    InvalidApiKeyError,
    StreamingError,
)
from clipassist.vault import validate_api_key_format

from .base import BaseBackend
from .stream_parser import JsonObjectScanner

logger = logging.getLogger(__name__)

ENV_API_KEY = "GEMINI_API_KEY"

MODEL_CATALOG = (
    ModelInfo(
        name="gemini-2.5-flash",
        display_name="Gemini 2.5 Flash",
        description="Fast and versatile performance across a diverse variety of tasks",
    ),
    ModelInfo(
        name="gemini-2.5-pro",
        display_name="Gemini 2.5 Pro",
        description="Complex reasoning tasks requiring more intelligence",
    ),
    ModelInfo(
        name="gemini-2.0-flash",
        display_name="Gemini 2.0 Flash",
        description="Previous generation fast model",
    ),
)


def _env_credentials() -> Optional[str]:
    return os.environ.get(ENV_API_KEY)


class GeminiBackend(BaseBackend):
    """Google Gemini backend.

    The API key is pulled from ``credentials`` for every request and is
    never kept on the instance. ``:streamGenerateContent`` returns one JSON
    array whose elements arrive split across arbitrary chunk boundaries.
    """

    name = BackendName.GEMINI
    label = "Gemini"

    def __init__(
        self,
        config: Optional[Config] = None,
        *,
        credentials: Optional[Callable[[], Optional[str]]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        config = config or Config()
        super().__init__(
            config,
            timeout_ms=config.gemini_timeout_ms,
            default_model=config.gemini_model,
            transport=transport,
        )
        self.base_url = config.gemini_api_base.rstrip("/")
        self._credentials = credentials or _env_credentials

    def has_api_key(self) -> bool:
        return bool(self._credentials())

    def _api_key(self) -> str:
        key = self._credentials()
        if not key or not key.strip():
            raise InvalidApiKeyError("Gemini API key not configured")
        return key.strip()

    def _headers(self) -> dict[str, str]:
        headers = super()._headers()
        headers["x-goog-api-key"] = self._api_key()
        return headers

    async def _prepare(self) -> None:
        validation = validate_api_key_format(self._api_key())
        if not validation.is_valid:
            raise InvalidApiKeyError(
                f"Invalid API key format: {', '.join(validation.errors)}"
            )
        for warning in validation.warnings:
            logger.warning(f"Gemini API key warning: {warning}")

    async def _fetch_models(self) -> list[ModelInfo]:
        data = await self._request_json(
            "GET", f"{self.base_url}/models", params={"pageSize": 1000}
        )
        remote: dict[str, ModelInfo] = {}
        for m in data.get("models", []) if isinstance(data, dict) else []:
            if "generateContent" not in m.get("supportedGenerationMethods", []):
                continue
            name = (m.get("name") or "").removeprefix("models/")
            if not name:
                continue
            remote[name] = ModelInfo(
                name=name,
                display_name=m.get("displayName") or name,
                description=m.get("description") or "",
            )

        models = [remote.pop(m.name, m) for m in MODEL_CATALOG]
        models.extend(remote.values())
        return models

    async def validate_model(self, model_name: str) -> bool:
        try:
            data = await self._request_json("GET", f"{self.base_url}/models/{model_name}")
        except ClipAssistError as e:
            logger.debug(f"Model validation failed for {model_name}: {e}")
            return False
        return isinstance(data, dict) and bool(data.get("name"))

    def _build_http_request(
        self, client: httpx.AsyncClient, request: GenerationRequest
    ) -> httpx.Request:
        generation_config: dict[str, Any] = {
            "temperature": request.temperature,
            "topP": request.top_p,
            "topK": request.top_k,
            "maxOutputTokens": request.max_tokens,
        }
        if request.stop:
            generation_config["stopSequences"] = list(request.stop)
        body = {
            "contents": [{"role": "user", "parts": [{"text": request.prompt}]}],
            "generationConfig": generation_config,
        }
        method = "streamGenerateContent" if request.stream else "generateContent"
        return client.build_request(
            "POST",
            f"{self.base_url}/models/{request.model}:{method}",
            json=body,
            headers=self._headers(),
        )

    async def _decode_stream(
        self, response: httpx.Response, request: GenerationRequest
    ) -> AsyncIterator[StreamChunk]:
        scanner = JsonObjectScanner()
        async for text in response.aiter_text():
            for obj in scanner.feed(text):
                yield self._chunk_from(obj, request)
        if scanner.depth:
            logger.warning(
                "Gemini stream ended inside an object (%d chars discarded)",
                len(scanner.pending),
            )

    def _decode_body(self, data: Any, request: GenerationRequest) -> StreamChunk:
        if not isinstance(data, dict) or not data.get("candidates"):
            raise StreamingError(
                "Invalid response format from Gemini API",
                error_type="response-parsing-failed",
            )
        chunk = self._chunk_from(data, request)
        if not chunk.done:
            chunk = StreamChunk(
                text=chunk.text, done=True, model=chunk.model, finish_reason="STOP",
                usage=chunk.usage,
            )
        return chunk

    def _chunk_from(self, obj: dict[str, Any], request: GenerationRequest) -> StreamChunk:
        if obj.get("error"):
            error = obj["error"]
            message = error.get("message") if isinstance(error, dict) else error
            raise StreamingError(f"Gemini stream error: {message}")

        candidates = obj.get("candidates") or []
        if not candidates:
            return StreamChunk()

        candidate = candidates[0]
        parts = (candidate.get("content") or {}).get("parts") or []
        text = "".join(p.get("text", "") for p in parts if isinstance(p, dict))
        finish_reason = candidate.get("finishReason")
        if not finish_reason:
            return StreamChunk(text=text)

        usage = None
        metadata = obj.get("usageMetadata")
        if metadata:
            usage = {
                "prompt_tokens": metadata.get("promptTokenCount") or 0,
                "completion_tokens": metadata.get("candidatesTokenCount") or 0,
                "total_tokens": metadata.get("totalTokenCount") or 0,
            }
        return StreamChunk(
            text=text,
            done=True,
            model=obj.get("modelVersion") or request.model,
            finish_reason=finish_reason,
            usage=usage,
        )

    def get_status(self) -> dict[str, Any]:
        status = super().get_status()
        status["has_api_key"] = self.has_api_key()
        return status

