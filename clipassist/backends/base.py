"""Abstract base class defining the generation backend interface."""

from __future__ import annotations

import asyncio
import json
import logging
import time
from abc import abstractmethod
from contextlib import aclosing
from typing import Any, AsyncIterator, Optional

import httpx
from PyQt6.QtCore import QObject, pyqtSignal

from config import Config
from contracts import (
    BackendName,
    ContentType,
    GenerationOptions,
    GenerationRequest,
    GenerationResult,
    ModelInfo,
    StreamChunk,
    TokenEvent,
)
from clipassist.content import preview
from clipassist.errors import (
    ClipAssistError,
    GenerationError,
    GenerationFailedError,
    InvalidApiKeyError,
    InvalidPromptError,
    InvalidRequestError,
    ModelNotFoundError,
    NetworkError,
    PermissionDeniedError,
    RateLimitedError,
    RequestTimeoutError,
    ServerError,
    ServiceNotConnectedError,
    StreamingError,
)

logger = logging.getLogger(__name__)


class BaseBackend(QObject):
    """Abstract base class for streaming generation backends.

    Subclasses only describe their wire protocol: endpoints, request bodies
    and how a response stream is decoded into ``StreamChunk`` objects. The
    base class owns the HTTP client, the retry/backoff loop, per-attempt
    timeouts and the signal fan-out, so both backends behave identically
    toward callers.

    Signals:
        initialized: Emitted after a successful ``initialize``.
        connection_checked: Emitted with ``{"connected": bool}``.
        models_loaded: Emitted with the list of ``ModelInfo``.
        model_changed: Emitted with the new model name.
        generation_started: Emitted when a request is dispatched.
        token_received: Emitted with a ``TokenEvent`` per streamed token.
        generation_completed: Emitted with the frozen ``GenerationResult``.
        error_occurred: Emitted with an error dict for every failed attempt.
    """

    initialized = pyqtSignal(object)
    connection_checked = pyqtSignal(object)
    models_loaded = pyqtSignal(object)
    model_changed = pyqtSignal(str)
    generation_started = pyqtSignal(object)
    token_received = pyqtSignal(object)
    generation_completed = pyqtSignal(object)
    error_occurred = pyqtSignal(object)

    name: BackendName
    label: str = "Backend"

    def __init__(
        self,
        config: Optional[Config],
        *,
        timeout_ms: int,
        default_model: str,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        """Initialize shared backend state.

        Args:
            config: Application configuration (retry budget and delays).
            timeout_ms: Per-attempt deadline in milliseconds.
            default_model: Model used until ``set_model`` is called.
            transport: Optional httpx transport, used by tests.
        """
        super().__init__()
        self._config = config or Config()
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self.request_timeout_ms = timeout_ms
        self.max_retries = self._config.max_retries
        self.retry_delay_ms = self._config.retry_delay_ms
        self.default_model = default_model
        self.current_model = default_model
        self.available_models: list[ModelInfo] = []
        self.is_connected = False

    # -- subclass hooks -------------------------------------------------

    def _headers(self) -> dict[str, str]:
        return {"Content-Type": "application/json"}

    async def _prepare(self) -> None:
        """Check local preconditions before the first network call."""

    @abstractmethod
    async def _fetch_models(self) -> list[ModelInfo]:
        raise NotImplementedError

    @abstractmethod
    def _build_http_request(
        self, client: httpx.AsyncClient, request: GenerationRequest
    ) -> httpx.Request:
        raise NotImplementedError

    @abstractmethod
    def _decode_stream(
        self, response: httpx.Response, request: GenerationRequest
    ) -> AsyncIterator[StreamChunk]:
        raise NotImplementedError

    @abstractmethod
    def _decode_body(self, data: Any, request: GenerationRequest) -> StreamChunk:
        raise NotImplementedError

    @abstractmethod
    async def validate_model(self, model_name: str) -> bool:
        raise NotImplementedError

    # -- HTTP plumbing --------------------------------------------------

    def _ensure_client(self) -> httpx.AsyncClient:
        """Ensure the HTTP client is initialized.

        Returns:
            The shared ``httpx.AsyncClient`` for this backend.
        """
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.request_timeout_ms / 1000),
                transport=self._transport,
            )
        return self._client

    async def _request_json(self, method: str, url: str, **kwargs: Any) -> Any:
        client = self._ensure_client()
        try:
            response = await client.request(method, url, headers=self._headers(), **kwargs)
        except httpx.HTTPError as e:
            raise self._translate_transport_error(e) from e
        if response.status_code >= 400:
            raise self._error_for_status(response.status_code, self._error_message(response))
        try:
            return response.json()
        except ValueError as e:
            raise GenerationError(
                f"Could not parse {self.label} response: {e}",
                error_type="response-parsing-failed",
            ) from e

    def _translate_transport_error(self, error: httpx.HTTPError) -> GenerationError:
        if isinstance(error, httpx.TimeoutException):
            return RequestTimeoutError(
                f"Request timed out after {self.request_timeout_ms}ms"
            )
        if isinstance(error, httpx.TransportError):
            return NetworkError(f"Unable to reach {self.label}: {error}")
        return GenerationError(f"{self.label} request failed: {error}")

    def _error_message(self, response: httpx.Response) -> str:
        try:
            data = response.json()
        except ValueError:
            return response.text or response.reason_phrase
        if not isinstance(data, dict):
            return response.reason_phrase
        error = data.get("error")
        if isinstance(error, dict):
            return error.get("message") or response.reason_phrase
        return error or data.get("message") or response.reason_phrase

    def _error_for_status(
        self, status: int, message: str, model: Optional[str] = None
    ) -> GenerationError:
        model = model or self.current_model
        detail = f"HTTP {status}: {message}"
        if status == 404:
            return ModelNotFoundError(f"Model '{model}' not found ({detail})", status=status)
        if status == 401:
            return InvalidApiKeyError(f"Invalid API key provided ({detail})", status=status)
        if status == 403:
            return PermissionDeniedError(f"Access denied ({detail})", status=status)
        if status == 400:
            return InvalidRequestError(f"Invalid request parameters ({detail})", status=status)
        if status == 429:
            return RateLimitedError(f"Rate limit exceeded ({detail})", status=status)
        if status >= 500:
            return ServerError(f"{self.label} server error ({detail})", status=status)
        return InvalidRequestError(detail, status=status)

    # -- contract -------------------------------------------------------

    async def initialize(self) -> bool:
        try:
            await self._prepare()
            models = await self._fetch_models()
        except ClipAssistError as e:
            self.is_connected = False
            logger.error(f"{self.label} initialization failed: {e}")
            self._emit_error("initialization-failed", str(e))
            return False

        self.available_models = models
        self.is_connected = True
        self.models_loaded.emit(models)
        self.initialized.emit(
            {
                "backend": self.name.value,
                "connected": True,
                "models": [m.name for m in models],
                "current_model": self.current_model,
            }
        )
        logger.info(f"{self.label} initialized with {len(models)} models")
        return True

    async def check_connection(self) -> bool:
        try:
            await self._fetch_models()
        except ClipAssistError as e:
            logger.warning(f"{self.label} connection check failed: {e}")
            self.connection_checked.emit({"connected": False, "error": str(e)})
            return False
        self.connection_checked.emit({"connected": True})
        return True

    async def health_check(self) -> bool:
        return await self.check_connection()

    async def list_models(self) -> list[ModelInfo]:
        try:
            models = await self._fetch_models()
        except ClipAssistError as e:
            self._emit_error("models-load-failed", str(e))
            raise
        self.available_models = models
        self.models_loaded.emit(models)
        return models

    def is_model_available(self, model_name: str) -> bool:
        return any(m.name == model_name for m in self.available_models)

    def set_model(self, model_name: str) -> str:
        if not self.is_model_available(model_name):
            raise ModelNotFoundError(f"Model '{model_name}' not found")
        self.current_model = model_name
        self.model_changed.emit(model_name)
        return model_name

    def build_request(
        self,
        prompt: str,
        options: Optional[GenerationOptions] = None,
        content_type: ContentType = ContentType.TEXT,
    ) -> GenerationRequest:
        options = options or GenerationOptions(
            temperature=self._config.temperature,
            top_p=self._config.top_p,
            top_k=self._config.top_k,
            max_tokens=self._config.max_tokens,
        )
        return GenerationRequest(
            prompt=prompt,
            backend=self.name,
            model=self.current_model,
            temperature=options.temperature,
            top_p=options.top_p,
            top_k=options.top_k,
            max_tokens=options.max_tokens,
            stop=options.stop,
            stream=options.stream,
            content_type=content_type,
        )

    async def stream(self, request: GenerationRequest) -> AsyncIterator[StreamChunk]:
        """Dispatch a request and yield decoded chunks as they arrive.

        Opening the request is retried with exponential backoff for
        transient failures. Once the stream has started, failures are
        raised as ``StreamingError`` without retrying, since tokens may
        already have been delivered.

        Args:
            request: The request to dispatch.

        Yields:
            Token chunks followed by one terminal chunk with ``done`` set.

        Raises:
            ServiceNotConnectedError: If ``initialize`` has not succeeded.
            InvalidPromptError: If the prompt is empty.
            GenerationError: Permanent failures, or ``GenerationFailedError``
                once the retry budget is spent.
        """
        if not self.is_connected:
            error = ServiceNotConnectedError(f"{self.label} service not connected")
            self._emit_error(error.error_type, error.message, model=request.model)
            raise error
        if not request.prompt or not request.prompt.strip():
            error = InvalidPromptError("Empty prompt provided")
            self._emit_error(error.error_type, error.message, model=request.model)
            raise error

        self.generation_started.emit(
            {
                "backend": self.name.value,
                "model": request.model,
                "prompt": preview(request.prompt),
                "prompt_length": len(request.prompt),
                "timestamp": time.time(),
            }
        )

        response = await self._open_with_retry(request)
        try:
            if request.stream:
                async for chunk in self._decode_stream(response, request):
                    yield chunk
                    if chunk.done:
                        return
            else:
                await response.aread()
                try:
                    data = json.loads(response.content)
                except ValueError as e:
                    raise StreamingError(
                        f"Could not parse {self.label} response: {e}",
                        error_type="response-parsing-failed",
                    ) from e
                yield self._decode_body(data, request)
        except httpx.HTTPError as e:
            error = StreamingError(f"{self.label} stream interrupted: {e}")
            self._emit_error(error.error_type, error.message, model=request.model)
            raise error from e
        except StreamingError as e:
            self._emit_error(e.error_type, e.message, model=request.model)
            raise
        finally:
            await response.aclose()

    async def _open(self, request: GenerationRequest) -> httpx.Response:
        client = self._ensure_client()
        http_request = self._build_http_request(client, request)
        try:
            response = await client.send(http_request, stream=True)
        except httpx.HTTPError as e:
            raise self._translate_transport_error(e) from e

        if response.status_code >= 400:
            try:
                await response.aread()
                message = self._error_message(response)
            finally:
                await response.aclose()
            raise self._error_for_status(response.status_code, message, request.model)
        return response

    async def _open_with_retry(self, request: GenerationRequest) -> httpx.Response:
        timeout_s = self.request_timeout_ms / 1000
        attempt = 0
        while True:
            attempt += 1
            try:
                return await asyncio.wait_for(self._open(request), timeout=timeout_s)
            except asyncio.TimeoutError:
                error: GenerationError = RequestTimeoutError(
                    f"Request timed out after {self.request_timeout_ms}ms"
                )
            except GenerationError as e:
                error = e

            self._emit_error(
                error.error_type, error.message, model=request.model, retry_count=attempt
            )
            if not error.retryable:
                logger.error(f"{self.label} request failed permanently: {error.message}")
                error.attempts = attempt
                raise error
            if attempt > self.max_retries:
                logger.error(f"{self.label} request failed after {attempt} attempts")
                raise GenerationFailedError(
                    f"Failed after {self.max_retries} retries: {error.message}",
                    attempts=attempt,
                    last_error=error,
                ) from error

            delay = self.retry_delay_ms * (2 ** (attempt - 1)) / 1000
            logger.warning(
                "%s attempt %d failed (%s), retrying in %.1fs",
                self.label, attempt, error.error_type, delay,
            )
            await asyncio.sleep(delay)

    async def generate(
        self,
        prompt: str,
        options: Optional[GenerationOptions] = None,
        content_type: ContentType = ContentType.TEXT,
    ) -> GenerationResult:
        """Generate a response, emitting a signal for every token.

        Args:
            prompt: Prompt text sent to the model.
            options: Sampling options; configuration defaults when omitted.
            content_type: Classified type of the content behind the prompt.

        Returns:
            The frozen result with the full accumulated text.
        """
        request = self.build_request(prompt, options, content_type)
        result = GenerationResult(self.name, request.model)
        try:
            async with aclosing(self.stream(request)) as chunks:
                async for chunk in chunks:
                    if chunk.text:
                        full = result.append(chunk.text)
                        self.token_received.emit(
                            TokenEvent(
                                token=chunk.text,
                                full_response=full,
                                done=chunk.done,
                                backend=self.name,
                                model=request.model,
                            )
                        )
                    if chunk.done:
                        result.complete(chunk.finish_reason, chunk.model, chunk.usage)
        except GenerationError as e:
            result.fail(e.message, e.error_type)
            raise

        if not result.is_frozen:
            result.complete(model=request.model)
        self.generation_completed.emit(result)
        return result

    def get_status(self) -> dict[str, Any]:
        return {
            "backend": self.name.value,
            "connected": self.is_connected,
            "current_model": self.current_model,
            "default_model": self.default_model,
            "available_models": [m.name for m in self.available_models],
            "request_timeout_ms": self.request_timeout_ms,
            "max_retries": self.max_retries,
        }

    def _emit_error(
        self,
        error_type: str,
        message: str,
        model: Optional[str] = None,
        retry_count: Optional[int] = None,
    ) -> None:
        event: dict[str, Any] = {
            "type": error_type,
            "error": message,
            "backend": self.name.value,
            "model": model or self.current_model,
            "timestamp": time.time(),
        }
        if retry_count is not None:
            event["retry_count"] = retry_count
        self.error_occurred.emit(event)

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def __repr__(self) -> str:
        return (
            f"<{type(self).__name__} model={self.current_model} "
            f"connected={self.is_connected}>"
        )
