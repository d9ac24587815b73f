"""Routes clipboard changes and questions to a generation backend."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional, Union

from PyQt6.QtCore import QObject, pyqtSignal

from config import Config
from contracts import (
    BackendConfig,
    BackendName,
    ClipboardChangeEvent,
    ContentType,
    GenerationResult,
    RoutingDecision,
    StoreResult,
)
from clipassist.backends import BaseBackend, GeminiBackend, OllamaBackend
from clipassist.content import build_prompt, build_question_prompt, preview
from clipassist.errors import (
    BackendValidationError,
    ClipAssistError,
    GenerationError,
    GenerationInProgressError,
    InvalidPromptError,
    UnsupportedContentError,
)
from clipassist.session_manager import GenerationSession
from clipassist.vault import SecureVault

logger = logging.getLogger(__name__)

STATUS_READY = "ready"
STATUS_PROCESSING = "processing"
STATUS_ERROR = "error"


@dataclass(frozen=True)
class PipelineContext:
    """Snapshot of everything routing depends on."""

    config: BackendConfig
    connected: Mapping[BackendName, bool] = field(default_factory=dict)
    models: Mapping[BackendName, Optional[str]] = field(default_factory=dict)
    has_credential: bool = False
    ollama_host: str = "http://localhost:11434"


def select_backend(context: PipelineContext) -> RoutingDecision:
    """Pick the backend that will serve a request.

    Gemini falls back to Ollama when its key is missing or it is not
    connected. Ollama itself must be connected and have a model, otherwise
    the decision carries an error and no request should be made.
    """
    requested = context.config.backend
    fallback_reason = None

    if requested is BackendName.GEMINI:
        if not context.has_credential:
            fallback_reason = "Gemini API key is not configured"
        elif not context.connected.get(BackendName.GEMINI):
            fallback_reason = "Gemini service is not connected"
        else:
            return RoutingDecision(requested=requested, backend=BackendName.GEMINI)

    if not context.connected.get(BackendName.OLLAMA):
        return RoutingDecision(
            requested=requested,
            backend=BackendName.OLLAMA,
            fallback_reason=fallback_reason,
            error=(
                "Ollama service is not connected. Please ensure Ollama is running "
                f"locally at {context.ollama_host}"
            ),
        )
    if not context.models.get(BackendName.OLLAMA):
        return RoutingDecision(
            requested=requested,
            backend=BackendName.OLLAMA,
            fallback_reason=fallback_reason,
            error="No Ollama model is configured. Please select a model in settings.",
        )
    return RoutingDecision(
        requested=requested, backend=BackendName.OLLAMA, fallback_reason=fallback_reason
    )


class GenerationOrchestrator(QObject):
    """Glue between the clipboard monitor, the vault and the backends.

    Signals:
        generation_started: Emitted with routing details when a request starts.
        token_received: Forwarded ``TokenEvent`` from the serving backend.
        generation_completed: Emitted with the final ``GenerationResult``.
        error_occurred: Emitted once per failed request with an error dict.
        backend_fallback: Emitted when Gemini was requested but Ollama serves.
        status_changed: Emitted with ``{"status": ...}`` on every transition.
        settings_updated: Emitted with the new ``BackendConfig``.
        backend_switched: Emitted when the configured backend changes.
    """

    generation_started = pyqtSignal(object)
    token_received = pyqtSignal(object)
    generation_completed = pyqtSignal(object)
    error_occurred = pyqtSignal(object)
    backend_fallback = pyqtSignal(object)
    status_changed = pyqtSignal(object)
    settings_updated = pyqtSignal(object)
    backend_switched = pyqtSignal(object)

    def __init__(
        self,
        vault: SecureVault,
        backends: Optional[Mapping[BackendName, BaseBackend]] = None,
        config: Optional[Config] = None,
    ) -> None:
        super().__init__()
        self._config = config or Config()
        self._vault = vault
        if backends is None:
            backends = {
                BackendName.OLLAMA: OllamaBackend(self._config),
                BackendName.GEMINI: GeminiBackend(
                    self._config, credentials=self.gemini_api_key
                ),
            }
        self._backends = dict(backends)
        self.session = GenerationSession()
        self.backend_config = BackendConfig(model_name=self._config.ollama_model)
        self.status = STATUS_READY
        self._tasks: set[asyncio.Task] = set()
        self._status_reset_handle: Optional[asyncio.TimerHandle] = None

        for backend in self._backends.values():
            backend.token_received.connect(self.token_received)

    @property
    def ollama(self) -> BaseBackend:
        return self._backends[BackendName.OLLAMA]

    @property
    def gemini(self) -> BaseBackend:
        return self._backends[BackendName.GEMINI]

    def gemini_api_key(self) -> Optional[str]:
        return self._vault.retrieve_key(self.backend_config.gemini_api_key_ref)

    async def initialize(self) -> None:
        stored = self._vault.retrieve_config()
        if stored is not None:
            self.backend_config = stored
            logger.info(
                f"Loaded settings: backend={stored.backend.value}, model={stored.model_name}"
            )

        ref = self.backend_config.gemini_api_key_ref
        if not self._vault.has_key(ref):
            migration = await self._vault.migrate_from_environment(ref)
            if migration.migrated:
                logger.info("Gemini API key migrated from environment")

        await self.ollama.initialize()
        if self.gemini_api_key() is not None:
            await self.gemini.initialize()
        else:
            logger.info("Gemini API key not configured, Gemini backend disabled")

        self._apply_model(self.backend_config)
        self._set_status(STATUS_READY)

    def _apply_model(self, config: BackendConfig) -> None:
        backend = self._backends[config.backend]
        if backend.is_connected and backend.is_model_available(config.model_name):
            backend.set_model(config.model_name)
        elif backend.is_connected:
            logger.warning(
                f"Configured model {config.model_name} not available on "
                f"{backend.label}, keeping {backend.current_model}"
            )

    def route(self) -> RoutingDecision:
        context = PipelineContext(
            config=self.backend_config,
            connected={name: b.is_connected for name, b in self._backends.items()},
            models={name: b.current_model for name, b in self._backends.items()},
            has_credential=self.gemini_api_key() is not None,
            ollama_host=self._config.ollama_host,
        )
        return select_backend(context)

    async def handle_clipboard_change(
        self, event: ClipboardChangeEvent
    ) -> Optional[GenerationResult]:
        if not event.is_significant:
            logger.info("Skipping insignificant clipboard change")
            return None
        if event.is_empty:
            logger.info("Skipping empty clipboard content")
            return None

        try:
            prompt = build_prompt(event)
        except UnsupportedContentError as e:
            logger.warning(f"Clipboard content rejected: {e.message}")
            self._report_error(
                e.to_event(content_type=event.content_type.value, content_length=event.length)
            )
            return None

        logger.info(
            f"Processing clipboard content: {event.content_type.value}, {event.length} chars"
        )
        return await self._run(prompt, event.content_type, source="clipboard")

    def on_clipboard_changed(self, event: ClipboardChangeEvent) -> None:
        task = asyncio.ensure_future(self.handle_clipboard_change(event))
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Clipboard processing failed", exc_info=task.exception())

    async def submit_question(self, question: str) -> Optional[GenerationResult]:
        if not question or not question.strip():
            error = InvalidPromptError("Question is empty")
            self._report_error(error.to_event(content_type=ContentType.TEXT.value))
            return None
        logger.info(f"Processing question: {preview(question, 50)!r}")
        return await self._run(
            build_question_prompt(question), ContentType.TEXT, source="question"
        )

    async def _run(
        self, prompt: str, content_type: ContentType, source: str
    ) -> Optional[GenerationResult]:
        decision = self.route()
        if not decision.is_valid:
            error = BackendValidationError(decision.error)
            logger.error(f"Backend validation failed: {error.message}")
            self._report_error(
                error.to_event(backend=decision.backend.value, content_type=content_type.value)
            )
            return None

        backend = self._backends[decision.backend]
        try:
            accumulator = self.session.begin(backend.name, backend.current_model)
        except GenerationInProgressError as e:
            logger.warning(e.message)
            self.error_occurred.emit(e.to_event(backend=backend.name.value))
            return None

        if decision.fell_back:
            logger.warning(
                f"Falling back from {decision.requested.value} to "
                f"{decision.backend.value}: {decision.fallback_reason}"
            )
            self.backend_fallback.emit(
                {
                    "from": decision.requested.value,
                    "to": decision.backend.value,
                    "reason": decision.fallback_reason,
                    "timestamp": time.time(),
                }
            )

        self._set_status(STATUS_PROCESSING)
        self.generation_started.emit(
            {
                "backend": backend.name.value,
                "model": backend.current_model,
                "content_type": content_type.value,
                "prompt_length": len(prompt),
                "source": source,
                "timestamp": time.time(),
            }
        )

        result: Optional[GenerationResult] = None
        try:
            result = await backend.generate(prompt, content_type=content_type)
        except GenerationError as e:
            accumulator.fail(e.message, e.error_type)
            logger.error(f"Failed to generate response with {backend.label}: {e.message}")
            self._report_error(
                e.to_event(
                    backend=backend.name.value,
                    model=backend.current_model,
                    content_type=content_type.value,
                    retry_count=e.attempts,
                )
            )
            return None
        except asyncio.CancelledError:
            accumulator.fail("Generation cancelled", "cancelled")
            self._set_status(STATUS_READY)
            raise
        except Exception as e:
            message = f"Unexpected error: {type(e).__name__}: {e}"
            accumulator.fail(message, "generation-failed")
            logger.exception(f"Generation with {backend.label} crashed")
            self._report_error(
                {
                    "type": "generation-failed",
                    "error": message,
                    "backend": backend.name.value,
                    "model": backend.current_model,
                    "content_type": content_type.value,
                    "retry_count": 1,
                }
            )
            return None
        finally:
            self.session.finish(result)

        logger.info(
            f"Response generated with {backend.label}: {len(result.full_text)} chars"
        )
        self._set_status(STATUS_READY)
        self.generation_completed.emit(result)
        return result

    def save_settings(self, **changes: Any) -> bool:
        data = self.backend_config.to_dict()
        unknown = set(changes) - set(data)
        if unknown:
            logger.error(f"Unknown settings: {', '.join(sorted(unknown))}")
            return False
        for key, value in changes.items():
            data[key] = value.value if isinstance(value, BackendName) else value

        try:
            new_config = BackendConfig.from_dict(data)
        except (ValueError, TypeError) as e:
            logger.error(f"Invalid settings: {e}")
            self.error_occurred.emit({"type": "settings-invalid", "error": str(e)})
            return False

        if not self._vault.store_config(new_config):
            self.error_occurred.emit(
                {"type": "settings-save-failed", "error": "Failed to save settings"}
            )
            return False

        old_config = self.backend_config
        self.backend_config = new_config
        logger.info(
            f"Settings saved: backend={new_config.backend.value}, model={new_config.model_name}"
        )
        self.settings_updated.emit(new_config)
        if new_config.backend != old_config.backend:
            self.backend_switched.emit(
                {"from": old_config.backend.value, "to": new_config.backend.value}
            )
        if (
            new_config.model_name != old_config.model_name
            or new_config.backend != old_config.backend
        ):
            self._apply_model(new_config)
        return True

    async def switch_backend(self, name: Union[BackendName, str]) -> bool:
        try:
            target = BackendName(name)
        except ValueError:
            logger.error(f"Unknown backend: {name}")
            return False

        backend = self._backends[target]
        if not backend.is_connected:
            if target is BackendName.GEMINI and self.gemini_api_key() is None:
                logger.warning("Switching to Gemini without an API key, Ollama will serve")
            else:
                await backend.initialize()
        return self.save_settings(backend=target, model_name=backend.current_model)

    def set_model(self, model_name: str) -> bool:
        backend = self._backends[self.backend_config.backend]
        try:
            backend.set_model(model_name)
        except ClipAssistError as e:
            logger.error(f"Failed to set model: {e.message}")
            self.error_occurred.emit(e.to_event(backend=backend.name.value))
            return False
        return self.save_settings(model_name=model_name)

    async def set_api_key(self, api_key: str) -> StoreResult:
        ref = self.backend_config.gemini_api_key_ref
        result = await self._vault.store_key(ref, api_key, test_against_api=True)
        if result.success:
            await self.gemini.initialize()
        return result

    def _set_status(self, status: str) -> None:
        if self._status_reset_handle is not None:
            self._status_reset_handle.cancel()
            self._status_reset_handle = None
        if status != self.status:
            self.status = status
            self.status_changed.emit({"status": status, "timestamp": time.time()})
        if status == STATUS_ERROR:
            loop = asyncio.get_running_loop()
            self._status_reset_handle = loop.call_later(
                self._config.status_reset_ms / 1000, self._set_status, STATUS_READY
            )

    def _report_error(self, event: dict[str, Any]) -> None:
        event.setdefault("timestamp", time.time())
        self._set_status(STATUS_ERROR)
        self.error_occurred.emit(event)

    def get_config(self) -> BackendConfig:
        return self.backend_config

    def get_status(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "backend": self.backend_config.backend.value,
            "model": self.backend_config.model_name,
            "busy": self.session.is_busy,
            "backends": {name.value: b.get_status() for name, b in self._backends.items()},
            "vault": self._vault.get_status(),
        }

    async def shutdown(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        if self._status_reset_handle is not None:
            self._status_reset_handle.cancel()
            self._status_reset_handle = None
        for backend in self._backends.values():
            await backend.aclose()
        logger.info("Orchestrator shut down")
