"""Session state for the single in-flight generation."""
from __future__ import annotations

import logging
from typing import Optional

from contracts import BackendName, GenerationResult
from clipassist.errors import GenerationInProgressError

logger = logging.getLogger(__name__)


class GenerationSession:
    """Tracks the active generation and the last finished one.

    At most one ``GenerationResult`` accumulator is open at a time.
    Does not interact with Qt or the backends.
    """

    def __init__(self) -> None:
        """Initialize session with no active generation."""
        self._active: Optional[GenerationResult] = None
        self._last: Optional[GenerationResult] = None

    @property
    def is_busy(self) -> bool:
        """Whether a generation is currently in flight."""
        return self._active is not None

    @property
    def active(self) -> Optional[GenerationResult]:
        return self._active

    @property
    def last_result(self) -> Optional[GenerationResult]:
        """Get the most recently finished result, if any."""
        return self._last

    def begin(self, backend: BackendName, model: str) -> GenerationResult:
        """Open a new accumulator for a generation.

        Args:
            backend: Backend serving the request.
            model: Model name used for the request.

        Returns:
            The fresh, unfrozen result.

        Raises:
            GenerationInProgressError: If another generation is still open.
        """
        if self._active is not None:
            raise GenerationInProgressError(
                f"A generation is already running on {self._active.backend.value}"
            )
        self._active = GenerationResult(backend, model)
        logger.debug("Generation session started: %s/%s", backend.value, model)
        return self._active

    def finish(self, result: Optional[GenerationResult] = None) -> Optional[GenerationResult]:
        """Close the active generation.

        Args:
            result: Final result reported by the backend. The session's own
                accumulator is kept when omitted.

        Returns:
            The result recorded as ``last_result``.
        """
        finished = result or self._active
        self._active = None
        if finished is not None:
            self._last = finished
            logger.debug("Generation session finished: %r", finished)
        return finished

    def clear(self) -> None:
        """Forget the active and last results."""
        self._active = None
        self._last = None
        logger.debug("Generation session cleared")
