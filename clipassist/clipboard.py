import asyncio
import logging
import sys
import time
from datetime import datetime
from typing import Any, Callable, Optional

from PyQt6.QtCore import QObject, pyqtSignal

from config import Config
from contracts import AdaptivePollingState, ClipboardChangeEvent
from clipassist.content import (
    detect_content_type,
    is_significant_change,
    is_valid_change,
)
from clipassist.errors import ClipboardError

if sys.platform == "win32":
    import pywintypes
    import win32clipboard
else:
    import pyperclip

logger = logging.getLogger(__name__)


def _monotonic_ms() -> float:
    return time.monotonic() * 1000


class SystemClipboard:
    def read_text(self) -> str:
        if sys.platform == "win32":
            return self._read_win32()
        try:
            return pyperclip.paste() or ""
        except pyperclip.PyperclipException as e:
            raise ClipboardError(f"Clipboard unavailable: {e}") from e

    def clear(self) -> None:
        if sys.platform == "win32":
            self._clear_win32()
            return
        try:
            pyperclip.copy("")
        except pyperclip.PyperclipException as e:
            raise ClipboardError(f"Clipboard unavailable: {e}") from e

    def _read_win32(self) -> str:
        try:
            win32clipboard.OpenClipboard()
            try:
                if win32clipboard.IsClipboardFormatAvailable(win32clipboard.CF_UNICODETEXT):
                    return win32clipboard.GetClipboardData(win32clipboard.CF_UNICODETEXT) or ""
                return ""
            finally:
                win32clipboard.CloseClipboard()
        except pywintypes.error as e:
            raise ClipboardError(f"Clipboard read failed: {e}") from e

    def _clear_win32(self) -> None:
        try:
            win32clipboard.OpenClipboard()
            try:
                win32clipboard.EmptyClipboard()
            finally:
                win32clipboard.CloseClipboard()
        except pywintypes.error as e:
            raise ClipboardError(f"Clipboard clear failed: {e}") from e


class ClipboardMonitor(QObject):
    """Adaptive clipboard poller.

    Every tick reads the clipboard once. A new valid value becomes pending
    and is emitted after the debounce delay, unless a newer read replaces
    or cancels it first. Emitted changes are spaced at least
    ``min_change_interval_ms`` apart; a change arriving sooner is deferred
    rather than dropped. The poll interval stretches while the clipboard
    is idle and shrinks while it is busy. After a long idle stretch the
    monitor pauses: a paused tick only reads the clipboard and skips
    metrics and interval adaptation until a change resumes it.

    ``clock`` returns monotonic milliseconds.
    """

    monitoring_started = pyqtSignal(object)
    monitoring_stopped = pyqtSignal(object)
    monitoring_paused = pyqtSignal(object)
    monitoring_resumed = pyqtSignal(object)
    clipboard_changed = pyqtSignal(object)
    clipboard_cleared = pyqtSignal(object)
    interval_updated = pyqtSignal(object)
    performance_metrics = pyqtSignal(object)
    error_occurred = pyqtSignal(object)
    already_active = pyqtSignal(object)
    not_active = pyqtSignal(object)

    def __init__(
        self,
        config: Optional[Config] = None,
        *,
        clipboard: Optional[Any] = None,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        super().__init__()
        self._config = config or Config()
        self._clipboard = clipboard or SystemClipboard()
        self._clock = clock or _monotonic_ms

        self.is_monitoring = False
        self.polling_interval_ms = self._config.poll_interval_ms
        self.previous_value = ""
        self.polling_state = AdaptivePollingState(
            current_interval_ms=self._config.poll_interval_ms,
            min_interval_ms=self._config.min_poll_interval_ms,
            max_interval_ms=self._config.max_poll_interval_ms,
        )

        self.poll_count = 0
        self.change_count = 0
        self.retry_count = 0
        self._start_time = 0.0
        self._last_poll_time: Optional[float] = None
        self._last_change_time: Optional[float] = None
        self._last_metrics_update = 0.0
        self._last_seen = ""
        self._pending: Optional[str] = None

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._poll_task: Optional[asyncio.Task] = None
        self._debounce_handle: Optional[asyncio.TimerHandle] = None
        self._retry_handle: Optional[asyncio.TimerHandle] = None

    def _now_ms(self) -> float:
        return self._clock()

    def start(self, interval_ms: Optional[int] = None) -> bool:
        if self.is_monitoring:
            logger.warning("Clipboard monitoring is already active")
            self.already_active.emit({"timestamp": time.time()})
            return False

        interval = interval_ms or self._config.poll_interval_ms
        try:
            if interval <= 0:
                raise ValueError(f"Invalid polling interval: {interval}")
            self._loop = asyncio.get_running_loop()
            initial = self._clipboard.read_text() or ""
        except (RuntimeError, ValueError, ClipboardError) as e:
            logger.error(f"Failed to start clipboard monitoring: {e}")
            self.error_occurred.emit(
                {"type": "start-failed", "error": str(e), "timestamp": time.time()}
            )
            return False

        now = self._now_ms()
        self.previous_value = initial
        self._last_seen = initial
        self._pending = None
        self.polling_interval_ms = interval
        self.polling_state.current_interval_ms = interval
        self.polling_state.last_activity_time = now
        self.polling_state.is_paused = False
        self.polling_state.change_timestamps = []
        self.poll_count = 0
        self.change_count = 0
        self.retry_count = 0
        self._start_time = now
        self._last_poll_time = None
        self._last_change_time = None
        self._last_metrics_update = now

        self.is_monitoring = True
        self._poll_task = self._loop.create_task(self._poll_loop())
        logger.info(f"Clipboard monitoring started with {interval}ms interval")
        self.monitoring_started.emit({"interval_ms": interval, "timestamp": time.time()})
        return True

    def stop(self) -> bool:
        if not self.is_monitoring:
            logger.warning("Clipboard monitoring is not active")
            self.not_active.emit({"timestamp": time.time()})
            return False

        self.is_monitoring = False
        self._cancel_timers()
        self._pending = None
        logger.info("Clipboard monitoring stopped")
        self.monitoring_stopped.emit(
            {
                "total_polls": self.poll_count,
                "total_changes": self.change_count,
                "uptime_ms": self._now_ms() - self._start_time,
                "timestamp": time.time(),
            }
        )
        return True

    def _cancel_timers(self) -> None:
        for handle in (self._debounce_handle, self._retry_handle):
            if handle is not None:
                handle.cancel()
        self._debounce_handle = None
        self._retry_handle = None
        if self._poll_task is not None:
            self._poll_task.cancel()
            self._poll_task = None

    async def _poll_loop(self) -> None:
        while self.is_monitoring:
            await asyncio.sleep(self.polling_interval_ms / 1000)
            if not self.is_monitoring:
                break
            self.poll()

    def _restart_timer(self) -> None:
        if not self.is_monitoring or self._loop is None:
            return
        if self._poll_task is not None:
            self._poll_task.cancel()
        self._poll_task = self._loop.create_task(self._poll_loop())

    def poll(self) -> None:
        """Run one polling tick."""
        if not self.is_monitoring:
            return

        now = self._now_ms()
        if (
            self._last_poll_time is not None
            and now - self._last_poll_time < self._config.poll_rate_limit_ms
        ):
            return
        self._last_poll_time = now
        self.poll_count += 1

        try:
            current = self._clipboard.read_text() or ""
        except ClipboardError as e:
            self._handle_read_error(e)
            return
        self.retry_count = 0

        if current != self._last_seen:
            self._last_seen = current
            self.polling_state.last_activity_time = now
            self._on_value_read(current)
        elif self.polling_state.is_paused:
            return

        self._optimize(now)

    def _on_value_read(self, value: str) -> None:
        if is_valid_change(
            value,
            self.previous_value,
            self._config.min_content_length,
            self._config.max_content_length,
        ):
            self._pending = value
            self._schedule_flush(self._config.debounce_ms)
        elif self._pending is not None:
            logger.debug("Pending clipboard change cancelled")
            self._pending = None
            if self._debounce_handle is not None:
                self._debounce_handle.cancel()
                self._debounce_handle = None

    def _schedule_flush(self, delay_ms: float) -> None:
        if self._debounce_handle is not None:
            self._debounce_handle.cancel()
        self._debounce_handle = self._loop.call_later(delay_ms / 1000, self._flush_pending)

    def _flush_pending(self) -> None:
        self._debounce_handle = None
        value = self._pending
        if value is None or not self.is_monitoring:
            return

        now = self._now_ms()
        if self._last_change_time is not None:
            elapsed = now - self._last_change_time
            if elapsed < self._config.min_change_interval_ms:
                remaining = self._config.min_change_interval_ms - elapsed
                logger.debug("Clipboard change deferred %.0fms (too frequent)", remaining)
                self._schedule_flush(remaining)
                return

        self._pending = None
        self._emit_change(value, now)

    def _emit_change(self, value: str, now: float) -> None:
        previous = self.previous_value
        event = ClipboardChangeEvent(
            previous_value=previous,
            new_value=value,
            content_type=detect_content_type(value),
            length=len(value),
            is_empty=not value.strip(),
            is_significant=is_significant_change(value, previous),
            timestamp=datetime.now(),
        )
        self.previous_value = value
        self._last_change_time = now
        self.change_count += 1
        self.polling_state.change_timestamps.append(now)
        logger.info(
            f"Clipboard changed: {event.content_type.value}, {event.length} chars, "
            f"significant={event.is_significant}"
        )
        self.clipboard_changed.emit(event)

    def _handle_read_error(self, error: ClipboardError) -> None:
        self.retry_count += 1
        logger.error(f"Error polling clipboard: {error}")

        if self.retry_count <= self._config.read_max_retries:
            delay = self._config.read_retry_delay_ms * 2 ** (self.retry_count - 1)
            logger.info(
                f"Retrying clipboard poll ({self.retry_count}/{self._config.read_max_retries}) "
                f"in {delay}ms"
            )
            if self._retry_handle is not None:
                self._retry_handle.cancel()
            self._retry_handle = self._loop.call_later(delay / 1000, self._retry_poll)
            return

        logger.error("Max retries exceeded, stopping monitoring")
        self.error_occurred.emit(
            {
                "type": "max-retries-exceeded",
                "error": str(error),
                "retry_count": self.retry_count,
                "timestamp": time.time(),
            }
        )
        self.stop()

    def _retry_poll(self) -> None:
        self._retry_handle = None
        self._last_poll_time = None
        self.poll()

    def _optimize(self, now: float) -> None:
        self._update_metrics(now)

        state = self.polling_state
        idle = now - state.last_activity_time
        if not state.is_paused and idle > self._config.pause_threshold_ms:
            state.is_paused = True
            logger.info("Pausing clipboard monitoring due to inactivity")
            self.monitoring_paused.emit(
                {"reason": "inactivity", "duration_ms": idle, "timestamp": time.time()}
            )
        elif state.is_paused and idle < self._config.resume_threshold_ms:
            state.is_paused = False
            logger.info("Resuming clipboard monitoring")
            self.monitoring_resumed.emit(
                {"reason": "activity-detected", "timestamp": time.time()}
            )

        if state.enabled:
            self._update_adaptive_interval(now)

    def _update_adaptive_interval(self, now: float) -> None:
        cfg = self._config
        state = self.polling_state

        window_start = now - cfg.change_window_ms
        state.change_timestamps = [t for t in state.change_timestamps if t > window_start]
        state.last_change_rate = len(state.change_timestamps)

        idle = now - state.last_activity_time
        current = state.current_interval_ms
        new_interval: float = current
        if idle > cfg.inactivity_threshold_ms:
            new_interval = min(state.max_interval_ms, current * 1.5)
        elif idle < cfg.activity_threshold_ms:
            new_interval = max(state.min_interval_ms, current * 0.8)
        elif state.last_change_rate > cfg.change_rate_threshold:
            new_interval = max(state.min_interval_ms, current * 0.7)

        if abs(new_interval - current) <= cfg.interval_change_tolerance_ms:
            return

        state.current_interval_ms = int(round(new_interval))
        self.polling_interval_ms = state.current_interval_ms
        self._restart_timer()
        logger.info(f"Adaptive polling interval updated to {state.current_interval_ms}ms")
        self.interval_updated.emit(
            {
                "interval_ms": state.current_interval_ms,
                "previous_interval_ms": current,
                "reason": "activity-based",
                "change_rate": state.last_change_rate,
                "timestamp": time.time(),
            }
        )

    def _update_metrics(self, now: float) -> None:
        if now - self._last_metrics_update < self._config.metrics_interval_ms:
            return
        self._last_metrics_update = now
        self.performance_metrics.emit(self.get_performance_stats())

    def update_interval(self, interval_ms: int) -> bool:
        if interval_ms <= 0:
            logger.error(f"Invalid polling interval: {interval_ms}")
            return False
        if self.is_monitoring:
            self.stop()
            return self.start(interval_ms)
        self.polling_interval_ms = interval_ms
        self.polling_state.current_interval_ms = interval_ms
        return True

    def set_adaptive_polling(self, enabled: bool) -> None:
        self.polling_state.enabled = enabled
        logger.info(f"Adaptive polling {'enabled' if enabled else 'disabled'}")

    def get_current_content(self) -> str:
        try:
            return self._clipboard.read_text() or ""
        except ClipboardError as e:
            logger.error(f"Error reading clipboard: {e}")
            return ""

    def clear(self) -> bool:
        try:
            self._clipboard.clear()
        except ClipboardError as e:
            logger.error(f"Error clearing clipboard: {e}")
            self.error_occurred.emit(
                {"type": "clear-failed", "error": str(e), "timestamp": time.time()}
            )
            return False
        logger.info("Clipboard cleared")
        self.clipboard_cleared.emit(
            {"previous_value": self.previous_value, "timestamp": time.time()}
        )
        return True

    def _per_minute(self, count: int, now: float) -> int:
        uptime_ms = now - self._start_time
        if count == 0 or uptime_ms <= 0:
            return 0
        return round(count / (uptime_ms / 60000))

    def get_performance_stats(self) -> dict[str, Any]:
        now = self._now_ms()
        uptime = now - self._start_time if self.is_monitoring else 0
        average_poll_time = uptime / self.poll_count if self.poll_count else 0
        efficiency = (
            100 if self.poll_count == 0
            else round(min(100, self.change_count / self.poll_count * 100))
        )
        return {
            "uptime_ms": uptime,
            "total_polls": self.poll_count,
            "total_changes": self.change_count,
            "average_poll_time_ms": average_poll_time,
            "polls_per_minute": self._per_minute(self.poll_count, now),
            "changes_per_minute": self._per_minute(self.change_count, now),
            "current_interval_ms": self.polling_interval_ms,
            "adaptive_interval_ms": self.polling_state.current_interval_ms,
            "is_paused": self.polling_state.is_paused,
            "change_rate": self.polling_state.last_change_rate,
            "efficiency": efficiency,
            "timestamp": time.time(),
        }

    def get_status(self) -> dict[str, Any]:
        state = self.polling_state
        return {
            "is_monitoring": self.is_monitoring,
            "is_paused": state.is_paused,
            "polling_interval_ms": self.polling_interval_ms,
            "previous_length": len(self.previous_value),
            "has_pending_change": self._pending is not None,
            "poll_count": self.poll_count,
            "change_count": self.change_count,
            "retry_count": self.retry_count,
            "adaptive_polling": {
                "enabled": state.enabled,
                "current_interval_ms": state.current_interval_ms,
                "min_interval_ms": state.min_interval_ms,
                "max_interval_ms": state.max_interval_ms,
                "change_rate": state.last_change_rate,
            },
        }
