"""Single worker thread that serialises callbacks, with cancellable timers."""

from __future__ import annotations

import logging
import queue
import threading
from typing import Callable, Optional, Protocol


Callback = Callable[[], None]

logger = logging.getLogger("llmtranslatetool.dispatcher")


class ScheduledCall:
    """Handle for a callback that runs later on the dispatcher thread."""

    def __init__(self, callback: Callback) -> None:
        self._callback = callback
        self._cancelled = False
        self._timer: Optional[threading.Timer] = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        self._cancelled = True
        if self._timer is not None:
            self._timer.cancel()

    def run(self) -> None:
        # Checked on the dispatcher thread, so a timer that already fired and
        # queued this call is still suppressed by a later cancel().
        if not self._cancelled:
            self._callback()


class Dispatcher(Protocol):  # pragma: no cover - protocol is for type checking only
    def call_soon(self, callback: Callback) -> None:
        """Queue ``callback`` to run on the owner thread."""

    def call_later(self, delay: float, callback: Callback) -> ScheduledCall:
        """Queue ``callback`` after ``delay`` seconds unless cancelled first."""


class SerialDispatcher:
    """Runs every queued callback on one daemon thread, in order."""

    def __init__(self, name: str = "PipelineDispatcher") -> None:
        self._name = name
        self._queue: "queue.Queue[Optional[Callback]]" = queue.Queue()
        self._thread: Optional[threading.Thread] = None
        self._lock = threading.Lock()

    def start(self) -> None:
        with self._lock:
            if self._thread is not None and self._thread.is_alive():
                return
            self._thread = threading.Thread(target=self._run, name=self._name, daemon=True)
            self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        with self._lock:
            thread = self._thread
            self._thread = None
        if thread is None:
            return
        self._queue.put(None)
        if thread is not threading.current_thread():
            thread.join(timeout=timeout)

    def call_soon(self, callback: Callback) -> None:
        self.start()
        self._queue.put(callback)

    def call_later(self, delay: float, callback: Callback) -> ScheduledCall:
        self.start()
        handle = ScheduledCall(callback)
        timer = threading.Timer(delay, self._queue.put, args=(handle.run,))
        timer.daemon = True
        handle._timer = timer
        timer.start()
        return handle

    def _run(self) -> None:
        while True:
            callback = self._queue.get()
            try:
                if callback is None:
                    break
                callback()
            except Exception as exc:
                logger.exception("Error while running dispatcher callback: %s", exc)
            finally:
                self._queue.task_done()
