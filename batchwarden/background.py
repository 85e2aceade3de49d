from __future__ import annotations

import threading
from typing import Callable


class BackgroundLoop:
    """Runs `target(stop_event)` on a daemon thread until `stop()` is called."""

    def __init__(self, *, name: str, target: Callable[[threading.Event], None]) -> None:
        self._name = name
        self._target = target
        self._thread: threading.Thread | None = None
        self._stop = threading.Event()

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._target, args=(self._stop,), name=self._name, daemon=True)
        self._thread.start()

    def stop(self, *, timeout_s: float = 5.0) -> None:
        self._stop.set()
        t = self._thread
        if t is None:
            return
        t.join(timeout=timeout_s)
        self._thread = None
