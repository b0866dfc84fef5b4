"""Periodic background re-scan for the integration phase.

The re-scan runs on its own thread and only ever talks to the control loop
through a queue: it never mutates job progress or phase state.
"""

from __future__ import annotations

import queue
import threading
from dataclasses import dataclass
from typing import Callable, Iterable

from taskcycle.utils import _utc_now


@dataclass(frozen=True)
class RescanResult:
    discovered_at: str
    topics: tuple[str, ...]
    error: str = ""


class PeriodicRescan:
    def __init__(
        self,
        discover: Callable[[], Iterable[str]],
        interval_seconds: float,
        *,
        results: "queue.Queue[RescanResult] | None" = None,
    ) -> None:
        self.discover = discover
        self.interval_seconds = float(interval_seconds)
        self.results: "queue.Queue[RescanResult]" = results if results is not None else queue.Queue()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def active(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def scan_once(self) -> RescanResult:
        topics = tuple(str(topic).strip() for topic in self.discover() if str(topic).strip())
        result = RescanResult(discovered_at=_utc_now(), topics=topics)
        self.results.put(result)
        return result

    def _run(self) -> None:
        while not self._stop.wait(self.interval_seconds):
            try:
                self.scan_once()
            except Exception as exc:
                self.results.put(
                    RescanResult(
                        discovered_at=_utc_now(),
                        topics=(),
                        error=f"{type(exc).__name__}: {exc}",
                    )
                )

    def start(self) -> None:
        if self.active:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="taskcycle-rescan", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def drain(self) -> list[RescanResult]:
        drained: list[RescanResult] = []
        while True:
            try:
                drained.append(self.results.get_nowait())
            except queue.Empty:
                return drained
