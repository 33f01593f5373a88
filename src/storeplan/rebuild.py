from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Generic, TypeVar

from pydantic import TypeAdapter

from .monitor import FileMonitor, MonitorGlob, MonitorPath

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class MonitorFrame:
    """Inputs read while one cached phase is running."""

    name: str
    monitors: list[MonitorPath] = field(default_factory=list)


@dataclass(frozen=True)
class CachedValue(Generic[T]):
    hit: bool
    value: T | None
    reason: str


class Rebuild:
    """Tracks which files each cached phase reads.

    Phases nest: anything an inner phase reads is also an input of every
    phase enclosing it, including when the inner phase is served from its
    cache.
    """

    def __init__(self) -> None:
        self._frames: list[MonitorFrame] = []

    def monitor(self, *paths: MonitorPath) -> None:
        for frame in self._frames:
            frame.monitors.extend(paths)

    def monitor_glob(self, root: Path, pattern: str) -> None:
        self.monitor(MonitorGlob(root, pattern))

    def open_frame(self, name: str) -> MonitorFrame:
        frame = MonitorFrame(name=name)
        self._frames.append(frame)
        return frame

    def close_frame(self, frame: MonitorFrame) -> list[MonitorPath]:
        if not self._frames or self._frames[-1] is not frame:
            raise RuntimeError(f"Monitor frame {frame.name} closed out of order")
        self._frames.pop()
        return frame.monitors

    def abandon_frame(self, frame: MonitorFrame) -> None:
        """Drop ``frame`` and any frames opened inside it, recording nothing."""
        while self._frames:
            if self._frames.pop() is frame:
                return

    def check(self, cache: FileMonitor, key: Any, adapter: TypeAdapter[T]) -> CachedValue[T]:
        """Look up a cached result; on a hit its recorded inputs join the enclosing phases."""
        checked = cache.check(key)
        if checked.hit and checked.record is not None:
            self.monitor(*checked.record.monitors())
            logger.info("%s: reusing cached result", cache.name)
            return CachedValue(hit=True, value=adapter.validate_python(checked.record.output), reason=checked.reason)
        logger.info("%s: recomputing (%s)", cache.name, checked.reason)
        return CachedValue(hit=False, value=None, reason=checked.reason)

    def commit(self, cache: FileMonitor, key: Any, frame: MonitorFrame, value: T, adapter: TypeAdapter[T]) -> T:
        """Close ``frame`` and record ``value`` against everything read inside it."""
        monitors = self.close_frame(frame)
        cache.update(key, monitors, adapter.dump_python(value, mode="json"))
        return value

    def rerun_if_changed(
        self,
        cache: FileMonitor,
        key: Any,
        adapter: TypeAdapter[T],
        body: Callable[[], T],
    ) -> T:
        """Return the cached result of ``body`` unless its key or any input it read changed.

        If ``body`` raises, nothing is recorded and the previous record stays.
        """
        cached = self.check(cache, key, adapter)
        if cached.hit:
            return cached.value  # type: ignore[return-value]
        frame = self.open_frame(cache.name)
        try:
            value = body()
        except BaseException:
            self.abandon_frame(frame)
            raise
        return self.commit(cache, key, frame, value, adapter)
