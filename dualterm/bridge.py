"""Periodic, non-blocking hand-off of actor events to a presentation loop."""
from __future__ import annotations

import asyncio
import logging
import queue
import threading
from dataclasses import dataclass
from typing import Callable, List, Optional, Tuple

from dualterm.models.events import ConnectionEvent
from dualterm.settings import EVENT_TICK_INTERVAL

logger = logging.getLogger(__name__)

EventHandler = Callable[[str, ConnectionEvent], None]


@dataclass(slots=True)
class _Source:
    name: str
    events: "queue.Queue[ConnectionEvent]"
    actor: object

    @property
    def finished(self) -> bool:
        return bool(getattr(self.actor, "finished", False))


class EventBridge:
    """Collect pending events from every attached actor without waiting.

    Events of one actor come out in the order it produced them. Nothing
    is promised about the relative order of two actors.
    """

    def __init__(self, max_batch: Optional[int] = None) -> None:
        self.max_batch = max_batch
        self._sources: List[_Source] = []
        self._lock = threading.Lock()

    def attach(self, actor) -> None:
        with self._lock:
            if any(source.actor is actor for source in self._sources):
                return
            self._sources.append(_Source(name=actor.name, events=actor.events, actor=actor))
        logger.debug("Bridge attached %s", actor.name)

    def detach(self, actor) -> None:
        with self._lock:
            self._sources = [source for source in self._sources if source.actor is not actor]

    def __len__(self) -> int:
        return len(self._sources)

    def drain(self) -> List[Tuple[str, ConnectionEvent]]:
        with self._lock:
            sources = list(self._sources)
        drained: List[Tuple[str, ConnectionEvent]] = []
        finished: List[_Source] = []
        for source in sources:
            taken = 0
            while self.max_batch is None or taken < self.max_batch:
                try:
                    event = source.events.get_nowait()
                except queue.Empty:
                    # A finished actor emits nothing more, so empty now means empty for good.
                    if source.finished and source.events.empty():
                        finished.append(source)
                    break
                drained.append((source.name, event))
                taken += 1
        if finished:
            with self._lock:
                self._sources = [source for source in self._sources if source not in finished]
            for source in finished:
                logger.debug("Bridge dropped finished source %s", source.name)
        return drained

    def tick(self, handler: EventHandler) -> int:
        """Drain once and hand every event to ``handler``; returns the count."""
        batch = self.drain()
        for name, event in batch:
            handler(name, event)
        return len(batch)

    async def run(
        self,
        handler: EventHandler,
        stop: asyncio.Event,
        *,
        interval: float = EVENT_TICK_INTERVAL,
    ) -> None:
        while not stop.is_set():
            self.tick(handler)
            try:
                await asyncio.wait_for(stop.wait(), timeout=interval)
            except asyncio.TimeoutError:
                continue
        self.tick(handler)


__all__ = ["EventBridge", "EventHandler"]
