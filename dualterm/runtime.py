"""Background event loop hosting connection actors for synchronous callers."""
from __future__ import annotations

import asyncio
import logging
import threading
from typing import Any, Coroutine, Dict, List, Optional, TypeVar

from dualterm.actor import ConnectionActor, ConnectionFactory
from dualterm.bridge import EventBridge
from dualterm.models.config import ConnectionConfig
from dualterm.models.events import Command
from dualterm.settings import HOST_KEY_PROMPT_TIMEOUT
from dualterm.trust_store import HostKeyTrustStore

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ConnectionRuntime:
    """Own an asyncio loop on a daemon thread.

    A GUI timer or CLI loop calls :meth:`open`, :meth:`submit` and
    :meth:`call` from its own thread and polls :attr:`bridge` for events;
    none of these wait on network or device I/O.
    """

    def __init__(
        self,
        *,
        trust_store: Optional[HostKeyTrustStore] = None,
        connection_factory: Optional[ConnectionFactory] = None,
        prompt_timeout: float = HOST_KEY_PROMPT_TIMEOUT,
        bridge: Optional[EventBridge] = None,
    ) -> None:
        self.trust_store = trust_store
        self.connection_factory = connection_factory
        self.prompt_timeout = prompt_timeout
        self.bridge = bridge or EventBridge()
        self.actors: Dict[str, ConnectionActor] = {}
        self._loop = asyncio.new_event_loop()
        self._thread = threading.Thread(target=self._serve, name="dualterm-runtime", daemon=True)
        self._started = threading.Event()
        self._thread.start()
        self._started.wait()

    def _serve(self) -> None:
        asyncio.set_event_loop(self._loop)
        self._loop.call_soon(self._started.set)
        try:
            self._loop.run_forever()
        finally:
            self._loop.close()

    @property
    def running(self) -> bool:
        return self._loop.is_running()

    def call(self, coro: Coroutine[Any, Any, T], timeout: Optional[float] = None) -> T:
        """Run ``coro`` on the runtime loop and wait for its result."""
        return asyncio.run_coroutine_threadsafe(coro, self._loop).result(timeout)

    def open(self, config: ConnectionConfig, *, connect: bool = True, name: Optional[str] = None) -> ConnectionActor:
        async def _spawn() -> ConnectionActor:
            actor = ConnectionActor(
                config,
                trust_store=self.trust_store,
                connection_factory=self.connection_factory,
                prompt_timeout=self.prompt_timeout,
                name=name,
            )
            actor.start()
            if connect:
                await actor.connect()
            return actor

        actor = self.call(_spawn())
        self.actors[actor.name] = actor
        self.bridge.attach(actor)
        logger.info("Opened actor %s", actor.name)
        return actor

    def submit(self, actor: ConnectionActor, command: Command) -> None:
        """Queue ``command`` without waiting for it to be handled."""
        actor.submit(command)

    def close(self, actor: ConnectionActor, timeout: Optional[float] = None) -> None:
        self.call(actor.close(), timeout)
        self.actors.pop(actor.name, None)

    def shutdown(self, timeout: Optional[float] = 10.0) -> None:
        if not self._loop.is_running():
            return
        actors: List[ConnectionActor] = list(self.actors.values())

        async def _close_all() -> None:
            await asyncio.gather(*(actor.close() for actor in actors), return_exceptions=True)

        try:
            self.call(_close_all(), timeout)
        finally:
            self.actors.clear()
            self._loop.call_soon_threadsafe(self._loop.stop)
            self._thread.join(timeout)
        logger.info("Runtime stopped")

    def __enter__(self) -> "ConnectionRuntime":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.shutdown()


__all__ = ["ConnectionRuntime"]
