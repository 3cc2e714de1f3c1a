"""Connection actor: the single owner of one transport instance."""
from __future__ import annotations

import asyncio
import contextlib
import logging
import queue
import uuid
from typing import Any, Callable, List, Optional, Set

from dualterm.connection import Connection, create_connection
from dualterm.errors import ErrorKind, TransportError
from dualterm.models.config import ConnectionConfig, describe
from dualterm.models.events import (
    Closed,
    Command,
    Connect,
    ConnectionEvent,
    ConnectionState,
    Data,
    Disconnect,
    Error,
    RespondTrust,
    Send,
    StateChanged,
    TrustEvent,
)
from dualterm.models.host_key import PendingDecision, TrustDecision
from dualterm.settings import COMMAND_QUEUE_CAPACITY, EVENT_QUEUE_CAPACITY, HOST_KEY_PROMPT_TIMEOUT
from dualterm.trust_store import HostKeyTrustStore

logger = logging.getLogger(__name__)

ConnectionFactory = Callable[..., Connection]

_BACKPRESSURE_POLL = 0.005


class _Shutdown:
    pass


class ConnectionActor:
    """Serialize every operation on one transport and report what happened.

    Commands arrive on a bounded asyncio queue and are handled one at a
    time. A connect runs as its own task so that host-key answers and
    disconnect requests keep flowing while it waits. Once connected, a
    read task turns incoming bytes into :class:`Data` events. Each send
    runs as a writer task that takes its turn on a lock, so a write stuck
    in the driver never holds up a disconnect. Events leave through a
    bounded, thread-safe queue in the order they were produced; a full
    queue makes the actor wait, it never drops events. Once :meth:`close`
    begins the bound is lifted so shutdown never waits on the consumer.
    """

    def __init__(
        self,
        config: ConnectionConfig,
        *,
        trust_store: Optional[HostKeyTrustStore] = None,
        connection_factory: Optional[ConnectionFactory] = None,
        prompt_timeout: float = HOST_KEY_PROMPT_TIMEOUT,
        event_capacity: int = EVENT_QUEUE_CAPACITY,
        command_capacity: int = COMMAND_QUEUE_CAPACITY,
        name: Optional[str] = None,
    ) -> None:
        self.config = config
        self.prompt_timeout = prompt_timeout
        self.name = name or f"conn-{uuid.uuid4().hex[:8]}"
        factory = connection_factory or create_connection
        self.connection: Connection = factory(
            config,
            trust_store=trust_store,
            trust_prompt=self._prompt_trust,
            prompt_timeout=prompt_timeout,
        )
        self.events: "queue.Queue[ConnectionEvent]" = queue.Queue(maxsize=event_capacity)
        self._command_capacity = command_capacity
        self._commands: Optional[asyncio.Queue[Any]] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._task: Optional[asyncio.Task[None]] = None
        self._connect_task: Optional[asyncio.Task[None]] = None
        self._read_task: Optional[asyncio.Task[None]] = None
        self._writers: Set[asyncio.Task[None]] = set()
        self._write_lock: Optional[asyncio.Lock] = None
        self._emit_lock: Optional[asyncio.Lock] = None
        self._session_lock: Optional[asyncio.Lock] = None
        self._pending: Optional[PendingDecision] = None
        self._fault: Optional[TransportError] = None
        self._state = ConnectionState.DISCONNECTED
        self._closed_reported = False
        self._closing = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def start(self) -> "ConnectionActor":
        """Start the command loop on the running event loop."""
        if self._task is not None:
            return self
        self._loop = asyncio.get_running_loop()
        self._commands = asyncio.Queue(maxsize=self._command_capacity)
        self._emit_lock = asyncio.Lock()
        self._session_lock = asyncio.Lock()
        self._write_lock = asyncio.Lock()
        self._task = self._loop.create_task(self._run(), name=f"actor-{self.name}")
        logger.debug("Actor %s started for %s", self.name, describe(self.config))
        return self

    async def close(self) -> None:
        """Stop the actor; the transport is released before this returns.

        Never waits for events to be drained.
        """
        if self._task is None or self._task.done():
            return
        if not self._closing:
            self._closing = True
            # Final events must not wait on a consumer that may be the caller.
            self._unbound_events()
            assert self._commands is not None
            await self._commands.put(_Shutdown())
        await asyncio.shield(self._task)

    @property
    def finished(self) -> bool:
        return self._task is not None and self._task.done()

    # ------------------------------------------------------------------
    # Command helpers
    # ------------------------------------------------------------------
    async def connect(self) -> None:
        await self._put(Connect())

    async def disconnect(self) -> None:
        await self._put(Disconnect())

    async def respond_trust(self, decision: TrustDecision) -> None:
        await self._put(RespondTrust(decision))

    async def send(self, data: bytes) -> int:
        """Queue ``data`` and wait for the transport to accept it.

        Returns the number of bytes accepted; ``0`` when the actor is not
        connected (an ``Error`` event reports why) or when a disconnect
        cancels the write. Raises ``RuntimeError`` once the actor is closed.
        """
        loop = self._require_loop()
        reply: asyncio.Future[int] = loop.create_future()
        await self._put(Send(bytes(data), reply=reply))
        return await reply

    def submit(self, command: Command) -> "asyncio.Future[Any] | Any":
        """Queue a command from any thread without waiting for it to run."""
        loop = self._require_loop()
        self._require_open()
        return asyncio.run_coroutine_threadsafe(self._put(command), loop)

    def pending_prompt(self) -> Optional[TrustEvent]:
        pending = self._pending
        return pending.event if pending is not None else None

    def prompt_time_left(self) -> Optional[float]:
        """Seconds until the waiting host-key prompt expires, if any."""
        pending = self._pending
        if pending is None or self._loop is None:
            return None
        return max(0.0, pending.deadline - self._loop.time())

    # ------------------------------------------------------------------
    # Observers
    # ------------------------------------------------------------------
    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def description(self) -> str:
        return self.connection.description

    @property
    def bytes_sent(self) -> int:
        return self.connection.bytes_sent

    @property
    def bytes_received(self) -> int:
        return self.connection.bytes_received

    def drain(self) -> List[ConnectionEvent]:
        """Take every event currently queued, without waiting."""
        drained: List[ConnectionEvent] = []
        while True:
            try:
                drained.append(self.events.get_nowait())
            except queue.Empty:
                return drained

    # ------------------------------------------------------------------
    # Command loop
    # ------------------------------------------------------------------
    async def _run(self) -> None:
        assert self._commands is not None
        try:
            while True:
                command = await self._commands.get()
                if isinstance(command, _Shutdown):
                    break
                try:
                    await self._dispatch(command)
                except asyncio.CancelledError:
                    raise
                except Exception:  # pragma: no cover - a bug must not kill the actor
                    logger.exception("Actor %s failed handling %r", self.name, command)
        finally:
            await self._teardown()

    async def _dispatch(self, command: Command) -> None:
        if isinstance(command, Connect):
            self._start_connect()
        elif isinstance(command, Disconnect):
            await self._handle_disconnect()
        elif isinstance(command, Send):
            await self._handle_send(command)
        elif isinstance(command, RespondTrust):
            self._handle_trust(command.decision)
        else:
            logger.warning("Actor %s ignoring unknown command %r", self.name, command)

    def _start_connect(self) -> None:
        if self._connect_task is not None and not self._connect_task.done():
            logger.info("Actor %s: connect already in progress", self.name)
            return
        if self._state is not ConnectionState.DISCONNECTED:
            logger.info("Actor %s: already %s, ignoring connect", self.name, self._state.value)
            return
        assert self._loop is not None
        self._connect_task = self._loop.create_task(self._run_connect(), name=f"connect-{self.name}")

    async def _run_connect(self) -> None:
        assert self._session_lock is not None
        async with self._session_lock:
            self._closed_reported = False
            await self._set_state(ConnectionState.CONNECTING)
            try:
                await self.connection.connect()
                # CONNECTED can wait on a full event queue; a cancel there must still release.
                await self._set_state(ConnectionState.CONNECTED)
                assert self._loop is not None
                self._read_task = self._loop.create_task(self._read_loop(), name=f"read-{self.name}")
            except TransportError as exc:
                logger.warning("Actor %s: connect to %s failed: %s", self.name, self.description, exc)
                await self._release()
                await self._emit(Error(exc.kind, exc.message))
                await self._set_state(ConnectionState.DISCONNECTED)
                return
            except asyncio.CancelledError:
                logger.info("Actor %s: connect to %s cancelled", self.name, self.description)
                await self._cancel_writers()
                self._state = ConnectionState.CLOSING
                await self._release()
                await self._emit(StateChanged(ConnectionState.CLOSING))
                await self._set_state(ConnectionState.DISCONNECTED)
                await self._emit(Closed())
                raise
            except Exception as exc:
                logger.exception("Actor %s: unexpected connect failure", self.name)
                await self._release()
                await self._emit(Error(ErrorKind.IO_ERROR, str(exc)))
                await self._set_state(ConnectionState.DISCONNECTED)

    async def _handle_disconnect(self) -> None:
        connecting = self._connect_task
        if connecting is not None and not connecting.done():
            connecting.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await connecting
            return
        if self._state is ConnectionState.CONNECTED:
            await self._end_session()
            return
        # Nothing to release; acknowledge once with a redundant Closed.
        if not self._closed_reported:
            await self._emit(Closed())

    async def _handle_send(self, command: Send) -> None:
        if self._state is not ConnectionState.CONNECTED:
            await self._reject_send(command)
            return
        assert self._loop is not None
        writer = self._loop.create_task(self._write(command), name=f"write-{self.name}")
        self._writers.add(writer)
        writer.add_done_callback(self._writers.discard)

    async def _write(self, command: Send) -> None:
        """Hand one ``Send`` to the transport, after every earlier one."""
        assert self._write_lock is not None
        try:
            async with self._write_lock:
                if self._state is not ConnectionState.CONNECTED:
                    await self._reject_send(command)
                    return
                count = await self.connection.send(command.data)
        except TransportError as exc:
            self._reply(command, 0)
            self._fault = exc
            await self._end_session()
            return
        except asyncio.CancelledError:
            self._reply(command, 0)
            raise
        except Exception as exc:
            logger.exception("Actor %s: unexpected send failure", self.name)
            self._reply(command, exc=exc)
            return
        self._reply(command, count)

    async def _reject_send(self, command: Send) -> None:
        await self._emit(Error(ErrorKind.NOT_CONNECTED, f"{self.description} is not connected"))
        self._reply(command, 0)

    async def _cancel_writers(self) -> None:
        current = asyncio.current_task()
        writers = [writer for writer in self._writers if writer is not current]
        for writer in writers:
            writer.cancel()
        for writer in writers:
            with contextlib.suppress(asyncio.CancelledError):
                await writer

    def _handle_trust(self, decision: TrustDecision) -> None:
        pending = self._pending
        if pending is None or not pending.resolve(decision):
            logger.info("Actor %s: no host-key prompt waiting, ignoring %s", self.name, decision.value)
            return
        logger.info("Actor %s: host-key decision %s", self.name, decision.value)

    # ------------------------------------------------------------------
    # Read duty
    # ------------------------------------------------------------------
    async def _read_loop(self) -> None:
        while True:
            try:
                data = await self.connection.read()
            except TransportError as exc:
                self._fault = exc
                break
            if not data:
                break
            await self._emit(Data(data))
        await self._end_session()

    async def _end_session(self) -> None:
        """Tear a connected session down once, whoever asks first."""
        assert self._session_lock is not None
        async with self._session_lock:
            if self._state is not ConnectionState.CONNECTED:
                return
            reader, self._read_task = self._read_task, None
            if reader is not None and reader is not asyncio.current_task():
                reader.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await reader
            await self._cancel_writers()
            # Release before reporting: emitting can wait on a slow consumer.
            self._state = ConnectionState.CLOSING
            await self._release()
            fault, self._fault = self._fault, None
            if fault is not None:
                logger.warning("Actor %s: %s lost: %s", self.name, self.description, fault)
                await self._emit(Error(fault.kind, fault.message))
            await self._emit(StateChanged(ConnectionState.CLOSING))
            await self._set_state(ConnectionState.DISCONNECTED)
            await self._emit(Closed())
            logger.info(
                "Actor %s: session %s ended (sent: %d bytes, received: %d bytes)",
                self.name,
                self.description,
                self.bytes_sent,
                self.bytes_received,
            )

    # ------------------------------------------------------------------
    # Trust prompts
    # ------------------------------------------------------------------
    async def _prompt_trust(self, event: TrustEvent) -> TrustDecision:
        loop = self._require_loop()
        future: asyncio.Future[TrustDecision] = loop.create_future()
        self._pending = PendingDecision(event=event, deadline=loop.time() + self.prompt_timeout, future=future)
        try:
            await self._emit(event)
            return await future
        finally:
            self._pending = None

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    async def _teardown(self) -> None:
        self._unbound_events()
        connecting, self._connect_task = self._connect_task, None
        if connecting is not None and not connecting.done():
            connecting.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await connecting
        await self._cancel_writers()
        if self._state is ConnectionState.CONNECTED:
            await self._end_session()
        reader, self._read_task = self._read_task, None
        if reader is not None and not reader.done():
            reader.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await reader
        await self._release()
        self._fail_pending_sends()
        logger.debug("Actor %s stopped", self.name)

    async def _release(self) -> None:
        try:
            await self.connection.disconnect()
        except Exception as exc:
            logger.warning("Actor %s: releasing %s raised: %s", self.name, self.description, exc)

    async def _set_state(self, state: ConnectionState) -> None:
        if state is self._state:
            return
        self._state = state
        await self._emit(StateChanged(state))

    async def _emit(self, event: ConnectionEvent) -> None:
        assert self._emit_lock is not None
        async with self._emit_lock:
            while True:
                try:
                    self.events.put_nowait(event)
                    if isinstance(event, Closed):
                        self._closed_reported = True
                    return
                except queue.Full:
                    await asyncio.sleep(_BACKPRESSURE_POLL)

    def _unbound_events(self) -> None:
        with self.events.mutex:
            self.events.maxsize = 0
            self.events.not_full.notify_all()

    async def _put(self, command: Any) -> None:
        if self._commands is None:
            raise RuntimeError(f"actor {self.name} has not been started")
        self._require_open()
        await self._commands.put(command)

    def _fail_pending_sends(self) -> None:
        if self._commands is None:
            return
        while True:
            try:
                command = self._commands.get_nowait()
            except asyncio.QueueEmpty:
                return
            if isinstance(command, Send):
                self._reply(command, 0)

    def _reply(self, command: Send, count: int = 0, *, exc: Optional[BaseException] = None) -> None:
        reply = command.reply
        if reply is None or reply.done():
            return
        if exc is not None:
            if isinstance(exc, asyncio.CancelledError):
                reply.cancel()
            else:
                reply.set_exception(exc)
        else:
            reply.set_result(count)

    def _require_loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            raise RuntimeError(f"actor {self.name} has not been started")
        return self._loop

    def _require_open(self) -> None:
        if self._closing or self.finished:
            raise RuntimeError(f"actor {self.name} is closed")


__all__ = ["ConnectionActor", "ConnectionFactory"]
