"""The capability contract both transports implement."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Optional, Protocol, TypeVar, runtime_checkable

from dualterm.models.config import ConnectionConfig, SerialConfig, SshConfig
from dualterm.models.events import ConnectionState, ConnectionType, TrustEvent
from dualterm.models.host_key import TrustDecision
from dualterm.settings import HOST_KEY_PROMPT_TIMEOUT

if TYPE_CHECKING:  # pragma: no cover - typing only
	from dualterm.trust_store import HostKeyTrustStore

logger = logging.getLogger(__name__)

T = TypeVar("T")
TrustPrompt = Callable[[TrustEvent], Awaitable[TrustDecision]]


@runtime_checkable
class Connection(Protocol):
	"""One transport instance.

	``connect``, ``send`` and ``read`` are the only suspension points.
	``read`` returns ``b""`` only once the channel has closed, and
	``disconnect`` may be called any number of times.
	"""

	async def connect(self) -> None: ...

	async def disconnect(self) -> None: ...

	async def send(self, data: bytes) -> int: ...

	async def read(self) -> bytes: ...

	@property
	def state(self) -> ConnectionState: ...

	@property
	def connection_type(self) -> ConnectionType: ...

	@property
	def description(self) -> str: ...

	@property
	def bytes_sent(self) -> int: ...

	@property
	def bytes_received(self) -> int: ...


@dataclass(slots=True)
class TransferCounters:
	"""Per-instance byte totals; they only ever grow."""

	sent: int = 0
	received: int = 0

	def add_sent(self, count: int) -> None:
		if count > 0:
			self.sent += count

	def add_received(self, count: int) -> None:
		if count > 0:
			self.received += count


async def run_blocking(
	func: Callable[..., T],
	*args: Any,
	cleanup: Optional[Callable[[T], None]] = None,
) -> T:
	"""Run ``func`` in a worker thread.

	If the caller is cancelled while the thread is still working, the thread
	is left to finish and ``cleanup`` receives whatever it eventually
	returns, so a handle opened after cancellation is still released.
	"""
	task = asyncio.ensure_future(asyncio.to_thread(func, *args))
	try:
		return await asyncio.shield(task)
	except asyncio.CancelledError:
		task.add_done_callback(lambda done: _abandon(done, cleanup))
		raise


def _abandon(task: "asyncio.Future[Any]", cleanup: Optional[Callable[[Any], None]]) -> None:
	if task.cancelled():
		return
	exc = task.exception()
	if exc is not None:
		logger.debug("Abandoned blocking call failed: %s", exc)
		return
	if cleanup is None:
		return
	try:
		cleanup(task.result())
	except Exception:  # pragma: no cover - best effort release
		logger.warning("Releasing an abandoned handle failed", exc_info=True)


def create_connection(
	config: ConnectionConfig,
	*,
	trust_store: Optional["HostKeyTrustStore"] = None,
	trust_prompt: Optional[TrustPrompt] = None,
	prompt_timeout: float = HOST_KEY_PROMPT_TIMEOUT,
) -> Connection:
	"""Build the transport matching the config variant."""
	if isinstance(config, SerialConfig):
		from dualterm.serial_transport import SerialConnection

		return SerialConnection(config)
	if isinstance(config, SshConfig):
		from dualterm.ssh_transport import SshConnection
		from dualterm.trust_store import default_trust_store

		return SshConnection(
			config,
			trust_store=trust_store if trust_store is not None else default_trust_store(),
			trust_prompt=trust_prompt,
			prompt_timeout=prompt_timeout,
		)
	raise TypeError(f"unsupported connection config: {type(config).__name__}")


__all__ = [
	"Connection",
	"TransferCounters",
	"TrustPrompt",
	"create_connection",
	"run_blocking",
]
