"""SSH transport built on paramiko, with trust-on-first-use host keys.

The handshake runs first and yields the server key before any credential
or application byte is sent. The key is checked against the shared
:class:`~dualterm.trust_store.HostKeyTrustStore`:

1. Known and matching: proceed silently.
2. Unknown: emit a :class:`HostKeyPrompt` and wait for a decision.
3. Known but different: emit a :class:`HostKeyMismatch`; only
   ``TrustDecision.OVERRIDE`` proceeds.

An unanswered prompt expires after ``prompt_timeout`` seconds and counts
as a rejection. Nothing is written to the store unless the user trusted
the key.
"""
from __future__ import annotations

import asyncio
import logging
import socket
from typing import Optional

import paramiko
from paramiko.pkey import UnknownKeyType
from paramiko.ssh_exception import IncompatiblePeer, PasswordRequiredException

from dualterm.connection import TransferCounters, TrustPrompt, run_blocking
from dualterm.errors import ErrorKind, TransportError
from dualterm.models.config import KeyFileAuth, PasswordAuth, SshConfig, describe
from dualterm.models.events import ConnectionState, ConnectionType, HostKeyMismatch, HostKeyPrompt, TrustEvent
from dualterm.models.host_key import HostKeyRecord, TrustDecision
from dualterm.settings import (
	HOST_KEY_PROMPT_TIMEOUT,
	READ_CHUNK_SIZE,
	READ_POLL_INTERVAL,
	SSH_KEEPALIVE_INTERVAL,
	SSH_TERM,
	SSH_TERM_COLUMNS,
	SSH_TERM_ROWS,
)
from dualterm.trust_store import HostKeyTrustStore, fingerprint_sha256

logger = logging.getLogger(__name__)


class SshConnection:
	"""Interactive shell session (PTY + shell) over SSH."""

	def __init__(
		self,
		config: SshConfig,
		*,
		trust_store: HostKeyTrustStore,
		trust_prompt: Optional[TrustPrompt] = None,
		prompt_timeout: float = HOST_KEY_PROMPT_TIMEOUT,
	) -> None:
		self.config = config
		self.trust_store = trust_store
		self.prompt_timeout = prompt_timeout
		self._trust_prompt = trust_prompt
		self._transport: Optional[paramiko.Transport] = None
		self._channel: Optional[paramiko.Channel] = None
		self._state = ConnectionState.DISCONNECTED
		self._counters = TransferCounters()
		self._read_token = 0

	# ------------------------------------------------------------------
	# Lifecycle
	# ------------------------------------------------------------------
	async def connect(self) -> None:
		if self._transport is not None:
			logger.debug("SSH session %s already open", self.description)
			return

		self._state = ConnectionState.CONNECTING
		logger.info("Connecting to %s", self.description)
		transport: Optional[paramiko.Transport] = None
		channel: Optional[paramiko.Channel] = None
		try:
			transport = await run_blocking(self._handshake, cleanup=self._close_transport)
			await self._verify_host_key(transport.get_remote_server_key())
			await run_blocking(self._authenticate, transport)
			channel = await run_blocking(self._open_shell, transport, cleanup=self._close_channel)
		except BaseException:
			if transport is not None:
				await asyncio.to_thread(self._release, transport, channel)
			self._state = ConnectionState.DISCONNECTED
			raise

		self._transport = transport
		self._channel = channel
		self._state = ConnectionState.CONNECTED
		logger.info("Connected to %s (%s shell)", self.description, SSH_TERM)

	async def disconnect(self) -> None:
		transport, self._transport = self._transport, None
		channel, self._channel = self._channel, None
		if transport is None:
			self._state = ConnectionState.DISCONNECTED
			return

		self._state = ConnectionState.CLOSING
		self._read_token += 1
		try:
			await asyncio.to_thread(self._release, transport, channel)
		finally:
			self._state = ConnectionState.DISCONNECTED
			logger.info(
				"Disconnected from %s (sent: %d bytes, received: %d bytes)",
				self.description,
				self._counters.sent,
				self._counters.received,
			)

	# ------------------------------------------------------------------
	# I/O
	# ------------------------------------------------------------------
	async def send(self, data: bytes) -> int:
		channel = self._require_channel()
		if not data:
			return 0
		try:
			written = await asyncio.to_thread(self._write_blocking, channel, bytes(data))
		except TransportError:
			await self.disconnect()
			raise
		return written

	async def read(self) -> bytes:
		channel = self._require_channel()
		self._read_token += 1
		try:
			data = await asyncio.to_thread(self._read_blocking, channel, self._read_token)
		except TransportError:
			await self.disconnect()
			raise
		if data:
			self._counters.add_received(len(data))
			return data
		if self._channel is channel:
			logger.info("SSH channel to %s closed by the remote side", self.description)
			await self.disconnect()
		return b""

	# ------------------------------------------------------------------
	# Observers
	# ------------------------------------------------------------------
	@property
	def state(self) -> ConnectionState:
		return self._state

	@property
	def connection_type(self) -> ConnectionType:
		return ConnectionType.SSH

	@property
	def description(self) -> str:
		return describe(self.config)

	@property
	def bytes_sent(self) -> int:
		return self._counters.sent

	@property
	def bytes_received(self) -> int:
		return self._counters.received

	# ------------------------------------------------------------------
	# Host key verification
	# ------------------------------------------------------------------
	async def _verify_host_key(self, key: paramiko.PKey) -> None:
		host, port = self.config.host, self.config.port
		algorithm = key.get_name()
		fingerprint = fingerprint_sha256(key.asbytes())
		known = self.trust_store.lookup(host, port, algorithm)

		if known is None:
			logger.info("Unknown host %s:%d (%s %s), asking for confirmation", host, port, algorithm, fingerprint)
			decision = await self._ask(HostKeyPrompt(host, port, algorithm, fingerprint))
			if not decision.trusts:
				raise TransportError(ErrorKind.HOST_KEY_REJECTED, f"host key for {host}:{port} was rejected")
			self.trust_store.record(
				HostKeyRecord.first_use(host, port, algorithm, fingerprint),
				persist=decision is not TrustDecision.ACCEPT,
			)
			return

		if known.fingerprint == fingerprint:
			self.trust_store.confirm(host, port, fingerprint)
			logger.info("Known host key for %s:%d (%s) accepted", host, port, algorithm)
			return

		logger.warning(
			"Host key for %s:%d CHANGED (trusted %s, presented %s); possible interception",
			host,
			port,
			known.fingerprint,
			fingerprint,
		)
		decision = await self._ask(HostKeyMismatch(host, port, algorithm, old=known.fingerprint, new=fingerprint))
		if decision is not TrustDecision.OVERRIDE:
			raise TransportError(
				ErrorKind.HOST_KEY_REJECTED,
				f"host key for {host}:{port} changed and was not explicitly overridden",
			)
		self.trust_store.record(
			HostKeyRecord.first_use(host, port, algorithm, fingerprint),
			override=True,
			persist=True,
		)

	async def _ask(self, event: TrustEvent) -> TrustDecision:
		if self._trust_prompt is None:
			logger.warning("No host-key prompt handler for %s:%d; rejecting", event.host, event.port)
			return TrustDecision.REJECT
		try:
			return await asyncio.wait_for(self._trust_prompt(event), timeout=self.prompt_timeout)
		except asyncio.TimeoutError as exc:
			logger.warning("Host-key prompt for %s:%d expired; rejecting", event.host, event.port)
			raise TransportError(
				ErrorKind.PROMPT_TIMEOUT,
				f"no answer to the host-key prompt for {event.host}:{event.port} within {self.prompt_timeout:g}s",
			) from exc

	# ------------------------------------------------------------------
	# Blocking helpers, run in worker threads
	# ------------------------------------------------------------------
	def _handshake(self) -> paramiko.Transport:
		host, port = self.config.host, self.config.port
		try:
			sock = socket.create_connection((host, port), timeout=self.config.connect_timeout)
		except TimeoutError as exc:
			raise TransportError(ErrorKind.TIMEOUT, f"connecting to {host}:{port} timed out") from exc
		except OSError as exc:
			raise TransportError(ErrorKind.NETWORK_ERROR, f"cannot reach {host}:{port}: {exc}") from exc

		sock.settimeout(None)
		transport = paramiko.Transport(sock)
		try:
			transport.start_client()
		except IncompatiblePeer as exc:
			transport.close()
			raise TransportError(ErrorKind.UNSUPPORTED_ALGORITHM, f"no common algorithms with {host}:{port}: {exc}") from exc
		except paramiko.SSHException as exc:
			transport.close()
			raise TransportError(ErrorKind.HANDSHAKE_FAILED, f"SSH handshake with {host}:{port} failed: {exc}") from exc
		except (EOFError, OSError) as exc:
			transport.close()
			raise TransportError(ErrorKind.NETWORK_ERROR, f"connection to {host}:{port} dropped during handshake: {exc}") from exc
		transport.set_keepalive(SSH_KEEPALIVE_INTERVAL)
		return transport

	def _authenticate(self, transport: paramiko.Transport) -> None:
		username = self.config.username
		auth = self.config.auth
		target = f"{username}@{self.config.host}:{self.config.port}"
		try:
			if isinstance(auth, PasswordAuth):
				transport.auth_password(username, auth.password)
			elif isinstance(auth, KeyFileAuth):
				transport.auth_publickey(username, self._load_private_key(auth))
			else:  # pragma: no cover - SshConfig validates the variant
				raise TransportError(ErrorKind.AUTH_FAILED, f"unsupported auth method {type(auth).__name__}")
		except paramiko.AuthenticationException as exc:
			raise TransportError(ErrorKind.AUTH_FAILED, f"authentication failed for {target}: {exc}") from exc
		except paramiko.SSHException as exc:
			raise TransportError(ErrorKind.NETWORK_ERROR, f"session to {target} failed during authentication: {exc}") from exc
		if not transport.is_authenticated():
			raise TransportError(ErrorKind.AUTH_FAILED, f"authentication failed for {target}")

	def _load_private_key(self, auth: KeyFileAuth) -> paramiko.PKey:
		passphrase = auth.passphrase.encode("utf-8") if auth.passphrase else None
		try:
			return paramiko.PKey.from_path(auth.path, passphrase=passphrase)
		except UnknownKeyType as exc:
			raise TransportError(ErrorKind.UNSUPPORTED_ALGORITHM, f"unsupported private key type in {auth.path}") from exc
		except PasswordRequiredException as exc:
			raise TransportError(ErrorKind.PASSPHRASE_INVALID, f"private key {auth.path} needs a passphrase") from exc
		except OSError as exc:
			raise TransportError(ErrorKind.AUTH_FAILED, f"cannot read private key {auth.path}: {exc}") from exc
		except (paramiko.SSHException, TypeError, ValueError) as exc:
			raise TransportError(
				ErrorKind.PASSPHRASE_INVALID,
				f"cannot decrypt private key {auth.path}; wrong or missing passphrase",
			) from exc

	def _open_shell(self, transport: paramiko.Transport) -> paramiko.Channel:
		try:
			channel = transport.open_session()
			channel.get_pty(term=SSH_TERM, width=SSH_TERM_COLUMNS, height=SSH_TERM_ROWS)
			channel.invoke_shell()
		except (paramiko.SSHException, EOFError, OSError) as exc:
			raise TransportError(ErrorKind.HANDSHAKE_FAILED, f"could not start a shell on {self.description}: {exc}") from exc
		channel.settimeout(READ_POLL_INTERVAL)
		return channel

	def _read_blocking(self, channel: paramiko.Channel, token: int) -> bytes:
		while self._channel is channel and self._read_token == token:
			try:
				return channel.recv(READ_CHUNK_SIZE)
			except socket.timeout:
				continue
			except (paramiko.SSHException, EOFError, OSError) as exc:
				if self._channel is not channel:
					return b""
				raise TransportError(ErrorKind.IO_ERROR, f"read from {self.description} failed: {exc}") from exc
		return b""

	def _write_blocking(self, channel: paramiko.Channel, data: bytes) -> int:
		total = 0
		while total < len(data):
			try:
				written = channel.send(data[total:])
			except socket.timeout:
				if self._channel is not channel:
					raise TransportError(ErrorKind.NOT_CONNECTED, f"{self.description} was closed during a write") from None
				continue
			except (paramiko.SSHException, EOFError, OSError) as exc:
				raise TransportError(ErrorKind.IO_ERROR, f"write to {self.description} failed: {exc}") from exc
			if written == 0:
				raise TransportError(ErrorKind.IO_ERROR, f"SSH channel to {self.description} is closed")
			self._counters.add_sent(written)
			total += written
		return total

	def _close_channel(self, channel: paramiko.Channel) -> None:
		try:
			channel.close()
		except Exception as exc:
			logger.warning("Closing SSH channel to %s raised: %s", self.description, exc)

	def _close_transport(self, transport: paramiko.Transport) -> None:
		try:
			transport.close()
		except Exception as exc:
			logger.warning("Closing SSH transport to %s raised: %s", self.description, exc)

	def _release(self, transport: paramiko.Transport, channel: Optional[paramiko.Channel]) -> None:
		if channel is not None:
			self._close_channel(channel)
		self._close_transport(transport)

	def _require_channel(self) -> paramiko.Channel:
		channel = self._channel
		if channel is None or self._state is not ConnectionState.CONNECTED:
			raise TransportError(ErrorKind.NOT_CONNECTED, f"SSH session {self.description} is not open")
		return channel


__all__ = [
	"SshConnection",
	"fingerprint_sha256",
]
