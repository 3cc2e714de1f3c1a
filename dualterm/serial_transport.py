"""Serial-line transport built on pyserial."""
from __future__ import annotations

import asyncio
import errno
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import serial
from serial.tools import list_ports

from dualterm.connection import TransferCounters, run_blocking
from dualterm.errors import ErrorKind, TransportError
from dualterm.models.config import SerialConfig, describe
from dualterm.models.events import ConnectionState, ConnectionType
from dualterm.settings import READ_CHUNK_SIZE, READ_POLL_INTERVAL

logger = logging.getLogger(__name__)

_BYTESIZES = {
	5: serial.FIVEBITS,
	6: serial.SIXBITS,
	7: serial.SEVENBITS,
	8: serial.EIGHTBITS,
}
_PARITIES = {
	"none": serial.PARITY_NONE,
	"even": serial.PARITY_EVEN,
	"odd": serial.PARITY_ODD,
	"mark": serial.PARITY_MARK,
	"space": serial.PARITY_SPACE,
}
_STOPBITS = {
	1: serial.STOPBITS_ONE,
	1.5: serial.STOPBITS_ONE_POINT_FIVE,
	2: serial.STOPBITS_TWO,
}
_NOT_FOUND_ERRNOS = {errno.ENOENT, errno.ENODEV, errno.ENXIO}
_DENIED_ERRNOS = {errno.EACCES, errno.EPERM, errno.EBUSY}


@dataclass(slots=True)
class SerialPortInfo:
	"""A serial device found on this machine."""

	device: str
	manufacturer: str = ""
	description: str = ""

	def to_dict(self) -> Dict[str, Any]:
		return {
			"device": self.device,
			"manufacturer": self.manufacturer,
			"description": self.description,
		}


def list_serial_ports() -> List[SerialPortInfo]:
	try:
		ports = list_ports.comports()
	except Exception as exc:  # pragma: no cover - platform enumeration failure
		logger.warning("Unable to enumerate serial ports: %s", exc)
		return []
	found = []
	for port in sorted(ports, key=lambda item: item.device):
		description = port.product or port.description or ""
		if description == "n/a":
			description = ""
		found.append(
			SerialPortInfo(
				device=port.device,
				manufacturer=port.manufacturer or "",
				description=description,
			)
		)
	return found


def _open_error(path: str, exc: BaseException) -> TransportError:
	code = getattr(exc, "errno", None)
	text = str(exc)
	lowered = text.lower()
	if isinstance(exc, FileNotFoundError) or code in _NOT_FOUND_ERRNOS or "cannot find" in lowered or "no such file" in lowered:
		return TransportError(ErrorKind.DEVICE_NOT_FOUND, f"serial device {path} was not found ({text})")
	if isinstance(exc, PermissionError) or code in _DENIED_ERRNOS or "access is denied" in lowered or "busy" in lowered:
		return TransportError(ErrorKind.PERMISSION_DENIED, f"serial device {path} is busy or access is denied ({text})")
	return TransportError(ErrorKind.IO_ERROR, f"could not open {path}: {text}")


class SerialConnection:
	"""Raw, unframed byte channel over a local serial device."""

	def __init__(self, config: SerialConfig) -> None:
		self.config = config
		self._port: Optional[serial.Serial] = None
		self._state = ConnectionState.DISCONNECTED
		self._counters = TransferCounters()
		self._read_token = 0

	# ------------------------------------------------------------------
	# Lifecycle
	# ------------------------------------------------------------------
	async def connect(self) -> None:
		if self._port is not None:
			logger.debug("Serial port %s already open", self.config.path)
			return

		self._state = ConnectionState.CONNECTING
		logger.info("Opening serial port %s", self.description)
		try:
			port = await run_blocking(self._open, cleanup=self._close_port)
		except BaseException:
			self._state = ConnectionState.DISCONNECTED
			raise

		self._port = port
		self._state = ConnectionState.CONNECTED
		logger.info("Connected to %s", self.description)

	async def disconnect(self) -> None:
		port, self._port = self._port, None
		if port is None:
			self._state = ConnectionState.DISCONNECTED
			return

		self._state = ConnectionState.CLOSING
		self._read_token += 1
		try:
			await asyncio.to_thread(self._close_port, port)
		finally:
			self._state = ConnectionState.DISCONNECTED
			logger.info(
				"Disconnected from %s (sent: %d bytes, received: %d bytes)",
				self.config.path,
				self._counters.sent,
				self._counters.received,
			)

	# ------------------------------------------------------------------
	# I/O
	# ------------------------------------------------------------------
	async def send(self, data: bytes) -> int:
		port = self._require_port()
		if not data:
			return 0
		try:
			written = await asyncio.to_thread(self._write_blocking, port, bytes(data))
		except TransportError:
			await self.disconnect()
			raise
		return written

	async def read(self) -> bytes:
		port = self._require_port()
		self._read_token += 1
		try:
			data = await asyncio.to_thread(self._read_blocking, port, self._read_token)
		except TransportError:
			await self.disconnect()
			raise
		if data:
			self._counters.add_received(len(data))
			return data
		# Only a released handle ends the read loop without data.
		if self._port is port:
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
		return ConnectionType.SERIAL

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
	# Blocking helpers, run in worker threads
	# ------------------------------------------------------------------
	def _open(self) -> serial.Serial:
		cfg = self.config
		try:
			return serial.Serial(
				port=cfg.path,
				baudrate=cfg.baud,
				bytesize=_BYTESIZES[cfg.data_bits],
				parity=_PARITIES[cfg.parity],
				stopbits=_STOPBITS[cfg.stop_bits],
				rtscts=cfg.flow_control == "hardware",
				xonxoff=cfg.flow_control == "software",
				timeout=READ_POLL_INTERVAL,
			)
		except ValueError as exc:
			raise TransportError(ErrorKind.IO_ERROR, f"invalid line settings for {cfg.path}: {exc}") from exc
		except (serial.SerialException, OSError) as exc:
			raise _open_error(cfg.path, exc) from exc

	def _read_blocking(self, port: serial.Serial, token: int) -> bytes:
		while self._port is port and self._read_token == token:
			try:
				chunk = port.read(1)
				if chunk:
					waiting = port.in_waiting
					if waiting:
						chunk += port.read(min(waiting, READ_CHUNK_SIZE - 1))
					return chunk
			except (serial.SerialException, OSError, TypeError, AttributeError) as exc:
				if self._port is not port:
					return b""
				raise TransportError(ErrorKind.IO_ERROR, f"read from {self.config.path} failed: {exc}") from exc
		return b""

	def _write_blocking(self, port: serial.Serial, data: bytes) -> int:
		try:
			written = port.write(data)
			port.flush()
		except (serial.SerialException, OSError) as exc:
			raise TransportError(ErrorKind.IO_ERROR, f"write to {self.config.path} failed: {exc}") from exc
		count = len(data) if written is None else int(written)
		# Counted in the worker thread; the awaiting send may already be cancelled.
		self._counters.add_sent(count)
		return count

	def _close_port(self, port: serial.Serial) -> None:
		try:
			port.close()
		except (serial.SerialException, OSError) as exc:
			logger.warning("Closing %s raised: %s", self.config.path, exc)

	def _require_port(self) -> serial.Serial:
		port = self._port
		if port is None or self._state is not ConnectionState.CONNECTED:
			raise TransportError(ErrorKind.NOT_CONNECTED, f"serial port {self.config.path} is not open")
		return port


__all__ = [
	"SerialConnection",
	"SerialPortInfo",
	"list_serial_ports",
]
