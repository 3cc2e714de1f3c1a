"""Error taxonomy shared by both transports and the actor."""
from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
	"""Every failure the core can report, grouped by category."""

	DEVICE_NOT_FOUND = "device_not_found"
	PERMISSION_DENIED = "permission_denied"
	IO_ERROR = "io_error"
	NETWORK_ERROR = "network_error"
	TIMEOUT = "timeout"
	AUTH_FAILED = "auth_failed"
	PASSPHRASE_INVALID = "passphrase_invalid"
	HOST_KEY_REJECTED = "host_key_rejected"
	HOST_KEY_MISMATCH = "host_key_mismatch"
	PROMPT_TIMEOUT = "prompt_timeout"
	HANDSHAKE_FAILED = "handshake_failed"
	UNSUPPORTED_ALGORITHM = "unsupported_algorithm"
	NOT_CONNECTED = "not_connected"

	@property
	def category(self) -> str:
		return _CATEGORIES[self]


_CATEGORIES = {
	ErrorKind.DEVICE_NOT_FOUND: "transport",
	ErrorKind.PERMISSION_DENIED: "transport",
	ErrorKind.IO_ERROR: "transport",
	ErrorKind.NETWORK_ERROR: "transport",
	ErrorKind.TIMEOUT: "transport",
	ErrorKind.AUTH_FAILED: "authentication",
	ErrorKind.PASSPHRASE_INVALID: "authentication",
	ErrorKind.HOST_KEY_REJECTED: "trust",
	ErrorKind.HOST_KEY_MISMATCH: "trust",
	ErrorKind.PROMPT_TIMEOUT: "trust",
	ErrorKind.HANDSHAKE_FAILED: "protocol",
	ErrorKind.UNSUPPORTED_ALGORITHM: "protocol",
	ErrorKind.NOT_CONNECTED: "usage",
}


class TransportError(Exception):
	"""Raised by a transport; ``kind`` tells the presentation layer what happened."""

	def __init__(self, kind: ErrorKind, message: str) -> None:
		super().__init__(message)
		self.kind = kind
		self.message = message

	def __str__(self) -> str:
		return f"{self.kind.value}: {self.message}"


__all__ = ["ErrorKind", "TransportError"]
