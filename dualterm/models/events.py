"""Events flowing out of a connection actor and commands flowing in."""
from __future__ import annotations

import asyncio
import concurrent.futures
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Union

from dualterm.errors import ErrorKind
from dualterm.models.host_key import TrustDecision


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    CLOSING = "closing"


class ConnectionType(str, Enum):
    SERIAL = "serial"
    SSH = "ssh"


# ---------------------------------------------------------------------
# Outbound events
# ---------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class Data:
    data: bytes


@dataclass(frozen=True, slots=True)
class StateChanged:
    state: ConnectionState


@dataclass(frozen=True, slots=True)
class Error:
    kind: ErrorKind
    message: str = ""


@dataclass(frozen=True, slots=True)
class HostKeyPrompt:
    """First contact with ``host:port``; the connect waits for a decision."""

    host: str
    port: int
    algorithm: str
    fingerprint: str


@dataclass(frozen=True, slots=True)
class HostKeyMismatch:
    """The server presented a key that differs from the trusted one.

    Only an explicit :attr:`TrustDecision.OVERRIDE` lets the connection
    proceed. Anything else, including silence, rejects it.
    """

    host: str
    port: int
    algorithm: str
    old: str
    new: str


@dataclass(frozen=True, slots=True)
class Closed:
    pass


ConnectionEvent = Union[Data, StateChanged, Error, HostKeyPrompt, HostKeyMismatch, Closed]
TrustEvent = Union[HostKeyPrompt, HostKeyMismatch]


# ---------------------------------------------------------------------
# Inbound commands
# ---------------------------------------------------------------------
Reply = Union["asyncio.Future[int]", "concurrent.futures.Future[int]"]


@dataclass(frozen=True, slots=True)
class Connect:
    pass


@dataclass(frozen=True, slots=True)
class Disconnect:
    pass


@dataclass(frozen=True, slots=True)
class Send:
    data: bytes
    reply: Optional[Reply] = field(default=None, compare=False, repr=False)


@dataclass(frozen=True, slots=True)
class RespondTrust:
    decision: TrustDecision


Command = Union[Connect, Disconnect, Send, RespondTrust]


def event_to_dict(event: ConnectionEvent) -> Dict[str, Any]:
    """JSON-friendly rendering used by the CLI and the HTTP API."""
    if isinstance(event, Data):
        return {
            "type": "data",
            "hex": event.data.hex(),
            "text": event.data.decode("utf-8", errors="replace"),
            "len": len(event.data),
        }
    if isinstance(event, StateChanged):
        return {"type": "state", "state": event.state.value}
    if isinstance(event, Error):
        return {
            "type": "error",
            "kind": event.kind.value,
            "category": event.kind.category,
            "message": event.message,
        }
    if isinstance(event, HostKeyPrompt):
        return {
            "type": "host_key_prompt",
            "host": event.host,
            "port": event.port,
            "algorithm": event.algorithm,
            "fingerprint": event.fingerprint,
        }
    if isinstance(event, HostKeyMismatch):
        return {
            "type": "host_key_mismatch",
            "host": event.host,
            "port": event.port,
            "algorithm": event.algorithm,
            "old": event.old,
            "new": event.new,
        }
    if isinstance(event, Closed):
        return {"type": "closed"}
    raise TypeError(f"unsupported event: {event!r}")


__all__ = [
    "Closed",
    "Command",
    "Connect",
    "ConnectionEvent",
    "ConnectionState",
    "ConnectionType",
    "Data",
    "Disconnect",
    "Error",
    "HostKeyMismatch",
    "HostKeyPrompt",
    "RespondTrust",
    "Send",
    "StateChanged",
    "TrustEvent",
    "event_to_dict",
]
