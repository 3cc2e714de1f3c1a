"""Value types shared by the transports, the actor and the outer surfaces."""
from .config import ConnectionConfig, KeyFileAuth, PasswordAuth, SerialConfig, SshConfig, describe
from .events import (
    Closed,
    Command,
    Connect,
    ConnectionEvent,
    ConnectionState,
    ConnectionType,
    Data,
    Disconnect,
    Error,
    HostKeyMismatch,
    HostKeyPrompt,
    RespondTrust,
    Send,
    StateChanged,
    TrustEvent,
    event_to_dict,
)
from .host_key import HostKeyRecord, PendingDecision, TrustDecision

__all__ = [
    "Closed",
    "Command",
    "Connect",
    "ConnectionConfig",
    "ConnectionEvent",
    "ConnectionState",
    "ConnectionType",
    "Data",
    "Disconnect",
    "Error",
    "HostKeyMismatch",
    "HostKeyPrompt",
    "HostKeyRecord",
    "KeyFileAuth",
    "PasswordAuth",
    "PendingDecision",
    "RespondTrust",
    "SerialConfig",
    "Send",
    "SshConfig",
    "StateChanged",
    "TrustDecision",
    "TrustEvent",
    "describe",
]
