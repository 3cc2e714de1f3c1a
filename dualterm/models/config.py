from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional, Union

DATA_BITS = (5, 6, 7, 8)
PARITIES = ("none", "even", "odd", "mark", "space")
STOP_BITS = (1, 1.5, 2)
FLOW_CONTROLS = ("none", "hardware", "software")

_FLOW_ALIASES = {
    "rts/cts": "hardware",
    "rtscts": "hardware",
    "xon/xoff": "software",
    "xonxoff": "software",
}


@dataclass(frozen=True, slots=True)
class SerialConfig:
    """Line parameters for a local serial device."""

    path: str
    baud: int = 115_200
    data_bits: int = 8
    parity: str = "none"
    stop_bits: float = 1
    flow_control: str = "none"

    def __post_init__(self) -> None:
        if not self.path or not self.path.strip():
            raise ValueError("serial device path must not be empty")
        if self.baud <= 0:
            raise ValueError("baud must be positive")
        if self.data_bits not in DATA_BITS:
            raise ValueError(f"data_bits must be one of {DATA_BITS}")
        if self.parity not in PARITIES:
            raise ValueError(f"parity must be one of {PARITIES}")
        if self.stop_bits not in STOP_BITS:
            raise ValueError(f"stop_bits must be one of {STOP_BITS}")
        if self.flow_control not in FLOW_CONTROLS:
            raise ValueError(f"flow_control must be one of {FLOW_CONTROLS}")

    @classmethod
    def from_params(
        cls,
        path: str,
        baud: int = 115_200,
        data_bits: int = 8,
        parity: str = "None",
        stop_bits: float = 1,
        flow_control: str = "None",
    ) -> "SerialConfig":
        """Build a config from the loose spellings a connection form produces."""
        flow = flow_control.strip().lower()
        return cls(
            path=path.strip(),
            baud=int(baud),
            data_bits=int(data_bits),
            parity=parity.strip().lower(),
            stop_bits=float(stop_bits) if float(stop_bits) == 1.5 else int(stop_bits),
            flow_control=_FLOW_ALIASES.get(flow, flow),
        )


@dataclass(frozen=True, slots=True)
class PasswordAuth:
    password: str = field(repr=False)

    def __repr__(self) -> str:
        return "PasswordAuth(password='***')"


@dataclass(frozen=True, slots=True)
class KeyFileAuth:
    path: str
    passphrase: Optional[str] = field(default=None, repr=False)

    def __repr__(self) -> str:
        masked = "'***'" if self.passphrase else "None"
        return f"KeyFileAuth(path={self.path!r}, passphrase={masked})"


SshAuth = Union[PasswordAuth, KeyFileAuth]


@dataclass(frozen=True, slots=True)
class SshConfig:
    """Target and credentials for an SSH session.

    Secrets stay in memory for the lifetime of the object and are masked
    in ``repr``. ``connect_timeout`` bounds the TCP dial only and is unset
    unless the caller asks for one.
    """

    host: str
    username: str
    auth: SshAuth
    port: int = 22
    connect_timeout: Optional[float] = None

    def __post_init__(self) -> None:
        if not self.host or not self.host.strip():
            raise ValueError("ssh host must not be empty")
        if not self.username:
            raise ValueError("ssh username must not be empty")
        if not 0 < self.port < 65536:
            raise ValueError("ssh port must be between 1 and 65535")
        if not isinstance(self.auth, (PasswordAuth, KeyFileAuth)):
            raise ValueError("auth must be PasswordAuth or KeyFileAuth")
        if isinstance(self.auth, KeyFileAuth) and not self.auth.path.strip():
            raise ValueError("private key path must not be empty")
        if self.connect_timeout is not None and self.connect_timeout <= 0:
            raise ValueError("connect_timeout must be positive when provided")


ConnectionConfig = Union[SerialConfig, SshConfig]


def describe(config: ConnectionConfig) -> str:
    if isinstance(config, SerialConfig):
        return f"{config.path} @ {config.baud}"
    return f"{config.username}@{config.host}:{config.port}"


__all__ = [
    "ConnectionConfig",
    "KeyFileAuth",
    "PasswordAuth",
    "SerialConfig",
    "SshAuth",
    "SshConfig",
    "describe",
]
