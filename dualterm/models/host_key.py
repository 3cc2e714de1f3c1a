from __future__ import annotations

import asyncio
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class TrustDecision(str, Enum):
    """Answer to a host-key prompt.

    ``ACCEPT`` trusts the key in the running store only; ``REMEMBER_AND_ACCEPT``
    also writes it to the persistent backend. ``OVERRIDE`` is the distinct
    answer required to replace a key that changed.
    """

    ACCEPT = "accept"
    REMEMBER_AND_ACCEPT = "remember"
    REJECT = "reject"
    OVERRIDE = "override"

    @property
    def trusts(self) -> bool:
        return self is not TrustDecision.REJECT

    @classmethod
    def parse(cls, raw: str) -> "TrustDecision":
        value = raw.strip().lower()
        aliases = {
            "a": cls.ACCEPT,
            "yes": cls.ACCEPT,
            "y": cls.ACCEPT,
            "r": cls.REMEMBER_AND_ACCEPT,
            "remember_and_accept": cls.REMEMBER_AND_ACCEPT,
            "n": cls.REJECT,
            "no": cls.REJECT,
            "": cls.REJECT,
        }
        if value in aliases:
            return aliases[value]
        try:
            return cls(value)
        except ValueError as exc:
            raise ValueError(f"unknown trust decision: {raw!r}") from exc


@dataclass(frozen=True, slots=True)
class HostKeyRecord:
    """A trusted server key for one ``host:port``."""

    host: str
    port: int
    algorithm: str
    fingerprint: str
    first_seen: datetime
    last_confirmed: datetime

    @classmethod
    def first_use(
        cls,
        host: str,
        port: int,
        algorithm: str,
        fingerprint: str,
        *,
        when: Optional[datetime] = None,
    ) -> "HostKeyRecord":
        seen = when or utc_now()
        return cls(
            host=host.lower(),
            port=port,
            algorithm=algorithm,
            fingerprint=fingerprint,
            first_seen=seen,
            last_confirmed=seen,
        )

    @property
    def key(self) -> tuple[str, int]:
        return (self.host.lower(), self.port)

    def confirmed(self, when: Optional[datetime] = None) -> "HostKeyRecord":
        return replace(self, last_confirmed=when or utc_now())

    def to_dict(self) -> dict[str, Any]:
        return {
            "host": self.host,
            "port": self.port,
            "algorithm": self.algorithm,
            "fingerprint": self.fingerprint,
            "first_seen": self.first_seen.isoformat(timespec="seconds"),
            "last_confirmed": self.last_confirmed.isoformat(timespec="seconds"),
        }


@dataclass(slots=True)
class PendingDecision:
    """A prompt waiting for an answer until ``deadline`` (loop time)."""

    event: Any
    deadline: float
    future: "asyncio.Future[TrustDecision]"

    def resolve(self, decision: TrustDecision) -> bool:
        if self.future.done():
            return False
        self.future.set_result(decision)
        return True


__all__ = [
    "HostKeyRecord",
    "PendingDecision",
    "TrustDecision",
    "utc_now",
]
