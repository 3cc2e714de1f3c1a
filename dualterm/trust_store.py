"""Trust-on-first-use registry of SSH host keys."""
from __future__ import annotations

import base64
import csv
import hashlib
import logging
import os
import tempfile
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Mapping, Optional, Protocol, Sequence, Tuple

import paramiko

from dualterm.errors import ErrorKind, TransportError
from dualterm.models.host_key import HostKeyRecord, utc_now
from dualterm.settings import KNOWN_HOSTS_PATH, SYSTEM_KNOWN_HOSTS_PATH

logger = logging.getLogger(__name__)

HostKey = Tuple[str, int]

CSV_FIELDS: Sequence[str] = (
    "action",
    "host",
    "port",
    "algorithm",
    "fingerprint",
    "first_seen",
    "last_confirmed",
)


def _key(host: str, port: int) -> HostKey:
    return (host.strip().lower(), int(port))


def _parse_time(raw: str) -> datetime:
    value = datetime.fromisoformat(raw)
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def fingerprint_sha256(key_blob: bytes) -> str:
    """OpenSSH-style ``SHA256:`` fingerprint of a public key blob."""
    digest = hashlib.sha256(key_blob).digest()
    return "SHA256:" + base64.b64encode(digest).decode("ascii").rstrip("=")


def _openssh_name(host: str, port: int) -> str:
    return host if port == 22 else f"[{host}]:{port}"


class OpenSshKnownHosts:
    """Read-only view of an OpenSSH ``known_hosts`` file.

    Hashed and plain entries are both understood (``paramiko.HostKeys``).
    A missing file is an empty view; the file is never written.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path).expanduser()
        self._keys = paramiko.HostKeys()
        self._loaded_at = utc_now()
        if self.path.is_file():
            try:
                self._keys.load(str(self.path))
            except OSError as exc:
                logger.warning("Cannot read OpenSSH known hosts %s: %s", self.path, exc)
            else:
                logger.debug("Loaded %d OpenSSH known hosts from %s", len(self._keys), self.path)

    def lookup(self, host: str, port: int, algorithm: Optional[str] = None) -> Optional[HostKeyRecord]:
        host, port = _key(host, port)
        entries = self._keys.lookup(_openssh_name(host, port))
        if not entries:
            return None
        key = entries.get(algorithm) if algorithm else None
        if key is None:
            key = next(iter(entries.values()))
        return HostKeyRecord.first_use(
            host,
            port,
            key.get_name(),
            fingerprint_sha256(key.asbytes()),
            when=self._loaded_at,
        )

    def __len__(self) -> int:
        return len(self._keys)


class TrustBackend(Protocol):
    def load(self) -> Iterable[HostKeyRecord]: ...

    def save(self, record: HostKeyRecord) -> None: ...

    def remove(self, host: str, port: int) -> None: ...


class MemoryTrustBackend:
    """Keeps persisted records in a dict; used by tests and throwaway sessions."""

    def __init__(self, records: Iterable[HostKeyRecord] = ()) -> None:
        self.records: Dict[HostKey, HostKeyRecord] = {record.key: record for record in records}

    def load(self) -> Iterable[HostKeyRecord]:
        return list(self.records.values())

    def save(self, record: HostKeyRecord) -> None:
        self.records[record.key] = record

    def remove(self, host: str, port: int) -> None:
        self.records.pop(_key(host, port), None)


class CsvTrustBackend:
    """Append-only CSV file of trust actions.

    Each accepted key, confirmation or removal is a new row, written and
    flushed immediately. Loading replays the rows in order, so the newest
    row for a ``host:port`` wins. :meth:`compact` rewrites the file with
    one row per trusted host.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._ensure_header()

    def _ensure_header(self) -> None:
        if self.path.exists() and self.path.stat().st_size > 0:
            return
        with self._lock:
            with self.path.open("w", newline="", encoding="utf-8") as handle:
                writer = csv.DictWriter(handle, fieldnames=CSV_FIELDS, extrasaction="ignore")
                writer.writeheader()
                handle.flush()

    def load(self) -> Iterable[HostKeyRecord]:
        records: Dict[HostKey, HostKeyRecord] = {}
        with self._lock:
            with self.path.open("r", newline="", encoding="utf-8") as handle:
                for line_no, row in enumerate(csv.DictReader(handle), start=2):
                    try:
                        key = _key(row["host"], int(row["port"]))
                        if row.get("action") == "forget":
                            records.pop(key, None)
                            continue
                        records[key] = HostKeyRecord(
                            host=key[0],
                            port=key[1],
                            algorithm=row["algorithm"],
                            fingerprint=row["fingerprint"],
                            first_seen=_parse_time(row["first_seen"]),
                            last_confirmed=_parse_time(row["last_confirmed"]),
                        )
                    except (KeyError, TypeError, ValueError) as exc:
                        logger.warning("Skipping malformed trust row %d in %s: %s", line_no, self.path, exc)
        return list(records.values())

    def save(self, record: HostKeyRecord) -> None:
        row = {"action": "trust", **record.to_dict()}
        row["first_seen"] = record.first_seen.isoformat()
        row["last_confirmed"] = record.last_confirmed.isoformat()
        self._append(row)

    def remove(self, host: str, port: int) -> None:
        key = _key(host, port)
        self._append({"action": "forget", "host": key[0], "port": key[1]})

    def compact(self) -> None:
        records = list(self.load())
        with self._lock:
            fd, tmp_name = tempfile.mkstemp(prefix=".known_hosts.", dir=str(self.path.parent))
            try:
                with os.fdopen(fd, "w", newline="", encoding="utf-8") as handle:
                    writer = csv.DictWriter(handle, fieldnames=CSV_FIELDS, extrasaction="ignore")
                    writer.writeheader()
                    for record in records:
                        row = {"action": "trust", **record.to_dict()}
                        row["first_seen"] = record.first_seen.isoformat()
                        row["last_confirmed"] = record.last_confirmed.isoformat()
                        writer.writerow(row)
                    handle.flush()
                    os.fsync(handle.fileno())
                os.replace(tmp_name, self.path)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise

    def _append(self, row: Mapping[str, object]) -> None:
        with self._lock:
            with self.path.open("a", newline="", encoding="utf-8") as handle:
                writer = csv.DictWriter(handle, fieldnames=CSV_FIELDS, extrasaction="ignore")
                writer.writerow(row)
                handle.flush()


class HostKeyTrustStore:
    """Shared registry mapping ``(host, port)`` to the trusted key.

    Lookups read the current immutable record without taking a lock.
    Writes for the same ``host:port`` are serialized so the last authorized
    decision wins; a record is swapped in whole, never edited in place.
    Hosts missing from the registry fall back to ``system_hosts``, the
    user's OpenSSH ``known_hosts``, which is consulted but never written.
    """

    def __init__(
        self,
        backend: Optional[TrustBackend] = None,
        *,
        system_hosts: Optional[OpenSshKnownHosts] = None,
    ) -> None:
        self._backend = backend
        self.system_hosts = system_hosts
        self._records: Dict[HostKey, HostKeyRecord] = {}
        self._persisted: set[HostKey] = set()
        self._locks: Dict[HostKey, threading.Lock] = {}
        self._locks_guard = threading.Lock()
        if backend is not None:
            for record in backend.load():
                self._records[record.key] = record
                self._persisted.add(record.key)

    @classmethod
    def from_path(
        cls,
        path: str | Path,
        *,
        system_known_hosts: Optional[str | Path] = None,
    ) -> "HostKeyTrustStore":
        system_hosts = OpenSshKnownHosts(system_known_hosts) if system_known_hosts is not None else None
        return cls(CsvTrustBackend(path), system_hosts=system_hosts)

    def lookup(self, host: str, port: int, algorithm: Optional[str] = None) -> Optional[HostKeyRecord]:
        """The trusted record for ``host:port``, own records first.

        ``algorithm`` picks among several OpenSSH keys for the same host.
        """
        record = self._records.get(_key(host, port))
        if record is None and self.system_hosts is not None:
            record = self.system_hosts.lookup(host, port, algorithm)
        return record

    def records(self) -> List[HostKeyRecord]:
        return sorted(self._records.values(), key=lambda record: record.key)

    def is_persisted(self, host: str, port: int) -> bool:
        return _key(host, port) in self._persisted

    def record(
        self,
        record: HostKeyRecord,
        *,
        override: bool = False,
        persist: bool = True,
    ) -> HostKeyRecord:
        """Trust ``record``.

        An existing record with another fingerprint is only replaced when
        ``override`` is set; otherwise ``HOST_KEY_MISMATCH`` is raised and
        nothing changes.
        """
        key = record.key
        record = HostKeyRecord(
            host=key[0],
            port=key[1],
            algorithm=record.algorithm,
            fingerprint=record.fingerprint,
            first_seen=record.first_seen,
            last_confirmed=record.last_confirmed,
        )
        with self._lock_for(key):
            current = self._records.get(key)
            if current is not None and current.fingerprint != record.fingerprint and not override:
                raise TransportError(
                    ErrorKind.HOST_KEY_MISMATCH,
                    f"{key[0]}:{key[1]} is already trusted with {current.fingerprint}",
                )
            if current is not None and current.fingerprint == record.fingerprint:
                record = current.confirmed(record.last_confirmed)
            if persist or key in self._persisted:
                if self._backend is not None:
                    self._backend.save(record)
                self._persisted.add(key)
            self._records[key] = record
        if current is not None and current.fingerprint != record.fingerprint:
            logger.warning(
                "Replaced host key for %s:%d (%s -> %s)",
                key[0],
                key[1],
                current.fingerprint,
                record.fingerprint,
            )
        else:
            logger.info("Trusted host key for %s:%d (%s)", key[0], key[1], record.fingerprint)
        return record

    def confirm(self, host: str, port: int, fingerprint: str) -> Optional[HostKeyRecord]:
        """Refresh ``last_confirmed`` when ``fingerprint`` still matches."""
        key = _key(host, port)
        with self._lock_for(key):
            current = self._records.get(key)
            if current is None or current.fingerprint != fingerprint:
                return None
            updated = current.confirmed(utc_now())
            if key in self._persisted and self._backend is not None:
                self._backend.save(updated)
            self._records[key] = updated
        return updated

    def forget(self, host: str, port: int) -> bool:
        key = _key(host, port)
        with self._lock_for(key):
            removed = self._records.pop(key, None)
            if key in self._persisted:
                if self._backend is not None:
                    self._backend.remove(*key)
                self._persisted.discard(key)
        if removed is not None:
            logger.info("Forgot host key for %s:%d", key[0], key[1])
        return removed is not None

    def __iter__(self) -> Iterator[HostKeyRecord]:
        return iter(self.records())

    def __len__(self) -> int:
        return len(self._records)

    def _lock_for(self, key: HostKey) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._locks[key] = lock
            return lock


_default_store: Optional[HostKeyTrustStore] = None
_default_lock = threading.Lock()


def default_trust_store() -> HostKeyTrustStore:
    """The process-wide store used by connections not given one explicitly."""
    global _default_store
    with _default_lock:
        if _default_store is None:
            _default_store = HostKeyTrustStore.from_path(
                KNOWN_HOSTS_PATH,
                system_known_hosts=SYSTEM_KNOWN_HOSTS_PATH,
            )
            logger.info("Using host-key store %s", KNOWN_HOSTS_PATH)
        return _default_store


__all__ = [
    "CSV_FIELDS",
    "CsvTrustBackend",
    "HostKeyTrustStore",
    "MemoryTrustBackend",
    "OpenSshKnownHosts",
    "TrustBackend",
    "default_trust_store",
    "fingerprint_sha256",
]
