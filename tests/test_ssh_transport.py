"""SSH transport tests with paramiko's transport replaced by fakes."""
from __future__ import annotations

import asyncio
import socket
import tempfile
import threading
import time
import unittest
from pathlib import Path
from typing import List, Optional
from unittest.mock import patch

import paramiko

from dualterm.errors import ErrorKind, TransportError
from dualterm.models.config import KeyFileAuth, PasswordAuth, SshConfig
from dualterm.models.events import ConnectionState, HostKeyMismatch, HostKeyPrompt
from dualterm.models.host_key import HostKeyRecord, TrustDecision
from dualterm.settings import SSH_KEEPALIVE_INTERVAL
from dualterm.ssh_transport import SshConnection, fingerprint_sha256
from dualterm.trust_store import HostKeyTrustStore, MemoryTrustBackend, OpenSshKnownHosts

KEY_A = b"server-key-a"
KEY_B = b"server-key-b"


class _FakeKey:
    def __init__(self, blob: bytes) -> None:
        self.blob = blob

    def get_name(self) -> str:
        return "ssh-ed25519"

    def asbytes(self) -> bytes:
        return self.blob


class _FakeSocket:
    def settimeout(self, value) -> None:
        self.timeout = value


class _FakeChannel:
    def __init__(self) -> None:
        self.buffer = bytearray()
        self.closed = False
        self.timeout = None
        self.pty = None
        self._lock = threading.Lock()

    def get_pty(self, term, width, height) -> None:
        self.pty = (term, width, height)

    def invoke_shell(self) -> None:
        pass

    def settimeout(self, value) -> None:
        self.timeout = value

    def send(self, data: bytes) -> int:
        # Accept at most 3 bytes per call to exercise partial writes.
        chunk = bytes(data[:3])
        with self._lock:
            self.buffer.extend(chunk)
        return len(chunk)

    def recv(self, size: int) -> bytes:
        deadline = time.monotonic() + (self.timeout or 0.01)
        while time.monotonic() < deadline:
            if self.closed:
                return b""
            with self._lock:
                if self.buffer:
                    chunk = bytes(self.buffer[:size])
                    del self.buffer[:size]
                    return chunk
            time.sleep(0.001)
        raise socket.timeout()

    def close(self) -> None:
        self.closed = True


class _FakeTransport:
    server_key = KEY_A
    password = "secret"
    instances: List["_FakeTransport"] = []

    def __init__(self, sock) -> None:
        self.sock = sock
        self.closed = False
        self.authenticated = False
        self.auth_attempts = 0
        self.channel: Optional[_FakeChannel] = None
        self.keepalive: Optional[int] = None
        _FakeTransport.instances.append(self)

    def start_client(self) -> None:
        pass

    def set_keepalive(self, interval: int) -> None:
        self.keepalive = interval

    def get_remote_server_key(self):
        if isinstance(self.server_key, paramiko.PKey):
            return self.server_key
        return _FakeKey(self.server_key)

    def auth_password(self, username: str, password: str) -> None:
        self.auth_attempts += 1
        if password != self.password:
            raise paramiko.AuthenticationException("bad password")
        self.authenticated = True

    def auth_publickey(self, username: str, key) -> None:
        self.auth_attempts += 1
        self.authenticated = True

    def is_authenticated(self) -> bool:
        return self.authenticated

    def open_session(self) -> _FakeChannel:
        self.channel = _FakeChannel()
        return self.channel

    def close(self) -> None:
        self.closed = True


def _config(password: str = "secret") -> SshConfig:
    return SshConfig(host="router.lan", username="admin", auth=PasswordAuth(password))


class _Prompt:
    def __init__(self, decision: Optional[TrustDecision]) -> None:
        self.decision = decision
        self.events: list = []

    async def __call__(self, event):
        self.events.append(event)
        if self.decision is None:
            await asyncio.Event().wait()
        return self.decision


class SshConnectionTest(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        _FakeTransport.instances.clear()
        _FakeTransport.server_key = KEY_A
        patches = [
            patch("dualterm.ssh_transport.socket.create_connection", return_value=_FakeSocket()),
            patch("dualterm.ssh_transport.paramiko.Transport", _FakeTransport),
        ]
        for patcher in patches:
            patcher.start()
            self.addCleanup(patcher.stop)
        self.backend = MemoryTrustBackend()
        self.store = HostKeyTrustStore(self.backend)

    async def test_first_contact_prompts_once_then_connects_silently(self) -> None:
        prompt = _Prompt(TrustDecision.REMEMBER_AND_ACCEPT)
        conn = SshConnection(_config(), trust_store=self.store, trust_prompt=prompt)
        await conn.connect()
        self.assertEqual(conn.state, ConnectionState.CONNECTED)
        self.assertEqual(len(prompt.events), 1)
        event = prompt.events[0]
        self.assertIsInstance(event, HostKeyPrompt)
        self.assertEqual(event.fingerprint, fingerprint_sha256(KEY_A))
        self.assertTrue(self.store.is_persisted("router.lan", 22))
        self.assertEqual(_FakeTransport.instances[-1].channel.pty[0], "xterm-256color")
        await conn.disconnect()

        second = _Prompt(TrustDecision.REJECT)
        again = SshConnection(_config(), trust_store=self.store, trust_prompt=second)
        await again.connect()
        self.assertEqual(second.events, [])
        await again.disconnect()

    async def test_accept_trusts_for_this_process_only(self) -> None:
        conn = SshConnection(_config(), trust_store=self.store, trust_prompt=_Prompt(TrustDecision.ACCEPT))
        await conn.connect()
        self.assertIsNotNone(self.store.lookup("router.lan", 22))
        self.assertFalse(self.store.is_persisted("router.lan", 22))
        self.assertEqual(self.backend.records, {})
        await conn.disconnect()

    async def test_rejected_key_fails_before_credentials_are_sent(self) -> None:
        conn = SshConnection(_config(), trust_store=self.store, trust_prompt=_Prompt(TrustDecision.REJECT))
        with self.assertRaises(TransportError) as ctx:
            await conn.connect()
        self.assertEqual(ctx.exception.kind, ErrorKind.HOST_KEY_REJECTED)
        transport = _FakeTransport.instances[-1]
        self.assertEqual(transport.auth_attempts, 0)
        self.assertTrue(transport.closed)
        self.assertIsNone(self.store.lookup("router.lan", 22))
        self.assertEqual(conn.state, ConnectionState.DISCONNECTED)

    async def test_changed_key_is_never_silently_accepted(self) -> None:
        self.store.record(HostKeyRecord.first_use("router.lan", 22, "ssh-ed25519", fingerprint_sha256(KEY_A)))
        _FakeTransport.server_key = KEY_B

        for decision in (TrustDecision.ACCEPT, TrustDecision.REMEMBER_AND_ACCEPT, TrustDecision.REJECT):
            with self.subTest(decision=decision):
                prompt = _Prompt(decision)
                conn = SshConnection(_config(), trust_store=self.store, trust_prompt=prompt)
                with self.assertRaises(TransportError) as ctx:
                    await conn.connect()
                self.assertEqual(ctx.exception.kind, ErrorKind.HOST_KEY_REJECTED)
                mismatch = prompt.events[0]
                self.assertIsInstance(mismatch, HostKeyMismatch)
                self.assertEqual(mismatch.old, fingerprint_sha256(KEY_A))
                self.assertEqual(mismatch.new, fingerprint_sha256(KEY_B))
                self.assertEqual(self.store.lookup("router.lan", 22).fingerprint, fingerprint_sha256(KEY_A))

    async def test_override_replaces_changed_key(self) -> None:
        self.store.record(HostKeyRecord.first_use("router.lan", 22, "ssh-ed25519", fingerprint_sha256(KEY_A)))
        _FakeTransport.server_key = KEY_B
        conn = SshConnection(_config(), trust_store=self.store, trust_prompt=_Prompt(TrustDecision.OVERRIDE))
        with self.assertLogs("dualterm.trust_store", level="WARNING"):
            await conn.connect()
        self.assertEqual(self.store.lookup("router.lan", 22).fingerprint, fingerprint_sha256(KEY_B))
        self.assertTrue(self.store.is_persisted("router.lan", 22))
        await conn.disconnect()

    async def test_unanswered_prompt_times_out_without_a_record(self) -> None:
        conn = SshConnection(
            _config(),
            trust_store=self.store,
            trust_prompt=_Prompt(None),
            prompt_timeout=0.05,
        )
        with self.assertRaises(TransportError) as ctx:
            await conn.connect()
        self.assertEqual(ctx.exception.kind, ErrorKind.PROMPT_TIMEOUT)
        self.assertIsNone(self.store.lookup("router.lan", 22))
        self.assertTrue(_FakeTransport.instances[-1].closed)

    async def test_missing_prompt_handler_rejects(self) -> None:
        conn = SshConnection(_config(), trust_store=self.store)
        with self.assertRaises(TransportError) as ctx:
            await conn.connect()
        self.assertEqual(ctx.exception.kind, ErrorKind.HOST_KEY_REJECTED)

    async def test_wrong_password_maps_to_auth_failed(self) -> None:
        conn = SshConnection(_config("wrong"), trust_store=self.store, trust_prompt=_Prompt(TrustDecision.ACCEPT))
        with self.assertRaises(TransportError) as ctx:
            await conn.connect()
        self.assertEqual(ctx.exception.kind, ErrorKind.AUTH_FAILED)
        self.assertTrue(_FakeTransport.instances[-1].closed)

    async def test_unknown_private_key_type_maps_to_unsupported_algorithm(self) -> None:
        config = SshConfig(host="router.lan", username="admin", auth=KeyFileAuth("/keys/id_weird"))
        conn = SshConnection(config, trust_store=self.store, trust_prompt=_Prompt(TrustDecision.ACCEPT))
        with patch.object(paramiko.PKey, "from_path", side_effect=paramiko.UnknownKeyType(key_type="ssh-weird")):
            with self.assertRaises(TransportError) as ctx:
                await conn.connect()
        self.assertEqual(ctx.exception.kind, ErrorKind.UNSUPPORTED_ALGORITHM)
        self.assertTrue(_FakeTransport.instances[-1].closed)
        self.assertEqual(conn.state, ConnectionState.DISCONNECTED)

    async def test_unreachable_host_maps_to_network_error(self) -> None:
        with patch("dualterm.ssh_transport.socket.create_connection", side_effect=ConnectionRefusedError("refused")):
            conn = SshConnection(_config(), trust_store=self.store)
            with self.assertRaises(TransportError) as ctx:
                await conn.connect()
        self.assertEqual(ctx.exception.kind, ErrorKind.NETWORK_ERROR)

    async def test_connect_timeout_maps_to_timeout(self) -> None:
        with patch("dualterm.ssh_transport.socket.create_connection", side_effect=TimeoutError("timed out")):
            conn = SshConnection(_config(), trust_store=self.store)
            with self.assertRaises(TransportError) as ctx:
                await conn.connect()
        self.assertEqual(ctx.exception.kind, ErrorKind.TIMEOUT)

    async def test_shell_round_trip_counts_every_byte(self) -> None:
        conn = SshConnection(_config(), trust_store=self.store, trust_prompt=_Prompt(TrustDecision.ACCEPT))
        await conn.connect()
        self.assertEqual(await conn.send(b"uptime\n"), 7)
        received = b""
        while len(received) < 7:
            received += await conn.read()
        self.assertEqual(received, b"uptime\n")
        self.assertEqual(conn.bytes_sent, 7)
        self.assertEqual(conn.bytes_received, 7)

    async def test_keepalive_is_enabled_after_handshake(self) -> None:
        conn = SshConnection(_config(), trust_store=self.store, trust_prompt=_Prompt(TrustDecision.ACCEPT))
        await conn.connect()
        self.assertEqual(_FakeTransport.instances[-1].keepalive, SSH_KEEPALIVE_INTERVAL)
        await conn.disconnect()

    def _openssh_store(self, key: paramiko.PKey) -> HostKeyTrustStore:
        tmp = tempfile.TemporaryDirectory()
        self.addCleanup(tmp.cleanup)
        path = Path(tmp.name, "known_hosts")
        path.write_text(f"router.lan {key.get_name()} {key.get_base64()}\n", encoding="utf-8")
        return HostKeyTrustStore(self.backend, system_hosts=OpenSshKnownHosts(path))

    async def test_key_known_to_openssh_connects_without_prompt(self) -> None:
        key = paramiko.ECDSAKey.generate()
        store = self._openssh_store(key)
        _FakeTransport.server_key = key
        prompt = _Prompt(TrustDecision.REJECT)
        conn = SshConnection(_config(), trust_store=store, trust_prompt=prompt)
        await conn.connect()
        self.assertEqual(prompt.events, [])
        self.assertEqual(self.backend.records, {})
        await conn.disconnect()

    async def test_key_differing_from_openssh_is_a_mismatch(self) -> None:
        key = paramiko.ECDSAKey.generate()
        store = self._openssh_store(key)
        prompt = _Prompt(TrustDecision.ACCEPT)
        conn = SshConnection(_config(), trust_store=store, trust_prompt=prompt)
        with self.assertRaises(TransportError) as ctx:
            await conn.connect()
        self.assertEqual(ctx.exception.kind, ErrorKind.HOST_KEY_REJECTED)
        mismatch = prompt.events[0]
        self.assertIsInstance(mismatch, HostKeyMismatch)
        self.assertEqual(mismatch.old, fingerprint_sha256(key.asbytes()))
        self.assertEqual(mismatch.new, fingerprint_sha256(KEY_A))
        self.assertEqual(_FakeTransport.instances[-1].auth_attempts, 0)

    async def test_remote_close_ends_the_session(self) -> None:
        conn = SshConnection(_config(), trust_store=self.store, trust_prompt=_Prompt(TrustDecision.ACCEPT))
        await conn.connect()
        self.assertEqual(await conn.send(b"uptime\n"), 7)
        received = b""
        while len(received) < 7:
            received += await conn.read()

        channel = _FakeTransport.instances[-1].channel
        channel.close()
        self.assertEqual(await conn.read(), b"")
        self.assertEqual(conn.state, ConnectionState.DISCONNECTED)
        self.assertEqual(conn.bytes_received, 7)


class FingerprintTest(unittest.TestCase):
    def test_fingerprint_has_openssh_shape(self) -> None:
        value = fingerprint_sha256(b"abc")
        self.assertTrue(value.startswith("SHA256:"))
        self.assertNotIn("=", value)
        self.assertEqual(len(value), len("SHA256:") + 43)


if __name__ == "__main__":
    unittest.main()
