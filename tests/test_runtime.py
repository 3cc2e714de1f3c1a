"""The background runtime drives actors for a synchronous caller."""
from __future__ import annotations

import time
import unittest

from dualterm.models.config import SerialConfig
from dualterm.models.events import Closed, ConnectionState, Data, Send, StateChanged
from dualterm.runtime import ConnectionRuntime
from tests.test_actor import LoopbackConnection


def _wait_for(runtime: ConnectionRuntime, seen: list, predicate, timeout: float = 2.0) -> None:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        runtime.bridge.tick(lambda name, event: seen.append(event))
        if predicate(seen):
            return
        time.sleep(0.01)
    raise AssertionError(f"condition not reached; events so far: {seen}")


class ConnectionRuntimeTest(unittest.TestCase):
    def test_synchronous_caller_drives_a_session(self) -> None:
        runtime = ConnectionRuntime(connection_factory=LoopbackConnection)
        try:
            actor = runtime.open(SerialConfig("/dev/ttyLOOP0"))
            seen: list = []
            _wait_for(runtime, seen, lambda evs: StateChanged(ConnectionState.CONNECTED) in evs)

            runtime.submit(actor, Send(b"hello"))
            _wait_for(runtime, seen, lambda evs: Data(b"hello") in evs)
            self.assertEqual(actor.bytes_sent, 5)

            runtime.close(actor)
            _wait_for(runtime, seen, lambda evs: Closed() in evs)
            self.assertEqual(runtime.actors, {})
        finally:
            runtime.shutdown()
        self.assertFalse(runtime.running)

    def test_shutdown_closes_open_actors(self) -> None:
        with ConnectionRuntime(connection_factory=LoopbackConnection) as runtime:
            actor = runtime.open(SerialConfig("/dev/ttyLOOP0"))
            _wait_for(runtime, [], lambda evs: StateChanged(ConnectionState.CONNECTED) in evs)
        self.assertTrue(actor.finished)
        self.assertEqual(actor.state, ConnectionState.DISCONNECTED)


if __name__ == "__main__":
    unittest.main()
