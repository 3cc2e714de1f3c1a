"""Serial transport tests with pyserial replaced by an in-memory loopback."""
from __future__ import annotations

import asyncio
import errno
import threading
import time
import unittest
from types import SimpleNamespace
from typing import List
from unittest.mock import patch

import serial

from dualterm.errors import ErrorKind, TransportError
from dualterm.models.config import SerialConfig
from dualterm.models.events import ConnectionState, ConnectionType
from dualterm.serial_transport import SerialConnection, list_serial_ports


class _LoopbackSerial:
    """Echoes everything written back to the reader."""

    instances: List["_LoopbackSerial"] = []

    def __init__(self, port=None, timeout=None, **kwargs) -> None:
        self.port = port
        self.timeout = timeout or 0.01
        self.kwargs = kwargs
        self.buffer = bytearray()
        self.closed = False
        self._lock = threading.Lock()
        _LoopbackSerial.instances.append(self)

    def write(self, data: bytes) -> int:
        with self._lock:
            self.buffer.extend(data)
        return len(data)

    def flush(self) -> None:
        pass

    @property
    def in_waiting(self) -> int:
        with self._lock:
            return len(self.buffer)

    def read(self, size: int = 1) -> bytes:
        deadline = time.monotonic() + self.timeout
        while time.monotonic() < deadline:
            if self.closed:
                raise serial.SerialException("port closed")
            with self._lock:
                if self.buffer:
                    chunk = bytes(self.buffer[:size])
                    del self.buffer[:size]
                    return chunk
            time.sleep(0.001)
        return b""

    def close(self) -> None:
        self.closed = True


class SerialConnectionTest(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        _LoopbackSerial.instances.clear()
        patcher = patch("dualterm.serial_transport.serial.Serial", _LoopbackSerial)
        patcher.start()
        self.addCleanup(patcher.stop)

    async def test_loopback_round_trip_counts_bytes(self) -> None:
        conn = SerialConnection(SerialConfig("/dev/ttyFAKE0", baud=9600, flow_control="hardware"))
        await conn.connect()
        self.assertEqual(conn.state, ConnectionState.CONNECTED)
        self.assertEqual(conn.connection_type, ConnectionType.SERIAL)
        port = _LoopbackSerial.instances[-1]
        self.assertEqual(port.port, "/dev/ttyFAKE0")
        self.assertEqual(port.kwargs["baudrate"], 9600)
        self.assertTrue(port.kwargs["rtscts"])
        self.assertFalse(port.kwargs["xonxoff"])

        self.assertEqual(await conn.send(b"ping"), 4)
        received = b""
        while len(received) < 4:
            received += await conn.read()
        self.assertEqual(received, b"ping")
        self.assertEqual(conn.bytes_sent, 4)
        self.assertEqual(conn.bytes_received, 4)

        await conn.disconnect()
        self.assertTrue(port.closed)
        self.assertEqual(conn.state, ConnectionState.DISCONNECTED)

    async def test_disconnect_is_idempotent(self) -> None:
        conn = SerialConnection(SerialConfig("/dev/ttyFAKE0"))
        await conn.disconnect()
        await conn.connect()
        await conn.disconnect()
        await conn.disconnect()
        self.assertEqual(len(_LoopbackSerial.instances), 1)
        self.assertEqual(conn.state, ConnectionState.DISCONNECTED)

    async def test_read_returns_empty_after_release(self) -> None:
        conn = SerialConnection(SerialConfig("/dev/ttyFAKE0"))
        await conn.connect()
        port = _LoopbackSerial.instances[-1]
        await conn.disconnect()
        # A reader still holding the old handle ends quietly instead of raising.
        self.assertEqual(conn._read_blocking(port, conn._read_token), b"")
        with self.assertRaises(TransportError):
            await conn.read()

    async def test_write_finishing_after_cancel_is_counted(self) -> None:
        conn = SerialConnection(SerialConfig("/dev/ttyFAKE0"))
        await conn.connect()
        port = _LoopbackSerial.instances[-1]
        gate = threading.Event()
        write = port.write

        def held_write(data: bytes) -> int:
            # Like a write held back by flow control.
            gate.wait(1.0)
            return write(data)

        port.write = held_write
        pending = asyncio.ensure_future(conn.send(b"AT\r\n"))
        await asyncio.sleep(0.02)
        pending.cancel()
        with self.assertRaises(asyncio.CancelledError):
            await pending

        gate.set()
        deadline = time.monotonic() + 1.0
        while conn.bytes_sent < 4 and time.monotonic() < deadline:
            await asyncio.sleep(0.005)
        self.assertEqual(conn.bytes_sent, 4)
        await conn.disconnect()

    async def test_send_when_not_connected_raises(self) -> None:
        conn = SerialConnection(SerialConfig("/dev/ttyFAKE0"))
        with self.assertRaises(TransportError) as ctx:
            await conn.send(b"x")
        self.assertEqual(ctx.exception.kind, ErrorKind.NOT_CONNECTED)

    async def test_open_errors_are_classified(self) -> None:
        cases = [
            (serial.SerialException(errno.ENOENT, "could not open port: No such file or directory"), ErrorKind.DEVICE_NOT_FOUND),
            (serial.SerialException(errno.EACCES, "could not open port: Permission denied"), ErrorKind.PERMISSION_DENIED),
            (serial.SerialException("something odd"), ErrorKind.IO_ERROR),
        ]
        for exc, kind in cases:
            def _raise(*_args, _exc=exc, **_kwargs):
                raise _exc

            with self.subTest(kind=kind), patch("dualterm.serial_transport.serial.Serial", _raise):
                conn = SerialConnection(SerialConfig("/dev/ttyMISSING"))
                with self.assertRaises(TransportError) as ctx:
                    await conn.connect()
                self.assertEqual(ctx.exception.kind, kind)
                self.assertEqual(conn.state, ConnectionState.DISCONNECTED)


class SerialConfigTest(unittest.TestCase):
    def test_from_params_normalises_form_values(self) -> None:
        config = SerialConfig.from_params(" COM3 ", baud="57600", parity="Even", stop_bits="1.5", flow_control="RTS/CTS")
        self.assertEqual(config.path, "COM3")
        self.assertEqual(config.baud, 57600)
        self.assertEqual(config.parity, "even")
        self.assertEqual(config.stop_bits, 1.5)
        self.assertEqual(config.flow_control, "hardware")

    def test_invalid_values_are_rejected(self) -> None:
        with self.assertRaises(ValueError):
            SerialConfig("")
        with self.assertRaises(ValueError):
            SerialConfig("/dev/ttyS0", data_bits=9)
        with self.assertRaises(ValueError):
            SerialConfig("/dev/ttyS0", baud=0)


class ListSerialPortsTest(unittest.TestCase):
    def test_ports_are_sorted_and_cleaned(self) -> None:
        fake = [
            SimpleNamespace(device="/dev/ttyUSB1", manufacturer=None, product=None, description="n/a"),
            SimpleNamespace(device="/dev/ttyACM0", manufacturer="Arduino", product="Uno", description="Uno"),
        ]
        with patch("dualterm.serial_transport.list_ports.comports", return_value=fake):
            ports = list_serial_ports()
        self.assertEqual([port.device for port in ports], ["/dev/ttyACM0", "/dev/ttyUSB1"])
        self.assertEqual(ports[0].to_dict(), {"device": "/dev/ttyACM0", "manufacturer": "Arduino", "description": "Uno"})
        self.assertEqual(ports[1].description, "")


if __name__ == "__main__":
    unittest.main()
