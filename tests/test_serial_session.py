import errno
import os
import select
import threading
import time
import unittest
from typing import List, Optional, Sequence, Union
from unittest import mock

import serial

import bluebridge.transport.serial_session as serial_session
from bluebridge.protocol import GREETING, SessionEnd

ReadItem = Union[bytes, BaseException]


class FakePort:
    """Scripted stand-in for ``serial.Serial``.

    Each scripted item is what the peer has written since the previous read;
    reads larger than the requested size are split the way a tty would.
    """

    def __init__(
        self,
        reads: Sequence[ReadItem] = (),
        *,
        write_errors: Sequence[int] = (),
    ) -> None:
        self.reads: List[ReadItem] = list(reads)
        self.writes: List[bytes] = []
        self.write_errors = set(write_errors)
        self.read_sizes: List[int] = []
        self.closed = False
        self._write_calls = 0

    @property
    def in_waiting(self) -> int:
        if self.reads and isinstance(self.reads[0], bytes):
            return len(self.reads[0])
        return 0

    def read(self, size: int = 1) -> bytes:
        self.read_sizes.append(size)
        if not self.reads:
            return b""
        item = self.reads.pop(0)
        if isinstance(item, BaseException):
            raise item
        if len(item) > size:
            self.reads.insert(0, item[size:])
            item = item[:size]
        return item

    def write(self, data: bytes) -> int:
        index = self._write_calls
        self._write_calls += 1
        if index in self.write_errors:
            raise serial.SerialTimeoutException("Write timeout")
        self.writes.append(bytes(data))
        return len(data)

    def flush(self) -> None:
        pass

    def close(self) -> None:
        self.closed = True


def opener_for(port: FakePort, calls: Optional[list] = None):
    def opener(path: str, baudrate: int) -> FakePort:
        if calls is not None:
            calls.append((path, baudrate, threading.current_thread().name))
        return port

    return opener


class SerialSessionTests(unittest.TestCase):
    def test_open_failure_is_reported(self) -> None:
        def opener(path: str, baudrate: int):
            raise serial.SerialException(f"could not open port {path}")

        session = serial_session.SerialSession("/dev/rfcomm9", opener=opener)
        with self.assertLogs("bluebridge.transport.serial_session", level="ERROR"):
            self.assertIs(session.run(), SessionEnd.OPEN_FAILED)

    def test_missing_device_fails_to_open(self) -> None:
        session = serial_session.SerialSession("/nonexistent/bluebridge-rfcomm")
        with self.assertLogs("bluebridge.transport.serial_session", level="ERROR"):
            self.assertIs(session.run(), SessionEnd.OPEN_FAILED)

    @mock.patch("bluebridge.transport.serial_session.serial.Serial")
    def test_default_opener_blocks_on_reads(self, mock_serial) -> None:
        mock_serial.return_value = FakePort()
        session = serial_session.SerialSession("/dev/rfcomm0", baudrate=9600)
        self.assertIs(session.run(), SessionEnd.END_OF_STREAM)
        mock_serial.assert_called_once_with("/dev/rfcomm0", 9600, timeout=None)

    def test_greets_then_echoes_until_eof(self) -> None:
        port = FakePort([b"hello"])
        session = serial_session.SerialSession("/dev/rfcomm0", opener=opener_for(port))
        with self.assertLogs("bluebridge.transport.serial_session", level="INFO") as logs:
            result = session.run()
        self.assertIs(result, SessionEnd.END_OF_STREAM)
        self.assertEqual(port.writes, [GREETING, b"hello"])
        self.assertTrue(port.closed)
        self.assertTrue(any("EOF" in line for line in logs.output))

    def test_single_byte_echo(self) -> None:
        port = FakePort([b"x"])
        session = serial_session.SerialSession("/dev/rfcomm0", opener=opener_for(port))
        session.run()
        self.assertEqual(port.writes, [GREETING, b"x"])
        self.assertEqual(session.bytes_echoed, 1)

    def test_large_transfer_echoed_per_chunk(self) -> None:
        payload = bytes(range(256)) * 10  # 2560 bytes
        port = FakePort([payload])
        session = serial_session.SerialSession("/dev/rfcomm0", opener=opener_for(port))
        self.assertIs(session.run(), SessionEnd.END_OF_STREAM)
        chunks = port.writes[1:]
        self.assertEqual([len(c) for c in chunks], [1024, 1024, 512])
        self.assertEqual(b"".join(chunks), payload)
        self.assertTrue(all(size <= 1024 for size in port.read_sizes))

    def test_greeting_failure_still_runs_echo_loop(self) -> None:
        port = FakePort([b"abc"], write_errors=[0])
        session = serial_session.SerialSession("/dev/rfcomm0", opener=opener_for(port))
        with self.assertLogs("bluebridge.transport.serial_session", level="ERROR"):
            result = session.run()
        self.assertIs(result, SessionEnd.END_OF_STREAM)
        self.assertEqual(port.writes, [b"abc"])

    def test_echo_write_failure_ends_loop(self) -> None:
        port = FakePort([b"one", b"two"], write_errors=[1])
        session = serial_session.SerialSession("/dev/rfcomm0", opener=opener_for(port))
        with self.assertLogs("bluebridge.transport.serial_session", level="ERROR"):
            result = session.run()
        self.assertIs(result, SessionEnd.WRITE_ERROR)
        self.assertEqual(port.writes, [GREETING])
        self.assertEqual(port.reads, [b"two"])
        self.assertTrue(port.closed)

    def test_read_error_ends_loop(self) -> None:
        port = FakePort([b"ok", serial.SerialException("device disconnected")])
        session = serial_session.SerialSession("/dev/rfcomm0", opener=opener_for(port))
        with self.assertLogs("bluebridge.transport.serial_session", level="ERROR"):
            result = session.run()
        self.assertIs(result, SessionEnd.READ_ERROR)
        self.assertEqual(port.writes, [GREETING, b"ok"])
        self.assertTrue(port.closed)

    def test_no_data_disconnect_is_end_of_stream(self) -> None:
        hangup = serial.SerialException(
            "device reports readiness to read but returned no data "
            "(device disconnected or multiple access on port?)"
        )
        port = FakePort([b"ok", hangup])
        session = serial_session.SerialSession("/dev/rfcomm0", opener=opener_for(port))
        self.assertIs(session.run(), SessionEnd.END_OF_STREAM)
        self.assertEqual(port.writes, [GREETING, b"ok"])

    def test_eio_is_end_of_stream(self) -> None:
        try:
            try:
                raise OSError(errno.EIO, "Input/output error")
            except OSError as exc:
                raise serial.SerialException(f"read failed: {exc}")
        except serial.SerialException as wrapped:
            hangup = wrapped
        port = FakePort([hangup])
        session = serial_session.SerialSession("/dev/rfcomm0", opener=opener_for(port))
        self.assertIs(session.run(), SessionEnd.END_OF_STREAM)

    def test_other_os_errors_stay_read_errors(self) -> None:
        port = FakePort([OSError(errno.EBADF, "Bad file descriptor")])
        session = serial_session.SerialSession("/dev/rfcomm0", opener=opener_for(port))
        with self.assertLogs("bluebridge.transport.serial_session", level="ERROR"):
            self.assertIs(session.run(), SessionEnd.READ_ERROR)


class SerialSessionWorkerTests(unittest.TestCase):
    def test_runs_session_on_dedicated_thread(self) -> None:
        calls: list = []
        port = FakePort([b"ping"])
        worker = serial_session.run_serial_mode(
            "/dev/rfcomm0", baudrate=57600, opener=opener_for(port, calls)
        )
        self.assertIs(worker.result, SessionEnd.END_OF_STREAM)
        self.assertIsNone(worker.error)
        self.assertFalse(worker.is_running)
        (path, baudrate, thread_name), = calls
        self.assertEqual((path, baudrate), ("/dev/rfcomm0", 57600))
        self.assertEqual(thread_name, "SerialSession[/dev/rfcomm0]")
        self.assertNotEqual(thread_name, threading.current_thread().name)

    def test_worker_records_crash(self) -> None:
        session = mock.Mock(spec=serial_session.SerialSession)
        session.path = "/dev/rfcomm0"
        session.run.side_effect = RuntimeError("boom")
        worker = serial_session.SerialSessionWorker(session)
        with self.assertLogs("bluebridge.transport.serial_session", level="ERROR"):
            worker.start()
            self.assertIsNone(worker.wait(timeout=2.0))
        self.assertIsInstance(worker.error, RuntimeError)


def _read_exactly(fd: int, size: int, timeout: float = 5.0) -> bytes:
    received = b""
    deadline = time.time() + timeout
    while len(received) < size and time.time() < deadline:
        ready, _, _ = select.select([fd], [], [], 0.1)
        if ready:
            received += os.read(fd, size - len(received))
    return received


@unittest.skipUnless(hasattr(os, "openpty"), "requires pseudo-terminals")
class SerialSessionPtyTests(unittest.TestCase):
    def test_hangup_on_real_tty_ends_normally(self) -> None:
        master, slave = os.openpty()
        try:
            worker = serial_session.SerialSessionWorker(
                serial_session.SerialSession(os.ttyname(slave))
            )
            worker.start()
            self.assertEqual(_read_exactly(master, len(GREETING)), GREETING)
            os.write(master, b"hello")
            self.assertEqual(_read_exactly(master, 5), b"hello")
        finally:
            os.close(master)
        try:
            self.assertIs(worker.wait(timeout=5.0), SessionEnd.END_OF_STREAM)
            self.assertFalse(worker.is_running)
            self.assertIsNone(worker.error)
        finally:
            os.close(slave)


if __name__ == "__main__":  # pragma: no cover
    unittest.main()
