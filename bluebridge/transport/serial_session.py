"""Serial session handler for devices already bound to an RFCOMM channel."""

from __future__ import annotations

import errno
import logging
import threading
from typing import Callable, Optional

import serial

from ..protocol import BUFFER_SIZE, GREETING, SessionEnd, is_end_of_stream
from ..settings import DEFAULT_BAUDRATE

SerialOpener = Callable[[str, int], serial.Serial]

_LOGGER = logging.getLogger(__name__)


def _is_hangup(exc: BaseException) -> bool:
    """True if *exc* is how pyserial reports the far end of the tty going away."""

    if "returned no data" in str(exc):
        return True
    for err in (exc, exc.__context__, exc.__cause__):
        if isinstance(err, OSError) and err.errno == errno.EIO:
            return True
    return False


def _open_port(path: str, baudrate: int) -> serial.Serial:
    # timeout=None: reads block until at least one byte (or a disconnect) arrives.
    return serial.Serial(path, baudrate, timeout=None)


class SerialSession:
    """Greets the device once, then echoes every chunk it sends until EOF or error."""

    def __init__(
        self,
        path: str,
        *,
        baudrate: int = DEFAULT_BAUDRATE,
        buffer_size: int = BUFFER_SIZE,
        opener: Optional[SerialOpener] = None,
    ) -> None:
        self.path = path
        self.baudrate = baudrate
        self.buffer_size = buffer_size
        self._opener = opener or _open_port
        self.bytes_echoed = 0

    def run(self) -> SessionEnd:
        try:
            ser = self._opener(self.path, self.baudrate)
        except (serial.SerialException, OSError) as exc:
            _LOGGER.error("Failed to open serial device %s: %s", self.path, exc)
            return SessionEnd.OPEN_FAILED
        try:
            self._send_greeting(ser)
            return self._echo_loop(ser)
        finally:
            try:
                ser.close()
            except Exception:
                _LOGGER.debug("Failed to close %s", self.path, exc_info=True)

    def _send_greeting(self, ser: serial.Serial) -> None:
        # Best effort: the read loop still runs if the greeting cannot be sent.
        try:
            ser.write(GREETING)
            ser.flush()
        except (serial.SerialException, OSError) as exc:
            _LOGGER.error("Failed to write greeting to %s: %s", self.path, exc)

    def _read_chunk(self, ser: serial.Serial) -> bytes:
        waiting = ser.in_waiting
        return ser.read(min(max(waiting, 1), self.buffer_size))

    def _echo_loop(self, ser: serial.Serial) -> SessionEnd:
        while True:
            try:
                data = self._read_chunk(ser)
            except (serial.SerialException, OSError) as exc:
                if _is_hangup(exc):
                    _LOGGER.info("Serial device closed (EOF)")
                    return SessionEnd.END_OF_STREAM
                _LOGGER.error("Serial read error on %s: %s", self.path, exc)
                return SessionEnd.READ_ERROR
            if is_end_of_stream(data):
                _LOGGER.info("Serial device closed (EOF)")
                return SessionEnd.END_OF_STREAM
            _LOGGER.info("Read %d bytes from serial device", len(data))
            try:
                ser.write(data)
                ser.flush()
            except (serial.SerialException, OSError) as exc:
                _LOGGER.error("Failed to write to serial device %s: %s", self.path, exc)
                return SessionEnd.WRITE_ERROR
            self.bytes_echoed += len(data)


class SerialSessionWorker:
    """Runs a :class:`SerialSession` on its own thread so blocking I/O stays off the caller."""

    def __init__(self, session: SerialSession) -> None:
        self.session = session
        self.result: Optional[SessionEnd] = None
        self.error: Optional[BaseException] = None
        self._thread: Optional[threading.Thread] = None

    @property
    def is_running(self) -> bool:
        return bool(self._thread and self._thread.is_alive())

    def start(self) -> None:
        if self.is_running:
            return
        self._thread = threading.Thread(
            target=self._run,
            name=f"SerialSession[{self.session.path}]",
            daemon=True,
        )
        self._thread.start()

    def wait(self, timeout: Optional[float] = None) -> Optional[SessionEnd]:
        thread = self._thread
        if thread:
            thread.join(timeout)
        return self.result

    def _run(self) -> None:
        try:
            self.result = self.session.run()
        except Exception as exc:
            _LOGGER.exception("Serial session worker crashed")
            self.error = exc


def run_serial_mode(path: str, **kwargs) -> SerialSessionWorker:
    """Serve *path* on a worker thread and block until the session ends."""

    worker = SerialSessionWorker(SerialSession(path, **kwargs))
    worker.start()
    worker.wait()
    return worker
