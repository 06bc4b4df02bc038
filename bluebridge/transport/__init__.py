"""Transport layer for bluebridge: serial device sessions and RFCOMM primitives."""

from .rfcomm import (
    AdapterError,
    RfcommConnection,
    RfcommError,
    RfcommListener,
    open_listener,
    prepare_adapter,
)
from .serial_session import SerialSession, SerialSessionWorker, run_serial_mode

__all__ = [
    "AdapterError",
    "RfcommConnection",
    "RfcommError",
    "RfcommListener",
    "SerialSession",
    "SerialSessionWorker",
    "open_listener",
    "prepare_adapter",
    "run_serial_mode",
]
