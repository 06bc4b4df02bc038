"""RFCOMM listener primitives and adapter preparation.

Adapter state is driven through ``bluetoothctl``; the listening socket uses
the kernel's native ``AF_BLUETOOTH``/``BTPROTO_RFCOMM`` support and is
serviced by the running asyncio loop.
"""

from __future__ import annotations

import asyncio
import logging
import re
import socket
import subprocess
from typing import Callable, Optional, Tuple

logger = logging.getLogger(__name__)

BDADDR_ANY = "00:00:00:00:00:00"
_CONTROLLER_RE = re.compile(r"^Controller\s+([0-9A-Fa-f:]{17})\b", re.MULTILINE)

Runner = Callable[..., subprocess.CompletedProcess]


class RfcommError(RuntimeError):
    """Raised when RFCOMM sockets are unavailable or cannot be bound."""


class AdapterError(RuntimeError):
    """Raised when the local Bluetooth adapter cannot be prepared."""


def _ensure_support() -> None:
    if not hasattr(socket, "AF_BLUETOOTH") or not hasattr(socket, "BTPROTO_RFCOMM"):
        raise RfcommError(
            "Python bluetooth socket support is unavailable; ensure BlueZ headers are present"
        )


def _bluetoothctl(runner: Runner, *args: str, timeout: float = 10.0) -> str:
    cmd = ["bluetoothctl", *args]
    try:
        result = runner(cmd, capture_output=True, text=True, timeout=timeout, check=False)
    except FileNotFoundError as exc:
        raise AdapterError("bluetoothctl is not installed") from exc
    except subprocess.TimeoutExpired as exc:
        raise AdapterError(f"{' '.join(cmd)} timed out") from exc
    if result.returncode != 0:
        detail = (result.stderr or result.stdout or "").strip()
        raise AdapterError(f"{' '.join(cmd)} failed: {detail or result.returncode}")
    return result.stdout or ""


def prepare_adapter(*, runner: Runner = subprocess.run) -> str:
    """Power on the default adapter, make it discoverable and return its address."""

    _bluetoothctl(runner, "power", "on")
    _bluetoothctl(runner, "discoverable", "on")
    output = _bluetoothctl(runner, "show")
    match = _CONTROLLER_RE.search(output)
    if not match:
        raise AdapterError("Could not determine the local adapter address")
    address = match.group(1).upper()
    logger.debug("Adapter %s powered and discoverable", address)
    return address


class RfcommConnection:
    """An accepted RFCOMM stream serviced by the running event loop."""

    def __init__(self, sock: socket.socket) -> None:
        sock.setblocking(False)
        self._sock = sock

    async def recv(self, size: int) -> bytes:
        loop = asyncio.get_running_loop()
        return await loop.sock_recv(self._sock, size)

    async def sendall(self, data: bytes) -> None:
        loop = asyncio.get_running_loop()
        await loop.sock_sendall(self._sock, data)

    def close(self) -> None:
        try:
            self._sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            logger.debug("RFCOMM shutdown failed", exc_info=True)
        try:
            self._sock.close()
        except OSError:
            logger.debug("RFCOMM close failed", exc_info=True)


class RfcommListener:
    """Non-blocking RFCOMM server socket with an awaitable ``accept``."""

    def __init__(self, sock: socket.socket) -> None:
        self._sock = sock

    @classmethod
    def bind(
        cls, channel: int, address: str = BDADDR_ANY, *, backlog: int = 1
    ) -> "RfcommListener":
        _ensure_support()
        try:
            sock = socket.socket(
                socket.AF_BLUETOOTH, socket.SOCK_STREAM, socket.BTPROTO_RFCOMM
            )
        except OSError as exc:
            raise RfcommError(f"Failed to allocate RFCOMM socket: {exc}") from exc
        try:
            sock.bind((address, channel))
            sock.listen(backlog)
            sock.setblocking(False)
        except OSError as exc:
            sock.close()
            raise RfcommError(
                f"Failed to listen on {address} channel {channel}: {exc}"
            ) from exc
        return cls(sock)

    @property
    def local_address(self) -> Tuple[str, int]:
        address, channel = self._sock.getsockname()
        return address, channel

    async def accept(self) -> Tuple[RfcommConnection, str]:
        loop = asyncio.get_running_loop()
        sock, peer = await loop.sock_accept(self._sock)
        return RfcommConnection(sock), peer[0]

    def close(self) -> None:
        try:
            self._sock.close()
        except OSError:
            logger.debug("Failed to close RFCOMM listener", exc_info=True)


def open_listener(
    channel: int,
    *,
    manage_adapter: bool = True,
    runner: Optional[Runner] = None,
) -> RfcommListener:
    """Prepare the adapter (optionally) and bind a listener on *channel*."""

    address = BDADDR_ANY
    if manage_adapter:
        address = prepare_adapter(runner=runner or subprocess.run)
    return RfcommListener.bind(channel, address)
