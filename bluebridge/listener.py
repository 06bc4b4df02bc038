"""Listener session manager for the RFCOMM transport.

Accepts connections until the single allowed peer connects, rejecting any
other address without stopping the listener. The authorized peer is greeted
and echoed until its stream ends, after which the manager stops for good.
While idle, a line of operator input ends the accept wait.
"""

from __future__ import annotations

import asyncio
import contextlib
import enum
import logging
import sys
import threading
from typing import Awaitable, Callable, Optional, Protocol, TextIO, Tuple

from .protocol import (
    BUFFER_SIZE,
    GREETING,
    REJECTION,
    SessionEnd,
    addresses_match,
    is_end_of_stream,
    normalize_address,
)

logger = logging.getLogger(__name__)

CancelSignal = Callable[[], Awaitable[object]]


class Connection(Protocol):
    async def recv(self, size: int) -> bytes: ...

    async def sendall(self, data: bytes) -> None: ...

    def close(self) -> None: ...


class Listener(Protocol):
    async def accept(self) -> Tuple[Connection, str]: ...


class ListenerState(enum.Enum):
    IDLE = "idle"
    ACCEPTING = "accepting"
    AUTHORIZING = "authorizing"
    ECHOING = "echoing"
    TERMINATED = "terminated"


class ListenerOutcome(enum.Enum):
    CANCELLED = "cancelled"
    SERVED = "served"


async def wait_for_operator_line(stream: Optional[TextIO] = None) -> str:
    """Resolve once a line (or end-of-file) is read from *stream* (stdin by default).

    The read happens on a daemon thread so a pending wait never holds the
    process open after the listener has finished.
    """

    loop = asyncio.get_running_loop()
    future: asyncio.Future[str] = loop.create_future()
    source = stream or sys.stdin

    def resolve(line: str) -> None:
        if not future.done():
            future.set_result(line)

    def reader() -> None:
        try:
            line = source.readline()
        except (OSError, ValueError):
            logger.debug("Operator input unavailable", exc_info=True)
            line = ""
        try:
            loop.call_soon_threadsafe(resolve, line)
        except RuntimeError:
            # Loop already closed; nobody is waiting any more.
            pass

    threading.Thread(target=reader, name="OperatorInput", daemon=True).start()
    return await future


class ListenerSessionManager:
    """Serve exactly one authorized peer, or stop early on operator cancellation."""

    def __init__(
        self,
        listener: Listener,
        allowed_address: str,
        *,
        cancel_signal: CancelSignal = wait_for_operator_line,
        buffer_size: int = BUFFER_SIZE,
    ) -> None:
        self.listener = listener
        self.allowed_address = normalize_address(allowed_address)
        self.buffer_size = buffer_size
        self.state = ListenerState.IDLE
        self.session_end: Optional[SessionEnd] = None
        self.rejected: list[str] = []
        self._cancel_signal = cancel_signal

    async def run(self) -> ListenerOutcome:
        cancel_task = asyncio.ensure_future(self._cancel_signal())
        try:
            while True:
                self.state = ListenerState.IDLE
                logger.info("Waiting for connection...")
                accepted = await self._accept_or_cancel(cancel_task)
                if accepted is None:
                    if cancel_task.done():
                        if not cancel_task.cancelled() and cancel_task.exception():
                            logger.warning(
                                "Operator input failed: %s", cancel_task.exception()
                            )
                        logger.info("Operator requested shutdown")
                        self.state = ListenerState.TERMINATED
                        return ListenerOutcome.CANCELLED
                    continue

                conn, peer = accepted
                self.state = ListenerState.AUTHORIZING
                if not await self._authorize(conn, peer):
                    continue

                logger.info("Accepted connection from %s", peer)
                self.session_end = await self._serve(conn)
                if self.session_end is SessionEnd.GREETING_FAILED:
                    continue

                logger.info("Authorized device disconnected; exiting.")
                self.state = ListenerState.TERMINATED
                return ListenerOutcome.SERVED
        finally:
            if not cancel_task.done():
                cancel_task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await cancel_task

    async def _accept_or_cancel(
        self, cancel_task: "asyncio.Future[object]"
    ) -> Optional[Tuple[Connection, str]]:
        self.state = ListenerState.ACCEPTING
        accept_task = asyncio.ensure_future(self.listener.accept())
        await asyncio.wait(
            {accept_task, cancel_task}, return_when=asyncio.FIRST_COMPLETED
        )
        if cancel_task.done():
            if accept_task.done():
                if not accept_task.cancelled() and accept_task.exception() is None:
                    accept_task.result()[0].close()
            else:
                accept_task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await accept_task
            return None
        try:
            conn, peer = accept_task.result()
        except OSError as exc:
            logger.warning("Accepting connection failed: %s", exc)
            return None
        return conn, normalize_address(peer)

    async def _authorize(self, conn: Connection, peer: str) -> bool:
        if addresses_match(peer, self.allowed_address):
            return True
        logger.info("Rejected connection from %s (not allowed)", peer)
        self.rejected.append(peer)
        try:
            await conn.sendall(REJECTION)
        except OSError:
            logger.debug("Failed to send rejection to %s", peer, exc_info=True)
        conn.close()
        return False

    async def _serve(self, conn: Connection) -> SessionEnd:
        try:
            logger.info("Sending hello")
            try:
                await conn.sendall(GREETING)
            except OSError as exc:
                logger.warning("Write failed: %s", exc)
                return SessionEnd.GREETING_FAILED
            self.state = ListenerState.ECHOING
            return await self._echo_loop(conn)
        finally:
            conn.close()

    async def _echo_loop(self, conn: Connection) -> SessionEnd:
        while True:
            try:
                data = await conn.recv(self.buffer_size)
            except OSError as exc:
                logger.warning("Read failed: %s", exc)
                return SessionEnd.READ_ERROR
            if is_end_of_stream(data):
                logger.info("Stream ended")
                return SessionEnd.END_OF_STREAM
            logger.info("Echoing %d bytes", len(data))
            try:
                await conn.sendall(data)
            except OSError as exc:
                # Write failures do not end the session; only reads do.
                logger.warning("Write failed: %s", exc)
