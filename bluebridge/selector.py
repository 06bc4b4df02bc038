"""Startup transport selection.

The first positional argument and one filesystem existence check decide
whether the bridge talks to an already-bound serial device or listens for
an RFCOMM connection itself:

* ``dev:<path>``  -> serial device ``<path>``
* ``/<path>``     -> serial device ``/<path>``
* default device present -> serial device at the default path
* any other token -> RFCOMM listener that only admits that address
* nothing usable  -> ``None`` (caller prints usage and exits cleanly)
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Callable, Optional, Sequence, Union

from .protocol import looks_like_address, normalize_address
from .settings import DEFAULT_SERIAL_DEVICE

logger = logging.getLogger(__name__)

DEVICE_PREFIX = "dev:"

ExistsCheck = Callable[[str], bool]


@dataclass(frozen=True)
class SerialMode:
    path: str


@dataclass(frozen=True)
class ListenerMode:
    allowed_address: str


Mode = Union[SerialMode, ListenerMode]


@dataclass(frozen=True)
class StartupConfig:
    explicit_device_path: Optional[str]
    resolved_mode: Optional[Mode]


def explicit_device(arg: Optional[str]) -> Optional[str]:
    """Return the serial path named by *arg*, if it names one."""

    if not arg:
        return None
    if arg.startswith(DEVICE_PREFIX):
        return arg[len(DEVICE_PREFIX):]
    if arg.startswith("/"):
        return arg
    return None


def resolve_mode(
    arg: Optional[str],
    *,
    default_device: str = DEFAULT_SERIAL_DEVICE,
    exists: ExistsCheck = os.path.exists,
) -> Optional[Mode]:
    device = explicit_device(arg)
    if device is not None:
        return SerialMode(device)
    if exists(default_device):
        return SerialMode(default_device)
    address = normalize_address(arg or "")
    if not address:
        return None
    return ListenerMode(address)


def build_startup_config(
    argv: Sequence[str],
    *,
    default_device: str = DEFAULT_SERIAL_DEVICE,
    exists: ExistsCheck = os.path.exists,
) -> StartupConfig:
    """Build the immutable startup configuration from ``argv[1:]``-style input."""

    arg = argv[0] if argv else None
    mode = resolve_mode(arg, default_device=default_device, exists=exists)
    if isinstance(mode, ListenerMode) and not looks_like_address(mode.allowed_address):
        logger.warning(
            "%r does not look like a Bluetooth address; no peer will match it",
            mode.allowed_address,
        )
    return StartupConfig(explicit_device_path=explicit_device(arg), resolved_mode=mode)
