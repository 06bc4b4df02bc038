"""Process entry point: pick a transport and serve a single session."""

from __future__ import annotations

import asyncio
import logging
import sys
from typing import Optional, Sequence

from .config import BridgeConfig, load_config
from .listener import ListenerOutcome, ListenerSessionManager
from .protocol import SessionEnd
from .selector import ListenerMode, SerialMode, build_startup_config
from .settings import configure_logging
from .transport import AdapterError, RfcommError, open_listener, run_serial_mode

logger = logging.getLogger(__name__)

USAGE_LINES = (
    "No serial device found and no allowed Bluetooth address provided.",
    "Usage examples:",
    "  bluebridge dev:/dev/rfcomm0        # explicit serial device",
    "  bluebridge AA:BB:CC:DD:EE:FF       # RFCOMM listener mode",
)


def _print_usage() -> None:
    for line in USAGE_LINES:
        logger.error(line)


def _serve_serial(mode: SerialMode, config: BridgeConfig) -> None:
    logger.info("Operating in serial mode using device: %s", mode.path)
    worker = run_serial_mode(mode.path, baudrate=config.baudrate)
    if worker.error is not None:
        logger.error("Serial session worker failed: %s", worker.error)
    elif worker.result is SessionEnd.OPEN_FAILED:
        logger.error("Serial session could not start on %s", mode.path)
    elif worker.result is SessionEnd.END_OF_STREAM:
        logger.info("Serial session finished normally.")
    else:
        logger.warning("Serial session ended: %s", worker.result.value)


async def _serve_listener(mode: ListenerMode, config: BridgeConfig) -> Optional[ListenerOutcome]:
    listener = open_listener(config.channel, manage_adapter=config.manage_adapter)
    try:
        address, channel = listener.local_address
        logger.info("Listening on %s channel %d. Press enter to quit.", address, channel)
        manager = ListenerSessionManager(listener, mode.allowed_address)
        return await manager.run()
    finally:
        listener.close()


def run(argv: Sequence[str], *, config: Optional[BridgeConfig] = None) -> int:
    """Resolve the transport from *argv* and serve one session. Always returns 0."""

    cfg = config or load_config()
    startup = build_startup_config(argv, default_device=cfg.default_device)
    mode = startup.resolved_mode

    if mode is None:
        _print_usage()
        return 0

    if isinstance(mode, SerialMode):
        _serve_serial(mode, cfg)
        return 0

    try:
        outcome = asyncio.run(_serve_listener(mode, cfg))
    except (AdapterError, RfcommError, OSError) as exc:
        logger.error("Listener setup failed: %s", exc)
        return 0
    if outcome is ListenerOutcome.CANCELLED:
        logger.info("Listener stopped by operator.")
    return 0


def main() -> None:
    """Launch the bridge from the command line."""

    configure_logging()
    cfg = load_config()
    configure_logging(level=cfg.level, force=True)
    sys.exit(run(sys.argv[1:], config=cfg))


if __name__ == "__main__":
    main()
