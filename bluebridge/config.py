"""Configuration helpers for bluebridge."""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, asdict
from pathlib import Path
from typing import Any

from .settings import (
    CONFIG_FILE,
    DEFAULT_BAUDRATE,
    DEFAULT_CHANNEL,
    DEFAULT_SERIAL_DEVICE,
)

logger = logging.getLogger(__name__)

MIN_CHANNEL = 1
MAX_CHANNEL = 30


def _coerce_int(value: Any, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _coerce_channel(value: Any, default: int) -> int:
    if value is None:
        return default
    channel = _coerce_int(value, default)
    if not MIN_CHANNEL <= channel <= MAX_CHANNEL:
        logger.error(
            "RFCOMM channel %r out of range %d-%d; using %d",
            value,
            MIN_CHANNEL,
            MAX_CHANNEL,
            default,
        )
        return default
    return channel


def _coerce_level(value: Any, default: str) -> str:
    name = str(value).strip().upper()
    if isinstance(getattr(logging, name, None), int):
        return name
    logger.error("Unknown log level %r; using %s", value, default)
    return default


@dataclass(frozen=True)
class BridgeConfig:
    default_device: str = DEFAULT_SERIAL_DEVICE
    channel: int = DEFAULT_CHANNEL
    baudrate: int = DEFAULT_BAUDRATE
    manage_adapter: bool = True
    log_level: str = "INFO"

    @property
    def level(self) -> int:
        return getattr(logging, self.log_level, logging.INFO)


def load_config(path: str | Path = CONFIG_FILE) -> BridgeConfig:
    """Load configuration data from *path* or return defaults on failure."""

    defaults = BridgeConfig()
    cfg_path = Path(path)
    if not cfg_path.exists():
        return defaults

    try:
        raw = json.loads(cfg_path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        logger.error("Config file %s contains invalid JSON: %s", cfg_path, exc)
        return defaults
    except OSError as exc:
        logger.error("Could not read config file %s: %s", cfg_path, exc)
        return defaults

    if not isinstance(raw, dict):
        logger.error("Config file %s did not contain an object", cfg_path)
        return defaults

    data = asdict(defaults)
    device = str(raw.get("default_device", data["default_device"])).strip()
    data["default_device"] = device or defaults.default_device
    data["channel"] = _coerce_channel(raw.get("channel"), defaults.channel)
    data["baudrate"] = max(1, _coerce_int(raw.get("baudrate"), defaults.baudrate))
    data["manage_adapter"] = bool(raw.get("manage_adapter", data["manage_adapter"]))
    if "log_level" in raw:
        data["log_level"] = _coerce_level(raw["log_level"], defaults.log_level)

    return BridgeConfig(**data)
