"""bluebridge package: a single-peer Bluetooth serial echo bridge."""

from __future__ import annotations

__all__ = ["main"]


def main() -> None:
    """Launch the bluebridge command line entry point."""

    from .app import main as _app_main

    _app_main()
