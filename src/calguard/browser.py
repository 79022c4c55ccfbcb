"""Best-effort launching of the user's default browser.

Each platform gets its own launcher.  The URL is always passed to the opener
as a single argv element (never through a shell), so characters such as
``'`` or ``&`` in the URL cannot break out of the command.
"""

from __future__ import annotations

import asyncio
import logging
import os
import sys
from typing import Protocol

logger = logging.getLogger(__name__)


class BrowserLauncher(Protocol):
    """Opens a URL in a browser; returns False instead of raising on failure."""

    async def open(self, url: str) -> bool: ...


class CommandBrowserLauncher:
    """Launch a browser by running ``<command...> <url>`` without a shell."""

    def __init__(self, *command: str) -> None:
        if not command:
            raise ValueError("command must not be empty")
        self._command = command

    @property
    def command(self) -> tuple[str, ...]:
        return self._command

    async def open(self, url: str) -> bool:
        try:
            proc = await asyncio.create_subprocess_exec(
                *self._command,
                url,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
            )
            # Only the opener itself is awaited; a browser it spawns keeps running.
            returncode = await proc.wait()
        except OSError as exc:
            logger.warning("Could not run browser opener %s: %s", self._command[0], exc)
            return False

        if returncode != 0:
            logger.warning("Browser opener %s exited with code %s", self._command[0], returncode)
            return False
        return True


class MacOSBrowserLauncher(CommandBrowserLauncher):
    def __init__(self) -> None:
        super().__init__("open")


class LinuxBrowserLauncher(CommandBrowserLauncher):
    def __init__(self) -> None:
        super().__init__("xdg-open")


class WindowsBrowserLauncher:
    """Hand the URL to the shell's registered URL handler via ``os.startfile``."""

    async def open(self, url: str) -> bool:
        startfile = getattr(os, "startfile", None)
        if startfile is None:
            logger.warning("os.startfile is unavailable on this platform")
            return False
        try:
            await asyncio.to_thread(startfile, url)
        except OSError as exc:
            logger.warning("Could not open browser: %s", exc)
            return False
        return True


def default_browser_launcher(platform: str | None = None) -> BrowserLauncher:
    """Return the launcher for *platform* (defaults to ``sys.platform``)."""
    platform = sys.platform if platform is None else platform
    if platform == "darwin":
        return MacOSBrowserLauncher()
    if platform == "win32":
        return WindowsBrowserLauncher()
    return LinuxBrowserLauncher()
