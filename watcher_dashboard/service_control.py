"""Start/stop the watcher LaunchAgent through ``launchctl``."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Sequence

__all__ = ["SERVICE_ACTIONS", "ServiceControlError", "ServiceController", "run_launchctl"]

SERVICE_ACTIONS = ("start", "stop", "restart")
_PAST_TENSE = {"start": "started", "stop": "stopped", "restart": "restarted"}


class ServiceControlError(Exception):
    """Raised when a launchctl invocation fails."""

    def __init__(self, message: str, *, returncode: int | None = None) -> None:
        super().__init__(message)
        self.returncode = returncode


async def run_launchctl(launchctl: str, args: Sequence[str]) -> tuple[int, str, str]:
    cmd = [launchctl, *args]
    try:
        proc = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError:
        return 127, "", f"{launchctl} not found"
    except OSError as exc:
        return 1, "", str(exc)

    stdout_raw, stderr_raw = await proc.communicate()
    stdout = stdout_raw.decode("utf-8", errors="replace")
    stderr = stderr_raw.decode("utf-8", errors="replace")
    return proc.returncode, stdout, stderr


class ServiceController:
    """Loads and unloads the watcher's launchd plist."""

    def __init__(
        self,
        plist_path: Path,
        *,
        launchctl: str = "/bin/launchctl",
        logger: logging.Logger | None = None,
    ) -> None:
        self.plist_path = Path(plist_path)
        self.launchctl = launchctl
        self._logger = logger or logging.getLogger("watcher_dashboard.service")

    async def perform(self, action: str) -> str:
        """Run ``action`` and return a short status message."""
        if action not in SERVICE_ACTIONS:
            raise ValueError(f"Unsupported action: {action!r}")

        if action in {"start", "restart"}:
            code, _stdout, stderr = await self._launchctl("unload")
            if code != 0:
                # Not loaded yet; load below still applies.
                self._logger.debug("launchctl unload before %s failed: %s", action, stderr.strip())
            await self._checked("load")
        else:
            await self._checked("unload")

        self._logger.info("watcher service %s via %s", action, self.plist_path)
        return f"Service {_PAST_TENSE[action]}"

    async def _launchctl(self, verb: str) -> tuple[int, str, str]:
        return await run_launchctl(self.launchctl, [verb, str(self.plist_path)])

    async def _checked(self, verb: str) -> None:
        code, stdout, stderr = await self._launchctl(verb)
        if code != 0:
            message = stderr.strip() or stdout.strip() or f"launchctl exited with {code}"
            raise ServiceControlError(message, returncode=code)
