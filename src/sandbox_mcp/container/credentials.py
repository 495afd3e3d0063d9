"""Host credential lookup forwarded into sandbox containers."""

from __future__ import annotations

import asyncio
import logging
import shutil

logger = logging.getLogger(__name__)


async def host_token(executable: str = "gh") -> str | None:
    """Return the host's ``gh auth token`` output, or ``None`` when unavailable."""

    binary = shutil.which(executable)
    if binary is None:
        logger.debug("Credential helper not found", extra={"helper": executable})
        return None

    process = await asyncio.create_subprocess_exec(
        binary,
        "auth",
        "token",
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    stdout, _ = await process.communicate()
    if process.returncode != 0:
        logger.debug("Credential helper returned no token", extra={"returncode": process.returncode})
        return None

    token = stdout.decode("utf-8", errors="replace").strip()
    return token or None


__all__ = ["host_token"]
