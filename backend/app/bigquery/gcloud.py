import asyncio
from typing import Awaitable, Callable

from app.config import settings

from .errors import SourceUnavailableError

CommandRunner = Callable[..., Awaitable[str]]


async def run_gcloud(*args: str) -> str:
    """Run `gcloud <args>` and return its stripped stdout."""
    try:
        proc = await asyncio.create_subprocess_exec(
            settings.gcloud_binary,
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError:
        raise SourceUnavailableError(f"{settings.gcloud_binary} CLI not found on PATH")

    stdout, stderr = await proc.communicate()
    if proc.returncode != 0:
        detail = stderr.decode("utf-8", errors="replace").strip()
        raise SourceUnavailableError(
            f"gcloud {' '.join(args)} exited with {proc.returncode}"
            + (f": {detail}" if detail else "")
        )
    return stdout.decode("utf-8", errors="replace").strip()
