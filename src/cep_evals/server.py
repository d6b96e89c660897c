"""Lifecycle management for a local chat target.

When the chat URL points at this machine and nothing is listening yet, the
harness spawns the development server itself, waits for it to answer, and
terminates it again once the sweep is over. A server that was already up
is left alone.
"""

from __future__ import annotations

import asyncio
import logging
import os
import shlex
from typing import TYPE_CHECKING

import httpx

from cep_evals.client import Sleep, is_local_url
from cep_evals.errors import EvalError

if TYPE_CHECKING:
    from cep_evals.config import EvalConfig

logger = logging.getLogger(__name__)


class TargetServerError(EvalError):
    """The local chat target could not be started."""

    pass


class TargetServer:
    """Starts and stops the local chat target around a sweep.

    Usage:
        server = TargetServer.from_config(config)
        await server.start()
        ...
        await server.stop()
    """

    def __init__(
        self,
        chat_url: str,
        command: str = "bun run dev",
        enabled: bool = True,
        attempts: int = 60,
        delay: float = 0.5,
        port: int | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.chat_url = chat_url
        self.command = command
        self.enabled = enabled
        self.attempts = attempts
        self.delay = delay
        self.port = port if port is not None else httpx.URL(chat_url).port or 3100
        self._sleep = sleep
        self._process: asyncio.subprocess.Process | None = None

    @classmethod
    def from_config(cls, config: EvalConfig) -> TargetServer:
        return cls(
            chat_url=config.chat_url,
            command=config.server_command,
            enabled=config.manage_server,
            attempts=config.server_start_attempts,
            delay=config.server_start_delay,
        )

    @property
    def owns_process(self) -> bool:
        """Whether this instance spawned a server that is still running."""
        return self._process is not None and self._process.returncode is None

    async def is_up(self) -> bool:
        """Any HTTP response counts as up."""
        try:
            async with httpx.AsyncClient() as http:
                await http.head(self.chat_url)
        except httpx.HTTPError:
            return False
        return True

    async def start(self) -> None:
        """Ensure the target is reachable, spawning it when needed.

        Raises:
            TargetServerError: If the server process exits before answering.
        """
        if not self.enabled or not is_local_url(self.chat_url):
            return
        if await self.is_up():
            logger.debug(f"Chat target already running at {self.chat_url}")
            return

        env = {**os.environ, "PORT": str(self.port), "NODE_ENV": "test"}
        logger.info(f"Starting chat target: {self.command} (PORT={self.port})")
        try:
            self._process = await asyncio.create_subprocess_exec(*shlex.split(self.command), env=env)
        except OSError as e:
            raise TargetServerError(f"Failed to start chat target '{self.command}': {e}") from e

        for _ in range(self.attempts):
            if self._process.returncode is not None:
                raise TargetServerError(
                    f"Chat target exited with code {self._process.returncode} before becoming ready"
                )
            if await self.is_up():
                logger.info(f"Chat target ready at {self.chat_url}")
                return
            await self._sleep(self.delay)

        logger.warning(f"Chat target not answering after {self.attempts} probes, continuing anyway")

    async def stop(self) -> None:
        """Terminate the server if this instance started it."""
        process = self._process
        self._process = None
        if process is None or process.returncode is not None:
            return

        logger.info("Stopping chat target")
        process.terminate()
        try:
            await asyncio.wait_for(process.wait(), timeout=5.0)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
