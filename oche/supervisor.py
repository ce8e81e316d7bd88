"""
Child process supervision for the scraper and its control server.
"""

import asyncio
import logging
import sys
from typing import Any, Dict, List, Mapping, Optional, Sequence

from .errors import SupervisorError

logger = logging.getLogger(__name__)

STOPPED = "stopped"
STARTING = "starting"
RUNNING = "running"
STOPPING = "stopping"


class ProcessSupervisor:
    """Starts, watches and stops one child process."""

    def __init__(
        self,
        label: str,
        command: Sequence[str],
        cwd: Optional[str] = None,
        start_grace: float = 2.0,
        stop_timeout: float = 5.0,
        restart_delay: float = 1.0,
        env: Optional[Mapping[str, str]] = None,
    ) -> None:
        self.label = label
        self.command = list(command)
        self.cwd = cwd
        self.start_grace = start_grace
        self.stop_timeout = stop_timeout
        self.restart_delay = restart_delay
        self.env = dict(env) if env is not None else None

        self.state = STOPPED
        self.process: Optional[asyncio.subprocess.Process] = None
        self._watcher: Optional[asyncio.Task] = None
        self._lock = asyncio.Lock()

    @property
    def pid(self) -> Optional[int]:
        return self.process.pid if self.process is not None else None

    @property
    def running(self) -> bool:
        return self.state == RUNNING

    def status(self) -> Dict[str, Any]:
        return {"status": self.state, "running": self.running, "pid": self.pid}

    async def _pump(
        self,
        stream: Optional[asyncio.StreamReader],
        level: int,
    ) -> None:
        if stream is None:
            return
        async for line in stream:
            text = line.decode("utf-8", errors="replace").rstrip()
            if text:
                logger.log(level, "[%s] %s", self.label, text)

    async def _watch(self, process: asyncio.subprocess.Process) -> None:
        """Wait for the child to exit and reset state."""
        await asyncio.gather(
            self._pump(process.stdout, logging.INFO),
            self._pump(process.stderr, logging.ERROR),
        )
        returncode = await process.wait()

        if self.process is not process:
            return

        if self.state == STOPPING:
            logger.info("%s exited with code %s", self.label, returncode)
        else:
            logger.warning("%s exited unexpectedly with code %s", self.label, returncode)
        self.process = None
        self.state = STOPPED

    async def start(self) -> Dict[str, Any]:
        """
        Spawn the child and wait out the start grace period.

        @return: {"success", "message", "pid"}; success is False when the
            child is already running
        """
        async with self._lock:
            if self.state != STOPPED:
                return {"success": False, "message": f"{self.label} already running"}

            self.state = STARTING
            logger.info("Starting %s: %s", self.label, " ".join(self.command))
            try:
                process = await asyncio.create_subprocess_exec(
                    *self.command,
                    cwd=self.cwd,
                    env=self.env,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                )
            except OSError as e:
                self.state = STOPPED
                raise SupervisorError(f"Failed to start {self.label}: {e}") from e

            self.process = process
            self._watcher = asyncio.create_task(self._watch(process))

            await asyncio.sleep(self.start_grace)
            if process.returncode is not None:
                await self._watcher
                self.state = STOPPED
                raise SupervisorError(
                    f"{self.label} exited with code {process.returncode} during start"
                )

            self.state = RUNNING
            logger.info("%s started with PID %d", self.label, process.pid)
            return {
                "success": True,
                "message": f"{self.label} started",
                "pid": process.pid,
            }

    async def stop(self) -> Dict[str, Any]:
        """
        Terminate the child, killing it if it outlives the stop timeout.

        @return: {"success", "message"}; success is False when not running
        """
        async with self._lock:
            process = self.process
            if self.state == STOPPED or process is None:
                return {"success": False, "message": f"{self.label} not running"}

            self.state = STOPPING
            logger.info("Stopping %s (PID %d)", self.label, process.pid)
            try:
                process.terminate()
            except ProcessLookupError:
                pass

            try:
                await asyncio.wait_for(process.wait(), self.stop_timeout)
            except asyncio.TimeoutError:
                logger.warning(
                    "%s ignored SIGTERM for %.1fs, sending SIGKILL",
                    self.label,
                    self.stop_timeout,
                )
                try:
                    process.kill()
                except ProcessLookupError:
                    pass
                await process.wait()

            if self._watcher is not None:
                await self._watcher
                self._watcher = None

            self.process = None
            self.state = STOPPED
            return {"success": True, "message": f"{self.label} stopped"}

    async def restart(self) -> Dict[str, Any]:
        await self.stop()
        await asyncio.sleep(self.restart_delay)
        return await self.start()

    async def shutdown(self, _: Any = None) -> None:
        """Stop the child if there is one; usable as an aiohttp cleanup hook."""
        if self.state != STOPPED:
            await self.stop()


def python_command(*args: str) -> List[str]:
    """Command line running this package's CLI under the current interpreter."""
    return [sys.executable, "-m", "oche", *args]
