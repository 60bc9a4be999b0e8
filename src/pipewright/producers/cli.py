from __future__ import annotations

import asyncio
import logging
import time
from pathlib import Path

from pipewright.probe import (
    NOT_FOUND_EXIT_CODE,
    TIMEOUT_EXIT_CODE,
    ProcessResult,
    command_available,
)
from pipewright.producers.base import Producer

log = logging.getLogger(__name__)


class CliProducer(Producer):
    """Producer backed by an external command line tool."""

    default_binary = ""

    def __init__(self, binary: str | None = None, working_directory: Path | None = None) -> None:
        self.binary = binary or self.default_binary
        self.working_directory = working_directory

    def build_command(self, prompt: str) -> list[str]:
        return [self.binary, prompt]

    def is_available(self) -> bool:
        return command_available(self.binary)

    async def invoke(self, prompt: str, timeout_seconds: float) -> ProcessResult:
        command = self.build_command(prompt)
        started = time.monotonic()
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=str(self.working_directory) if self.working_directory else None,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except (FileNotFoundError, PermissionError) as exc:
            return ProcessResult(
                exit_code=NOT_FOUND_EXIT_CODE,
                stderr=f"{self.name} binary not found: {self.binary} ({exc})",
                duration_seconds=time.monotonic() - started,
            )

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout_seconds)
        except TimeoutError:
            process.kill()
            await process.wait()
            log.warning("%s timed out after %.1fs", self.name, timeout_seconds)
            return ProcessResult(
                exit_code=TIMEOUT_EXIT_CODE,
                stderr=f"{self.name} timed out after {timeout_seconds:.1f}s",
                timed_out=True,
                duration_seconds=time.monotonic() - started,
            )

        duration = time.monotonic() - started
        log.debug(
            "%s exited with %s after %.1fs (%d bytes)",
            self.name,
            process.returncode,
            duration,
            len(stdout),
        )
        return ProcessResult(
            exit_code=process.returncode if process.returncode is not None else -1,
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
            duration_seconds=duration,
        )
