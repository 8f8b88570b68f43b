"""Runs node commands (systemctl, scripts) as asyncio subprocesses.

Arguments are passed to the program as is, without a shell. Scripts that
need a shell run through an explicit `/bin/bash -c`.
"""

import asyncio
import logging
import shlex
import subprocess
from dataclasses import dataclass

from .exceptions import CommandException

_LOGGER = logging.getLogger(__name__)


# No public API
__all__: list[str] = []


@dataclass
class CommandResult:
    """The outcome of a command that was allowed to complete."""

    returncode: int
    stdout: bytes

    @property
    def success(self) -> bool:
        """Return True if the command exited with status zero."""
        return self.returncode == 0


@dataclass
class Command:
    """An instance of a command to run."""

    cmd: list[str]
    """Array of command line arguments."""

    exc: type[CommandException] = CommandException
    """Exception to throw in case of an error."""

    retcodes: list[int] | None = None
    """Non-zero error codes that are allowed to indicate success (e.g. unknown unit)."""

    timeout: float | None = None
    """Seconds to wait for the command, or None to wait until it exits."""

    @property
    def string(self) -> str:
        """Render the command as a single string."""
        return " ".join([shlex.quote(arg) for arg in self.cmd])

    def __str__(self) -> str:
        """Render as a debug string."""
        return self.string

    async def _communicate(self) -> tuple[int, bytes, bytes]:
        proc = await asyncio.create_subprocess_exec(
            *self.cmd,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
        )
        try:
            out, err = await proc.communicate()
        except asyncio.CancelledError:
            proc.kill()
            await proc.wait()
            raise
        return proc.returncode or 0, out, err

    async def run(self) -> CommandResult:
        """Run the command, returning the exit status and stdout."""
        _LOGGER.debug("Running command: %s", self)
        try:
            returncode, out, err = await asyncio.wait_for(
                self._communicate(), self.timeout
            )
        except TimeoutError as error:
            raise self.exc(f"Command '{self}' timed out") from error
        except OSError as error:
            raise self.exc(f"Command '{self}' could not be started: {error}") from error
        if returncode:
            if self.retcodes and returncode in self.retcodes:
                _LOGGER.debug("Command '%s' returned allowed code %s", self, returncode)
                return CommandResult(returncode, out)
            errors = [f"Command '{self}' failed with return code {returncode}"]
            if out:
                errors.append(out.decode("utf-8", errors="replace"))
            if err:
                errors.append(err.decode("utf-8", errors="replace"))
            _LOGGER.debug("\n".join(errors))
            raise self.exc("\n".join(errors))
        return CommandResult(returncode, out)
