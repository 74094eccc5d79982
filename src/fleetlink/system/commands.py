"""
Privileged command execution for fleetlink.

Host configuration files (tunnel, reverse proxy, AAA clients) are read with
a privileged ``cat`` and written by staging a temp file and installing it
with ``install``. Services are controlled through systemctl.
"""

import asyncio
import logging
import os
import tempfile
from dataclasses import dataclass
from typing import List, Optional

logger = logging.getLogger(__name__)


class CommandError(Exception):
    """A privileged command failed, timed out or could not be started."""

    def __init__(self, message: str, returncode: Optional[int] = None, stderr: str = ""):
        super().__init__(message)
        self.returncode = returncode
        self.stderr = stderr


@dataclass
class CommandResult:
    """Finished command."""
    args: List[str]
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class PrivilegedRunner:
    """Runs commands through non-interactive sudo."""

    def __init__(self, use_sudo: bool = True, temp_dir: str = "/tmp", timeout: float = 30.0):
        self.use_sudo = use_sudo
        self.temp_dir = temp_dir
        self.timeout = timeout

    async def run(
        self,
        *args: str,
        input_text: Optional[str] = None,
        check: bool = True,
    ) -> CommandResult:
        """
        Run a command.

        Raises:
            CommandError: on timeout, spawn failure, or (with ``check``) a
                non-zero exit status.
        """
        argv = ["sudo", "-n", *args] if self.use_sudo else list(args)
        logger.debug(f"Running: {' '.join(args)}")

        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.PIPE if input_text else None,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise CommandError(f"Cannot run {args[0]}: {e}")

        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(input=input_text.encode() if input_text else None),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            raise CommandError(f"{args[0]} timed out after {self.timeout}s")

        result = CommandResult(
            args=list(args),
            returncode=process.returncode,
            stdout=stdout.decode(errors="replace"),
            stderr=stderr.decode(errors="replace"),
        )

        if check and not result.ok:
            detail = result.stderr.strip() or result.stdout.strip()
            raise CommandError(
                f"{args[0]} exited with {result.returncode}: {detail}",
                returncode=result.returncode,
                stderr=result.stderr,
            )
        return result

    async def read_file(self, path: str) -> str:
        result = await self.run("cat", path)
        return result.stdout

    async def exists(self, path: str) -> bool:
        result = await self.run("test", "-e", path, check=False)
        return result.ok

    def write_temp(self, content: str, prefix: str = "fleetlink-") -> str:
        """Stage content in an unprivileged temp file. Returns its path."""
        fd, path = tempfile.mkstemp(prefix=prefix, dir=self.temp_dir)
        with os.fdopen(fd, "w") as f:
            f.write(content)
        return path

    def remove_temp(self, path: str) -> None:
        """Delete a staged temp file. Failures are ignored."""
        try:
            os.unlink(path)
        except OSError as e:
            logger.debug(f"Could not remove temp file {path}: {e}")

    async def install(
        self,
        source: str,
        dest: str,
        mode: str,
        owner: Optional[str] = None,
        group: Optional[str] = None,
    ) -> None:
        args = ["install"]
        if owner:
            args += ["-o", owner]
        if group:
            args += ["-g", group]
        args += ["-m", mode, source, dest]
        await self.run(*args)

    async def copy(self, source: str, dest: str, preserve: bool = False) -> None:
        if preserve:
            await self.run("cp", "-a", source, dest)
        else:
            await self.run("cp", source, dest)

    async def remove(self, path: str) -> None:
        await self.run("rm", "-f", path)

    async def link(self, target: str, link_path: str) -> None:
        await self.run("ln", "-sf", target, link_path)

    async def systemctl(self, action: str, unit: str) -> None:
        await self.run("systemctl", action, unit)
