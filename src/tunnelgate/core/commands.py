"""Run tunnel daemon commands.

The tunnel daemon is controlled through its CLI, usually inside the VPN
container via ``docker exec``. Everything above this module only sees
``CommandRunner.run()``, so tests can replay captured output instead of
spawning processes.
"""

from __future__ import annotations

from dataclasses import dataclass
import logging
import subprocess
from typing import Protocol, Sequence

from tunnelgate.core.errors import TunnelCommandError

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class CommandResult:
    stdout: str
    stderr: str


class CommandRunner(Protocol):
    def run(self, args: Sequence[str], *, timeout_s: float) -> CommandResult: ...


class SubprocessRunner:
    def __init__(self, prefix: Sequence[str] = ()) -> None:
        self._prefix = list(prefix)

    @classmethod
    def for_container(cls, container: str | None) -> "SubprocessRunner":
        container = (container or "").strip()
        if not container:
            return cls()
        return cls(["docker", "exec", container])

    @property
    def prefix(self) -> list[str]:
        return list(self._prefix)

    def run(self, args: Sequence[str], *, timeout_s: float) -> CommandResult:
        cmd = self._prefix + list(args)
        label = " ".join(args)
        logger.debug("Running command: %s", cmd)
        try:
            result = subprocess.run(
                cmd,
                check=False,
                capture_output=True,
                text=True,
                timeout=timeout_s,
            )
        except subprocess.TimeoutExpired as exc:
            raise TunnelCommandError(
                f"Command timed out after {timeout_s:g}s: {cmd}",
                user_message=f"Tunnel command '{label}' timed out.",
                stdout=_text(exc.stdout),
                stderr=_text(exc.stderr),
            ) from exc
        except FileNotFoundError as exc:
            raise TunnelCommandError(
                f"Binary missing for command: {cmd}",
                user_message=f"Cannot run '{cmd[0]}'. Is it installed and on PATH?",
            ) from exc
        except OSError as exc:
            raise TunnelCommandError(
                f"Command failed to start: {cmd}: {exc}",
                user_message=f"Tunnel command '{label}' could not be started: {exc}",
            ) from exc

        stdout = (result.stdout or "").strip()
        stderr = (result.stderr or "").strip()
        if result.returncode != 0:
            detail = stderr or stdout or f"exit code {result.returncode}"
            raise TunnelCommandError(
                f"Command failed: {cmd}: {detail}",
                user_message=f"Tunnel command '{label}' failed: {detail}",
                stdout=stdout,
                stderr=stderr,
            )

        return CommandResult(stdout=stdout, stderr=stderr)


def _text(raw: str | bytes | None) -> str:
    if raw is None:
        return ""
    if isinstance(raw, bytes):
        return raw.decode("utf-8", errors="replace").strip()
    return raw.strip()
