"""Run external tools (git, ssh, rsync, ping) and return typed results.

Callers branch on `CommandResult.ok` / `CommandResult.kind` instead of parsing
text. Nothing here raises for a non-zero exit; stages decide what is fatal.
"""

from __future__ import annotations

import subprocess
from dataclasses import dataclass, field
from enum import Enum
from typing import Mapping, Protocol, Sequence


class FailureKind(str, Enum):
    NONE = "none"
    NOT_FOUND = "not_found"  # executable missing
    TIMEOUT = "timeout"
    EXIT_STATUS = "exit_status"

    # Stage-level kinds used by DeployError
    VALIDATION = "validation"
    CONNECTIVITY = "connectivity"
    REMOTE = "remote"
    HEALTH = "health"


@dataclass(frozen=True)
class CommandResult:
    args: list[str]
    returncode: int
    stdout: str = ""
    stderr: str = ""
    kind: FailureKind = FailureKind.NONE

    @property
    def ok(self) -> bool:
        return self.kind == FailureKind.NONE and self.returncode == 0

    def diagnostics(self) -> str:
        """Captured output for error reports (stderr first)."""
        parts = [p.strip() for p in (self.stderr, self.stdout) if p and p.strip()]
        return "\n".join(parts)


@dataclass(eq=False)
class DeployError(Exception):
    """Fatal stage failure. The pipeline stops at the first one."""

    kind: FailureKind
    message: str
    hint: str = ""
    output: str = ""
    result: CommandResult | None = field(default=None, repr=False)

    def __str__(self) -> str:
        return self.message


class Runner(Protocol):
    def __call__(
        self,
        cmd: Sequence[str],
        *,
        input_text: str | None = None,
        env: Mapping[str, str] | None = None,
        cwd: str | None = None,
        timeout: float | None = None,
        capture: bool = True,
    ) -> CommandResult: ...


def format_cmd(argv: Sequence[str], secrets: Sequence[str] = ()) -> str:
    # Avoid leaking secret values in log lines and error messages.
    out: list[str] = []
    for a in argv:
        s = str(a)
        for secret in secrets:
            if secret:
                s = s.replace(secret, "***")
        out.append(s)
    return " ".join(out)


def run_command(
    cmd: Sequence[str],
    *,
    input_text: str | None = None,
    env: Mapping[str, str] | None = None,
    cwd: str | None = None,
    timeout: float | None = None,
    capture: bool = True,
) -> CommandResult:
    """Run `cmd` and wrap the outcome.

    With `capture=False` output streams straight to the console (long steps
    like apt upgrade or docker build); stdout/stderr are then empty.
    `env` is the complete child environment when given.
    """
    argv = [str(c) for c in cmd]
    try:
        p = subprocess.run(
            argv,
            input=input_text,
            text=True,
            stdout=subprocess.PIPE if capture else None,
            stderr=subprocess.PIPE if capture else None,
            env=dict(env) if env is not None else None,
            cwd=cwd,
            timeout=timeout,
            check=False,
        )
    except FileNotFoundError as exc:
        return CommandResult(args=argv, returncode=127, stderr=str(exc), kind=FailureKind.NOT_FOUND)
    except subprocess.TimeoutExpired as exc:
        return CommandResult(
            args=argv,
            returncode=124,
            stdout=_text(exc.stdout),
            stderr=_text(exc.stderr) or f"timed out after {timeout}s",
            kind=FailureKind.TIMEOUT,
        )

    kind = FailureKind.NONE if p.returncode == 0 else FailureKind.EXIT_STATUS
    return CommandResult(
        args=argv,
        returncode=p.returncode,
        stdout=p.stdout or "",
        stderr=p.stderr or "",
        kind=kind,
    )


def _text(value: object) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode(errors="replace")
    return str(value)
