"""Command builders for ssh / rsync / ping plus a small remote-shell wrapper.

Security note: these shell out to the system `ssh` and `rsync` binaries with
key-based, non-interactive authentication.
"""

from __future__ import annotations

import shlex
from dataclasses import dataclass
from pathlib import Path

from scripts.deploy.command_runner import CommandResult, Runner, run_command


SSH_CONNECT_TIMEOUT = 10
PING_TIMEOUT = 5


def build_ssh_options(*, key_path: Path, connect_timeout: int | None = None) -> list[str]:
    opts = [
        "-i",
        str(key_path),
        "-o",
        "StrictHostKeyChecking=accept-new",
        "-o",
        "BatchMode=yes",
    ]
    if connect_timeout is not None:
        opts.extend(["-o", f"ConnectTimeout={connect_timeout}"])
    return opts


def build_ssh_cmd(*, host: str, key_path: Path, remote_command: str, connect_timeout: int | None = None) -> list[str]:
    return ["ssh", *build_ssh_options(key_path=key_path, connect_timeout=connect_timeout), host, remote_command]


def build_ssh_connectivity_cmd(*, host: str, key_path: Path) -> list[str]:
    return build_ssh_cmd(host=host, key_path=key_path, remote_command="true", connect_timeout=SSH_CONNECT_TIMEOUT)


def build_ping_cmd(*, address: str) -> list[str]:
    return ["ping", "-c", "1", "-W", str(PING_TIMEOUT), address]


def build_rsync_cmd(*, source_dir: Path, host: str, key_path: Path, remote_dir: str) -> list[str]:
    """Mirror `source_dir` into `remote_dir`; remote files missing locally are deleted.

    `.git` is excluded on both sides: the local one is not sent, and excluded
    paths are protected from `--delete`, so a remote `.git` is left untouched.
    """
    ssh_transport = " ".join(["ssh", *(shlex.quote(o) for o in build_ssh_options(key_path=key_path))])
    # Trailing slashes copy directory contents rather than the directory itself.
    src = f"{str(source_dir).rstrip('/')}/"
    dest = f"{host}:{remote_dir.rstrip('/')}/"
    return ["rsync", "-az", "--delete", "--exclude", ".git", "-e", ssh_transport, src, dest]


@dataclass(frozen=True)
class RemoteShell:
    """Runs commands on the deploy target, one SSH invocation per call."""

    host: str
    key_path: Path
    runner: Runner = run_command

    def run(self, remote_command: str, *, capture: bool = True) -> CommandResult:
        return self.runner(build_ssh_cmd(host=self.host, key_path=self.key_path, remote_command=remote_command), capture=capture)

    def run_script(self, script: str, *, capture: bool = True) -> CommandResult:
        """Run a multi-line bash script fed over stdin (no quoting of the body)."""
        cmd = build_ssh_cmd(host=self.host, key_path=self.key_path, remote_command="bash -s")
        return self.runner(cmd, input_text=script, capture=capture)

    def write_file(self, remote_path: str, content: str) -> CommandResult:
        cmd = build_ssh_cmd(
            host=self.host,
            key_path=self.key_path,
            remote_command=f"sudo tee {shlex.quote(remote_path)} >/dev/null",
        )
        return self.runner(cmd, input_text=content)
