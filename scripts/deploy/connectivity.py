"""Reachability and SSH authentication checks, run before any remote change."""

from __future__ import annotations

import logging

from scripts.deploy.command_runner import DeployError, FailureKind, Runner, run_command
from scripts.deploy.env_schema import DeploymentConfig
from scripts.deploy.ssh_helpers import build_ping_cmd, build_ssh_connectivity_cmd


logger = logging.getLogger("app_deploy")


def check_ping(config: DeploymentConfig, *, runner: Runner = run_command) -> None:
    result = runner(build_ping_cmd(address=config.server_ip))
    if not result.ok:
        raise DeployError(
            kind=FailureKind.CONNECTIVITY,
            message=f"Ping failed: {config.server_ip} unreachable.",
            hint="Check network/firewall (ICMP must be allowed).",
            output=result.diagnostics(),
            result=result,
        )
    logger.info("Ping successful.")


def check_ssh(config: DeploymentConfig, *, runner: Runner = run_command) -> None:
    result = runner(build_ssh_connectivity_cmd(host=config.ssh_target, key_path=config.ssh_key))
    if not result.ok:
        raise DeployError(
            kind=FailureKind.CONNECTIVITY,
            message=f"SSH connection failed to {config.ssh_target}.",
            hint=f"Verify key perms (chmod 400 {config.ssh_key}), username, and that port 22 is open.",
            output=result.diagnostics(),
            result=result,
        )
    logger.info("SSH connectivity confirmed.")


def check_connectivity(config: DeploymentConfig, *, runner: Runner = run_command) -> None:
    """ICMP first, then SSH; one attempt each."""
    check_ping(config, runner=runner)
    check_ssh(config, runner=runner)
