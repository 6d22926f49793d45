"""Post-deploy diagnostics.

Read-only: nothing here changes the target. By default failed checks are
reported, not fatal; `strict=True` turns them into a DeployError.
"""

from __future__ import annotations

import logging
import shlex
from dataclasses import dataclass
from typing import Callable

import requests

from scripts.deploy import docker_compose_helpers as compose_helpers
from scripts.deploy.command_runner import DeployError, FailureKind
from scripts.deploy.env_schema import DeploymentConfig
from scripts.deploy.ssh_helpers import RemoteShell


logger = logging.getLogger("app_deploy")

PUBLIC_CHECK_TIMEOUT = 10


@dataclass(frozen=True)
class CheckResult:
    name: str
    ok: bool
    detail: str


def running_container_cmd(*, container_name: str, source_kind: str) -> str:
    name = shlex.quote(container_name)
    if source_kind == "compose":
        project = compose_helpers.normalize_project_name(container_name)
        label = shlex.quote(f"label=com.docker.compose.project={project}")
        return f"sudo docker ps -q --filter {label} | grep -q ."
    return f"sudo docker ps --format '{{{{.Names}}}}' | grep -Fxq {name}"


def remote_checks(config: DeploymentConfig, *, source_kind: str) -> list[tuple[str, str, str, str]]:
    """(name, remote command, detail if ok, detail if failed)."""
    return [
        ("Docker", "sudo docker info >/dev/null 2>&1", "running", "down"),
        (
            "Container",
            running_container_cmd(container_name=config.container_name, source_kind=source_kind),
            "active",
            "missing",
        ),
        ("Nginx", "sudo systemctl is-active --quiet nginx", "active", "down"),
        ("App Endpoint", "curl -fsS -o /dev/null http://localhost", "healthy (200)", "fail"),
        (
            "Direct Port",
            f"curl -fsS -o /dev/null http://localhost:{config.app_port}",
            "direct port OK",
            "direct fail",
        ),
    ]


def check_public_endpoint(url: str, *, http_get: Callable[..., requests.Response] = requests.get) -> CheckResult:
    try:
        response = http_get(url, timeout=PUBLIC_CHECK_TIMEOUT)
    except requests.RequestException as exc:
        return CheckResult(name="External Test", ok=False, detail=f"fail ({exc.__class__.__name__})")
    if response.ok:
        return CheckResult(name="External Test", ok=True, detail=f"healthy ({response.status_code})")
    return CheckResult(name="External Test", ok=False, detail=f"fail ({response.status_code})")


def validate_deployment(
    config: DeploymentConfig,
    *,
    shell: RemoteShell,
    source_kind: str = "dockerfile",
    strict: bool = False,
    http_get: Callable[..., requests.Response] = requests.get,
) -> list[CheckResult]:
    results: list[CheckResult] = []
    for name, command, ok_detail, fail_detail in remote_checks(config, source_kind=source_kind):
        outcome = shell.run(command)
        results.append(CheckResult(name=name, ok=outcome.ok, detail=ok_detail if outcome.ok else fail_detail))

    results.append(check_public_endpoint(f"http://{config.server_ip}/", http_get=http_get))

    for check in results:
        if check.ok:
            logger.info("%s: %s", check.name, check.detail)
        else:
            logger.warning("%s: %s", check.name, check.detail)

    failed = [c for c in results if not c.ok]
    if failed and strict:
        raise DeployError(
            kind=FailureKind.HEALTH,
            message="Validation failed: " + ", ".join(f"{c.name}={c.detail}" for c in failed),
            hint="Inspect the container logs and the Nginx error log on the host.",
        )
    return results
