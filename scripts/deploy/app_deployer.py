"""Ship the working copy to the target and (re)start exactly one app instance."""

from __future__ import annotations

import logging
import shlex
import time
from typing import Callable

from scripts.deploy import docker_compose_helpers as compose_helpers
from scripts.deploy.command_runner import CommandResult, DeployError, FailureKind, Runner, run_command
from scripts.deploy.env_schema import DeploymentConfig
from scripts.deploy.repo_sync import WorkingCopy
from scripts.deploy.ssh_helpers import RemoteShell, build_rsync_cmd


logger = logging.getLogger("app_deploy")

HEALTH_SETTLE_SECONDS = 5
LOG_TAIL_LINES = 10


def ensure_remote_dir_cmd(*, remote_dir: str, ssh_user: str) -> str:
    d = shlex.quote(remote_dir)
    u = shlex.quote(ssh_user)
    return f"sudo mkdir -p {d} && sudo chown -R {u}:{u} {d}"


def remove_container_cmd(*, container_name: str) -> str:
    name = shlex.quote(container_name)
    return f"sudo docker stop {name} >/dev/null 2>&1 || true; sudo docker rm {name} >/dev/null 2>&1 || true"


def compose_cmd(*, remote_dir: str, project: str, compose_file: str, action: str) -> str:
    project = compose_helpers.normalize_project_name(project)
    return (
        f"cd {shlex.quote(remote_dir)} && "
        f"sudo docker-compose -p {shlex.quote(project)} -f {shlex.quote(compose_file)} {action}"
    )


def build_and_run_cmd(*, remote_dir: str, image_name: str, container_name: str, app_port: int) -> str:
    image = shlex.quote(image_name)
    return (
        f"cd {shlex.quote(remote_dir)} && "
        f"sudo docker build -t {image} . && "
        f"sudo docker run -d --name {shlex.quote(container_name)} "
        f"-p {app_port}:{app_port} --restart unless-stopped {image}"
    )


def container_logs_cmd(*, container_name: str, tail: int = LOG_TAIL_LINES) -> str:
    return f"sudo docker logs {shlex.quote(container_name)} --tail {tail} 2>&1"


def health_check_cmd(*, port: int, path: str = "") -> str:
    return f"curl -fsS -o /dev/null http://localhost:{port}{path}"


def _fail(message: str, *, hint: str, result: CommandResult) -> DeployError:
    return DeployError(
        kind=FailureKind.REMOTE,
        message=message,
        hint=hint,
        output=result.diagnostics(),
        result=result,
    )


def deploy_app(
    config: DeploymentConfig,
    working_copy: WorkingCopy,
    *,
    shell: RemoteShell,
    runner: Runner = run_command,
    sleep: Callable[[float], None] = time.sleep,
) -> None:
    """Sync, build, run, then gate on a local HTTP check on the target."""
    remote_dir = config.remote_dir
    compose_name = working_copy.compose_file.name if working_copy.compose_file is not None else ""

    result = shell.run(ensure_remote_dir_cmd(remote_dir=remote_dir, ssh_user=config.ssh_user))
    if not result.ok:
        raise _fail(f"Failed to setup remote dir {remote_dir}.", hint="Check sudo rights for the SSH user.", result=result)

    # Previous instance may not exist; failures here are expected on first run.
    shell.run(remove_container_cmd(container_name=config.container_name))
    if working_copy.source_kind == "compose":
        shell.run(
            compose_cmd(remote_dir=remote_dir, project=config.container_name, compose_file=compose_name, action="down")
            + " || true"
        )

    logger.info("Syncing %s -> %s:%s", working_copy.path, config.ssh_target, remote_dir)
    result = runner(
        build_rsync_cmd(
            source_dir=working_copy.path,
            host=config.ssh_target,
            key_path=config.ssh_key,
            remote_dir=remote_dir,
        )
    )
    if not result.ok:
        raise _fail("File transfer failed.", hint="Check that rsync is installed locally and on the host.", result=result)

    if working_copy.source_kind == "compose":
        services = compose_helpers.load_compose_services(working_copy.compose_file)
        if config.app_port not in compose_helpers.published_host_ports(services):
            logger.warning("Port %s is not published by any service in %s", config.app_port, compose_name)
        run_cmd = compose_cmd(
            remote_dir=remote_dir, project=config.container_name, compose_file=compose_name, action="up -d --build"
        )
        logs_cmd = compose_cmd(
            remote_dir=remote_dir,
            project=config.container_name,
            compose_file=compose_name,
            action=f"logs --tail {LOG_TAIL_LINES}",
        )
    else:
        run_cmd = build_and_run_cmd(
            remote_dir=remote_dir,
            image_name=config.image_name,
            container_name=config.container_name,
            app_port=config.app_port,
        )
        logs_cmd = container_logs_cmd(container_name=config.container_name)

    result = shell.run(run_cmd, capture=False)
    build_failed = not result.ok

    # Dump recent logs regardless of outcome.
    logs = shell.run(logs_cmd)
    tail = logs.diagnostics()
    if tail:
        logger.info("Container logs (last %s lines):\n%s", LOG_TAIL_LINES, tail)

    if build_failed:
        raise _fail("Build/run failed.", hint="See the build output and container logs above.", result=result)

    sleep(HEALTH_SETTLE_SECONDS)
    result = shell.run(health_check_cmd(port=config.app_port))
    if not result.ok:
        raise DeployError(
            kind=FailureKind.HEALTH,
            message=f"App unhealthy on {config.app_port}.",
            hint="Tail logs above.",
            output=result.diagnostics(),
            result=result,
        )
    logger.info("App deployed: Running healthy on %s.", config.app_port)
