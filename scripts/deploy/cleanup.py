"""`--cleanup`: undo what a deploy left on the target.

Every step tolerates "already gone", so cleanup can be re-run safely.
Installed packages (docker, docker-compose, nginx) and the local working
copy are left in place.
"""

from __future__ import annotations

import logging
import shlex

from scripts.deploy import docker_compose_helpers as compose_helpers
from scripts.deploy.app_deployer import remove_container_cmd
from scripts.deploy.command_runner import DeployError, FailureKind
from scripts.deploy.env_schema import DeploymentConfig
from scripts.deploy.nginx_proxy import check_and_reload_cmd
from scripts.deploy.ssh_helpers import RemoteShell


logger = logging.getLogger("app_deploy")


def remove_compose_project_cmd(*, project: str) -> str:
    project = compose_helpers.normalize_project_name(project)
    label = shlex.quote(f"label=com.docker.compose.project={project}")
    return f"sudo docker ps -aq --filter {label} | xargs -r sudo docker rm -f >/dev/null 2>&1 || true"


def remove_image_cmd(*, image_name: str) -> str:
    return f"sudo docker rmi {shlex.quote(image_name)} >/dev/null 2>&1 || true"


def remove_remote_dir_cmd(*, remote_dir: str) -> str:
    return f"sudo rm -rf {shlex.quote(remote_dir)}"


def restore_site_cmd(*, site_path: str) -> str:
    """Move the .bak back over the site; prints `restored` when it did."""
    site = shlex.quote(site_path)
    backup = shlex.quote(f"{site_path}.bak")
    return f"if [ -f {backup} ]; then sudo mv {backup} {site} && echo restored; fi"


def cleanup(config: DeploymentConfig, *, shell: RemoteShell) -> None:
    if config.remote_dir.rstrip("/") in {"", "/"}:
        raise DeployError(kind=FailureKind.VALIDATION, message=f"Refusing to remove remote dir {config.remote_dir!r}")

    logger.info("Removing container %s", config.container_name)
    shell.run(remove_container_cmd(container_name=config.container_name))
    shell.run(remove_compose_project_cmd(project=config.container_name))

    logger.info("Removing image %s", config.image_name)
    shell.run(remove_image_cmd(image_name=config.image_name))

    logger.info("Removing remote dir %s", config.remote_dir)
    result = shell.run(remove_remote_dir_cmd(remote_dir=config.remote_dir))
    if not result.ok:
        raise DeployError(
            kind=FailureKind.REMOTE,
            message=f"Failed to remove {config.remote_dir}.",
            hint="Check sudo rights for the SSH user.",
            output=result.diagnostics(),
            result=result,
        )

    result = shell.run(restore_site_cmd(site_path=config.nginx_site))
    if not result.ok:
        raise DeployError(
            kind=FailureKind.REMOTE,
            message=f"Failed to restore {config.nginx_site}.bak.",
            hint="Check sudo rights for the SSH user.",
            output=result.diagnostics(),
            result=result,
        )
    if "restored" not in result.stdout:
        logger.info("No Nginx backup found; leaving %s as is.", config.nginx_site)
        return

    result = shell.run(check_and_reload_cmd())
    if not result.ok:
        raise DeployError(
            kind=FailureKind.REMOTE,
            message="Nginx reload after restore failed.",
            hint="Check /var/log/nginx/error.log remotely.",
            output=result.diagnostics(),
            result=result,
        )
    logger.info("Nginx config restored from backup.")
