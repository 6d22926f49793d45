"""Install Docker, Docker Compose and Nginx on the target if they are missing."""

from __future__ import annotations

import logging
import shlex

from scripts.deploy.command_runner import DeployError, FailureKind
from scripts.deploy.env_schema import DeploymentConfig
from scripts.deploy.ssh_helpers import RemoteShell


logger = logging.getLogger("app_deploy")

DOCKER_INSTALL_URL = "https://get.docker.com"
COMPOSE_RELEASES_API = "https://api.github.com/repos/docker/compose/releases/latest"
COMPOSE_DOWNLOAD_BASE = "https://github.com/docker/compose/releases/download"
COMPOSE_BIN = "/usr/local/bin/docker-compose"
APT_KEEP_CONFIG = "-o Dpkg::Options::=--force-confdef -o Dpkg::Options::=--force-confold"


def provision_remote_script(*, ssh_user: str) -> str:
    """Composite provisioning script; every install step is guarded by a presence check.

    The script arrives on `bash -s` stdin, so the body is a function that bash
    parses completely before running it with stdin from /dev/null. A command
    that reads stdin (dpkg at a conffile prompt, get-docker.sh) then sees EOF
    instead of swallowing the rest of the script.
    """
    user = shlex.quote(ssh_user)
    return f"""set -e
export DEBIAN_FRONTEND=noninteractive

provision_host() {{
  sudo -E apt-get update
  sudo -E apt-get upgrade -y {APT_KEEP_CONFIG}

  if ! command -v docker >/dev/null 2>&1; then
    echo '[provision] Installing Docker'
    curl -fsSL {DOCKER_INSTALL_URL} -o /tmp/get-docker.sh
    sudo sh /tmp/get-docker.sh
    rm -f /tmp/get-docker.sh
    sudo systemctl start docker
    sudo systemctl enable docker
  fi

  if ! command -v docker-compose >/dev/null 2>&1; then
    echo '[provision] Installing Docker Compose'
    COMPOSE_VERSION=$(curl -fsSL {COMPOSE_RELEASES_API} | grep '"tag_name"' | cut -d '"' -f4)
    if [ -z "$COMPOSE_VERSION" ]; then
      echo '[provision] Could not resolve latest Docker Compose release' >&2
      exit 1
    fi
    sudo curl -fsSL "{COMPOSE_DOWNLOAD_BASE}/${{COMPOSE_VERSION}}/docker-compose-$(uname -s)-$(uname -m)" -o {COMPOSE_BIN}
    sudo chmod +x {COMPOSE_BIN}
  fi

  if ! command -v nginx >/dev/null 2>&1; then
    echo '[provision] Installing Nginx'
    sudo -E apt-get install -y {APT_KEEP_CONFIG} nginx
    sudo systemctl start nginx
    sudo systemctl enable nginx
  fi

  # Group membership applies at next login; deploy commands use sudo meanwhile.
  sudo usermod -aG docker {user}

  docker --version
  docker-compose --version
  nginx -v
}}

provision_host </dev/null
echo '[provision] done'
"""


def provision(config: DeploymentConfig, *, shell: RemoteShell) -> None:
    result = shell.run_script(provision_remote_script(ssh_user=config.ssh_user), capture=False)
    if not result.ok:
        raise DeployError(
            kind=FailureKind.REMOTE,
            message="Remote prep failed.",
            hint="Check the host's system log (cloud console > instance > system log, or journalctl on the host).",
            output=result.diagnostics(),
            result=result,
        )
    logger.info("Remote env prepared: Docker, Compose, Nginx installed/started. Re-login for Docker group perms.")
