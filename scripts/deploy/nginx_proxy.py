"""Nginx reverse proxy: port 80 -> the app's internal port."""

from __future__ import annotations

import logging
import shlex

from scripts.deploy.command_runner import DeployError, FailureKind
from scripts.deploy.env_schema import DeploymentConfig
from scripts.deploy.ssh_helpers import RemoteShell


logger = logging.getLogger("app_deploy")

NGINX_ERROR_LOG = "/var/log/nginx/error.log"

SITE_TEMPLATE = """server {{
    listen 80 default_server;
    listen [::]:80 default_server;

    location / {{
        proxy_pass {upstream};
        proxy_http_version 1.1;
        proxy_set_header Upgrade $http_upgrade;
        proxy_set_header Connection "upgrade";
        proxy_set_header Host $host;
        proxy_set_header X-Real-IP $remote_addr;
        proxy_set_header X-Forwarded-For $proxy_add_x_forwarded_for;
        proxy_cache_bypass $http_upgrade;
    }}

    # SSL Placeholder (uncomment for self-signed/Certbot)
    # listen 443 ssl http2 default_server;
    # listen [::]:443 ssl http2 default_server;
    # ssl_certificate /etc/ssl/certs/nginx-selfsigned.crt;
    # ssl_certificate_key /etc/ssl/private/nginx-selfsigned.key;
}}
"""


def upstream_for_port(app_port: int) -> str:
    return f"http://localhost:{app_port}"


def render_site_config(*, app_port: int) -> str:
    return SITE_TEMPLATE.format(upstream=upstream_for_port(app_port))


def backup_site_cmd(*, site_path: str) -> str:
    # Single backup slot: a later run overwrites the previous .bak.
    site = shlex.quote(site_path)
    backup = shlex.quote(f"{site_path}.bak")
    return f"if [ -f {site} ]; then sudo cp {site} {backup}; fi"


def check_and_reload_cmd() -> str:
    return "sudo nginx -t && sudo systemctl reload nginx"


def configure_proxy(config: DeploymentConfig, *, shell: RemoteShell) -> None:
    result = shell.run(backup_site_cmd(site_path=config.nginx_site))
    if not result.ok:
        raise DeployError(
            kind=FailureKind.REMOTE,
            message=f"Failed to back up {config.nginx_site}.",
            hint="Check sudo rights for the SSH user.",
            output=result.diagnostics(),
            result=result,
        )

    result = shell.write_file(config.nginx_site, render_site_config(app_port=config.app_port))
    if not result.ok:
        raise DeployError(
            kind=FailureKind.REMOTE,
            message=f"Failed to write {config.nginx_site}.",
            hint="Check sudo rights for the SSH user.",
            output=result.diagnostics(),
            result=result,
        )

    result = shell.run(check_and_reload_cmd())
    if not result.ok:
        raise DeployError(
            kind=FailureKind.REMOTE,
            message="Nginx config failed.",
            hint=f"Check {NGINX_ERROR_LOG} remotely.",
            output=result.diagnostics(),
            result=result,
        )
    logger.info("Nginx proxied: 80 -> %s. Test: curl http://%s", config.app_port, config.server_ip)
