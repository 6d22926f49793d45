"""Clone or pull the application repository and check it is deployable."""

from __future__ import annotations

import base64
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping
from urllib.parse import urlsplit

from scripts.deploy import docker_compose_helpers as compose_helpers
from scripts.deploy.command_runner import CommandResult, DeployError, FailureKind, Runner, format_cmd, run_command
from scripts.deploy.env_schema import DeploymentConfig


logger = logging.getLogger("app_deploy")


@dataclass(frozen=True)
class WorkingCopy:
    path: Path
    branch: str
    source_kind: str  # "dockerfile" or "compose"
    compose_file: Path | None = None


def git_auth_env(*, repo_url: str, token: str, base_env: Mapping[str, str] | None = None) -> dict[str, str]:
    """Child environment that authenticates git against the repo host.

    The token travels as an extra HTTP header scoped to the origin, via
    GIT_CONFIG_* variables, so it never shows up in argv, URLs or .git/config.
    """
    env = dict(os.environ if base_env is None else base_env)
    env["GIT_TERMINAL_PROMPT"] = "0"
    if not token:
        return env
    parts = urlsplit(repo_url)
    origin = f"{parts.scheme}://{parts.netloc}/"
    basic = base64.b64encode(f"x-access-token:{token}".encode()).decode()
    index = int(env.get("GIT_CONFIG_COUNT") or "0")
    env[f"GIT_CONFIG_KEY_{index}"] = f"http.{origin}.extraheader"
    env[f"GIT_CONFIG_VALUE_{index}"] = f"AUTHORIZATION: basic {basic}"
    env["GIT_CONFIG_COUNT"] = str(index + 1)
    return env


def build_git_clone_cmd(*, repo_url: str, dest: Path) -> list[str]:
    return ["git", "clone", repo_url, str(dest)]


def build_git_pull_cmd(*, repo_dir: Path, branch: str) -> list[str]:
    return ["git", "-C", str(repo_dir), "pull", "origin", branch]


def build_git_checkout_cmd(*, repo_dir: Path, branch: str) -> list[str]:
    return ["git", "-C", str(repo_dir), "checkout", branch]


def _git(runner: Runner, cmd: list[str], *, env: Mapping[str, str], token: str, failure: str) -> CommandResult:
    logger.debug("$ %s", format_cmd(cmd, secrets=[token]))
    result = runner(cmd, env=env)
    if not result.ok:
        raise DeployError(
            kind=result.kind,
            message=failure,
            hint="Check the repository URL, the access token scope and that the branch exists.",
            output=result.diagnostics().replace(token, "***") if token else result.diagnostics(),
            result=result,
        )
    return result


def detect_source(repo_dir: Path) -> tuple[str, Path | None]:
    """Return ("dockerfile", None) or ("compose", compose_path).

    A Dockerfile wins when both exist.
    """
    if (repo_dir / "Dockerfile").is_file():
        return "dockerfile", None
    compose_file = compose_helpers.find_compose_file(repo_dir)
    if compose_file is not None:
        return "compose", compose_file
    raise DeployError(
        kind=FailureKind.VALIDATION,
        message=f"No Dockerfile or docker-compose.yml found in {repo_dir}",
        hint="Add a Dockerfile (or a compose file) at the repository root.",
    )


def sync_repository(config: DeploymentConfig, *, workspace: Path, runner: Runner = run_command) -> WorkingCopy:
    """Clone (first run) or pull (later runs), check out the branch, validate sources."""
    repo_dir = workspace / config.repo_name
    env = git_auth_env(repo_url=config.repo_url, token=config.token)

    if repo_dir.is_dir():
        logger.info("Repo exists; pulling latest changes...")
        _git(
            runner,
            build_git_pull_cmd(repo_dir=repo_dir, branch=config.branch),
            env=env,
            token=config.token,
            failure=f"Failed to pull branch {config.branch}",
        )
    else:
        logger.info("Cloning fresh repo...")
        _git(
            runner,
            build_git_clone_cmd(repo_url=config.repo_url, dest=repo_dir),
            env=env,
            token=config.token,
            failure=f"Failed to clone {config.repo_url}",
        )

    logger.info("Switching to branch: %s", config.branch)
    _git(
        runner,
        build_git_checkout_cmd(repo_dir=repo_dir, branch=config.branch),
        env=env,
        token=config.token,
        failure=f"Failed to checkout branch {config.branch}",
    )

    source_kind, compose_file = detect_source(repo_dir)
    if compose_file is not None:
        try:
            compose_helpers.load_compose_services(compose_file)
        except (RuntimeError, ValueError) as exc:
            raise DeployError(
                kind=FailureKind.VALIDATION,
                message=str(exc),
                hint="Fix the compose file so it parses and declares at least one service.",
            ) from exc
        logger.info("Success: %s validated in %s", compose_file.name, repo_dir)
    else:
        logger.info("Success: Dockerfile validated in %s", repo_dir)

    return WorkingCopy(path=repo_dir, branch=config.branch, source_kind=source_kind, compose_file=compose_file)
