"""Fail-fast stage pipeline shared by deploy and cleanup runs."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable

import requests

from scripts.deploy import app_deployer, cleanup, connectivity, deploy_validator, nginx_proxy, remote_provision, repo_sync
from scripts.deploy.command_runner import DeployError, FailureKind, Runner, run_command
from scripts.deploy.deploy_hooks import DeployHooks
from scripts.deploy.deploy_log import StepLogger
from scripts.deploy.env_schema import DeploymentConfig
from scripts.deploy.ssh_helpers import RemoteShell


logger = logging.getLogger("app_deploy")


@dataclass
class DeployContext:
    """Per-run state handed to every stage.

    `config` is immutable; `working_copy` and `checks` are filled in by the
    stages that produce them.
    """

    config: DeploymentConfig
    workspace: Path
    runner: Runner = run_command
    hooks: DeployHooks = field(default_factory=lambda: DeployHooks(None))
    steps: StepLogger = field(default_factory=StepLogger)
    strict_validation: bool = False
    sleep: Callable[[float], None] = time.sleep
    http_get: Callable[..., requests.Response] = requests.get
    working_copy: repo_sync.WorkingCopy | None = None
    checks: list[deploy_validator.CheckResult] = field(default_factory=list)

    @property
    def shell(self) -> RemoteShell:
        return RemoteShell(host=self.config.ssh_target, key_path=self.config.ssh_key, runner=self.runner)


@dataclass(frozen=True)
class Stage:
    name: str
    title: str
    run: Callable[[DeployContext], None]


@dataclass(frozen=True)
class PipelineResult:
    ok: bool
    completed: list[str]
    failed_stage: str | None = None
    error: DeployError | None = None


def _sync_repo(ctx: DeployContext) -> None:
    ctx.working_copy = repo_sync.sync_repository(ctx.config, workspace=ctx.workspace, runner=ctx.runner)


def _connectivity(ctx: DeployContext) -> None:
    connectivity.check_connectivity(ctx.config, runner=ctx.runner)


def _provision(ctx: DeployContext) -> None:
    remote_provision.provision(ctx.config, shell=ctx.shell)


def _deploy(ctx: DeployContext) -> None:
    if ctx.working_copy is None:
        raise DeployError(
            kind=FailureKind.VALIDATION,
            message="No working copy to deploy.",
            hint="The repository stage must run before the deploy stage.",
        )
    app_deployer.deploy_app(ctx.config, ctx.working_copy, shell=ctx.shell, runner=ctx.runner, sleep=ctx.sleep)


def _proxy(ctx: DeployContext) -> None:
    nginx_proxy.configure_proxy(ctx.config, shell=ctx.shell)


def _validate(ctx: DeployContext) -> None:
    source_kind = ctx.working_copy.source_kind if ctx.working_copy is not None else "dockerfile"
    ctx.checks = deploy_validator.validate_deployment(
        ctx.config,
        shell=ctx.shell,
        source_kind=source_kind,
        strict=ctx.strict_validation,
        http_get=ctx.http_get,
    )


def _cleanup(ctx: DeployContext) -> None:
    cleanup.cleanup(ctx.config, shell=ctx.shell)


def deploy_stages(config: DeploymentConfig) -> list[Stage]:
    ip = config.server_ip
    return [
        Stage("repo", "Cloning Repository", _sync_repo),
        Stage("connectivity", f"Checking SSH Connectivity to {ip}", _connectivity),
        Stage("provision", f"Preparing Remote Environment on {ip}", _provision),
        Stage("deploy", f"Deploying Application to {ip}", _deploy),
        Stage("proxy", f"Configuring Nginx Proxy on {ip}", _proxy),
        Stage("validate", f"Validating on {ip}", _validate),
    ]


def cleanup_stages(config: DeploymentConfig) -> list[Stage]:
    ip = config.server_ip
    return [
        Stage("connectivity", f"Checking SSH Connectivity to {ip}", _connectivity),
        Stage("cleanup", f"Cleaning Up Deployment on {ip}", _cleanup),
    ]


def run_pipeline(ctx: DeployContext, stages: list[Stage]) -> PipelineResult:
    """Run stages in order; stop at the first DeployError and report it."""
    completed: list[str] = []
    for stage in stages:
        ctx.steps.step(stage.title)
        ctx.hooks.call("pre_stage", ctx, stage.name)
        try:
            stage.run(ctx)
        except DeployError as exc:
            report_error(exc)
            ctx.hooks.call("on_error", ctx, exc)
            return PipelineResult(ok=False, completed=completed, failed_stage=stage.name, error=exc)
        ctx.hooks.call("post_stage", ctx, stage.name)
        completed.append(stage.name)
    return PipelineResult(ok=True, completed=completed)


def report_error(exc: DeployError) -> None:
    message = f"{exc.message} {exc.hint}".strip() if exc.hint else exc.message
    logger.error(message)
    if exc.output:
        logger.info("Command output:\n%s", exc.output)
