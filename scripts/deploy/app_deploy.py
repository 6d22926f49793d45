#!/usr/bin/env python3
"""Deploy a Dockerized app from a Git repository to a remote Ubuntu host.

Flow (each stage aborts the run on failure):
- prompt for and validate the seven deploy parameters
- clone or pull the repository and check for a Dockerfile / compose file
- ping + SSH dry run against the host
- install Docker, Docker Compose and Nginx on the host if missing
- rsync the working copy, build and run the container, health-check it
- point Nginx (port 80) at the app port
- report post-deploy diagnostics

Prompt defaults can be pre-filled from the environment or from
`.env.deploy` / `.env.deploy.secrets` (see env_schema.py).

Usage:
    python3 scripts/deploy/app_deploy.py
    python3 scripts/deploy/app_deploy.py --strict-validation
    python3 scripts/deploy/app_deploy.py --cleanup
"""

from __future__ import annotations

import argparse
import getpass
import logging
import os
import signal
import sys
from pathlib import Path
from typing import Callable, Iterable, Mapping

# Allow `python3 scripts/deploy/app_deploy.py` from the repo root.
sys.path.append(str(Path(__file__).resolve().parents[2]))

from scripts.deploy.deploy_hooks import load_hooks
from scripts.deploy.deploy_log import StepLogger, setup_logging
from scripts.deploy.deploy_pipeline import DeployContext, cleanup_stages, deploy_stages, run_pipeline
from scripts.deploy.env_schema import (
    CLEANUP_KEYS,
    PARAM_SCHEMA,
    SETTINGS_SCHEMA,
    DeploymentConfig,
    EnvKeySpec,
    EnvValidationError,
    VarsEnum,
    build_config,
    load_deploy_files,
    resolve_value,
    validate_param,
)


logger = logging.getLogger("app_deploy")

INTERRUPT_MESSAGE = "Script interrupted. Check logs for details."


def _on_interrupt(signum: int, frame: object) -> None:
    # Default disposition first, so a second signal during logging terminates immediately.
    signal.signal(signum, signal.SIG_DFL)
    logger.info(INTERRUPT_MESSAGE)
    os.kill(os.getpid(), signum)


def install_interrupt_handler() -> None:
    for sig in (signal.SIGINT, signal.SIGTERM):
        signal.signal(sig, _on_interrupt)


def prompt_value(label: str, default: str = "") -> str:
    suffix = f" [default: {default}]" if default else ""
    return input(f"{label}{suffix}: ").strip()


def prompt_secret(label: str, has_default: bool = False) -> str:
    suffix = " [default: from environment]" if has_default else ""
    return getpass.getpass(f"{label}{suffix}: ").strip()


def collect_params(
    specs: Iterable[EnvKeySpec],
    *,
    file_kv: Mapping[str, str],
    ask: Callable[[str, str], str] = prompt_value,
    ask_secret: Callable[[str, bool], str] = prompt_secret,
) -> dict[str, str]:
    """Prompt for each parameter in order, validating each answer before the next prompt.

    Raises EnvValidationError at the first invalid answer.
    """
    values: dict[str, str] = {}
    for spec in specs:
        prefill = resolve_value(spec.key, cli_value=None, file_kv=file_kv)
        label = spec.prompt or spec.key.value
        if spec.secret:
            answer = ask_secret(label, bool(prefill))
        else:
            answer = ask(label, prefill or spec.default or "")
        values[spec.key.value] = validate_param(spec, answer or prefill)
    return values


def resolve_settings(args: argparse.Namespace, file_kv: Mapping[str, str]) -> dict[str, str]:
    cli = {
        VarsEnum.APP_REMOTE_DIR.value: args.remote_dir,
        VarsEnum.APP_CONTAINER_NAME.value: args.container_name,
        VarsEnum.APP_IMAGE_NAME.value: args.image_name,
        VarsEnum.APP_NGINX_SITE.value: args.nginx_site,
        VarsEnum.APP_DEPLOY_HOOKS_MODULE.value: args.hooks_module,
    }
    out: dict[str, str] = {}
    for spec in SETTINGS_SCHEMA:
        value = resolve_value(spec.key, cli_value=cli.get(spec.key.value), file_kv=file_kv)
        if value:
            out[spec.key.value] = value
    return out


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Deploy a Dockerized app to a remote host behind Nginx")
    parser.add_argument(
        "--cleanup",
        action="store_true",
        help="Remove the deployed container, image, remote app dir, and restore the Nginx backup",
    )
    parser.add_argument(
        "--workspace",
        default=None,
        help="Directory the repository is cloned into (default: current directory)",
    )
    parser.add_argument("--log-dir", default=None, help="Directory for deploy_YYYYMMDD.log (default: current directory)")
    parser.add_argument(
        "--env-dir",
        default=None,
        help="Directory holding .env.deploy / .env.deploy.secrets (default: current directory)",
    )
    parser.add_argument(
        "--remote-dir",
        default=None,
        help="Remote app directory. Resolution: CLI -> APP_REMOTE_DIR env var -> .env.deploy -> /opt/app",
    )
    parser.add_argument(
        "--container-name",
        default=None,
        help="Container name. Resolution: CLI -> APP_CONTAINER_NAME env var -> .env.deploy -> app-container",
    )
    parser.add_argument(
        "--image-name",
        default=None,
        help="Image tag. Resolution: CLI -> APP_IMAGE_NAME env var -> .env.deploy -> app-image",
    )
    parser.add_argument(
        "--nginx-site",
        default=None,
        help="Nginx site file. Resolution: CLI -> APP_NGINX_SITE env var -> .env.deploy -> sites-available/default",
    )
    parser.add_argument(
        "--strict-validation",
        action="store_true",
        help="Fail the run (exit 1) if any post-deploy check fails",
    )
    parser.add_argument("--hooks-module", default=None, help="Hooks module (dotted path or .py file)")
    parser.add_argument(
        "--hooks-soft-fail",
        action="store_true",
        default=None,
        help="Log hook failures instead of aborting",
    )
    return parser


def _report_config_error(exc: EnvValidationError) -> int:
    for problem in exc.problems:
        logger.error(problem)
    return 1


def main(
    argv: list[str] | None = None,
    *,
    context_factory: Callable[[DeploymentConfig, Path], DeployContext] | None = None,
    ask: Callable[[str, str], str] = prompt_value,
    ask_secret: Callable[[str, bool], str] = prompt_secret,
) -> int:
    args = build_parser().parse_args(argv)

    cwd = Path.cwd()
    workspace = Path(args.workspace).expanduser().resolve() if args.workspace else cwd
    env_dir = Path(args.env_dir).expanduser().resolve() if args.env_dir else cwd
    log_path = setup_logging(log_dir=Path(args.log_dir).expanduser() if args.log_dir else cwd)
    install_interrupt_handler()

    logger.info("=== Starting %s ===", "Cleanup" if args.cleanup else "Deployment")
    logger.info("Log file: %s", log_path)

    try:
        file_kv = load_deploy_files(env_dir)
        if args.cleanup:
            specs = [s for s in PARAM_SCHEMA if s.key in CLEANUP_KEYS]
        else:
            specs = list(PARAM_SCHEMA)
        values = collect_params(specs, file_kv=file_kv, ask=ask, ask_secret=ask_secret)
    except EnvValidationError as exc:
        return _report_config_error(exc)

    settings = resolve_settings(args, file_kv)
    config = build_config(values, settings)
    if args.cleanup:
        logger.info("Params validated: Server=%s, Remote dir=%s", config.ssh_target, config.remote_dir)
    else:
        logger.info(
            "Params validated: Repo=%s, Branch=%s, Server=%s:%s",
            config.repo_url,
            config.branch,
            config.server_ip,
            config.app_port,
        )

    try:
        hooks = load_hooks(env_dir, module_path=args.hooks_module, soft_fail=args.hooks_soft_fail, env_kv=settings)
    except ImportError as exc:
        logger.error("%s", exc)
        return 1

    if context_factory is not None:
        ctx = context_factory(config, workspace)
    else:
        ctx = DeployContext(config=config, workspace=workspace)
    ctx.hooks = hooks
    ctx.steps = StepLogger(logger)
    ctx.strict_validation = bool(args.strict_validation)

    stages = cleanup_stages(config) if args.cleanup else deploy_stages(config)
    result = run_pipeline(ctx, stages)
    if not result.ok:
        return 1

    if args.cleanup:
        logger.info("Cleanup complete on %s.", config.server_ip)
        logger.info("=== EOF Cleanup ===")
        return 0

    failed = [c for c in ctx.checks if not c.ok]
    if failed:
        logger.warning("Validation: %s check(s) reported problems (diagnostics only).", len(failed))
        logger.info("Full deploy success!")
    else:
        logger.info("Validation: Stack solid. Full deploy success!")
    hooks.call("post_deploy", ctx, ctx.checks)
    logger.info("=== EOF Deployment ===")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
