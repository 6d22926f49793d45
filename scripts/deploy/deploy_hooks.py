"""Optional per-repo customizations around the deploy stages.

A hooks module is either a plain module of functions or one exposing
`get_hooks()` that returns an object. Any subset of the hooks below may be
implemented:

    pre_stage(ctx, stage_name)    before each stage ("repo", "connectivity", ...)
    post_stage(ctx, stage_name)   after a stage succeeded
    post_deploy(ctx, checks)      after a successful deploy, with the validation results
    on_error(ctx, exc)            with the DeployError that stopped the run
"""

from __future__ import annotations

import importlib
import importlib.util
import logging
import sys
from pathlib import Path
from types import ModuleType
from typing import Any, Mapping, Protocol, runtime_checkable

from scripts.deploy.env_schema import VarsEnum, truthy


logger = logging.getLogger("app_deploy")

DEFAULT_HOOKS_FILE = Path("scripts") / "deploy" / "deploy_customizations.py"
HOOKS_MODULE_NAME = "deploy_customizations"


@runtime_checkable
class DeployHooksProtocol(Protocol):
    def pre_stage(self, ctx: Any, stage_name: str) -> None: ...
    def post_stage(self, ctx: Any, stage_name: str) -> None: ...
    def post_deploy(self, ctx: Any, checks: list[Any]) -> None: ...
    def on_error(self, ctx: Any, exc: Exception) -> None: ...


class DeployHooks:
    """Holds the loaded hooks object (if any); unimplemented hooks are no-ops."""

    def __init__(self, impl: Any | None, soft_fail: bool = False):
        self._impl = impl
        self._soft_fail = soft_fail

    def call(self, hook_name: str, *args, **kwargs) -> Any:
        method = getattr(self._impl, hook_name, None) if self._impl is not None else None
        if method is None:
            return None
        try:
            return method(*args, **kwargs)
        except Exception as e:
            if not self._soft_fail:
                logger.error("[hook] Hook '%s' failed: %s", hook_name, e)
                raise
            logger.warning("[hook] Hook '%s' failed: %s (soft-fail enabled)", hook_name, e)
            return None


def _looks_like_path(target: str) -> bool:
    return target.endswith(".py") or "/" in target or "\\" in target


def _import_from_file(path: Path) -> ModuleType:
    spec = importlib.util.spec_from_file_location(HOOKS_MODULE_NAME, path)
    if spec is None or spec.loader is None:
        raise ImportError(f"Could not load spec from {path}")
    module = importlib.util.module_from_spec(spec)
    sys.modules[HOOKS_MODULE_NAME] = module
    spec.loader.exec_module(module)
    return module


def _import_target(target: str) -> ModuleType:
    if not _looks_like_path(target):
        return importlib.import_module(target)
    path = Path(target).resolve()
    if not path.exists():
        raise FileNotFoundError(f"Hook module not found at: {path}")
    return _import_from_file(path)


def load_hooks(
    repo_root: Path,
    module_path: str | None = None,
    soft_fail: bool | None = None,
    env_kv: Mapping[str, str] | None = None,
) -> DeployHooks:
    """Load hooks for a run.

    Module resolution: `module_path` (CLI) -> APP_DEPLOY_HOOKS_MODULE in
    `env_kv` -> `scripts/deploy/deploy_customizations.py` under repo_root.
    An explicitly named module must load; a missing default file means no hooks.
    A default file that exists but fails to import is still an error.

    Soft-fail: `soft_fail` (CLI) -> APP_DEPLOY_HOOKS_SOFT_FAIL -> off.
    """
    env_kv = env_kv or {}
    if soft_fail is None:
        soft_fail = truthy(env_kv.get(VarsEnum.APP_DEPLOY_HOOKS_SOFT_FAIL.value))

    target = module_path or env_kv.get(VarsEnum.APP_DEPLOY_HOOKS_MODULE.value) or ""
    if not target:
        default_file = repo_root / DEFAULT_HOOKS_FILE
        if not default_file.exists():
            return DeployHooks(None, soft_fail=soft_fail)
        target = str(default_file.resolve())

    logger.info("[hooks] Loading hooks from: %s", target)
    try:
        module = _import_target(target)
        impl = module.get_hooks() if hasattr(module, "get_hooks") else module
    except Exception as e:
        if soft_fail:
            logger.warning("[hooks] Failed to load hooks from %s: %s (soft-fail enabled)", target, e)
            return DeployHooks(None, soft_fail=soft_fail)
        raise ImportError(f"Failed to load hooks from {target}: {e}") from e
    return DeployHooks(impl, soft_fail=soft_fail)
