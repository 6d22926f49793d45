"""Deterministic parameter schema for the app deploy tool.

This module is the single source of truth for:
- which deploy parameters exist (vars vs secrets)
- how they are prompted, defaulted and validated
- how `.env.deploy` / `.env.deploy.secrets` pre-fill them

Design goals:
- Fail fast on the first invalid parameter, before any side effect.
- No backwards compatibility aliases; unknown keys in `.env.deploy` are errors.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Iterable, Mapping

from dotenv import dotenv_values


DEFAULT_BRANCH = "main"
DEFAULT_SSH_KEY = "~/.ssh/id_rsa"
DEFAULT_REMOTE_DIR = "/opt/app"
DEFAULT_CONTAINER_NAME = "app-container"
DEFAULT_IMAGE_NAME = "app-image"
DEFAULT_NGINX_SITE = "/etc/nginx/sites-available/default"

# https://<host>[:port]/<owner>[/<group>...]/<repo>.git
REPO_URL_PATTERN = re.compile(r"^https://[A-Za-z0-9.-]+(?::[0-9]+)?(?:/[^/\s]+)+/[^/\s]+\.git$")
# Dotted quad only; octet ranges are not checked.
SERVER_IP_PATTERN = re.compile(r"^[0-9]{1,3}\.[0-9]{1,3}\.[0-9]{1,3}\.[0-9]{1,3}$")
PORT_PATTERN = re.compile(r"^[0-9]+$")


class VarsEnum(str, Enum):
    # Prompted
    APP_REPO_URL = "APP_REPO_URL"
    APP_BRANCH = "APP_BRANCH"
    APP_SSH_USER = "APP_SSH_USER"
    APP_SERVER_IP = "APP_SERVER_IP"
    APP_SSH_KEY = "APP_SSH_KEY"
    APP_PORT = "APP_PORT"

    # Remote layout
    APP_REMOTE_DIR = "APP_REMOTE_DIR"
    APP_CONTAINER_NAME = "APP_CONTAINER_NAME"
    APP_IMAGE_NAME = "APP_IMAGE_NAME"
    APP_NGINX_SITE = "APP_NGINX_SITE"

    # Hooks
    APP_DEPLOY_HOOKS_MODULE = "APP_DEPLOY_HOOKS_MODULE"
    APP_DEPLOY_HOOKS_SOFT_FAIL = "APP_DEPLOY_HOOKS_SOFT_FAIL"


class SecretsEnum(str, Enum):
    APP_GIT_TOKEN = "APP_GIT_TOKEN"


@dataclass(frozen=True)
class EnvKeySpec:
    key: VarsEnum | SecretsEnum
    mandatory: bool
    default: str | None = None
    prompt: str | None = None
    pattern: re.Pattern[str] | None = None
    problem: str = ""
    secret: bool = False


class EnvValidationError(ValueError):
    def __init__(self, *, context: str, problems: list[str]):
        super().__init__("; ".join(problems))
        self.context = context
        self.problems = problems

    def format(self) -> str:
        lines = [f"[env] validation failed: {self.context}"]
        for p in self.problems:
            lines.append(f"- {p}")
        return "\n".join(lines)


# Prompt order is the tuple order.
PARAM_SCHEMA: tuple[EnvKeySpec, ...] = (
    EnvKeySpec(
        key=VarsEnum.APP_REPO_URL,
        mandatory=True,
        prompt="Git Repository URL (e.g., https://github.com/user/repo.git)",
        pattern=REPO_URL_PATTERN,
        problem="Invalid Git URL format (expected https://<host>/<owner>/<repo>.git)",
    ),
    EnvKeySpec(
        key=SecretsEnum.APP_GIT_TOKEN,
        mandatory=True,
        prompt="Personal Access Token (PAT for private repo)",
        problem="PAT is required for private repos",
        secret=True,
    ),
    EnvKeySpec(
        key=VarsEnum.APP_BRANCH,
        mandatory=False,
        default=DEFAULT_BRANCH,
        prompt="Branch name",
    ),
    EnvKeySpec(
        key=VarsEnum.APP_SSH_USER,
        mandatory=True,
        prompt="SSH Username",
        problem="SSH Username required",
    ),
    EnvKeySpec(
        key=VarsEnum.APP_SERVER_IP,
        mandatory=True,
        prompt="Server IP Address",
        pattern=SERVER_IP_PATTERN,
        problem="Invalid IP format (expected a dotted quad such as 203.0.113.10)",
    ),
    EnvKeySpec(
        key=VarsEnum.APP_SSH_KEY,
        mandatory=False,
        default=DEFAULT_SSH_KEY,
        prompt="SSH Key Path",
    ),
    EnvKeySpec(
        key=VarsEnum.APP_PORT,
        mandatory=True,
        prompt="App Port (internal container)",
        pattern=PORT_PATTERN,
        problem="Port must be a number (e.g., 3000)",
    ),
)

# Subset prompted by `--cleanup`.
CLEANUP_KEYS: tuple[VarsEnum, ...] = (VarsEnum.APP_SSH_USER, VarsEnum.APP_SERVER_IP, VarsEnum.APP_SSH_KEY)

SETTINGS_SCHEMA: tuple[EnvKeySpec, ...] = (
    EnvKeySpec(key=VarsEnum.APP_REMOTE_DIR, mandatory=False, default=DEFAULT_REMOTE_DIR),
    EnvKeySpec(key=VarsEnum.APP_CONTAINER_NAME, mandatory=False, default=DEFAULT_CONTAINER_NAME),
    EnvKeySpec(key=VarsEnum.APP_IMAGE_NAME, mandatory=False, default=DEFAULT_IMAGE_NAME),
    EnvKeySpec(key=VarsEnum.APP_NGINX_SITE, mandatory=False, default=DEFAULT_NGINX_SITE),
    EnvKeySpec(key=VarsEnum.APP_DEPLOY_HOOKS_MODULE, mandatory=False),
    EnvKeySpec(key=VarsEnum.APP_DEPLOY_HOOKS_SOFT_FAIL, mandatory=False, default="false"),
)

DEPLOY_SCHEMA: tuple[EnvKeySpec, ...] = tuple(s for s in PARAM_SCHEMA if not s.secret) + SETTINGS_SCHEMA
SECRETS_SCHEMA: tuple[EnvKeySpec, ...] = tuple(s for s in PARAM_SCHEMA if s.secret)


@dataclass(frozen=True)
class DeploymentConfig:
    """Validated, immutable run configuration.

    Built once at startup and passed to every stage. Never written to disk.
    """

    repo_url: str
    token: str = ""
    branch: str = DEFAULT_BRANCH
    ssh_user: str = ""
    server_ip: str = ""
    ssh_key: Path = Path(DEFAULT_SSH_KEY)
    app_port: int = 0
    remote_dir: str = DEFAULT_REMOTE_DIR
    container_name: str = DEFAULT_CONTAINER_NAME
    image_name: str = DEFAULT_IMAGE_NAME
    nginx_site: str = DEFAULT_NGINX_SITE

    @property
    def ssh_target(self) -> str:
        return f"{self.ssh_user}@{self.server_ip}"

    @property
    def repo_name(self) -> str:
        return repo_name_from_url(self.repo_url)

    def __repr__(self) -> str:
        # Keep the token out of tracebacks and debug output.
        token = "***" if self.token else ""
        return (
            f"DeploymentConfig(repo_url={self.repo_url!r}, token={token!r}, branch={self.branch!r}, "
            f"ssh_target={self.ssh_target!r}, ssh_key={str(self.ssh_key)!r}, app_port={self.app_port})"
        )


def _schema_keys(schema: Iterable[EnvKeySpec]) -> set[str]:
    return {spec.key.value for spec in schema}


def parse_dotenv_file(path: Path) -> dict[str, str]:
    """Parse dotenv file strictly.

    - Comments are ignored.
    - Keys are preserved even if they have empty values (""), so we can detect unknown keys.
    """
    kv: dict[str, str] = {}
    raw = dotenv_values(path)
    for k, v in raw.items():
        if k is None:
            continue
        key = str(k).strip()
        if not key:
            continue
        val = "" if v is None else str(v).strip()
        kv[key] = val
    return kv


def load_deploy_files(repo_root: Path) -> dict[str, str]:
    """Merge `.env.deploy` and `.env.deploy.secrets` from `repo_root`.

    Missing files are fine; unknown keys are not.
    """
    merged: dict[str, str] = {}
    for name, schema in ((".env.deploy", DEPLOY_SCHEMA), (".env.deploy.secrets", SECRETS_SCHEMA)):
        path = repo_root / name
        if not path.exists():
            continue
        kv = parse_dotenv_file(path)
        validate_known_keys(schema, kv, context=str(path))
        merged.update(kv)
    return merged


def resolve_value(key: VarsEnum | SecretsEnum, *, cli_value: str | None, file_kv: Mapping[str, str]) -> str:
    """Resolution order: CLI -> process env -> `.env.deploy` -> empty."""
    resolved = str(cli_value or "").strip()
    if not resolved:
        resolved = str(os.getenv(key.value) or "").strip()
    if not resolved:
        resolved = str(file_kv.get(key.value) or "").strip()
    return resolved


def validate_known_keys(schema: Iterable[EnvKeySpec], kv: Mapping[str, str], *, context: str) -> None:
    allowed = _schema_keys(schema)
    unknown = sorted([k for k in kv.keys() if k not in allowed])
    if unknown:
        raise EnvValidationError(
            context=context,
            problems=["Unknown key(s): " + ", ".join(unknown)],
        )


def apply_defaults(schema: Iterable[EnvKeySpec], kv: dict[str, str]) -> dict[str, str]:
    out = dict(kv)
    for spec in schema:
        if spec.key.value in out and str(out.get(spec.key.value) or "").strip():
            continue
        if spec.default is None:
            continue
        out[spec.key.value] = spec.default
    return out


def validate_param(spec: EnvKeySpec, value: str) -> str:
    """Validate a single prompted value; returns the effective (defaulted) value.

    Raises EnvValidationError on the first violated rule.
    """
    val = str(value or "").strip()
    if not val and spec.default is not None:
        val = spec.default
    if not val:
        if spec.mandatory:
            raise EnvValidationError(context=spec.key.value, problems=[spec.problem or f"{spec.key.value} is required"])
        return val
    if spec.pattern is not None and not spec.pattern.match(val):
        raise EnvValidationError(context=spec.key.value, problems=[spec.problem])
    if spec.key == VarsEnum.APP_SSH_KEY:
        key_path = Path(val).expanduser()
        if not key_path.is_file():
            raise EnvValidationError(context=spec.key.value, problems=[f"SSH key not found at {key_path}"])
        return str(key_path)
    return val


def get_spec(schema: Iterable[EnvKeySpec], key: VarsEnum | SecretsEnum) -> EnvKeySpec:
    for spec in schema:
        if spec.key == key:
            return spec
    raise KeyError(key)


def repo_name_from_url(repo_url: str) -> str:
    name = repo_url.rstrip("/").rsplit("/", 1)[-1]
    if name.endswith(".git"):
        name = name[: -len(".git")]
    return name


def truthy(val: str | None) -> bool:
    v = str(val or "").strip().lower()
    return v in {"1", "true", "yes", "y", "on"}


def build_config(values: Mapping[str, str], settings: Mapping[str, str] | None = None) -> DeploymentConfig:
    """Build a DeploymentConfig from already-validated values."""
    settings = apply_defaults(SETTINGS_SCHEMA, dict(settings or {}))
    port_raw = values.get(VarsEnum.APP_PORT.value, "")
    return DeploymentConfig(
        repo_url=values.get(VarsEnum.APP_REPO_URL.value, ""),
        token=values.get(SecretsEnum.APP_GIT_TOKEN.value, ""),
        branch=values.get(VarsEnum.APP_BRANCH.value) or DEFAULT_BRANCH,
        ssh_user=values.get(VarsEnum.APP_SSH_USER.value, ""),
        server_ip=values.get(VarsEnum.APP_SERVER_IP.value, ""),
        ssh_key=Path(values.get(VarsEnum.APP_SSH_KEY.value) or DEFAULT_SSH_KEY).expanduser(),
        app_port=int(port_raw) if port_raw else 0,
        remote_dir=settings[VarsEnum.APP_REMOTE_DIR.value],
        container_name=settings[VarsEnum.APP_CONTAINER_NAME.value],
        image_name=settings[VarsEnum.APP_IMAGE_NAME.value],
        nginx_site=settings[VarsEnum.APP_NGINX_SITE.value],
    )
