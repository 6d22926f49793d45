#!/usr/bin/env python3
"""Validate `.env.deploy` / `.env.deploy.secrets` against the deploy schema.

Intended to run before `app_deploy.py` so a broken pre-fill file is caught
without starting a deploy.

Strict by default:
- unknown keys => error
- values that would be rejected at the prompt => error
"""

from __future__ import annotations

import argparse
import sys
from pathlib import Path

# Allow `python3 scripts/deploy/validate_env.py` from the repo root.
sys.path.append(str(Path(__file__).resolve().parents[2]))

from scripts.deploy.env_schema import (
    PARAM_SCHEMA,
    EnvValidationError,
    load_deploy_files,
    validate_param,
)


def validate_deploy_files(env_dir: Path) -> dict[str, str]:
    """Returns the merged key/values; raises EnvValidationError listing every problem."""
    kv = load_deploy_files(env_dir)
    problems: list[str] = []
    for spec in PARAM_SCHEMA:
        raw = str(kv.get(spec.key.value) or "").strip()
        if not raw:
            continue
        try:
            validate_param(spec, raw)
        except EnvValidationError as exc:
            problems.extend(f"{spec.key.value}: {p}" for p in exc.problems)
    if problems:
        raise EnvValidationError(context=f"deploy files in {env_dir}", problems=problems)
    return kv


def main(argv: list[str] | None = None) -> int:
    ap = argparse.ArgumentParser(description="Validate .env.deploy and .env.deploy.secrets")
    ap.add_argument("--env-dir", default=".", help="Directory holding the env files (default: .)")
    args = ap.parse_args(argv)

    env_dir = Path(args.env_dir).expanduser().resolve()
    try:
        validate_deploy_files(env_dir)
    except EnvValidationError as e:
        print(e.format(), file=sys.stderr)
        return 2

    print("[env] ok")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
