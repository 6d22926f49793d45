import os
import re
import yaml
from pathlib import Path
from typing import Any, Dict, Optional

# Lookup order when a repo has no Dockerfile.
COMPOSE_FILENAMES = ("docker-compose.yml", "docker-compose.yaml", "compose.yml", "compose.yaml")

# Regex to match ${VAR:-default} or ${VAR}
INTERPOLATION_PATTERN = re.compile(r'\$\{([^}:]+)(?::-([^}]*))?\}')

# Characters docker-compose strips from a project name after lowercasing it.
PROJECT_NAME_INVALID = re.compile(r"[^-_a-z0-9]+")

def normalize_project_name(name: str) -> str:
    """Project name as docker-compose records it in the `com.docker.compose.project` label."""
    return PROJECT_NAME_INVALID.sub("", name.lower()).lstrip("-_")

def interpolate_value(value: str) -> str:
    """
    Interpolates environment variables in a string.
    Supports ${VAR} and ${VAR:-default}.
    """
    if not isinstance(value, str):
        return value

    def replace_match(match):
        var_name = match.group(1)
        default_value = match.group(2)
        env_val = os.getenv(var_name)
        if env_val is not None:
            return env_val
        return default_value if default_value is not None else ""

    return INTERPOLATION_PATTERN.sub(replace_match, value)

def interpolate_dict(data: Any) -> Any:
    """Recursively interpolates strings in a dictionary or list."""
    if isinstance(data, dict):
        return {k: interpolate_dict(v) for k, v in data.items()}
    elif isinstance(data, list):
        return [interpolate_dict(v) for v in data]
    elif isinstance(data, str):
        return interpolate_value(data)
    else:
        return data

def find_compose_file(cwd: Path) -> Optional[Path]:
    """First existing compose file in `cwd`, or None."""
    for name in COMPOSE_FILENAMES:
        candidate = cwd / name
        if candidate.is_file():
            return candidate
    return None

def load_docker_compose_config(compose_path: Path) -> Dict[str, Any]:
    """
    Parses a compose file using PyYAML and interpolates variables.
    Returns the parsed configuration dictionary.
    """
    if not compose_path.exists():
        raise FileNotFoundError(f"{compose_path.name} not found in {compose_path.parent}")

    try:
        with open(compose_path, "r") as f:
            raw_config = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise RuntimeError(f"Failed to parse {compose_path.name}: {e}") from e

    if not isinstance(raw_config, dict):
        raise ValueError(f"{compose_path.name} is not a mapping")
    return interpolate_dict(raw_config)

def load_compose_services(compose_path: Path) -> Dict[str, Any]:
    """Return the `services` mapping; an empty or missing one is an error."""
    config = load_docker_compose_config(compose_path)
    services = config.get("services")
    if not isinstance(services, dict) or not services:
        raise ValueError(f"{compose_path.name} declares no services")
    return services

def get_ports(service_config: Dict[str, Any]) -> list:
    """Get the exposed ports for a service."""
    # PyYAML parses "80:80" as string usually, but "80" might be int.
    ports = service_config.get("ports", [])
    if ports is None:
        return []
    return ports

def published_host_ports(services: Dict[str, Any]) -> list[int]:
    """Host-side ports published by any service (short and long syntax)."""
    out: list[int] = []
    for config in services.values():
        if not isinstance(config, dict):
            continue
        for entry in get_ports(config):
            if isinstance(entry, dict):
                published = entry.get("published")
                if published is not None and str(published).isdigit():
                    out.append(int(published))
                continue
            parts = str(entry).split("/", 1)[0].split(":")
            # "8080:80", "127.0.0.1:8080:80" -> host port is second to last; "80" publishes nothing fixed
            if len(parts) >= 2 and parts[-2].isdigit():
                out.append(int(parts[-2]))
    return out
