from __future__ import annotations

import sys
from pathlib import Path
from typing import Callable

import pytest


def pytest_configure() -> None:
    # Allow tests to import `scripts.*` as a package.
    repo_root = Path(__file__).parents[2]
    sys.path.append(str(repo_root))


class FakeRunner:
    """Records commands instead of running them.

    `fail_on("ping")` makes any command whose text contains "ping" fail;
    `on("git clone", fn)` runs `fn(cmd)` when such a command is issued.
    """

    def __init__(self) -> None:
        self.calls: list[dict] = []
        self._failures: list[tuple[str, int, str, str]] = []
        self._stdout: list[tuple[str, str]] = []
        self._effects: list[tuple[str, Callable[[list[str]], None]]] = []

    def fail_on(self, needle: str, *, returncode: int = 1, stderr: str = "boom", stdout: str = "") -> None:
        self._failures.append((needle, returncode, stderr, stdout))

    def stdout_on(self, needle: str, stdout: str) -> None:
        self._stdout.append((needle, stdout))

    def on(self, needle: str, effect: Callable[[list[str]], None]) -> None:
        self._effects.append((needle, effect))

    @property
    def commands(self) -> list[str]:
        return [c["text"] for c in self.calls]

    def count(self, needle: str) -> int:
        return sum(1 for text in self.commands if needle in text)

    def __call__(self, cmd, *, input_text=None, env=None, cwd=None, timeout=None, capture=True):
        from scripts.deploy.command_runner import CommandResult, FailureKind

        argv = [str(c) for c in cmd]
        text = " ".join(argv)
        if input_text:
            text = f"{text}\n{input_text}"
        self.calls.append({"argv": argv, "text": text, "input": input_text, "env": env, "capture": capture})

        for needle, effect in self._effects:
            if needle in text:
                effect(argv)
        for needle, returncode, stderr, stdout in self._failures:
            if needle in text:
                return CommandResult(args=argv, returncode=returncode, stdout=stdout, stderr=stderr, kind=FailureKind.EXIT_STATUS)
        stdout = ""
        for needle, out in self._stdout:
            if needle in text:
                stdout = out
        return CommandResult(args=argv, returncode=0, stdout=stdout)


@pytest.fixture
def tmp_path(tmp_path_factory: pytest.TempPathFactory) -> Path:
    # Neutral directory name: pytest's default embeds the test name, which
    # collides with FakeRunner's substring needles (e.g. "rsync", "checkout").
    return tmp_path_factory.mktemp("case")


@pytest.fixture
def fake_runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def ssh_key(tmp_path: Path) -> Path:
    key = tmp_path / "id_test"
    key.write_text("not-a-real-key\n", encoding="utf-8")
    return key


@pytest.fixture
def config(ssh_key: Path):
    from scripts.deploy.env_schema import DeploymentConfig

    return DeploymentConfig(
        repo_url="https://github.com/acme/hello-app.git",
        token="ghp_secret123",
        branch="main",
        ssh_user="ubuntu",
        server_ip="203.0.113.10",
        ssh_key=ssh_key,
        app_port=3000,
    )
