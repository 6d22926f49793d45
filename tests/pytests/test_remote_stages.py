from __future__ import annotations

import os
import shutil
import subprocess
from pathlib import Path

import pytest

from scripts.deploy.app_deployer import (
    HEALTH_SETTLE_SECONDS,
    build_and_run_cmd,
    compose_cmd,
    deploy_app,
    ensure_remote_dir_cmd,
    remove_container_cmd,
)
from scripts.deploy.cleanup import remove_compose_project_cmd
from scripts.deploy.command_runner import DeployError, FailureKind
from scripts.deploy.connectivity import check_connectivity
from scripts.deploy.deploy_validator import running_container_cmd
from scripts.deploy.docker_compose_helpers import normalize_project_name
from scripts.deploy.remote_provision import provision, provision_remote_script
from scripts.deploy.repo_sync import WorkingCopy
from scripts.deploy.ssh_helpers import RemoteShell, build_rsync_cmd


@pytest.fixture
def shell(config, fake_runner):
    return RemoteShell(host=config.ssh_target, key_path=config.ssh_key, runner=fake_runner)


@pytest.fixture
def working_copy(tmp_path):
    path = tmp_path / "hello-app"
    path.mkdir()
    (path / "Dockerfile").write_text("FROM node:20\n")
    return WorkingCopy(path=path, branch="main", source_kind="dockerfile")


# Connectivity


def test_connectivity_pings_then_ssh(config, fake_runner):
    check_connectivity(config, runner=fake_runner)
    assert fake_runner.calls[0]["argv"][0] == "ping"
    assert fake_runner.calls[1]["argv"][0] == "ssh"
    assert "ConnectTimeout=10" in fake_runner.calls[1]["argv"]


def test_ping_failure_stops_before_ssh(config, fake_runner):
    fake_runner.fail_on("ping")
    with pytest.raises(DeployError) as exc:
        check_connectivity(config, runner=fake_runner)
    assert exc.value.kind == FailureKind.CONNECTIVITY
    assert "203.0.113.10 unreachable" in exc.value.message
    assert fake_runner.count("ssh") == 0


def test_ssh_failure_hint_mentions_key_perms(config, fake_runner):
    fake_runner.fail_on("ssh", returncode=255, stderr="Permission denied (publickey).")
    with pytest.raises(DeployError) as exc:
        check_connectivity(config, runner=fake_runner)
    assert f"chmod 400 {config.ssh_key}" in exc.value.hint
    assert "port 22" in exc.value.hint
    assert exc.value.output == "Permission denied (publickey)."


# Provisioning


def test_provision_script_guards_every_install():
    script = provision_remote_script(ssh_user="ubuntu")
    assert script.startswith("set -e\n")
    assert "apt-get upgrade -y" in script
    assert "if ! command -v docker >/dev/null 2>&1; then" in script
    assert "if ! command -v docker-compose >/dev/null 2>&1; then" in script
    assert "if ! command -v nginx >/dev/null 2>&1; then" in script
    assert "https://api.github.com/repos/docker/compose/releases/latest" in script
    assert "docker-compose-$(uname -s)-$(uname -m)" in script
    assert "sudo systemctl enable docker" in script
    assert "sudo systemctl enable nginx" in script
    assert "sudo usermod -aG docker ubuntu" in script


def test_provision_sends_script_over_stdin(config, shell, fake_runner):
    provision(config, shell=shell)
    call = fake_runner.calls[-1]
    assert call["argv"][-1] == "bash -s"
    assert "usermod -aG docker ubuntu" in call["input"]
    assert call["capture"] is False


def test_provision_failure_is_fatal(config, shell, fake_runner):
    fake_runner.fail_on("bash -s")
    with pytest.raises(DeployError) as exc:
        provision(config, shell=shell)
    assert exc.value.kind == FailureKind.REMOTE
    assert exc.value.message == "Remote prep failed."
    assert "system log" in exc.value.hint


# Application deploy


def test_deploy_order_and_commands(config, shell, fake_runner, working_copy):
    sleeps: list[float] = []
    deploy_app(config, working_copy, shell=shell, runner=fake_runner, sleep=sleeps.append)

    cmds = fake_runner.commands
    idx_mkdir = next(i for i, c in enumerate(cmds) if "mkdir -p /opt/app" in c)
    idx_rm = next(i for i, c in enumerate(cmds) if "docker rm app-container" in c)
    idx_rsync = next(i for i, c in enumerate(cmds) if c.startswith("rsync"))
    idx_run = next(i for i, c in enumerate(cmds) if "docker run -d" in c)
    idx_logs = next(i for i, c in enumerate(cmds) if "docker logs app-container --tail 10" in c)
    idx_curl = next(i for i, c in enumerate(cmds) if "curl -fsS -o /dev/null http://localhost:3000" in c)
    assert idx_mkdir < idx_rm < idx_rsync < idx_run < idx_logs < idx_curl
    assert sleeps == [HEALTH_SETTLE_SECONDS]


def test_deploy_twice_never_starts_two_containers(config, shell, fake_runner, working_copy):
    deploy_app(config, working_copy, shell=shell, runner=fake_runner, sleep=lambda s: None)
    deploy_app(config, working_copy, shell=shell, runner=fake_runner, sleep=lambda s: None)
    runs = [i for i, c in enumerate(fake_runner.commands) if "docker run -d --name app-container" in c]
    removes = [i for i, c in enumerate(fake_runner.commands) if "docker rm app-container" in c]
    assert len(runs) == 2
    # Every run is preceded by a removal of the previous instance.
    assert removes[0] < runs[0] < removes[1] < runs[1]


def test_remove_container_ignores_missing(config, shell, fake_runner, working_copy):
    fake_runner.fail_on("docker stop")
    deploy_app(config, working_copy, shell=shell, runner=fake_runner, sleep=lambda s: None)
    assert "|| true" in remove_container_cmd(container_name="app-container")


def test_rsync_mirror_uses_delete(config, shell, fake_runner, working_copy):
    deploy_app(config, working_copy, shell=shell, runner=fake_runner, sleep=lambda s: None)
    rsync = next(c for c in fake_runner.calls if c["argv"][0] == "rsync")
    assert "--delete" in rsync["argv"]
    assert rsync["argv"][-1] == "ubuntu@203.0.113.10:/opt/app/"


def test_build_and_run_cmd_has_restart_policy_and_port_mapping():
    cmd = build_and_run_cmd(remote_dir="/opt/app", image_name="app-image", container_name="app-container", app_port=3000)
    assert cmd == (
        "cd /opt/app && sudo docker build -t app-image . && "
        "sudo docker run -d --name app-container -p 3000:3000 --restart unless-stopped app-image"
    )


def test_ensure_remote_dir_cmd_chowns_to_ssh_user():
    assert ensure_remote_dir_cmd(remote_dir="/opt/app", ssh_user="ubuntu") == (
        "sudo mkdir -p /opt/app && sudo chown -R ubuntu:ubuntu /opt/app"
    )


def test_build_failure_still_dumps_logs(config, shell, fake_runner, working_copy):
    fake_runner.fail_on("docker build")
    with pytest.raises(DeployError, match="Build/run failed"):
        deploy_app(config, working_copy, shell=shell, runner=fake_runner, sleep=lambda s: None)
    assert fake_runner.count("docker logs app-container") == 1
    assert fake_runner.count("curl") == 0


def test_health_gate_failure(config, shell, fake_runner, working_copy):
    fake_runner.fail_on("http://localhost:3000", stderr="curl: (7) Failed to connect")
    with pytest.raises(DeployError) as exc:
        deploy_app(config, working_copy, shell=shell, runner=fake_runner, sleep=lambda s: None)
    assert exc.value.kind == FailureKind.HEALTH
    assert exc.value.message == "App unhealthy on 3000."


def test_rsync_failure_is_fatal(config, shell, fake_runner, working_copy):
    fake_runner.fail_on("rsync")
    with pytest.raises(DeployError, match="File transfer failed"):
        deploy_app(config, working_copy, shell=shell, runner=fake_runner, sleep=lambda s: None)
    assert fake_runner.count("docker build") == 0


def test_compose_source_uses_docker_compose(config, shell, fake_runner, tmp_path: Path):
    path = tmp_path / "stack"
    path.mkdir()
    compose = path / "docker-compose.yml"
    compose.write_text("services:\n  web:\n    build: .\n    ports:\n      - \"3000:3000\"\n")
    wc = WorkingCopy(path=path, branch="main", source_kind="compose", compose_file=compose)

    deploy_app(config, wc, shell=shell, runner=fake_runner, sleep=lambda s: None)

    assert fake_runner.count("docker-compose -p app-container -f docker-compose.yml down || true") == 1
    assert fake_runner.count("docker-compose -p app-container -f docker-compose.yml up -d --build") == 1
    assert fake_runner.count("docker build") == 0
    assert fake_runner.count("logs --tail 10") == 1


def _write_stub(path: Path, body: str) -> None:
    path.write_text("#!/bin/sh\n" + body, encoding="utf-8")
    path.chmod(0o755)


@pytest.mark.skipif(shutil.which("bash") is None, reason="bash not installed")
@pytest.mark.parametrize("stdin_reader", ["apt-get update", "apt-get upgrade"])
def test_provision_script_survives_commands_that_read_stdin(tmp_path, stdin_reader):
    # A command that drains stdin (dpkg at a conffile prompt) must not eat the rest of the script.
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir()
    trace = tmp_path / "trace.log"
    _write_stub(
        bin_dir / "sudo",
        f'printf "%s\\n" "$*" >> "{trace}"\ncase "$*" in *"{stdin_reader}"*) cat >/dev/null ;; esac\n',
    )
    for tool in ("docker", "docker-compose", "nginx"):
        _write_stub(bin_dir / tool, f'echo "{tool} stub"\n')
    env = {**os.environ, "PATH": f"{bin_dir}{os.pathsep}{os.environ.get('PATH', '')}"}

    proc = subprocess.run(
        ["bash", "-s"],
        input=provision_remote_script(ssh_user="ubuntu"),
        env=env,
        capture_output=True,
        text=True,
        timeout=30,
    )

    assert proc.returncode == 0, proc.stderr
    calls = trace.read_text(encoding="utf-8")
    assert "apt-get upgrade -y -o Dpkg::Options::=--force-confdef" in calls
    assert "usermod -aG docker ubuntu" in calls
    assert "[provision] done" in proc.stdout


@pytest.mark.skipif(shutil.which("rsync") is None, reason="rsync not installed")
def test_rsync_cmd_mirrors_and_keeps_remote_git(tmp_path):
    src = tmp_path / "src"
    dest = tmp_path / "dest"
    (src / ".git").mkdir(parents=True)
    (src / ".git" / "HEAD").write_text("local\n")
    (src / "app.js").write_text("console.log('v2')\n")
    (dest / ".git").mkdir(parents=True)
    (dest / ".git" / "HEAD").write_text("remote\n")
    (dest / "stale.js").write_text("console.log('v1')\n")

    cmd = build_rsync_cmd(source_dir=src, host="ubuntu@203.0.113.10", key_path=tmp_path / "id", remote_dir=str(dest))
    # Same flags, local destination.
    cmd[-1] = f"{dest}/"
    subprocess.run(cmd, check=True, capture_output=True, timeout=30)

    assert (dest / "app.js").read_text() == "console.log('v2')\n"
    assert not (dest / "stale.js").exists()
    assert (dest / ".git" / "HEAD").read_text() == "remote\n"


def test_compose_project_name_is_normalized_everywhere():
    assert normalize_project_name("MyApp") == "myapp"
    assert normalize_project_name("--My.App_1") == "myapp_1"
    assert "-p myapp " in compose_cmd(remote_dir="/opt/app", project="MyApp", compose_file="compose.yml", action="up -d")
    assert "com.docker.compose.project=myapp" in running_container_cmd(container_name="MyApp", source_kind="compose")
    assert "com.docker.compose.project=myapp" in remove_compose_project_cmd(project="MyApp")
