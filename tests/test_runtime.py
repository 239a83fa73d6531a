from __future__ import annotations

import subprocess
from unittest.mock import MagicMock, patch

import pytest

from syntropy.core.runtime import ContainerRuntimeError, DockerRuntime


@pytest.fixture
def docker():
    return DockerRuntime("/srv/project")


@patch("syntropy.core.runtime.subprocess.run")
def test_list_running(mock_run, docker):
    mock_run.return_value = MagicMock(returncode=0, stdout="syntropy-worker-aaaa\nsyntropy-worker-bbbb\n\n", stderr="")
    assert docker.list_running("syntropy-worker") == ["syntropy-worker-aaaa", "syntropy-worker-bbbb"]
    cmd = mock_run.call_args[0][0]
    assert cmd == ["docker", "ps", "--filter", "name=syntropy-worker-", "--format", "{{.Names}}"]


@patch("syntropy.core.runtime.subprocess.run")
def test_list_exited_includes_stopped(mock_run, docker):
    mock_run.return_value = MagicMock(returncode=0, stdout="syntropy-worker-aaaa\n", stderr="")
    docker.list_exited("syntropy-worker")
    cmd = mock_run.call_args[0][0]
    assert "-a" in cmd
    assert "status=exited" in cmd


@patch("syntropy.core.runtime.subprocess.run")
def test_list_failure_is_empty(mock_run, docker):
    mock_run.side_effect = subprocess.TimeoutExpired(cmd="docker", timeout=30)
    assert docker.list_running("syntropy-worker") == []


@patch("syntropy.core.runtime.subprocess.run")
def test_inspect_running(mock_run, docker):
    mock_run.return_value = MagicMock(returncode=0, stdout="running:0\n", stderr="")
    state = docker.inspect("syntropy-worker-aaaa")
    assert state.alive
    assert state.status == "running"


@patch("syntropy.core.runtime.subprocess.run")
def test_inspect_exited(mock_run, docker):
    mock_run.return_value = MagicMock(returncode=0, stdout="exited:137\n", stderr="")
    state = docker.inspect("syntropy-worker-aaaa")
    assert state.exists and state.exited
    assert state.exit_code == 137


@patch("syntropy.core.runtime.subprocess.run")
def test_inspect_missing(mock_run, docker):
    mock_run.return_value = MagicMock(returncode=1, stdout="", stderr="No such object")
    state = docker.inspect("syntropy-worker-aaaa")
    assert not state.exists
    assert state.exit_code == -1


@patch("syntropy.core.runtime.subprocess.run")
def test_launch_command(mock_run, docker):
    mock_run.return_value = MagicMock(returncode=0, stdout="abc\n", stderr="")
    docker.launch("syntropy-worker-aaaa", "task-1", "/host/root")
    args, kwargs = mock_run.call_args
    assert args[0] == [
        "docker", "compose", "--profile", "worker", "run", "-d",
        "--name", "syntropy-worker-aaaa",
        "-e", "TASK_ID=task-1",
        "-e", "HOST_ROOT=/host/root",
        "worker",
    ]
    assert kwargs["cwd"] == "/srv/project"
    assert kwargs["timeout"] == 60


@patch("syntropy.core.runtime.subprocess.run")
def test_launch_failure_raises(mock_run, docker):
    mock_run.return_value = MagicMock(returncode=1, stdout="", stderr="no such service: worker")
    with pytest.raises(ContainerRuntimeError, match="no such service"):
        docker.launch("syntropy-worker-aaaa", "task-1", "/host/root")


@patch("syntropy.core.runtime.subprocess.run")
def test_launch_docker_missing_raises(mock_run, docker):
    mock_run.side_effect = FileNotFoundError("docker")
    with pytest.raises(ContainerRuntimeError):
        docker.launch("syntropy-worker-aaaa", "task-1", "/host/root")


@patch("syntropy.core.runtime.subprocess.run")
def test_remove_exited(mock_run, docker):
    mock_run.side_effect = [
        MagicMock(returncode=0, stdout="syntropy-worker-aaaa\n", stderr=""),
        MagicMock(returncode=0, stdout="", stderr=""),
    ]
    assert docker.remove_exited("syntropy-worker") == (1, 1)
    assert mock_run.call_args_list[1][0][0] == ["docker", "rm", "-f", "syntropy-worker-aaaa"]


@patch("syntropy.core.runtime.subprocess.run")
def test_inspect_garbled_exit_code_is_a_failure(mock_run, docker):
    mock_run.return_value = MagicMock(returncode=0, stdout="exited:\n", stderr="")
    state = docker.inspect("syntropy-worker-aaaa")
    assert state.exited
    assert state.exit_code == -1
