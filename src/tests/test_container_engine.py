from __future__ import annotations

from pathlib import Path

import pytest
from conftest import RecordingRunner

from pgextimage.container_engine import ContainerEngine
from pgextimage.exceptions import ContainerEngineError


def test_binary_resolution_order(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("PGEXTIMAGE_DOCKER", raising=False)
    assert ContainerEngine().binary == "docker"

    monkeypatch.setenv("PGEXTIMAGE_DOCKER", "podman")
    assert ContainerEngine().binary == "podman"
    assert ContainerEngine(binary="nerdctl").binary == "nerdctl"


def test_find_binary_missing(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr("pgextimage.container_engine.shutil.which", lambda _b: None)

    with pytest.raises(ContainerEngineError, match="not found: docker"):
        ContainerEngine(binary="docker").find_binary()


def test_build_image_passes_build_args(tmp_path: Path) -> None:
    runner = RecordingRunner()
    engine = ContainerEngine(binary="docker", run_command=runner)
    dockerfile = tmp_path / "Dockerfile"
    dockerfile.write_text("FROM scratch\n")

    engine.build_image(
        dockerfile,
        "pgextimage:17",
        tmp_path,
        build_args={"PG_CRON_VERSION": "1.6.4", "POSTGIS_VERSION": "3.5.0"},
    )

    assert runner.commands == [
        [
            "docker",
            "build",
            "-f",
            str(dockerfile),
            "-t",
            "pgextimage:17",
            "--build-arg",
            "PG_CRON_VERSION=1.6.4",
            "--build-arg",
            "POSTGIS_VERSION=3.5.0",
            str(tmp_path),
        ]
    ]
    assert runner.calls[0]["capture_output"] is False


def test_build_image_requires_dockerfile(tmp_path: Path) -> None:
    runner = RecordingRunner()
    engine = ContainerEngine(binary="docker", run_command=runner)

    with pytest.raises(ContainerEngineError, match="Dockerfile not found"):
        engine.build_image(tmp_path / "Dockerfile", "tag", tmp_path)
    assert runner.calls == []


def test_failed_command_reports_stderr() -> None:
    engine = ContainerEngine(
        binary="docker", run_command=RecordingRunner(fail_on=lambda _cmd: True)
    )

    with pytest.raises(ContainerEngineError, match="exited with status 2: boom"):
        engine.run_once("pgextimage:17", "ls", ["/"])


def test_unstartable_binary_is_wrapped() -> None:
    def _missing(cmd, **_kwargs):
        raise FileNotFoundError(cmd[0])

    engine = ContainerEngine(binary="docker", run_command=_missing)

    with pytest.raises(ContainerEngineError, match="Cannot run docker"):
        engine.logs("abc")
    assert engine.is_available() is False


def test_container_lifecycle_commands() -> None:
    runner = RecordingRunner(stdout="true\n")
    engine = ContainerEngine(binary="docker", run_command=runner)

    container_id = engine.start_detached(
        "pgextimage:17", env={"POSTGRES_HOST_AUTH_METHOD": "trust"}
    )
    running = engine.is_running(container_id)
    assert engine.try_exec(container_id, ["pg_isready"]) is True
    engine.remove(container_id)

    assert container_id == "true"
    assert running is True
    assert runner.commands == [
        ["docker", "run", "-d", "-e", "POSTGRES_HOST_AUTH_METHOD=trust", "pgextimage:17"],
        ["docker", "inspect", "-f", "{{.State.Running}}", "true"],
        ["docker", "exec", "true", "pg_isready"],
        ["docker", "rm", "-f", "true"],
    ]


def test_try_exec_false_on_failure() -> None:
    engine = ContainerEngine(
        binary="docker", run_command=RecordingRunner(fail_on=lambda _cmd: True)
    )

    assert engine.try_exec("abc", ["pg_isready"]) is False
