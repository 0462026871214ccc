from __future__ import annotations

import hashlib
import logging
from pathlib import Path

import pytest
import requests
from conftest import RecordingRunner, build_source_tarball

from pgextimage import recipes
from pgextimage.builder import StagingBuilder
from pgextimage.exceptions import (
    ArchiveExtractError,
    BuildStepError,
    IntegrityError,
    SourceFetchError,
)

TARBALL = build_source_tarball({"Makefile": b"all:\n", "build/.keep": b""})


class _Client:
    def __init__(self, payload: bytes = TARBALL, fail_for: str = "") -> None:
        self.payload = payload
        self.fail_for = fail_for
        self.urls: list[str] = []

    def download(self, url: str, target_path: Path) -> Path:
        self.urls.append(url)
        if self.fail_for and self.fail_for in url:
            raise requests.ConnectionError("connection reset")
        target_path.parent.mkdir(parents=True, exist_ok=True)
        target_path.write_bytes(self.payload)
        return target_path


def _builder(
    tmp_path: Path,
    runner: RecordingRunner,
    client: _Client | None = None,
    checksums: dict[str, str] | None = None,
) -> StagingBuilder:
    return StagingBuilder(
        recipes.build_plan(checksums=checksums),
        source_dir=str(tmp_path / "src"),
        staging_root=str(tmp_path / "build_artifacts"),
        client=client or _Client(),  # type: ignore[arg-type]
        run_command=runner,
        jobs=4,
    )


def test_build_all_runs_every_extension_in_order(tmp_path: Path) -> None:
    runner = RecordingRunner()
    client = _Client()
    builder = _builder(tmp_path, runner, client)

    built = builder.build_all()

    assert built == [recipe.name for recipe in recipes.RECIPES]
    assert client.urls == [
        recipe.source_url(builder.plan.version_of(recipe.name))
        for recipe in recipes.RECIPES
    ]
    assert (tmp_path / "build_artifacts").is_dir()
    staging = str(tmp_path / "build_artifacts")
    installs = [cmd for cmd in runner.commands if cmd[:2] == ["make", "install"]]
    assert installs == [["make", "install", f"DESTDIR={staging}"]] * 5


def test_build_extension_uses_recipe_working_directories(tmp_path: Path) -> None:
    runner = RecordingRunner()
    builder = _builder(tmp_path, runner)

    builder.build_extension(recipes.get_recipe("timescaledb"))

    source_root = tmp_path / "src" / "timescaledb"
    assert [call["cwd"] for call in runner.calls] == [
        str(source_root),
        str(source_root / "build"),
        str(source_root / "build"),
    ]
    assert (source_root / "Makefile").is_file()
    assert (tmp_path / "src" / "timescaledb.tar.gz").is_file()


def test_build_extension_substitutes_parallel_jobs(tmp_path: Path) -> None:
    runner = RecordingRunner()
    builder = _builder(tmp_path, runner)

    builder.build_extension(recipes.get_recipe("postgis"))

    assert runner.commands[1] == ["make", "-j4"]


def test_build_all_stops_at_first_failing_step(tmp_path: Path) -> None:
    runner = RecordingRunner(fail_on=lambda cmd: cmd == ["make"])
    client = _Client()
    builder = _builder(tmp_path, runner, client)

    with pytest.raises(BuildStepError, match="pg_jobmon: 'make' exited with status 2"):
        builder.build_all()

    assert len(client.urls) == 1
    assert runner.commands == [["make"]]


def test_build_step_that_cannot_start(tmp_path: Path) -> None:
    def _missing_binary(cmd, **_kwargs):
        raise FileNotFoundError(cmd[0])

    builder = _builder(tmp_path, RecordingRunner())
    builder.run_command = _missing_binary

    with pytest.raises(BuildStepError, match="could not be started"):
        builder.build_extension(recipes.get_recipe("pg_cron"))


def test_download_failure_aborts_build(tmp_path: Path) -> None:
    runner = RecordingRunner()
    builder = _builder(tmp_path, runner, _Client(fail_for="pg_partman"))

    with pytest.raises(SourceFetchError, match="pg_partman 5.2.2"):
        builder.build_all()

    # pg_jobmon finished before the failing download
    assert ["make", "install"] == runner.commands[-1][:2]
    assert len(runner.commands) == 2


def test_corrupt_archive_aborts_build(tmp_path: Path) -> None:
    runner = RecordingRunner()
    builder = _builder(tmp_path, runner, _Client(payload=b"not a tarball"))

    with pytest.raises(ArchiveExtractError):
        builder.build_all()
    assert runner.calls == []


def test_checksum_mismatch_aborts_before_extracting(tmp_path: Path) -> None:
    runner = RecordingRunner()
    builder = _builder(tmp_path, runner, checksums={"pg_jobmon": "0" * 64})

    with pytest.raises(IntegrityError):
        builder.build_all()
    assert not (tmp_path / "src" / "pg_jobmon").exists()
    assert runner.calls == []


def test_matching_checksum_is_logged(
    tmp_path: Path, caplog: pytest.LogCaptureFixture
) -> None:
    digest = hashlib.sha256(TARBALL).hexdigest()
    builder = _builder(tmp_path, RecordingRunner(), checksums={"pg_cron": digest})

    with caplog.at_level(logging.INFO):
        builder.build_extension(recipes.get_recipe("pg_cron"))
        builder.build_extension(recipes.get_recipe("pg_jobmon"))

    messages = [record.message for record in caplog.records]
    assert "Checksum verified for pg_cron" in messages
    assert "No checksum recorded for pg_jobmon; skipping check" in messages


def test_extract_source_replaces_previous_tree(tmp_path: Path) -> None:
    builder = _builder(tmp_path, RecordingRunner())
    stale = tmp_path / "src" / "pg_cron" / "stale.o"
    stale.parent.mkdir(parents=True)
    stale.write_text("old")

    builder.build_extension(recipes.get_recipe("pg_cron"))

    assert not stale.exists()
