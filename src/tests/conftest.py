from __future__ import annotations

import io
import subprocess
import tarfile
from pathlib import Path
from typing import Callable

import pytest


def pytest_addoption(parser: pytest.Parser) -> None:
    parser.addoption(
        "--slow",
        action="store_true",
        default=False,
        help="run slow tests that need docker or network access",
    )
    parser.addoption(
        "--only-slow",
        action="store_true",
        default=False,
        help="run only tests marked as slow",
    )


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line("markers", "slow: needs docker or network access")


def pytest_collection_modifyitems(
    config: pytest.Config, items: list[pytest.Item]
) -> None:
    only_slow = bool(config.getoption("--only-slow"))
    run_slow = bool(config.getoption("--slow")) or only_slow

    if only_slow:
        selected = [item for item in items if "slow" in item.keywords]
        deselected = [item for item in items if "slow" not in item.keywords]
        if deselected:
            config.hook.pytest_deselected(items=deselected)
        items[:] = selected

    if run_slow:
        return

    skip_slow = pytest.mark.skip(reason="need --slow option to run")
    for item in items:
        if "slow" in item.keywords:
            item.add_marker(skip_slow)


def build_source_tarball(files: dict[str, bytes], top_level: str = "pkg-1.0") -> bytes:
    """Gzip tarball laid out like an upstream release archive."""
    data = io.BytesIO()
    with tarfile.open(fileobj=data, mode="w:gz") as archive:
        top = tarfile.TarInfo(name=top_level)
        top.type = tarfile.DIRTYPE
        top.mode = 0o755
        archive.addfile(top)
        for name, payload in files.items():
            info = tarfile.TarInfo(name=f"{top_level}/{name}")
            info.size = len(payload)
            info.mode = 0o644
            archive.addfile(info, io.BytesIO(payload))
    return data.getvalue()


class RecordingRunner:
    """Stand-in for ``subprocess.run`` that records calls and fails on demand."""

    def __init__(
        self,
        fail_on: Callable[[list[str]], bool] | None = None,
        stdout: str = "",
    ) -> None:
        self.calls: list[dict[str, object]] = []
        self.fail_on = fail_on
        self.stdout = stdout

    def __call__(self, cmd: list[str], **kwargs) -> subprocess.CompletedProcess[str]:
        self.calls.append({"cmd": list(cmd), **kwargs})
        if self.fail_on is not None and self.fail_on(list(cmd)):
            return subprocess.CompletedProcess(cmd, 2, stdout="", stderr="boom")
        return subprocess.CompletedProcess(cmd, 0, stdout=self.stdout, stderr="")

    @property
    def commands(self) -> list[list[str]]:
        return [call["cmd"] for call in self.calls]  # type: ignore[misc]


@pytest.fixture
def source_tarball(tmp_path: Path) -> Path:
    archive = tmp_path / "source.tar.gz"
    archive.write_bytes(
        build_source_tarball(
            {"Makefile": b"all:\n", "sql/ext.sql": b"select 1;\n"},
        )
    )
    return archive
