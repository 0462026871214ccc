from __future__ import annotations

from pathlib import Path

import pytest
from conftest import RecordingRunner

from pgextimage import internal_config, pg_paths


@pytest.fixture(autouse=True)
def _clean_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in ("PGEXTIMAGE_RUNTIME", "PGEXTIMAGE_SHAREDIR", "PGEXTIMAGE_PKGLIBDIR"):
        monkeypatch.delenv(name, raising=False)


def test_debian_layout() -> None:
    layout = pg_paths.debian_layout()

    assert layout.sharedir == "/usr/share/postgresql/17"
    assert layout.extension_dir == "/usr/share/postgresql/17/extension"
    assert layout.pkglibdir == "/usr/lib/postgresql/17/lib"
    assert layout.conf_sample == internal_config.CONF_SAMPLE_PATH


def test_detect_layout_source(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr("pgextimage.pg_paths.shutil.which", lambda _name: None)
    assert pg_paths.detect_layout_source() == "debian"

    monkeypatch.setattr(
        "pgextimage.pg_paths.shutil.which", lambda _name: "/usr/bin/pg_config"
    )
    assert pg_paths.detect_layout_source() == "pg_config"

    monkeypatch.setenv("PGEXTIMAGE_SHAREDIR", "/opt/pg/share")
    assert pg_paths.detect_layout_source() == "environment"

    monkeypatch.setenv("PGEXTIMAGE_RUNTIME", "Debian")
    assert pg_paths.detect_layout_source() == "debian"


def test_resolve_pg_layout_from_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("PGEXTIMAGE_SHAREDIR", "/opt/pg/share")

    layout = pg_paths.resolve_pg_layout()

    assert layout.extension_dir == "/opt/pg/share/extension"
    assert layout.pkglibdir == "/usr/lib/postgresql/17/lib"


def test_resolve_pg_layout_from_pg_config(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("PGEXTIMAGE_RUNTIME", "pg_config")
    runner = RecordingRunner(stdout="/usr/local/share/postgresql\n/usr/local/lib/postgresql\n")

    layout = pg_paths.resolve_pg_layout(run_command=runner)

    assert runner.commands == [["pg_config", "--sharedir", "--pkglibdir"]]
    assert layout.sharedir == "/usr/local/share/postgresql"
    assert layout.pkglibdir == "/usr/local/lib/postgresql"


def test_rooted() -> None:
    assert pg_paths.rooted(Path("/tmp/root"), "/usr/share/x") == Path(
        "/tmp/root/usr/share/x"
    )


def test_root_layout_ignores_host_pg_config(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(
        "pgextimage.pg_paths.shutil.which", lambda _name: "/usr/bin/pg_config"
    )

    assert pg_paths.root_layout() == pg_paths.debian_layout()
    assert pg_paths.root_layout(16).pkglibdir == "/usr/lib/postgresql/16/lib"


def test_root_layout_honours_overrides(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("PGEXTIMAGE_PKGLIBDIR", "/opt/pg/lib")

    layout = pg_paths.root_layout()

    assert layout.pkglibdir == "/opt/pg/lib"
    assert layout.sharedir == "/usr/share/postgresql/17"
