from __future__ import annotations

import os
import shutil
import subprocess
from pathlib import Path

from pgextimage import internal_config
from pgextimage.install_engine import RunCommand
from pgextimage.models import PgLayout


def detect_layout_source() -> str:
    """Return how the PostgreSQL layout should be discovered."""
    explicit = os.environ.get("PGEXTIMAGE_RUNTIME", "").strip().lower()
    if explicit:
        return explicit

    if os.environ.get("PGEXTIMAGE_SHAREDIR", "").strip():
        return "environment"

    if shutil.which("pg_config"):
        return "pg_config"

    return "debian"


def debian_layout(pg_major: int = internal_config.PG_MAJOR) -> PgLayout:
    """Layout used by the Debian packages the official postgres images ship."""
    return PgLayout(
        sharedir=f"/usr/share/postgresql/{pg_major}",
        pkglibdir=f"/usr/lib/postgresql/{pg_major}/lib",
        conf_sample=internal_config.CONF_SAMPLE_PATH,
    )


def root_layout(pg_major: int = internal_config.PG_MAJOR) -> PgLayout:
    """Layout inside a filesystem root other than the host's own.

    Only the explicit environment overrides apply; the host's ``pg_config``
    describes the host installation, not the tree being inspected.
    """
    default = debian_layout(pg_major)
    return PgLayout(
        sharedir=os.environ.get("PGEXTIMAGE_SHAREDIR", "").strip() or default.sharedir,
        pkglibdir=os.environ.get("PGEXTIMAGE_PKGLIBDIR", "").strip()
        or default.pkglibdir,
        conf_sample=default.conf_sample,
    )


def pg_config_layout(run_command: RunCommand = subprocess.run) -> PgLayout:
    output = run_command(
        ["pg_config", "--sharedir", "--pkglibdir"],
        capture_output=True,
        check=True,
        text=True,
    )
    sharedir, pkglibdir = [line.strip() for line in output.stdout.splitlines()[:2]]
    return PgLayout(
        sharedir=sharedir,
        pkglibdir=pkglibdir,
        conf_sample=internal_config.CONF_SAMPLE_PATH,
    )


def resolve_pg_layout(
    pg_major: int = internal_config.PG_MAJOR,
    run_command: RunCommand = subprocess.run,
) -> PgLayout:
    """Resolve server directories with environment-first, Debian-last defaults."""
    source = detect_layout_source()
    if source == "environment":
        return root_layout(pg_major)
    if source == "pg_config":
        return pg_config_layout(run_command=run_command)
    return debian_layout(pg_major)


def rooted(root: Path, absolute_path: str) -> Path:
    """Map an absolute image path under an alternative filesystem *root*."""
    return root.joinpath(absolute_path.lstrip("/"))
