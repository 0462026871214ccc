"""Runtime root assembly: overlay the staging root and enable preloading.

This is the native counterpart of the final Dockerfile stage. The overlay is a
recursive merge, so files the base image already ships are preserved unless
the staging root carries the same path.
"""

from __future__ import annotations

import logging
import os
import re
import shutil
from pathlib import Path
from typing import Iterable

from pgextimage.exceptions import AssemblyError

logger: logging.Logger = logging.getLogger(__name__)

PRELOAD_SETTING = "shared_preload_libraries"
_PRELOAD_PATTERN = re.compile(
    rf"^\s*{PRELOAD_SETTING}\s*=\s*'(?P<value>[^']*)'", re.MULTILINE
)


def format_preload_directive(libraries: Iterable[str]) -> str:
    names = list(libraries)
    if len(set(names)) != len(names):
        raise ValueError(f"Duplicate preload libraries in {names}")
    return f"{PRELOAD_SETTING} = '{','.join(names)}'"


def parse_preload_directives(text: str) -> list[list[str]]:
    """Return the library lists of every active preload directive in *text*."""
    return [
        [item.strip() for item in match.group("value").split(",") if item.strip()]
        for match in _PRELOAD_PATTERN.finditer(text)
    ]


def effective_preload_libraries(text: str) -> list[str]:
    """The server honours the last occurrence of a setting."""
    directives = parse_preload_directives(text)
    return directives[-1] if directives else []


def append_preload_directive(conf_sample: Path, libraries: Iterable[str]) -> bool:
    """Append the preload directive unless the identical line is already present."""
    directive = format_preload_directive(libraries)
    if not conf_sample.is_file():
        raise AssemblyError(f"Sample configuration not found: {conf_sample}")

    text = conf_sample.read_text(encoding="utf-8")
    if directive in (line.strip() for line in text.splitlines()):
        logger.info(f"Preload directive already present in {conf_sample}")
        return False

    with open(conf_sample, "a", encoding="utf-8") as output:
        if text and not text.endswith("\n"):
            output.write("\n")
        output.write(f"{directive}\n")
    logger.info(f"Appended '{directive}' to {conf_sample}")
    return True


def overlay_staging_root(staging_root: Path, target_root: Path) -> list[Path]:
    """Merge *staging_root* into *target_root* and return the copied files."""
    if not staging_root.is_dir():
        raise AssemblyError(f"Staging root not found: {staging_root}")

    copied: list[Path] = []
    try:
        for dirpath, dirnames, filenames in os.walk(staging_root):
            source_dir = Path(dirpath)
            destination_dir = target_root.joinpath(
                source_dir.relative_to(staging_root)
            )
            # existing directories keep the base image's ownership and mode
            if not destination_dir.exists():
                destination_dir.mkdir(parents=True)
                shutil.copystat(source_dir, destination_dir)

            # symlinked directories are listed in dirnames but never descended into
            entries = [
                name for name in dirnames if source_dir.joinpath(name).is_symlink()
            ]
            entries.extend(filenames)
            for name in entries:
                source = source_dir.joinpath(name)
                destination = destination_dir.joinpath(name)
                if destination.is_dir() and not destination.is_symlink():
                    raise AssemblyError(
                        f"Cannot overlay file {source} onto directory {destination}"
                    )
                if destination.is_symlink() or destination.exists():
                    destination.unlink()
                if source.is_symlink():
                    os.symlink(os.readlink(source), destination)
                else:
                    shutil.copy2(source, destination)
                copied.append(destination)
    except OSError as exc:
        raise AssemblyError(
            f"Overlay of {staging_root} onto {target_root} failed: {exc}"
        ) from exc

    logger.info(f"Merged {len(copied)} files from {staging_root} into {target_root}")
    return copied


def assemble_runtime_root(
    staging_root: Path,
    target_root: Path,
    conf_sample: Path,
    libraries: Iterable[str],
) -> list[Path]:
    copied = overlay_staging_root(staging_root, target_root)
    append_preload_directive(conf_sample, libraries)
    return copied
