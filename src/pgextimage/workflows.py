"""High-level build workflows shared by the CLI.

Each workflow wraps low-level failures into the matching domain error so the
CLI can report them uniformly.
"""

from __future__ import annotations

import logging
import tempfile
from pathlib import Path
from typing import Mapping

import requests

from pgextimage import internal_config, recipes
from pgextimage.assembly import assemble_runtime_root
from pgextimage.builder import StagingBuilder
from pgextimage.container_engine import ContainerEngine
from pgextimage.dockerfile import render_dockerfile
from pgextimage.exceptions import LockFileError, SourceFetchError
from pgextimage.lockfile import build_lock, load_lock, sha256_file, write_lock
from pgextimage.models import BuildPlan, PgLayout
from pgextimage.pg_paths import rooted
from pgextimage.source_client import SourceArchiveClient

logger: logging.Logger = logging.getLogger(__name__)


def _workflow_error_message(operation: str, exc: Exception) -> str:
    return f"{operation} failed: {exc}"


def configure_logging(log_level: str) -> None:
    _log_level = getattr(logging, log_level.upper(), None)
    if not isinstance(_log_level, int):
        raise ValueError(f"Invalid log level: {log_level!r}")
    logging.basicConfig(
        level=_log_level,
        format="%(relativeCreated)d [%(levelname)s] %(message)s",
    )


def load_plan(
    lock_path: Path,
    pin_overrides: Mapping[str, str] | None = None,
    update_lock: bool = False,
    runtime_packages: list[str] | None = None,
) -> BuildPlan:
    """Resolve the effective pins and hold them against the recorded lock.

    A missing lock is created from the effective pins. An existing lock is
    only rewritten when *update_lock* is set; otherwise any difference raises
    :class:`PinDriftError`.
    """
    effective = recipes.resolve_pins(pin_overrides)

    if not lock_path.exists():
        write_lock(lock_path, build_lock(effective))
        logger.info(f"Recorded version pins in {lock_path}")
        return recipes.build_plan(effective, runtime_packages=runtime_packages)

    recorded, checksums = load_lock(lock_path)
    drift = recipes.find_pin_drift(recorded, effective)
    if drift and update_lock:
        # checksums recorded for the old versions no longer apply
        checksums = {
            name: digest for name, digest in checksums.items() if name not in drift
        }
        write_lock(lock_path, build_lock(effective, checksums))
        for name, (before, after) in drift.items():
            logger.warning(f"Updated pin for {name}: {before} -> {after}")
    else:
        recipes.ensure_no_pin_drift(recorded, effective)

    return recipes.build_plan(
        effective, checksums=checksums, runtime_packages=runtime_packages
    )


def render_to_file(plan: BuildPlan, output: Path) -> Path:
    output.parent.mkdir(parents=True, exist_ok=True)
    output.write_text(render_dockerfile(plan), encoding="utf-8")
    logger.info(f"Wrote {output}")
    return output


def build_image(
    plan: BuildPlan,
    tag: str,
    output_dir: Path,
    engine: ContainerEngine | None = None,
) -> Path:
    """Render the Dockerfile into *output_dir* and build it with the container engine."""
    engine = engine if engine is not None else ContainerEngine()
    dockerfile_path = render_to_file(plan, output_dir.joinpath("Dockerfile"))
    build_args = {
        recipe.build_arg: plan.version_of(recipe.name) for recipe in plan.recipes
    }
    engine.build_image(dockerfile_path, tag, output_dir, build_args=build_args)
    logger.info(f"Built image {tag}")
    return dockerfile_path


def check_sources(
    plan: BuildPlan,
    client: SourceArchiveClient | None = None,
) -> dict[str, bool]:
    """Probe every pinned source archive; raise if any is unavailable."""
    client = (
        client
        if client is not None
        else SourceArchiveClient(retries=internal_config.HTTP_RETRY_TOTAL)
    )
    results: dict[str, bool] = {}
    for recipe in plan.recipes:
        url = recipe.source_url(plan.version_of(recipe.name))
        try:
            results[recipe.name] = client.is_available(url)
        except requests.RequestException as exc:
            raise SourceFetchError(
                _workflow_error_message(f"Probe of {url}", exc)
            ) from exc
        status = "ok" if results[recipe.name] else "MISSING"
        logger.info(f"{recipe.name} {plan.version_of(recipe.name)}: {status} ({url})")

    unavailable = [name for name, available in results.items() if not available]
    if unavailable:
        raise SourceFetchError(
            f"Source archives not found for: {', '.join(unavailable)}"
        )
    return results


def create_lock(
    lock_path: Path,
    pins: Mapping[str, str],
    with_checksums: bool = False,
    client: SourceArchiveClient | None = None,
) -> Path:
    """Write a lock recording *pins* and, optionally, archive checksums."""
    checksums: dict[str, str] = {}
    if with_checksums:
        client = client if client is not None else SourceArchiveClient()
        with tempfile.TemporaryDirectory(prefix="pgextimage-lock.") as tmp_dir:
            for recipe in recipes.RECIPES:
                url = recipe.source_url(pins[recipe.name])
                archive_path = Path(tmp_dir, recipe.archive_name())
                try:
                    client.download(url, archive_path)
                except (requests.RequestException, OSError) as exc:
                    raise SourceFetchError(
                        _workflow_error_message(f"Download of {url}", exc)
                    ) from exc
                checksums[recipe.name] = sha256_file(archive_path)
                logger.info(f"{recipe.name}: sha256 {checksums[recipe.name]}")
    try:
        return write_lock(lock_path, build_lock(pins, checksums))
    except OSError as exc:
        raise LockFileError(
            _workflow_error_message(f"Writing {lock_path}", exc)
        ) from exc


def stage_extensions(
    plan: BuildPlan,
    source_dir: str = "",
    staging_root: str = "",
    jobs: int = 0,
) -> list[str]:
    builder = StagingBuilder(
        plan,
        source_dir=source_dir,
        staging_root=staging_root,
        jobs=jobs,
    )
    return builder.build_all()


def assemble(
    plan: BuildPlan,
    staging_root: Path,
    target_root: Path,
    layout: PgLayout,
) -> list[Path]:
    return assemble_runtime_root(
        staging_root=staging_root,
        target_root=target_root,
        conf_sample=rooted(target_root, layout.conf_sample),
        libraries=plan.preload_libraries,
    )


__all__ = [
    "assemble",
    "build_image",
    "check_sources",
    "configure_logging",
    "create_lock",
    "load_plan",
    "render_to_file",
    "stage_extensions",
]
