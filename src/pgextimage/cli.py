#! /bin/env python3
from __future__ import annotations

import logging
from pathlib import Path
from typing import Callable, Optional, TypeVar

import typer

from pgextimage import internal_config, recipes, workflows
from pgextimage.container_engine import ContainerEngine
from pgextimage.exceptions import PgextimageError
from pgextimage.pg_paths import debian_layout, resolve_pg_layout, root_layout
from pgextimage.verify import (
    check_runtime_dependencies,
    smoke_test,
    verify_image,
    verify_root_tree,
)

app: typer.Typer = typer.Typer(
    help="Build a PostgreSQL image bundling pg_jobmon, pg_partman, pg_cron, "
    "TimescaleDB and PostGIS.",
    no_args_is_help=True,
)
logger: logging.Logger = logging.getLogger(__name__)

T = TypeVar("T")

PinOption = typer.Option(
    None,
    "--pin",
    help="Override a version pin as NAME=VERSION (extension or build-arg name).",
)
LockOption = typer.Option(
    Path(internal_config.LOCK_FILE_NAME),
    "--lock-file",
    help="Lock file recording the version pins.",
)


def _guarded(operation: str, func: Callable[[], T]) -> T:
    """Run *func*, turning domain failures into a logged error and exit code 1."""
    try:
        return func()
    except (PgextimageError, OSError, ValueError, KeyError) as exc:
        logger.error(f"{operation} failed: {exc}")
        raise typer.Exit(code=1) from exc


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"pgextimage {internal_config.PGEXTIMAGE_VERSION}")
        typer.echo(
            f"PostgreSQL {internal_config.PG_MAJOR} ({internal_config.BASE_IMAGE})"
        )
        typer.echo(f"User-Agent: {internal_config.DEFAULT_USER_AGENT}")
        raise typer.Exit()


@app.callback()
def _main(
    log_level: str = typer.Option("info", help="Logging level."),
    version: bool = typer.Option(
        False,
        "--version",
        callback=_version_callback,
        is_eager=True,
        help="Show version information and exit.",
    ),
) -> None:
    _guarded("Logging setup", lambda: workflows.configure_logging(log_level))


def _plan(
    lock_file: Path,
    pin: Optional[list[str]],
    update_lock: bool,
    runtime_packages: Optional[list[str]] = None,
):
    overrides = recipes.parse_pin_overrides(pin or [])
    return workflows.load_plan(
        lock_file,
        pin_overrides=overrides,
        update_lock=update_lock,
        runtime_packages=runtime_packages,
    )


def _unlocked_plan(pin: Optional[list[str]]):
    return recipes.build_plan(
        recipes.resolve_pins(recipes.parse_pin_overrides(pin or []))
    )


@app.command()
def render(
    output: Path = typer.Option(Path("Dockerfile"), help="Dockerfile to write."),
    pin: Optional[list[str]] = PinOption,
    lock_file: Path = LockOption,
    update_lock: bool = typer.Option(
        False, help="Record changed pins in the lock file instead of failing."
    ),
) -> None:
    """Render the multi-stage Dockerfile."""

    def _run() -> None:
        plan = _plan(lock_file, pin, update_lock)
        workflows.render_to_file(plan, output)

    _guarded("Render", _run)


@app.command()
def build(
    tag: str = typer.Option(internal_config.DEFAULT_IMAGE_TAG, help="Image tag."),
    output_dir: Path = typer.Option(
        Path("build"), help="Directory receiving the Dockerfile (build context)."
    ),
    pin: Optional[list[str]] = PinOption,
    lock_file: Path = LockOption,
    update_lock: bool = typer.Option(
        False, help="Record changed pins in the lock file instead of failing."
    ),
    without_runtime_package: Optional[list[str]] = typer.Option(
        None,
        "--without-runtime-package",
        help="Drop a runtime library package (regression checks only).",
    ),
    docker: str = typer.Option("", help="Container engine binary."),
) -> None:
    """Render the Dockerfile and build the image with the container engine."""

    def _run() -> None:
        runtime_packages = None
        if without_runtime_package:
            for package in without_runtime_package:
                affected = recipes.affected_extensions(package)
                logger.warning(
                    f"Dropping {package}; expect load failures in "
                    f"{', '.join(affected)}"
                )
            runtime_packages = [
                package
                for package in internal_config.RUNTIME_PACKAGES
                if package not in without_runtime_package
            ]
        plan = _plan(lock_file, pin, update_lock, runtime_packages)
        workflows.build_image(
            plan, tag, output_dir.absolute(), engine=ContainerEngine(binary=docker)
        )

    _guarded("Image build", _run)


@app.command()
def stage(
    staging_root: str = typer.Option(
        internal_config.STAGING_ROOT, help="Install root for build outputs."
    ),
    source_dir: str = typer.Option(
        internal_config.SOURCE_DIR, help="Working directory for source trees."
    ),
    jobs: int = typer.Option(0, help="Parallel jobs for PostGIS (0 = CPU count)."),
    pin: Optional[list[str]] = PinOption,
    lock_file: Path = LockOption,
) -> None:
    """Build every extension from source into the staging root (builder stage)."""

    def _run() -> None:
        plan = _plan(lock_file, pin, update_lock=False)
        workflows.stage_extensions(
            plan, source_dir=source_dir, staging_root=staging_root, jobs=jobs
        )

    _guarded("Builder stage", _run)


@app.command()
def assemble(
    staging_root: Path = typer.Option(
        Path(internal_config.STAGING_ROOT), help="Staging root produced by 'stage'."
    ),
    root: Path = typer.Option(Path("/"), help="Filesystem root to merge into."),
) -> None:
    """Merge the staging root into the runtime root and enable preloading."""

    def _run() -> None:
        plan = recipes.build_plan()
        workflows.assemble(plan, staging_root, root, resolve_pg_layout())

    _guarded("Assembly", _run)


@app.command("check-sources")
def check_sources(
    pin: Optional[list[str]] = PinOption,
) -> None:
    """Check that every pinned source archive can be fetched."""

    def _run() -> None:
        plan = _unlocked_plan(pin)
        workflows.check_sources(plan)

    _guarded("Source check", _run)


@app.command()
def lock(
    pin: Optional[list[str]] = PinOption,
    lock_file: Path = LockOption,
    with_checksums: bool = typer.Option(
        False, help="Download each archive and record its sha256."
    ),
) -> None:
    """Record the effective version pins (and optionally checksums)."""

    def _run() -> None:
        pins = recipes.resolve_pins(recipes.parse_pin_overrides(pin or []))
        workflows.create_lock(lock_file, pins, with_checksums=with_checksums)

    _guarded("Lock", _run)


@app.command()
def verify(
    image: str = typer.Option("", help="Image to verify."),
    root: Optional[Path] = typer.Option(None, help="Assembled root tree to verify."),
    pin: Optional[list[str]] = PinOption,
    docker: str = typer.Option("", help="Container engine binary."),
) -> None:
    """Verify extension files and the preload directive of an image or root tree."""

    def _run() -> None:
        if bool(image) == (root is not None):
            raise ValueError("Pass exactly one of --image or --root")
        plan = _unlocked_plan(pin)
        if root is not None:
            verify_root_tree(root, plan, root_layout(plan.pg_major))
        else:
            engine = ContainerEngine(binary=docker)
            verify_image(engine, image, plan, debian_layout())

    _guarded("Verification", _run)


@app.command()
def smoke(
    image: str = typer.Option(
        internal_config.DEFAULT_IMAGE_TAG, help="Image to start."
    ),
    timeout: float = typer.Option(
        internal_config.SMOKE_STARTUP_TIMEOUT_SECONDS, help="Startup timeout."
    ),
    docker: str = typer.Option("", help="Container engine binary."),
) -> None:
    """Start the image and check that the preloaded extensions load."""

    def _run() -> None:
        smoke_test(
            ContainerEngine(binary=docker),
            image,
            recipes.build_plan(),
            timeout=timeout,
        )

    _guarded("Smoke test", _run)


@app.command("check-runtime-deps")
def check_runtime_deps(
    image: str = typer.Option(
        internal_config.DEFAULT_IMAGE_TAG, help="Image to inspect."
    ),
    docker: str = typer.Option("", help="Container engine binary."),
) -> None:
    """Report shared objects in the image whose libraries do not resolve."""

    def _run() -> None:
        unresolved = check_runtime_dependencies(
            ContainerEngine(binary=docker), image, debian_layout()
        )
        if unresolved:
            raise ValueError(
                f"{len(unresolved)} shared objects have unresolved libraries"
            )

    _guarded("Runtime dependency check", _run)


def main() -> None:
    app()


if __name__ == "__main__":
    main()
