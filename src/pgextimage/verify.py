from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Iterable

from pgextimage import internal_config, recipes
from pgextimage.assembly import effective_preload_libraries, parse_preload_directives
from pgextimage.container_engine import ContainerEngine
from pgextimage.exceptions import ContainerEngineError, VerificationError
from pgextimage.models import BuildPlan, PgLayout
from pgextimage.pg_paths import rooted

logger: logging.Logger = logging.getLogger(__name__)

_LDD_SECTION_PREFIX = "== "
# the entrypoint's temporary init server only listens on the unix socket
_READINESS_PROBE = ["pg_isready", "-h", "127.0.0.1", "-U", "postgres"]


def missing_artifacts(
    plan: BuildPlan,
    extension_files: Iterable[str],
    library_files: Iterable[str],
) -> list[str]:
    """Return expected control and shared object files absent from the listings."""
    extension_names = set(extension_files)
    library_names = set(library_files)
    missing: list[str] = []
    for recipe in plan.recipes:
        for control in recipe.control_files:
            if control not in extension_names:
                missing.append(f"{recipe.name}: {control}")
        version = plan.version_of(recipe.name)
        for shared_object in recipes.expected_shared_objects(recipe, version):
            if shared_object not in library_names:
                missing.append(f"{recipe.name}: {shared_object}")
    return missing


def check_preload_directive(text: str, expected: Iterable[str]) -> None:
    """The effective directive must name every expected library exactly once."""
    expected_names = list(expected)
    if not parse_preload_directives(text):
        raise VerificationError("No shared_preload_libraries directive found")
    actual = effective_preload_libraries(text)
    duplicates = sorted({name for name in actual if actual.count(name) > 1})
    if duplicates:
        raise VerificationError(
            f"Duplicate preload libraries: {', '.join(duplicates)}"
        )
    if set(actual) != set(expected_names):
        missing = sorted(set(expected_names) - set(actual))
        extra = sorted(set(actual) - set(expected_names))
        raise VerificationError(
            f"Preload libraries mismatch (missing: {missing}, unexpected: {extra})"
        )


def _list_dir(path: Path) -> list[str]:
    if not path.is_dir():
        return []
    return [entry.name for entry in path.iterdir()]


def verify_root_tree(root: Path, plan: BuildPlan, layout: PgLayout) -> None:
    """Verify an assembled filesystem tree rooted at *root*."""
    missing = missing_artifacts(
        plan,
        _list_dir(rooted(root, layout.extension_dir)),
        _list_dir(rooted(root, layout.pkglibdir)),
    )
    if missing:
        raise VerificationError(f"Missing extension artifacts: {', '.join(missing)}")

    conf_sample = rooted(root, layout.conf_sample)
    if not conf_sample.is_file():
        raise VerificationError(f"Sample configuration not found: {conf_sample}")
    check_preload_directive(
        conf_sample.read_text(encoding="utf-8"), plan.preload_libraries
    )
    logger.info(f"Root tree {root} passed verification")


def verify_image(
    engine: ContainerEngine,
    image: str,
    plan: BuildPlan,
    layout: PgLayout,
) -> None:
    """Verify the extension files and preload directive inside a built image."""
    extension_files = engine.run_once(
        image, "ls", ["-1", layout.extension_dir]
    ).splitlines()
    library_files = engine.run_once(image, "ls", ["-1", layout.pkglibdir]).splitlines()
    missing = missing_artifacts(plan, extension_files, library_files)
    if missing:
        raise VerificationError(
            f"Image {image} lacks extension artifacts: {', '.join(missing)}"
        )

    conf_text = engine.run_once(image, "cat", [layout.conf_sample])
    check_preload_directive(conf_text, plan.preload_libraries)
    logger.info(f"Image {image} passed verification")


def parse_ldd_report(text: str) -> dict[str, list[str]]:
    """Map each shared object of an ldd report to the libraries it cannot resolve.

    The report consists of ``== <path>`` headers, each followed by the ldd
    output for that file.
    """
    unresolved: dict[str, list[str]] = {}
    current = ""
    for raw_line in text.splitlines():
        line = raw_line.strip()
        if line.startswith(_LDD_SECTION_PREFIX):
            current = line[len(_LDD_SECTION_PREFIX) :]
            continue
        if current and "=> not found" in line:
            library = line.split("=>", 1)[0].strip()
            unresolved.setdefault(current, []).append(library)
    return unresolved


def check_runtime_dependencies(
    engine: ContainerEngine,
    image: str,
    layout: PgLayout,
) -> dict[str, list[str]]:
    script = (
        f'for f in {layout.pkglibdir}/*.so; do echo "{_LDD_SECTION_PREFIX}$f"; '
        'ldd "$f"; done'
    )
    report = engine.run_once(image, "sh", ["-c", script])
    unresolved = parse_ldd_report(report)
    for shared_object, libraries in unresolved.items():
        logger.error(f"{shared_object}: unresolved {', '.join(libraries)}")
    return unresolved


def _wait_until_ready(
    engine: ContainerEngine,
    container_id: str,
    timeout: float,
    interval: float,
) -> None:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if not engine.is_running(container_id):
            raise VerificationError(
                f"Server exited during startup:\n{engine.logs(container_id)}"
            )
        if engine.try_exec(container_id, _READINESS_PROBE):
            return
        time.sleep(interval)
    raise VerificationError(
        f"Server did not become ready within {timeout:.0f}s:\n"
        f"{engine.logs(container_id)}"
    )


def smoke_test(
    engine: ContainerEngine,
    image: str,
    plan: BuildPlan,
    timeout: float = internal_config.SMOKE_STARTUP_TIMEOUT_SECONDS,
    interval: float = internal_config.SMOKE_POLL_INTERVAL_SECONDS,
) -> None:
    """Start the image with its default command and exercise preloaded extensions."""
    container_id = engine.start_detached(
        image, env={"POSTGRES_HOST_AUTH_METHOD": "trust"}
    )
    logger.info(f"Started container {container_id[:12]} from {image}")
    try:
        _wait_until_ready(engine, container_id, timeout, interval)
        psql = ["psql", "-U", "postgres", "-d", "postgres", "-v", "ON_ERROR_STOP=1"]
        shown = engine.exec(
            container_id, [*psql, "-Atc", "SHOW shared_preload_libraries"]
        )
        check_preload_directive(
            f"shared_preload_libraries = '{shown.strip()}'",
            plan.preload_libraries,
        )
        for recipe in plan.recipes:
            if recipe.preload_libraries:
                engine.exec(
                    container_id,
                    [*psql, "-c", f"CREATE EXTENSION IF NOT EXISTS {recipe.name}"],
                )
                logger.info(f"Created extension {recipe.name}")
    except ContainerEngineError as exc:
        raise VerificationError(f"Smoke test failed: {exc}") from exc
    finally:
        engine.remove(container_id)
