from __future__ import annotations

import os
from typing import Mapping

from pgextimage import internal_config
from pgextimage.exceptions import PinDriftError
from pgextimage.models import BuildPlan, BuildStep, ExtensionRecipe

DESTDIR_PLACEHOLDER = "{destdir}"
JOBS_PLACEHOLDER = "{jobs}"

_MAKE = BuildStep(("make",))
_MAKE_INSTALL = BuildStep(("make", "install", f"DESTDIR={DESTDIR_PLACEHOLDER}"))

PG_JOBMON = ExtensionRecipe(
    name="pg_jobmon",
    build_arg="PG_JOBMON_VERSION",
    url_template="https://github.com/omniti-labs/pg_jobmon/archive/refs/tags/v{version}.tar.gz",
    build_steps=(_MAKE,),
    install_step=_MAKE_INSTALL,
    control_files=("pg_jobmon.control",),
)

PG_PARTMAN = ExtensionRecipe(
    name="pg_partman",
    build_arg="PG_PARTMAN_VERSION",
    url_template="https://github.com/pgpartman/pg_partman/archive/refs/tags/v{version}.tar.gz",
    build_steps=(_MAKE,),
    install_step=_MAKE_INSTALL,
    control_files=("pg_partman.control",),
    shared_objects=("pg_partman_bgw.so",),
    preload_libraries=("pg_partman_bgw",),
)

PG_CRON = ExtensionRecipe(
    name="pg_cron",
    build_arg="PG_CRON_VERSION",
    url_template="https://github.com/citusdata/pg_cron/archive/refs/tags/v{version}.tar.gz",
    build_steps=(_MAKE,),
    install_step=_MAKE_INSTALL,
    control_files=("pg_cron.control",),
    shared_objects=("pg_cron.so",),
    preload_libraries=("pg_cron",),
)

# timescale tags carry no "v" prefix
TIMESCALEDB = ExtensionRecipe(
    name="timescaledb",
    build_arg="TIMESCALEDB_VERSION",
    url_template="https://github.com/timescale/timescaledb/archive/refs/tags/{version}.tar.gz",
    build_steps=(
        BuildStep(
            (
                "./bootstrap",
                "-DREGRESS_CHECKS=OFF",
                "-DTAP_CHECKS=OFF",
                "-DWARNINGS_AS_ERRORS=OFF",
            )
        ),
        BuildStep(("make",), subdir="build"),
    ),
    install_step=BuildStep(
        ("make", "install", f"DESTDIR={DESTDIR_PLACEHOLDER}"), subdir="build"
    ),
    control_files=("timescaledb.control",),
    shared_objects=("timescaledb.so",),
    preload_libraries=("timescaledb",),
)

POSTGIS = ExtensionRecipe(
    name="postgis",
    build_arg="POSTGIS_VERSION",
    url_template="https://download.osgeo.org/postgis/source/postgis-{version}.tar.gz",
    build_steps=(
        BuildStep(
            ("./configure", "--without-gui", "--without-raster", "--with-protobuf")
        ),
        BuildStep(("make", f"-j{JOBS_PLACEHOLDER}")),
    ),
    install_step=_MAKE_INSTALL,
    control_files=("postgis.control",),
    shared_objects=("postgis-3.so",),
)

RECIPES: tuple[ExtensionRecipe, ...] = (
    PG_JOBMON,
    PG_PARTMAN,
    PG_CRON,
    TIMESCALEDB,
    POSTGIS,
)


def get_recipe(name: str) -> ExtensionRecipe:
    for recipe in RECIPES:
        if recipe.name == name:
            return recipe
    raise KeyError(f"Unknown extension: {name}")


def expected_shared_objects(recipe: ExtensionRecipe, version: str) -> list[str]:
    """Shared objects an install of *recipe* at *version* leaves in pkglibdir."""
    result = list(recipe.shared_objects)
    if recipe.name == "timescaledb":
        # the loader picks the versioned module at CREATE EXTENSION time
        result.append(f"timescaledb-{version}.so")
    return result


def parse_pin_overrides(values: list[str]) -> dict[str, str]:
    """Parse ``NAME=VERSION`` strings; NAME is an extension or its build arg."""
    overrides: dict[str, str] = {}
    by_build_arg = {recipe.build_arg: recipe.name for recipe in RECIPES}
    for value in values:
        name, sep, version = value.partition("=")
        name = name.strip()
        version = version.strip()
        if not sep or not name or not version:
            raise ValueError(f"Invalid pin override {value!r}, expected NAME=VERSION")
        name = by_build_arg.get(name, name)
        if name not in internal_config.DEFAULT_PINS:
            raise ValueError(f"Unknown extension in pin override: {name}")
        overrides[name] = version
    return overrides


def pins_from_environment(environ: Mapping[str, str] | None = None) -> dict[str, str]:
    env = os.environ if environ is None else environ
    pins: dict[str, str] = {}
    for recipe in RECIPES:
        value = env.get(recipe.build_arg, "").strip()
        if value:
            pins[recipe.name] = value
    return pins


def resolve_pins(
    overrides: Mapping[str, str] | None = None,
    environ: Mapping[str, str] | None = None,
) -> dict[str, str]:
    """Merge default pins, environment overrides and explicit overrides, in that order."""
    pins = dict(internal_config.DEFAULT_PINS)
    pins.update(pins_from_environment(environ))
    pins.update(overrides or {})
    return pins


def find_pin_drift(
    recorded: Mapping[str, str], effective: Mapping[str, str]
) -> dict[str, tuple[str, str]]:
    drift: dict[str, tuple[str, str]] = {}
    for name in internal_config.DEFAULT_PINS:
        before = recorded.get(name, "")
        after = effective.get(name, "")
        if before != after:
            drift[name] = (before, after)
    return drift


def ensure_no_pin_drift(
    recorded: Mapping[str, str], effective: Mapping[str, str]
) -> None:
    drift = find_pin_drift(recorded, effective)
    if drift:
        details = ", ".join(
            f"{name}: {before or '<unset>'} -> {after or '<unset>'}"
            for name, (before, after) in drift.items()
        )
        raise PinDriftError(
            f"Version pins differ from the lock file ({details}); "
            "rerun with --update-lock to record them"
        )


def build_plan(
    pins: Mapping[str, str] | None = None,
    checksums: Mapping[str, str] | None = None,
    runtime_packages: list[str] | None = None,
) -> BuildPlan:
    effective_pins = dict(internal_config.DEFAULT_PINS)
    effective_pins.update(pins or {})
    return BuildPlan(
        base_image=internal_config.BASE_IMAGE,
        pg_major=internal_config.PG_MAJOR,
        staging_root=internal_config.STAGING_ROOT,
        source_dir=internal_config.SOURCE_DIR,
        recipes=RECIPES,
        pins=effective_pins,
        build_packages=tuple(internal_config.BUILD_PACKAGES),
        runtime_packages=tuple(
            internal_config.RUNTIME_PACKAGES
            if runtime_packages is None
            else runtime_packages
        ),
        preload_libraries=tuple(internal_config.PRELOAD_LIBRARIES),
        checksums=dict(checksums or {}),
    )


def substitute_step(step: BuildStep, destdir: str, jobs: str) -> list[str]:
    return [
        arg.replace(DESTDIR_PLACEHOLDER, destdir).replace(JOBS_PLACEHOLDER, jobs)
        for arg in step.argv
    ]


def affected_extensions(removed_package: str) -> list[str]:
    """Return extensions that lose a runtime library when *removed_package* is dropped."""
    if removed_package not in internal_config.RUNTIME_LIBRARY_OWNERS:
        raise KeyError(f"Not a runtime package: {removed_package}")
    return list(internal_config.RUNTIME_LIBRARY_OWNERS[removed_package])
