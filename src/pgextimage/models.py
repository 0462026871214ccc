from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(frozen=True)
class BuildStep:
    argv: tuple[str, ...]
    subdir: str = ""


@dataclass(frozen=True)
class ExtensionRecipe:
    name: str
    build_arg: str
    url_template: str
    build_steps: tuple[BuildStep, ...]
    install_step: BuildStep
    control_files: tuple[str, ...] = ()
    shared_objects: tuple[str, ...] = ()
    preload_libraries: tuple[str, ...] = ()

    def source_url(self, version: str) -> str:
        return self.url_template.format(version=version)

    def archive_name(self) -> str:
        return f"{self.name}.tar.gz"


@dataclass(frozen=True)
class BuildPlan:
    base_image: str
    pg_major: int
    staging_root: str
    source_dir: str
    recipes: tuple[ExtensionRecipe, ...]
    pins: dict[str, str]
    build_packages: tuple[str, ...]
    runtime_packages: tuple[str, ...]
    preload_libraries: tuple[str, ...]
    checksums: dict[str, str] = field(default_factory=dict)

    def version_of(self, name: str) -> str:
        return self.pins[name]


@dataclass(frozen=True)
class PgLayout:
    sharedir: str
    pkglibdir: str
    conf_sample: str

    @property
    def extension_dir(self) -> str:
        return f"{self.sharedir.rstrip('/')}/extension"
