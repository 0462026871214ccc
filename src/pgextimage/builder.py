#! /bin/env python3
from __future__ import annotations

import logging
import os
import shutil
import subprocess
from pathlib import Path

import requests

from pgextimage import recipes
from pgextimage.exceptions import (
    ArchiveExtractError,
    BuildStepError,
    SourceFetchError,
)
from pgextimage.install_engine import (
    RunCommand,
    extract_tarball,
    run_build_command,
)
from pgextimage.lockfile import verify_checksum
from pgextimage.models import BuildPlan, ExtensionRecipe
from pgextimage.source_client import SourceArchiveClient

logger: logging.Logger = logging.getLogger(__name__)


class StagingBuilder(object):
    """Build every extension of a plan from source into an isolated staging root."""

    plan: BuildPlan
    source_dir: Path
    staging_root: Path
    client: SourceArchiveClient
    jobs: int

    def __init__(
        self,
        plan: BuildPlan,
        source_dir: str = "",
        staging_root: str = "",
        client: SourceArchiveClient | None = None,
        run_command: RunCommand = subprocess.run,
        jobs: int = 0,
    ) -> None:
        self.plan = plan
        self.source_dir = Path(source_dir or plan.source_dir).absolute()
        self.staging_root = Path(staging_root or plan.staging_root).absolute()
        self.client = client if client is not None else SourceArchiveClient()
        self.run_command = run_command
        self.jobs = jobs or os.cpu_count() or 1

    def prepare(self) -> None:
        self.source_dir.mkdir(parents=True, exist_ok=True)
        self.staging_root.mkdir(parents=True, exist_ok=True)

    def build_all(self) -> list[str]:
        """Build all extensions in plan order, stopping at the first failure."""
        self.prepare()
        built: list[str] = []
        for recipe in self.plan.recipes:
            self.build_extension(recipe)
            built.append(recipe.name)
        logger.info(f"Staged {len(built)} extensions into {self.staging_root}")
        return built

    def fetch_source(self, recipe: ExtensionRecipe) -> Path:
        version = self.plan.version_of(recipe.name)
        url = recipe.source_url(version)
        archive_path = self.source_dir.joinpath(recipe.archive_name())
        try:
            self.client.download(url, archive_path)
        except (requests.RequestException, OSError) as exc:
            raise SourceFetchError(
                f"Download of {recipe.name} {version} from {url} failed: {exc}"
            ) from exc

        expected = self.plan.checksums.get(recipe.name, "")
        if expected:
            verify_checksum(archive_path, expected, recipe.name)
            logger.info(f"Checksum verified for {recipe.name}")
        else:
            logger.warning(f"No checksum recorded for {recipe.name}; skipping check")
        return archive_path

    def extract_source(self, recipe: ExtensionRecipe, archive_path: Path) -> Path:
        source_root = self.source_dir.joinpath(recipe.name)
        if source_root.exists():
            shutil.rmtree(source_root)
        source_root.mkdir(parents=True)
        return extract_tarball(archive_path, source_root, strip_components=1)

    def run_step(
        self,
        recipe: ExtensionRecipe,
        source_root: Path,
        argv: list[str],
        subdir: str,
    ) -> None:
        cwd = source_root.joinpath(subdir) if subdir else source_root
        logger.info(f"[{recipe.name}] {' '.join(argv)}")
        try:
            process = run_build_command(
                cmd=argv, cwd=cwd, run_command=self.run_command
            )
        except subprocess.CalledProcessError as exc:
            logger.debug(f"[{recipe.name}] stdout:\n{exc.stdout}")
            logger.error(f"[{recipe.name}] stderr:\n{exc.stderr}")
            raise BuildStepError(
                f"{recipe.name}: '{' '.join(argv)}' exited with status {exc.returncode}"
            ) from exc
        except OSError as exc:
            raise BuildStepError(
                f"{recipe.name}: '{' '.join(argv)}' could not be started: {exc}"
            ) from exc
        if process.stdout:
            logger.debug(f"[{recipe.name}] {process.stdout}")

    def build_extension(self, recipe: ExtensionRecipe) -> None:
        """Fetch, extract, build and install a single extension."""
        archive_path = self.fetch_source(recipe)
        try:
            source_root = self.extract_source(recipe, archive_path)
        except OSError as exc:
            raise ArchiveExtractError(
                f"Cannot prepare sources for {recipe.name}: {exc}"
            ) from exc

        destdir = str(self.staging_root)
        jobs = str(self.jobs)
        for step in (*recipe.build_steps, recipe.install_step):
            argv = recipes.substitute_step(step, destdir=destdir, jobs=jobs)
            self.run_step(recipe, source_root, argv, step.subdir)

