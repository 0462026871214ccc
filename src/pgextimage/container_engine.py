#! /bin/env python3
from __future__ import annotations

import logging
import os
import shutil
import subprocess
from pathlib import Path
from typing import Mapping

from pgextimage.exceptions import ContainerEngineError
from pgextimage.install_engine import RunCommand

logger: logging.Logger = logging.getLogger(__name__)


class ContainerEngine(object):
    """Drive the docker CLI (or a compatible one such as podman) via subprocess."""

    binary: str

    def __init__(
        self,
        binary: str = "",
        run_command: RunCommand = subprocess.run,
    ) -> None:
        self.binary = (
            binary or os.environ.get("PGEXTIMAGE_DOCKER", "").strip() or "docker"
        )
        self.run_command = run_command

    def find_binary(self) -> str:
        resolved = shutil.which(self.binary)
        if not resolved:
            raise ContainerEngineError(f"Container engine not found: {self.binary}")
        return resolved

    def _run(
        self,
        args: list[str],
        capture_output: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        cmd = [self.binary, *args]
        logger.debug(f"Running {' '.join(cmd)}")
        try:
            process = self.run_command(
                cmd,
                capture_output=capture_output,
                check=False,
                text=True,
            )
        except OSError as exc:
            raise ContainerEngineError(f"Cannot run {self.binary}: {exc}") from exc
        if process.returncode != 0:
            stderr = (process.stderr or "").strip()
            raise ContainerEngineError(
                f"'{' '.join(cmd)}' exited with status {process.returncode}: {stderr}"
            )
        return process

    def is_available(self) -> bool:
        try:
            self._run(["info"])
        except ContainerEngineError:
            return False
        return True

    def build_image(
        self,
        dockerfile_path: Path,
        tag: str,
        build_context: Path,
        build_args: Mapping[str, str] | None = None,
    ) -> None:
        if not dockerfile_path.is_file():
            raise ContainerEngineError(f"Dockerfile not found: {dockerfile_path}")
        if not build_context.is_dir():
            raise ContainerEngineError(f"Build context not found: {build_context}")

        args = ["build", "-f", str(dockerfile_path), "-t", tag]
        for name, value in (build_args or {}).items():
            args.extend(["--build-arg", f"{name}={value}"])
        args.append(str(build_context))
        logger.info(f"Building image {tag}")
        # stream build output to the terminal
        self._run(args, capture_output=False)

    def run_once(self, image: str, entrypoint: str, args: list[str]) -> str:
        """Run a throwaway container and return its standard output."""
        process = self._run(["run", "--rm", "--entrypoint", entrypoint, image, *args])
        return process.stdout

    def start_detached(self, image: str, env: Mapping[str, str] | None = None) -> str:
        args = ["run", "-d"]
        for name, value in (env or {}).items():
            args.extend(["-e", f"{name}={value}"])
        args.append(image)
        return self._run(args).stdout.strip()

    def exec(self, container_id: str, args: list[str]) -> str:
        return self._run(["exec", container_id, *args]).stdout

    def try_exec(self, container_id: str, args: list[str]) -> bool:
        try:
            self.exec(container_id, args)
        except ContainerEngineError:
            return False
        return True

    def logs(self, container_id: str) -> str:
        process = self._run(["logs", container_id])
        return f"{process.stdout}{process.stderr or ''}"

    def is_running(self, container_id: str) -> bool:
        output = self._run(["inspect", "-f", "{{.State.Running}}", container_id])
        return output.stdout.strip() == "true"

    def remove(self, container_id: str) -> None:
        self._run(["rm", "-f", container_id])
