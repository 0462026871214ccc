from __future__ import annotations

import os
import shutil
import subprocess
import tarfile
import tempfile
from pathlib import Path, PurePosixPath
from typing import Callable, Protocol

import requests

from pgextimage.exceptions import ArchiveExtractError


class DownloadSession(Protocol):
    def get(
        self,
        url: str,
        *,
        stream: bool,
        headers: dict[str, str],
        timeout: tuple[int, int],
    ) -> requests.Response: ...


RunCommand = Callable[..., subprocess.CompletedProcess[str]]


def stream_download_to_target(
    *,
    session: DownloadSession,
    url: str,
    target_path: Path,
    headers: dict[str, str],
    temp_prefix: str,
    timeout: tuple[int, int],
) -> Path:
    with tempfile.TemporaryDirectory(prefix=temp_prefix) as tmp_dir:
        file_path = Path(tmp_dir, target_path.name)

        with open(file_path, "wb") as output:
            response: requests.Response = session.get(
                url,
                stream=True,
                headers=headers,
                timeout=timeout,
            )
            response.raise_for_status()

            for chunk in response.iter_content(chunk_size=1024 * 8):
                if chunk:
                    output.write(chunk)
            output.flush()
            os.fsync(output.fileno())

        target_path.parent.mkdir(parents=True, exist_ok=True)
        shutil.move(file_path, target_path)
        return target_path


def _strip_member_name(name: str, strip_components: int) -> str:
    parts = PurePosixPath(name).parts[strip_components:]
    return str(PurePosixPath(*parts)) if parts else ""


def extract_tarball(
    archive_path: Path,
    target_dir: Path,
    strip_components: int = 1,
) -> Path:
    """Extract a gzip tarball into *target_dir*, dropping leading path components.

    Mirrors ``tar -xzf ARCHIVE -C TARGET --strip-components=N``. Members whose
    stripped path is empty are skipped; members resolving outside *target_dir*
    and links pointing outside it are rejected.
    """
    target_dir.mkdir(parents=True, exist_ok=True)
    root = target_dir.resolve()
    try:
        with tarfile.open(archive_path, mode="r:gz") as archive:
            members: list[tarfile.TarInfo] = []
            for member in archive.getmembers():
                stripped = _strip_member_name(member.name, strip_components)
                if not stripped:
                    continue
                destination = root.joinpath(stripped).resolve()
                if not destination.is_relative_to(root):
                    raise ArchiveExtractError(
                        f"Archive member {member.name} escapes {target_dir}"
                    )
                if member.issym() or member.islnk():
                    link_target = (
                        destination.parent.joinpath(member.linkname)
                        if member.issym()
                        else root.joinpath(
                            _strip_member_name(member.linkname, strip_components)
                        )
                    )
                    if not link_target.resolve().is_relative_to(root):
                        raise ArchiveExtractError(
                            f"Archive link {member.name} points outside {target_dir}"
                        )
                    if member.islnk():
                        member.linkname = _strip_member_name(
                            member.linkname, strip_components
                        )
                member.name = stripped
                members.append(member)
            archive.extractall(root, members=members, filter="tar")
    except (tarfile.TarError, EOFError) as exc:
        raise ArchiveExtractError(f"Cannot extract {archive_path}: {exc}") from exc
    return target_dir


def run_build_command(
    *,
    cmd: list[str],
    cwd: Path,
    run_command: RunCommand = subprocess.run,
) -> subprocess.CompletedProcess[str]:
    process = run_command(
        cmd,
        cwd=str(cwd),
        capture_output=True,
        check=False,
        text=True,
    )
    if process.returncode != 0:
        raise subprocess.CalledProcessError(
            process.returncode,
            cmd,
            process.stdout,
            process.stderr,
        )
    return process
