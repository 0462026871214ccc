from __future__ import annotations

import datetime
import hashlib
import json
from pathlib import Path
from typing import Mapping, cast

# lock files may carry comments
import json5

from pgextimage import internal_config
from pgextimage.exceptions import IntegrityError, LockFileError

JsonMap = dict[str, object]


def _as_string_map(value: object) -> dict[str, str]:
    if not isinstance(value, dict):
        return {}
    return {
        str(key): item
        for key, item in cast(JsonMap, value).items()
        if isinstance(item, str)
    }


def sha256_file(path: Path) -> str:
    digest = hashlib.sha256()
    with open(path, "rb") as source:
        for chunk in iter(lambda: source.read(1024 * 64), b""):
            digest.update(chunk)
    return digest.hexdigest()


def verify_checksum(path: Path, expected_sha256: str, name: str) -> None:
    actual = sha256_file(path)
    if actual != expected_sha256.lower():
        raise IntegrityError(
            f"Checksum mismatch for {name}: expected {expected_sha256}, got {actual}"
        )


def build_lock(
    pins: Mapping[str, str],
    checksums: Mapping[str, str] | None = None,
) -> JsonMap:
    return {
        "schema_version": internal_config.LOCK_SCHEMA_VERSION,
        "updated_at": datetime.datetime.now(datetime.timezone.utc).isoformat(),
        "pins": dict(pins),
        "checksums": dict(checksums or {}),
    }


def write_lock(path: Path, lock: JsonMap) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(lock, indent=2, sort_keys=True) + "\n", encoding="utf-8")
    return path


def load_lock(path: Path) -> tuple[dict[str, str], dict[str, str]]:
    """Return ``(pins, checksums)`` recorded in the lock file at *path*."""
    if not path.is_file():
        raise LockFileError(f"Lock file not found: {path}")
    try:
        data = json5.loads(path.read_text(encoding="utf-8"))
    except ValueError as exc:
        raise LockFileError(f"Lock file {path} is not valid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise LockFileError(f"Lock file {path} must contain an object")
    schema_version = data.get("schema_version")
    if (
        isinstance(schema_version, bool)
        or schema_version != internal_config.LOCK_SCHEMA_VERSION
    ):
        raise LockFileError(
            f"Unsupported lock file schema version: {schema_version!r}"
        )

    pins = _as_string_map(data.get("pins"))
    missing = [name for name in internal_config.DEFAULT_PINS if name not in pins]
    if missing:
        raise LockFileError(f"Lock file is missing pins for: {', '.join(missing)}")
    checksums = {
        name: digest.lower()
        for name, digest in _as_string_map(data.get("checksums")).items()
        if digest
    }
    return pins, checksums
