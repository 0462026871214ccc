from __future__ import annotations

import platform
from importlib.metadata import PackageNotFoundError
from importlib.metadata import version as _pkg_version


def _get_package_version(name: str) -> str:
    """Return the installed version of *name*, or ``"0"`` if not found."""
    try:
        return _pkg_version(name)
    except PackageNotFoundError:
        return "0"


PGEXTIMAGE_VERSION = _get_package_version("pgextimage")

DEFAULT_USER_AGENT = (
    f"pgextimage/{PGEXTIMAGE_VERSION}"
    f" ({platform.system()}; {platform.machine()}; compatible)"
)

PG_MAJOR = 17
BASE_IMAGE = f"postgres:{PG_MAJOR}-bookworm"
BUILDER_STAGE_NAME = "builder"
STAGING_ROOT = "/build_artifacts"
SOURCE_DIR = "/src"
CONF_SAMPLE_PATH = "/usr/share/postgresql/postgresql.conf.sample"
DEFAULT_COMMAND = ["postgres"]
DEFAULT_IMAGE_TAG = f"pgextimage:{PG_MAJOR}"
LOCK_FILE_NAME = "pgextimage.lock.json"
LOCK_SCHEMA_VERSION = 1

# build order is significant and must not be changed
DEFAULT_PINS: dict[str, str] = {
    "pg_jobmon": "1.4.1",
    "pg_partman": "5.2.2",
    "pg_cron": "1.6.4",
    "timescaledb": "2.17.2",
    "postgis": "3.5.0",
}

BUILD_PACKAGES = [
    "build-essential",
    "ca-certificates",
    "wget",
    "clang",
    "llvm",
    "libkrb5-dev",
    "libssl-dev",
    "libxml2-dev",
    "cmake",
    "libgeos-dev",
    "libproj-dev",
    "libgdal-dev",
    "libprotobuf-c-dev",
    "protobuf-c-compiler",
    "libjson-c-dev",
    f"postgresql-server-dev-{PG_MAJOR}",
]

RUNTIME_PACKAGES = [
    "libgeos-c1v5",
    "libproj25",
    "libgdal32",
    "libprotobuf-c1",
    "libjson-c5",
    "libxml2",
    "libssl3",
    "libpq5",
]

# runtime package -> extensions whose shared objects link against it
RUNTIME_LIBRARY_OWNERS: dict[str, tuple[str, ...]] = {
    "libgeos-c1v5": ("postgis",),
    "libproj25": ("postgis",),
    "libgdal32": ("postgis",),
    "libprotobuf-c1": ("postgis",),
    "libjson-c5": ("postgis",),
    "libxml2": ("postgis",),
    "libssl3": ("timescaledb",),
    "libpq5": ("pg_cron",),
}

# the remaining extensions are loadable on demand
PRELOAD_LIBRARIES = ["timescaledb", "pg_cron", "pg_partman_bgw"]

HTTP_REQUEST_TIMEOUT_SECONDS = 30
HTTP_STREAM_CONNECT_TIMEOUT_SECONDS = 10
HTTP_STREAM_READ_TIMEOUT_SECONDS = 120

# retries only apply to availability probes; build downloads never retry
HTTP_RETRY_TOTAL = 3
HTTP_RETRY_BACKOFF_FACTOR = 1
HTTP_RETRY_STATUS_FORCELIST = [429, 500, 502, 503, 504]
HTTP_RETRY_ALLOWED_METHODS = ["HEAD", "GET", "OPTIONS"]

SMOKE_STARTUP_TIMEOUT_SECONDS = 60
SMOKE_POLL_INTERVAL_SECONDS = 1.0
