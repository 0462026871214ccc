from __future__ import annotations


class PgextimageError(Exception):
    """Base class for all pgextimage domain errors."""


class SourceFetchError(RuntimeError, PgextimageError):
    """Raised when a source archive cannot be downloaded or probed."""


class ArchiveExtractError(ValueError, PgextimageError):
    """Raised when a source archive cannot be extracted safely."""


class BuildStepError(RuntimeError, PgextimageError):
    """Raised when an extension build or install step fails."""


class AssemblyError(RuntimeError, PgextimageError):
    """Raised when the staging root cannot be merged into the runtime root."""


class IntegrityError(ValueError, PgextimageError):
    """Raised when a downloaded archive does not match its recorded checksum."""


class PinDriftError(ValueError, PgextimageError):
    """Raised when effective version pins differ from the recorded lock."""


class LockFileError(ValueError, PgextimageError):
    """Raised when the pin lock file is missing required data or malformed."""


class ContainerEngineError(RuntimeError, PgextimageError):
    """Raised when a container engine command fails."""


class VerificationError(AssertionError, PgextimageError):
    """Raised when a produced image or root tree fails verification."""
