from __future__ import annotations

from pathlib import Path
from typing import Iterable, Optional


class FurrctorioError(RuntimeError):
    """Base class for every failure the CLI renders with its own exit code."""

    exit_code = 1


class ManifestError(FurrctorioError):
    """Raised when the mods manifest cannot be loaded or used."""


class VersionError(FurrctorioError, ValueError):
    """Raised for malformed versions, constraints or dependency strings."""


class LockfileParseError(FurrctorioError):
    """Raised when a lockfile cannot be parsed."""


class ConflictError(FurrctorioError):
    exit_code = 10

    def __init__(self, mods: Iterable[str], detail: Optional[str] = None):
        self.mods = sorted(set(mods))
        self.detail = detail
        message = f"Unsatisfiable constraints between: {', '.join(self.mods)}"
        if detail:
            message += f" ({detail})"
        super().__init__(message)


class StaleLockfileError(FurrctorioError):
    exit_code = 11

    def __init__(self, expected: str, actual: str):
        self.expected = expected
        self.actual = actual
        super().__init__(
            "Lockfile is stale: it was resolved from a different manifest. Run 'furrctorio resolve'."
        )


class IntegrityError(FurrctorioError):
    exit_code = 12

    def __init__(self, name: str, version: str, expected: Optional[str], actual: Optional[str], message: Optional[str] = None):
        self.name = name
        self.version = version
        self.expected = expected
        self.actual = actual
        super().__init__(
            message or f"Checksum mismatch for {name}@{version}: expected {expected}, got {actual}"
        )


class CacheConflictError(IntegrityError):
    """A cache key already holds different content."""


class BusyError(FurrctorioError):
    exit_code = 13

    def __init__(self, target: Path):
        self.target = target
        super().__init__(f"Another apply is already running against {target}")


class TimeoutExceeded(FurrctorioError):
    exit_code = 14


class ResolutionTimeout(TimeoutExceeded):
    def __init__(self, budget: int):
        self.budget = budget
        super().__init__(f"Dependency resolution gave up after {budget} steps")


class NetworkTimeout(TimeoutExceeded):
    pass


class NotFoundError(FurrctorioError):
    exit_code = 15

    def __init__(self, name: str, version: Optional[str] = None, message: Optional[str] = None):
        self.name = name
        self.version = version
        target = f"{name}@{version}" if version else name
        super().__init__(message or f"Mod '{target}' not found")


class UnavailableError(FurrctorioError):
    exit_code = 16


class ApplyCancelled(FurrctorioError):
    exit_code = 17
