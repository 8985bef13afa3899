"""Content-addressed archive cache: ``<root>/<name>/<version>/<sha1>.zip``."""

from __future__ import annotations

import logging
import os
import shutil
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional

from .errors import CacheConflictError, IntegrityError
from .files import sha1_bytes
from .versions import Version

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class CacheEntry:
    name: str
    version: Version
    sha1: str
    path: Path
    size: int
    last_used: float


class CacheStore:
    def __init__(self, root: Path):
        self.root = Path(root)

    def _entry_dir(self, name: str, version: Version) -> Path:
        return self.root / name / str(version)

    def _find(self, name: str, version: Version) -> List[Path]:
        directory = self._entry_dir(name, version)
        if not directory.is_dir():
            return []
        return sorted(p for p in directory.iterdir() if p.is_file() and p.suffix == ".zip")

    def get(self, name: str, version: Version, sha1: Optional[str] = None) -> Optional[bytes]:
        """Return the cached archive, or ``None`` on a miss."""

        for path in self._find(name, version):
            expected = path.stem
            if sha1 is not None and expected != sha1:
                continue
            try:
                data = path.read_bytes()
            except FileNotFoundError:
                # Evicted between listing and reading.
                continue
            actual = sha1_bytes(data)
            if actual != expected:
                raise IntegrityError(
                    name,
                    str(version),
                    expected,
                    actual,
                    message=f"Cached archive {path} is corrupt: expected {expected}, got {actual}",
                )
            try:
                os.utime(path)
            except OSError:
                pass
            logger.debug("Cache hit for %s@%s", name, version)
            return data
        logger.debug("Cache miss for %s@%s", name, version)
        return None

    def put(self, name: str, version: Version, sha1: str, data: bytes) -> Path:
        actual = sha1_bytes(data)
        if actual != sha1:
            raise IntegrityError(name, str(version), sha1, actual)

        # Entries are keyed by checksum too; a re-published release sits beside the old one.
        for existing in self._find(name, version):
            if existing.stem != sha1:
                continue
            if existing.read_bytes() != data:
                raise CacheConflictError(
                    name,
                    str(version),
                    sha1,
                    sha1_bytes(existing.read_bytes()),
                    message=f"Cached archive {existing} does not match its checksum",
                )
            return existing

        directory = self._entry_dir(name, version)
        directory.mkdir(parents=True, exist_ok=True)
        path = directory / f"{sha1}.zip"
        fd, tmp_path = tempfile.mkstemp(dir=str(directory), prefix=".incoming-", suffix=".tmp")
        try:
            with os.fdopen(fd, "wb") as handle:
                handle.write(data)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_path, path)
        except BaseException:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise
        logger.debug("Cached %s@%s (%s bytes)", name, version, len(data))
        return path

    def entries(self) -> List[CacheEntry]:
        result: List[CacheEntry] = []
        if not self.root.is_dir():
            return result
        for mod_dir in sorted(p for p in self.root.iterdir() if p.is_dir()):
            for version_dir in sorted(p for p in mod_dir.iterdir() if p.is_dir()):
                try:
                    version = Version.parse(version_dir.name)
                except ValueError:
                    continue
                for path in sorted(version_dir.glob("*.zip")):
                    stat = path.stat()
                    result.append(
                        CacheEntry(
                            name=mod_dir.name,
                            version=version,
                            sha1=path.stem,
                            path=path,
                            size=stat.st_size,
                            last_used=stat.st_mtime,
                        )
                    )
        return result

    def size(self) -> int:
        return sum(entry.size for entry in self.entries())

    def evict(self, predicate: Callable[[CacheEntry], bool]) -> List[CacheEntry]:
        evicted = []
        for entry in self.entries():
            if not predicate(entry):
                continue
            try:
                entry.path.unlink()
            except FileNotFoundError:
                continue
            evicted.append(entry)
            self._prune_empty(entry.path.parent)
        return evicted

    def prune(self, max_bytes: int) -> List[CacheEntry]:
        """Evict least recently used entries until the cache fits in ``max_bytes``."""

        entries = sorted(self.entries(), key=lambda e: (e.last_used, e.name, e.version))
        total = sum(entry.size for entry in entries)
        doomed = set()
        for entry in entries:
            if total <= max_bytes:
                break
            doomed.add(entry.path)
            total -= entry.size
        return self.evict(lambda entry: entry.path in doomed)

    def clear(self) -> None:
        if self.root.exists():
            shutil.rmtree(self.root)

    def _prune_empty(self, directory: Path) -> None:
        for candidate in (directory, directory.parent):
            if candidate == self.root:
                break
            try:
                candidate.rmdir()
            except OSError:
                break
