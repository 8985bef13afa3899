"""The mod source capability consumed by the resolver and the orchestrator."""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Protocol, Tuple

from .errors import NotFoundError, UnavailableError
from .files import sha1_bytes
from .versions import Dependency, DependencyKind, Version


@dataclass(frozen=True, slots=True)
class ModVersionMetadata:
    name: str
    version: Version
    dependencies: Tuple[Dependency, ...] = ()
    sha1: Optional[str] = None
    file_name: Optional[str] = None
    factorio_version: Optional[str] = None

    @property
    def requirements(self) -> Tuple[Dependency, ...]:
        return tuple(dep for dep in self.dependencies if dep.kind is not DependencyKind.INCOMPATIBLE)

    @property
    def incompatibilities(self) -> Tuple[Dependency, ...]:
        return tuple(dep for dep in self.dependencies if dep.kind is DependencyKind.INCOMPATIBLE)


@dataclass(frozen=True, slots=True)
class ModArchive:
    name: str
    version: Version
    data: bytes
    sha1: Optional[str] = None


class ModSource(Protocol):
    def list_versions(self, name: str) -> List[Version]:  # pragma: no cover - protocol
        ...

    def get_metadata(self, name: str, version: Version) -> ModVersionMetadata:  # pragma: no cover - protocol
        ...

    def fetch_archive(self, name: str, version: Version) -> ModArchive:  # pragma: no cover - protocol
        ...


@dataclass
class _Release:
    metadata: ModVersionMetadata
    data: bytes


@dataclass
class InMemoryModSource:
    """A fixed snapshot of mods, used for tests and offline resolution.

    ``failures`` maps ``(name, version)`` to the number of times
    ``fetch_archive`` should raise ``UnavailableError`` before succeeding.
    """

    releases: Dict[str, Dict[Version, _Release]] = field(default_factory=dict)
    failures: Dict[Tuple[str, Version], int] = field(default_factory=dict)
    fetches: List[Tuple[str, Version]] = field(default_factory=list)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def add(
        self,
        name: str,
        version: str,
        dependencies: Optional[List[str]] = None,
        *,
        data: Optional[bytes] = None,
        factorio_version: Optional[str] = None,
    ) -> ModVersionMetadata:
        parsed = Version.parse(version)
        payload = data if data is not None else f"{name}_{parsed}".encode("utf-8")
        metadata = ModVersionMetadata(
            name=name,
            version=parsed,
            dependencies=tuple(Dependency.parse(dep) for dep in dependencies or []),
            sha1=sha1_bytes(payload),
            file_name=f"{name}_{parsed}.zip",
            factorio_version=factorio_version,
        )
        self.releases.setdefault(name, {})[parsed] = _Release(metadata=metadata, data=payload)
        return metadata

    def list_versions(self, name: str) -> List[Version]:
        if name not in self.releases:
            raise NotFoundError(name)
        return sorted(self.releases[name])

    def get_metadata(self, name: str, version: Version) -> ModVersionMetadata:
        return self._release(name, version).metadata

    def fetch_archive(self, name: str, version: Version) -> ModArchive:
        release = self._release(name, version)
        with self._lock:
            self.fetches.append((name, version))
            remaining = self.failures.get((name, version), 0)
            if remaining:
                self.failures[(name, version)] = remaining - 1
        if remaining:
            raise UnavailableError(f"Simulated outage fetching {name}@{version}")
        return ModArchive(name=name, version=version, data=release.data, sha1=release.metadata.sha1)

    def _release(self, name: str, version: Version) -> _Release:
        try:
            return self.releases[name][version]
        except KeyError as exc:
            raise NotFoundError(name, str(version)) from exc
