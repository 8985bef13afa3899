"""Lockfile serialisation, staleness checks and install-state diffs."""

from __future__ import annotations

import json
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator

from .errors import LockfileParseError, StaleLockfileError, VersionError
from .files import atomic_write_text, sha256_text
from .installed import InstalledState
from .manifest import ModManifest
from .resolver import MANIFEST, ResolutionResult, ResolvedMod
from .versions import Version

FORMAT_VERSION = 1


def _normalize_version(value: str) -> str:
    try:
        return str(Version.parse(value))
    except VersionError as exc:
        raise ValueError(str(exc)) from exc


class LockedMod(BaseModel):
    name: str
    version: str
    sha1: Optional[str] = None
    required_by: str = MANIFEST
    enabled: bool = True

    @field_validator("version")
    @classmethod
    def _check_version(cls, value: str) -> str:
        return _normalize_version(value)

    @property
    def parsed_version(self) -> Version:
        return Version.parse(self.version)


class Lockfile(BaseModel):
    format_version: int = FORMAT_VERSION
    manifest_checksum: str
    factorio_version: Optional[str] = None
    mods: List[LockedMod] = Field(default_factory=list)

    @field_validator("factorio_version")
    @classmethod
    def _check_factorio_version(cls, value: Optional[str]) -> Optional[str]:
        return None if value is None else _normalize_version(value)

    def dumps(self) -> str:
        return self.model_dump_json(indent=2) + "\n"

    def checksum(self) -> str:
        return sha256_text(self.dumps())

    def get(self, name: str) -> Optional[LockedMod]:
        for mod in self.mods:
            if mod.name == name:
                return mod
        return None

    def versions(self) -> Dict[str, Version]:
        return {mod.name: mod.parsed_version for mod in self.mods}

    def to_result(self) -> ResolutionResult:
        mods: Dict[str, ResolvedMod] = {}
        for mod in self.mods:
            mods[mod.name] = ResolvedMod(
                name=mod.name,
                version=mod.parsed_version,
                sha1=mod.sha1,
                required_by=mod.required_by,
                enabled=mod.enabled,
            )
        factorio_version = Version.parse(self.factorio_version) if self.factorio_version else None
        return ResolutionResult(mods=mods, factorio_version=factorio_version)


def write(result: ResolutionResult, manifest_checksum: str) -> Lockfile:
    mods = [
        LockedMod(
            name=mod.name,
            version=str(mod.version),
            sha1=mod.sha1,
            required_by=mod.required_by,
            enabled=mod.enabled,
        )
        for mod in sorted(result.mods.values(), key=lambda m: m.name)
    ]
    return Lockfile(
        manifest_checksum=manifest_checksum,
        factorio_version=str(result.factorio_version) if result.factorio_version else None,
        mods=mods,
    )


def read(data: str | bytes) -> Lockfile:
    if isinstance(data, bytes):
        try:
            data = data.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise LockfileParseError(f"Lockfile is not valid UTF-8: {exc}") from exc
    try:
        payload = json.loads(data)
    except json.JSONDecodeError as exc:
        raise LockfileParseError(f"Lockfile is not valid JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise LockfileParseError("Lockfile must contain a JSON object")
    if payload.get("format_version") != FORMAT_VERSION:
        raise LockfileParseError(f"Unsupported lockfile format version {payload.get('format_version')!r}")
    try:
        lockfile = Lockfile.model_validate(payload)
    except ValidationError as exc:
        raise LockfileParseError(f"Invalid lockfile: {exc}") from exc

    names = [mod.name for mod in lockfile.mods]
    if len(set(names)) != len(names):
        raise LockfileParseError("Lockfile lists a mod more than once")
    return lockfile


def load_lockfile(path: Path) -> Lockfile:
    if not path.exists():
        raise LockfileParseError(f"Lockfile {path} not found. Run 'furrctorio resolve' first.")
    return read(path.read_bytes())


def save_lockfile(path: Path, lockfile: Lockfile) -> None:
    atomic_write_text(path, lockfile.dumps())


def is_stale(lockfile: Lockfile, manifest: ModManifest) -> bool:
    return lockfile.manifest_checksum != manifest.checksum()


def check_fresh(lockfile: Lockfile, manifest: ModManifest) -> None:
    actual = manifest.checksum()
    if lockfile.manifest_checksum != actual:
        raise StaleLockfileError(expected=lockfile.manifest_checksum, actual=actual)


class ActionKind(str, Enum):
    INSTALL = "install"
    UPGRADE = "upgrade"
    DOWNGRADE = "downgrade"
    REMOVE = "remove"


@dataclass(frozen=True, slots=True)
class Action:
    kind: ActionKind
    name: str
    version: Optional[Version] = None
    previous: Optional[Version] = None
    sha1: Optional[str] = None

    @property
    def installs(self) -> bool:
        return self.kind is not ActionKind.REMOVE

    def __str__(self) -> str:
        if self.kind is ActionKind.INSTALL:
            return f"install {self.name} {self.version}"
        if self.kind is ActionKind.REMOVE:
            return f"remove {self.name} {self.previous}"
        return f"{self.kind.value} {self.name} {self.previous} -> {self.version}"


def diff(lockfile: Lockfile, installed: InstalledState) -> List[Action]:
    """Actions that turn ``installed`` into exactly what ``lockfile`` pins.

    Installs, upgrades and downgrades come first, removals last, each group
    ordered by mod name.
    """

    changes: List[Action] = []
    removals: List[Action] = []

    for locked in sorted(lockfile.mods, key=lambda m: m.name):
        target = locked.parsed_version
        current = installed.mods.get(locked.name)
        if current is None:
            changes.append(Action(ActionKind.INSTALL, locked.name, version=target, sha1=locked.sha1))
        elif current.version < target:
            changes.append(
                Action(ActionKind.UPGRADE, locked.name, version=target, previous=current.version, sha1=locked.sha1)
            )
        elif current.version > target:
            changes.append(
                Action(ActionKind.DOWNGRADE, locked.name, version=target, previous=current.version, sha1=locked.sha1)
            )
        elif locked.sha1 and current.sha1 != locked.sha1:
            # Same version on disk but different bytes: reinstall the locked archive.
            changes.append(Action(ActionKind.INSTALL, locked.name, version=target, sha1=locked.sha1))

    locked_names = {mod.name for mod in lockfile.mods}
    for name, current in installed.mods.items():
        if name not in locked_names:
            removals.append(Action(ActionKind.REMOVE, name, previous=current.version))
    for shadowed in installed.shadowed:
        locked = lockfile.get(shadowed.name)
        if locked is None or locked.parsed_version != shadowed.version:
            removals.append(Action(ActionKind.REMOVE, shadowed.name, previous=shadowed.version))

    removals.sort(key=lambda a: (a.name, a.previous))
    return changes + removals
