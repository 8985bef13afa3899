from __future__ import annotations

import json
import re
from collections import OrderedDict
from pathlib import Path
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator

from .config import FurrConfig
from .errors import ManifestError, VersionError
from .files import sha256_text
from .versions import Version, VersionConstraint, game_release, normalize_game_version, parse_constraint

SUPPORTED_SCHEMA_VERSION = 1

_NAME_RE = re.compile(r"^\S+$")


class ManifestEntry(BaseModel):
    name: str
    version: str = "*"
    enabled: bool = True

    @field_validator("name")
    @classmethod
    def _check_name(cls, value: str) -> str:
        if not _NAME_RE.match(value):
            raise ValueError(f"mod name '{value}' must be non-empty and contain no whitespace")
        return value

    @field_validator("version")
    @classmethod
    def _check_version(cls, value: str) -> str:
        try:
            parse_constraint(value)
        except VersionError as exc:
            raise ValueError(str(exc)) from exc
        return value.strip() or "*"

    @property
    def constraint(self) -> VersionConstraint:
        return parse_constraint(self.version)


class ModManifest(BaseModel):
    schema_version: int = SUPPORTED_SCHEMA_VERSION
    factorio_version: Optional[str] = None
    mods: List[ManifestEntry] = Field(default_factory=list)

    @field_validator("factorio_version")
    @classmethod
    def _check_factorio_version(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        try:
            return normalize_game_version(value)
        except VersionError as exc:
            raise ValueError(str(exc)) from exc

    @property
    def game_version(self) -> Optional[Version]:
        return Version.parse(self.factorio_version) if self.factorio_version else None

    @property
    def game_constraint(self) -> Optional[VersionConstraint]:
        """The game-provided mods' versions: one release, or a whole ``major.minor`` series."""
        return game_release(self.factorio_version) if self.factorio_version else None

    def find(self, name: str) -> ManifestEntry:
        for mod in self.mods:
            if mod.name == name:
                return mod
        raise ManifestError(f"Mod '{name}' not found in manifest")

    def add(self, entry: ManifestEntry) -> None:
        if any(mod.name == entry.name for mod in self.mods):
            raise ManifestError(f"Mod '{entry.name}' already exists in manifest")
        self.mods.append(entry)

    def remove(self, name: str) -> None:
        before = len(self.mods)
        self.mods = [mod for mod in self.mods if mod.name != name]
        if len(self.mods) == before:
            raise ManifestError(f"Mod '{name}' not found in manifest")

    def constraints(self) -> "OrderedDict[str, VersionConstraint]":
        """Direct requirements in manifest order."""

        result: "OrderedDict[str, VersionConstraint]" = OrderedDict()
        for entry in self.mods:
            if entry.name in result:
                raise ManifestError(f"Mod '{entry.name}' is listed more than once in the manifest")
            result[entry.name] = entry.constraint
        return result

    def enabled_flags(self) -> Dict[str, bool]:
        return {entry.name: entry.enabled for entry in self.mods}

    def canonical_json(self) -> str:
        payload = {
            "factorio_version": self.factorio_version,
            "mods": [
                {"name": entry.name, "version": str(entry.constraint), "enabled": entry.enabled}
                for entry in self.mods
            ],
        }
        return json.dumps(payload, sort_keys=True, separators=(",", ":"))

    def checksum(self) -> str:
        return sha256_text(self.canonical_json())


def manifest_path(cfg: FurrConfig) -> Path:
    return cfg.manifest_file


def load_manifest(cfg: FurrConfig) -> ModManifest:
    path = manifest_path(cfg)
    if not path.exists():
        raise ManifestError("Mods manifest not found. Run 'furrctorio init' first.")
    try:
        data = json.loads(path.read_text())
    except json.JSONDecodeError as exc:
        raise ManifestError(f"Invalid JSON in {path}: {exc}") from exc
    try:
        manifest = ModManifest.model_validate(data)
    except ValidationError as exc:
        raise ManifestError(f"Invalid manifest {path}: {exc}") from exc
    if manifest.schema_version != SUPPORTED_SCHEMA_VERSION:
        raise ManifestError(
            f"Unsupported manifest schema version {manifest.schema_version}."
        )
    manifest.constraints()
    return manifest


def save_manifest(cfg: FurrConfig, manifest: ModManifest) -> None:
    path = manifest_path(cfg)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(manifest.model_dump_json(indent=2) + "\n")


def init_manifest(cfg: FurrConfig, *, force: bool = False) -> ModManifest:
    if cfg.manifest_file.exists() and not force:
        raise ManifestError("Mods manifest already exists. Use --force to overwrite.")

    manifest = ModManifest(factorio_version=cfg.factorio_version)
    cfg.mods_dir.mkdir(parents=True, exist_ok=True)
    save_manifest(cfg, manifest)
    return manifest
