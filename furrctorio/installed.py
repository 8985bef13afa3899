"""Everything the tool knows about a server's mod directory."""

from __future__ import annotations

import fcntl
import json
import logging
import re
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, Iterable, List, Optional, Set, Tuple

from .errors import BusyError
from .files import sha1_file
from .versions import Version

if TYPE_CHECKING:
    from .lockfile import Lockfile

logger = logging.getLogger(__name__)

ARCHIVE_RE = re.compile(r"^(?P<name>\S+)_(?P<version>\d+\.\d+\.\d+)\.zip$")
MARKER_FILENAME = ".furrctorio-applied"
MOD_LIST_FILENAME = "mod-list.json"
LOCK_SUFFIX = ".furrctorio.lock"


def archive_name(name: str, version: Version) -> str:
    return f"{name}_{version}.zip"


@dataclass(frozen=True, slots=True)
class InstalledMod:
    name: str
    version: Version
    sha1: str
    path: Path


@dataclass
class InstalledState:
    mods: Dict[str, InstalledMod] = field(default_factory=dict)
    # Older archives of a mod that is also present at a newer version.
    shadowed: List[InstalledMod] = field(default_factory=list)

    def versions(self) -> Dict[str, Version]:
        return {name: mod.version for name, mod in self.mods.items()}

    def checksums(self) -> Dict[str, Tuple[Version, str]]:
        return {name: (mod.version, mod.sha1) for name, mod in self.mods.items()}


def scan_installed(target_dir: Path) -> InstalledState:
    state = InstalledState()
    if not target_dir.exists():
        return state

    for path in sorted(target_dir.iterdir()):
        match = ARCHIVE_RE.match(path.name)
        if not match or not path.is_file():
            if not path.name.startswith(".") and path.name != MOD_LIST_FILENAME:
                logger.debug("Ignoring unmanaged entry %s", path)
            continue
        mod = InstalledMod(
            name=match.group("name"),
            version=Version.parse(match.group("version")),
            sha1=sha1_file(path),
            path=path,
        )
        current = state.mods.get(mod.name)
        if current is None:
            state.mods[mod.name] = mod
        elif mod.version > current.version:
            state.shadowed.append(current)
            state.mods[mod.name] = mod
        else:
            state.shadowed.append(mod)
    return state


def read_marker(target_dir: Path) -> Optional[str]:
    path = target_dir / MARKER_FILENAME
    if not path.exists():
        return None
    return path.read_text(encoding="utf-8").strip() or None


def is_applied(target_dir: Path, lockfile: Lockfile) -> bool:
    """True when the marker in ``target_dir`` names this exact lockfile."""

    return read_marker(target_dir) == lockfile.checksum()


def read_mod_list(target_dir: Path) -> Optional[Dict[str, Any]]:
    path = target_dir / MOD_LIST_FILENAME
    if not path.exists():
        return None
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError:
        logger.warning("Ignoring unreadable %s", path)
        return None
    return data if isinstance(data, dict) else None


def render_mod_list(
    mods: Iterable[Tuple[str, bool]],
    existing: Optional[Dict[str, Any]] = None,
    game_provided: Iterable[str] = (),
) -> str:
    """Render Factorio's ``mod-list.json``.

    ``base`` is always enabled. Entries for other game-provided mods (the
    expansions) keep whatever state the existing file gave them; every
    other entry comes from ``mods``.
    """

    builtin = set(game_provided) | {"base"}
    kept: Dict[str, bool] = {"base": True}
    for entry in (existing or {}).get("mods", []):
        name = entry.get("name") if isinstance(entry, dict) else None
        if name in builtin and name != "base":
            kept[name] = bool(entry.get("enabled", True))

    rows = [{"name": name, "enabled": enabled} for name, enabled in kept.items()]
    rows.extend(
        {"name": name, "enabled": enabled}
        for name, enabled in sorted(mods)
        if name not in builtin
    )
    return json.dumps({"mods": rows}, indent=2) + "\n"


_ACTIVE: Set[Path] = set()
_ACTIVE_GUARD = threading.Lock()


class DirectoryLock:
    """Exclusive, non-blocking lock on a target mod directory.

    Held in-process through a registry and across processes through
    ``flock`` on a sidecar file next to the directory. The kernel drops
    the flock when its owner dies, so a crash never leaves the target
    locked.
    """

    def __init__(self, target_dir: Path):
        self.target = Path(target_dir).resolve()
        self.lock_path = self.target.parent / f".{self.target.name}{LOCK_SUFFIX}"
        self._handle = None

    def acquire(self) -> None:
        with _ACTIVE_GUARD:
            if self.target in _ACTIVE:
                raise BusyError(self.target)
            _ACTIVE.add(self.target)
        try:
            self.lock_path.parent.mkdir(parents=True, exist_ok=True)
            handle = self.lock_path.open("a+", encoding="utf-8")
            try:
                fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
            except OSError as exc:
                handle.close()
                raise BusyError(self.target) from exc
        except BaseException:
            with _ACTIVE_GUARD:
                _ACTIVE.discard(self.target)
            raise
        self._handle = handle

    def release(self) -> None:
        if self._handle is None:
            return
        try:
            fcntl.flock(self._handle.fileno(), fcntl.LOCK_UN)
        finally:
            self._handle.close()
            self._handle = None
            with _ACTIVE_GUARD:
                _ACTIVE.discard(self.target)

    def __enter__(self) -> "DirectoryLock":
        self.acquire()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.release()
