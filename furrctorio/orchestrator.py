"""Apply lockfile actions to a server's mod directory as one transaction.

Archives are gathered first (cache, then the mod source), written into a
staging directory that sits next to the target, and only then swapped into
the target with ``os.replace``. Every swap is journalled so a failure while
committing puts the previous entries back.
"""

from __future__ import annotations

import logging
import os
import shutil
import tempfile
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from .cache import CacheStore
from .errors import ApplyCancelled, IntegrityError, NetworkTimeout, UnavailableError
from .files import sha1_bytes
from .installed import (
    MARKER_FILENAME,
    MOD_LIST_FILENAME,
    DirectoryLock,
    archive_name,
    is_applied,
    read_mod_list,
    render_mod_list,
    scan_installed,
)
from .lockfile import Action, ActionKind, Lockfile, diff
from .resolver import GAME_PROVIDED_MODS
from .source import ModSource
from .versions import Version

logger = logging.getLogger(__name__)

_POLL_INTERVAL = 0.1


@dataclass
class ApplyReport:
    installed: List[str] = field(default_factory=list)
    upgraded: List[str] = field(default_factory=list)
    downgraded: List[str] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)
    fetched: List[str] = field(default_factory=list)
    cache_hits: List[str] = field(default_factory=list)
    lockfile_checksum: Optional[str] = None

    @property
    def changed(self) -> bool:
        return bool(self.installed or self.upgraded or self.downgraded or self.removed)


class UpdateOrchestrator:
    def __init__(
        self,
        cache: CacheStore,
        source: ModSource,
        *,
        retries: int = 3,
        backoff: float = 0.5,
        max_workers: int = 4,
        network_budget: float = 600.0,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._cache = cache
        self._source = source
        self._retries = retries
        self._backoff = backoff
        self._max_workers = max(1, max_workers)
        self._network_budget = network_budget
        self._sleep = sleep
        self._clock = clock

    def apply(
        self,
        actions: Sequence[Action],
        target_dir: Path,
        *,
        lockfile: Optional[Lockfile] = None,
        cancel: Optional[threading.Event] = None,
    ) -> ApplyReport:
        target = Path(target_dir)
        with DirectoryLock(target):
            return self._apply_locked(list(actions), target, lockfile, cancel)

    def sync(
        self,
        lockfile: Lockfile,
        target_dir: Path,
        *,
        cancel: Optional[threading.Event] = None,
    ) -> ApplyReport:
        """Bring ``target_dir`` to exactly the state ``lockfile`` pins."""

        target = Path(target_dir)
        with DirectoryLock(target):
            actions = diff(lockfile, scan_installed(target))
            return self._apply_locked(actions, target, lockfile, cancel)

    def _apply_locked(
        self,
        actions: List[Action],
        target: Path,
        lockfile: Optional[Lockfile],
        cancel: Optional[threading.Event],
    ) -> ApplyReport:
        report = ApplyReport(lockfile_checksum=lockfile.checksum() if lockfile else None)
        if not actions and (lockfile is None or is_applied(target, lockfile)):
            logger.info("%s is already up to date", target)
            return report

        _check_cancel(cancel)
        archives = self._gather([a for a in actions if a.installs], report, cancel)

        staging = Path(tempfile.mkdtemp(dir=str(target.parent), prefix=f".{target.name}.staging-"))
        try:
            incoming = staging / "new"
            incoming.mkdir()
            staged: List[Tuple[Path, Path]] = []
            removals: List[Path] = []
            for action in actions:
                _check_cancel(cancel)
                if action.installs:
                    filename = archive_name(action.name, action.version)
                    staged_path = incoming / filename
                    staged_path.write_bytes(archives[(action.name, action.version)])
                    staged.append((staged_path, target / filename))
                    if action.previous is not None and action.previous != action.version:
                        removals.append(target / archive_name(action.name, action.previous))
                else:
                    removals.append(target / archive_name(action.name, action.previous))

            if lockfile is not None:
                staged.extend(self._stage_metadata(lockfile, report.lockfile_checksum, target, incoming))

            _check_cancel(cancel)
            _commit(target, staging, staged, removals)
        finally:
            shutil.rmtree(staging, ignore_errors=True)

        for action in actions:
            bucket = {
                ActionKind.INSTALL: report.installed,
                ActionKind.UPGRADE: report.upgraded,
                ActionKind.DOWNGRADE: report.downgraded,
                ActionKind.REMOVE: report.removed,
            }[action.kind]
            # Shadowed archives make several removals for one mod.
            if action.name not in bucket:
                bucket.append(action.name)
        logger.info(
            "Applied %d action(s) to %s (%d fetched, %d from cache)",
            len(actions),
            target,
            len(report.fetched),
            len(report.cache_hits),
        )
        return report

    def _stage_metadata(
        self,
        lockfile: Lockfile,
        checksum: Optional[str],
        target: Path,
        incoming: Path,
    ) -> List[Tuple[Path, Path]]:
        marker = incoming / MARKER_FILENAME
        marker.write_text(f"{checksum}\n", encoding="utf-8")
        mod_list = incoming / MOD_LIST_FILENAME
        mod_list.write_text(
            render_mod_list(
                ((mod.name, mod.enabled) for mod in lockfile.mods),
                existing=read_mod_list(target),
                game_provided=GAME_PROVIDED_MODS,
            ),
            encoding="utf-8",
        )
        return [(marker, target / MARKER_FILENAME), (mod_list, target / MOD_LIST_FILENAME)]

    def _gather(
        self,
        actions: List[Action],
        report: ApplyReport,
        cancel: Optional[threading.Event],
    ) -> Dict[Tuple[str, Version], bytes]:
        archives: Dict[Tuple[str, Version], bytes] = {}
        missing: List[Action] = []
        for action in actions:
            data = self._cache.get(action.name, action.version, action.sha1)
            if data is None:
                missing.append(action)
                continue
            archives[(action.name, action.version)] = data
            report.cache_hits.append(action.name)

        if not missing:
            return archives

        deadline = self._clock() + self._network_budget
        executor = ThreadPoolExecutor(max_workers=min(self._max_workers, len(missing)))
        try:
            futures: Dict[Future, Action] = {
                executor.submit(self._download, action, deadline, cancel): action for action in missing
            }
            pending = set(futures)
            while pending:
                _check_cancel(cancel)
                done, pending = wait(pending, timeout=_POLL_INTERVAL, return_when=FIRST_COMPLETED)
                for future in done:
                    action = futures[future]
                    archives[(action.name, action.version)] = future.result()
                    report.fetched.append(action.name)
        finally:
            # Downloads still running are abandoned; whatever they finish stays in the cache.
            executor.shutdown(wait=False, cancel_futures=True)
        return archives

    def _download(self, action: Action, deadline: float, cancel: Optional[threading.Event]) -> bytes:
        name, version = action.name, action.version
        attempt = 0
        while True:
            _check_cancel(cancel)
            if self._clock() > deadline:
                raise NetworkTimeout(f"Download budget exhausted before fetching {name}@{version}")
            try:
                archive = self._source.fetch_archive(name, version)
                break
            except UnavailableError as exc:
                if attempt >= self._retries:
                    raise
                delay = self._backoff * (2 ** attempt)
                if self._clock() + delay > deadline:
                    raise NetworkTimeout(f"Download budget exhausted while retrying {name}@{version}") from exc
                logger.warning(
                    "Fetching %s@%s failed (%s); retry %d/%d in %.1fs",
                    name,
                    version,
                    exc,
                    attempt + 1,
                    self._retries,
                    delay,
                )
                attempt += 1
                self._sleep(delay)

        actual = sha1_bytes(archive.data)
        expected = action.sha1 or archive.sha1
        if expected is None:
            logger.warning("No checksum recorded for %s@%s; trusting download %s", name, version, actual)
        elif actual != expected:
            raise IntegrityError(name, str(version), expected, actual)
        self._cache.put(name, version, actual, archive.data)
        logger.debug("Fetched %s@%s", name, version)
        return archive.data


def _check_cancel(cancel: Optional[threading.Event]) -> None:
    if cancel is not None and cancel.is_set():
        raise ApplyCancelled("Apply cancelled; the target directory was left unchanged")


def _commit(target: Path, staging: Path, staged: List[Tuple[Path, Path]], removals: List[Path]) -> None:
    """Swap staged files into ``target`` and move removed ones into ``staging``.

    Either every swap lands or the journal is replayed backwards and the
    target keeps its previous entries.
    """

    backup = staging / "old"
    backup.mkdir()
    created_target = not target.exists()
    journal: List[Tuple[Path, Optional[Path]]] = []
    try:
        target.mkdir(parents=True, exist_ok=True)
        for source, destination in staged:
            if destination.exists():
                saved = backup / destination.name
                os.replace(destination, saved)
                journal.append((destination, saved))
            os.replace(source, destination)
            journal.append((destination, None))
        for path in removals:
            if not path.exists():
                continue
            saved = backup / path.name
            os.replace(path, saved)
            journal.append((path, saved))
    except BaseException:
        for original, saved in reversed(journal):
            try:
                if saved is None:
                    os.unlink(original)
                else:
                    os.replace(saved, original)
            except OSError:
                logger.error("Could not restore %s while rolling back", original, exc_info=True)
        if created_target:
            shutil.rmtree(target, ignore_errors=True)
        raise
