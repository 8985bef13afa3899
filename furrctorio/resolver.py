"""Backtracking dependency resolution over a mod source.

The search walks mods in a fixed order (manifest entries first, then
dependencies in the order they were discovered) and tries each mod's
candidates newest first. Choice points live on an explicit stack; each one
keeps a snapshot of the search state taken before its mod was chosen, so
backtracking is a matter of restoring the snapshot and trying the next
candidate.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Set, Tuple

from .errors import ConflictError, NotFoundError, ResolutionTimeout
from .manifest import ModManifest
from .source import ModSource, ModVersionMetadata
from .versions import Version, VersionConstraint

logger = logging.getLogger(__name__)

MANIFEST = "manifest"
LOCKFILE = "lockfile"
GAME = "game"
_MARKERS = frozenset({MANIFEST, LOCKFILE, GAME})

GAME_PROVIDED_MODS = ("base", "elevated-rails", "quality", "space-age")

# Factorio 1.0 still loads mods published for 0.18.
_COMPATIBLE_SERIES = {"1.0": {"0.18"}}

DEFAULT_BUDGET = 10_000


@dataclass(frozen=True, slots=True)
class ResolvedMod:
    name: str
    version: Version
    sha1: Optional[str] = None
    required_by: str = MANIFEST
    enabled: bool = True


@dataclass
class ResolutionResult:
    mods: Dict[str, ResolvedMod] = field(default_factory=dict)
    factorio_version: Optional[Version] = None

    def versions(self) -> Dict[str, Version]:
        return {name: mod.version for name, mod in self.mods.items()}

    def __len__(self) -> int:
        return len(self.mods)


@dataclass
class _State:
    constraints: Dict[str, VersionConstraint] = field(default_factory=dict)
    contributors: Dict[str, Tuple[str, ...]] = field(default_factory=dict)
    forbidden: Dict[str, Tuple[Tuple[str, VersionConstraint], ...]] = field(default_factory=dict)
    chosen: Dict[str, Version] = field(default_factory=dict)
    metadata: Dict[str, ModVersionMetadata] = field(default_factory=dict)
    provenance: Dict[str, str] = field(default_factory=dict)
    pending: List[str] = field(default_factory=list)

    def copy(self) -> "_State":
        return _State(
            constraints=dict(self.constraints),
            contributors=dict(self.contributors),
            forbidden=dict(self.forbidden),
            chosen=dict(self.chosen),
            metadata=dict(self.metadata),
            provenance=dict(self.provenance),
            pending=list(self.pending),
        )

    def next_pending(self) -> Optional[str]:
        for name in self.pending:
            if name not in self.chosen:
                return name
        return None

    def constraint(self, name: str) -> VersionConstraint:
        return self.constraints.get(name, VersionConstraint.any())

    def require(self, name: str, introduced_by: str) -> None:
        if name not in self.provenance:
            self.provenance[name] = introduced_by
            self.pending.append(name)

    def merge(self, name: str, constraint: VersionConstraint, by: str) -> Optional[Set[str]]:
        """Intersect ``constraint`` into ``name``'s range; return the implicated mods on failure."""

        merged = self.constraint(name).intersect(constraint)
        contributors = self.contributors.get(name, ()) + (by,)
        chosen = self.chosen.get(name)
        if merged.is_empty() or (chosen is not None and not merged.allows(chosen)):
            return {name, *contributors}
        self.constraints[name] = merged
        self.contributors[name] = contributors
        return None

    def implicated(self, name: str) -> Set[str]:
        names = {name, *self.contributors.get(name, ())}
        names.update(by for by, _ in self.forbidden.get(name, ()))
        return names


@dataclass
class _ChoicePoint:
    name: str
    candidates: List[ModVersionMetadata]
    snapshot: _State
    index: int = -1


class Resolver:
    def __init__(self, source: ModSource, *, budget: int = DEFAULT_BUDGET):
        self._source = source
        self._budget = budget
        self._versions: Dict[str, List[Version]] = {}
        self._metadata: Dict[Tuple[str, Version], ModVersionMetadata] = {}

    def resolve(
        self,
        manifest: ModManifest,
        *,
        previous: Optional[Mapping[str, Version]] = None,
        allow_downgrade: bool = False,
    ) -> ResolutionResult:
        game_version = manifest.game_version
        state = self._initial_state(manifest, game_version, previous, allow_downgrade)

        stack: List[_ChoicePoint] = []
        steps = 0
        failure: Set[str] = set()

        while True:
            name = state.next_pending()
            if name is None:
                return self._result(state, manifest, game_version)

            candidates = self._candidates(name, state, game_version)
            if candidates:
                stack.append(_ChoicePoint(name=name, candidates=candidates, snapshot=state))
            else:
                logger.debug("No candidate of %s satisfies %s", name, state.constraint(name))
                failure = state.implicated(name)

            while True:
                if not stack:
                    raise self._conflict(failure)
                point = stack[-1]
                point.index += 1
                if point.index >= len(point.candidates):
                    stack.pop()
                    logger.debug("Backtracking past %s", point.name)
                    continue

                steps += 1
                if steps > self._budget:
                    raise ResolutionTimeout(self._budget)

                trial = point.snapshot.copy()
                candidate = point.candidates[point.index]
                rejected = self._choose(trial, candidate, game_version)
                if rejected is None:
                    logger.debug("Chose %s@%s", candidate.name, candidate.version)
                    state = trial
                    break
                logger.debug("Rejected %s@%s: conflicts with %s", candidate.name, candidate.version, sorted(rejected))
                failure = rejected

    def _initial_state(
        self,
        manifest: ModManifest,
        game_version: Optional[Version],
        previous: Optional[Mapping[str, Version]],
        allow_downgrade: bool,
    ) -> _State:
        state = _State()
        provided = manifest.game_constraint
        if provided is not None:
            for name in GAME_PROVIDED_MODS:
                # A bare series leaves the patch open; the game mods are never candidates.
                state.constraints[name] = provided
                state.contributors[name] = (GAME,)
                state.provenance[name] = GAME
                if provided.lower == provided.upper:
                    state.chosen[name] = game_version

        constraints = manifest.constraints()
        for name, constraint in constraints.items():
            if name in GAME_PROVIDED_MODS:
                if provided is not None and state.merge(name, constraint, MANIFEST):
                    raise ConflictError([name], detail=f"the game provides {name} {provided}")
                continue
            if not self._list_versions(name):
                raise NotFoundError(name, message=f"Mod '{name}' from the manifest is not available")
            state.merge(name, constraint, MANIFEST)
            state.require(name, MANIFEST)

        if previous and not allow_downgrade:
            for name, locked in previous.items():
                explicit = constraints.get(name)
                if explicit is not None and not explicit.allows(locked):
                    continue
                state.constraints[name] = state.constraint(name).intersect(VersionConstraint.minimum(locked))
                state.contributors[name] = state.contributors.get(name, ()) + (LOCKFILE,)
        return state

    def _candidates(self, name: str, state: _State, game_version: Optional[Version]) -> List[ModVersionMetadata]:
        constraint = state.constraint(name)
        forbidden = state.forbidden.get(name, ())
        candidates = []
        for version in reversed(self._list_versions(name)):
            if not constraint.allows(version):
                continue
            if any(rule.allows(version) for _, rule in forbidden):
                continue
            metadata = self._get_metadata(name, version)
            if not _supports_game(metadata, game_version):
                continue
            candidates.append(metadata)
        return candidates

    def _choose(
        self,
        state: _State,
        metadata: ModVersionMetadata,
        game_version: Optional[Version],
    ) -> Optional[Set[str]]:
        name = metadata.name
        state.chosen[name] = metadata.version
        state.metadata[name] = metadata

        for dep in metadata.incompatibilities:
            if dep.name in GAME_PROVIDED_MODS and game_version is None:
                continue
            chosen = state.chosen.get(dep.name)
            if chosen is not None and dep.constraint.allows(chosen):
                return {name, dep.name}
            if chosen is None and dep.name in GAME_PROVIDED_MODS:
                provided = state.constraint(dep.name)
                if provided.intersect(dep.constraint) == provided:
                    return {name, dep.name}
            state.forbidden[dep.name] = state.forbidden.get(dep.name, ()) + ((name, dep.constraint),)

        for dep in metadata.requirements:
            if dep.name == name:
                continue
            if dep.name in GAME_PROVIDED_MODS and game_version is None:
                continue
            implicated = state.merge(dep.name, dep.constraint, name)
            if implicated is not None:
                return implicated
            if dep.kind.is_required:
                state.require(dep.name, name)
        return None

    def _list_versions(self, name: str) -> List[Version]:
        if name not in self._versions:
            try:
                self._versions[name] = sorted(self._source.list_versions(name))
            except NotFoundError:
                logger.debug("Mod %s is unknown to the source", name)
                self._versions[name] = []
        return self._versions[name]

    def _get_metadata(self, name: str, version: Version) -> ModVersionMetadata:
        key = (name, version)
        if key not in self._metadata:
            self._metadata[key] = self._source.get_metadata(name, version)
        return self._metadata[key]

    def _conflict(self, failure: Set[str]) -> ConflictError:
        detail = None
        if LOCKFILE in failure:
            detail = "previously locked versions are kept as minimums; pass --allow-downgrade to relax them"
        return ConflictError(sorted(failure - _MARKERS), detail=detail)

    def _result(self, state: _State, manifest: ModManifest, game_version: Optional[Version]) -> ResolutionResult:
        enabled = manifest.enabled_flags()
        mods: Dict[str, ResolvedMod] = {}
        for name in state.pending:
            metadata = state.metadata[name]
            mods[name] = ResolvedMod(
                name=name,
                version=metadata.version,
                sha1=metadata.sha1,
                required_by=state.provenance[name],
                enabled=enabled.get(name, True),
            )
        return ResolutionResult(mods=mods, factorio_version=game_version)


def _supports_game(metadata: ModVersionMetadata, game_version: Optional[Version]) -> bool:
    if game_version is None or not metadata.factorio_version:
        return True
    try:
        series = Version.parse(metadata.factorio_version).series
    except ValueError:
        return True
    return series == game_version.series or series in _COMPATIBLE_SERIES.get(game_version.series, set())


def resolve(
    manifest: ModManifest,
    mod_source: ModSource,
    *,
    budget: int = DEFAULT_BUDGET,
    previous: Optional[Mapping[str, Version]] = None,
    allow_downgrade: bool = False,
) -> ResolutionResult:
    return Resolver(mod_source, budget=budget).resolve(
        manifest, previous=previous, allow_downgrade=allow_downgrade
    )
