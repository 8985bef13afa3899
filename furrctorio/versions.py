"""Versions, version constraints and Factorio dependency strings."""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from .errors import VersionError

_VERSION_RE = re.compile(r"^\s*(\d+)\.(\d+)(?:\.(\d+))?\s*$")
_COMPARATOR_RE = re.compile(r"(<=|>=|<|>|=)?\s*(\d+\.\d+(?:\.\d+)?)")
_DEPENDENCY_RE = re.compile(
    r"^\s*(?P<prefix>\(\?\)|!|\?|~)?\s*(?P<name>[^\s<>=!]+)"
    r"\s*(?:(?P<op><=|>=|<|>|=)\s*(?P<version>\S+))?\s*$"
)


@dataclass(frozen=True, order=True, slots=True)
class Version:
    major: int
    minor: int
    patch: int = 0

    @classmethod
    def parse(cls, value: str) -> "Version":
        match = _VERSION_RE.match(value or "")
        if not match:
            raise VersionError(f"Invalid version '{value}'")
        major, minor, patch = match.groups()
        return cls(int(major), int(minor), int(patch or 0))

    @property
    def series(self) -> str:
        """Factorio's major.minor compatibility tag, e.g. ``1.1``."""
        return f"{self.major}.{self.minor}"

    def __str__(self) -> str:
        return f"{self.major}.{self.minor}.{self.patch}"


@dataclass(frozen=True, slots=True)
class VersionConstraint:
    lower: Optional[Version] = None
    lower_inclusive: bool = True
    upper: Optional[Version] = None
    upper_inclusive: bool = False

    @classmethod
    def any(cls) -> "VersionConstraint":
        return cls()

    @classmethod
    def exact(cls, version: Version) -> "VersionConstraint":
        return cls(lower=version, lower_inclusive=True, upper=version, upper_inclusive=True)

    @classmethod
    def minimum(cls, version: Version) -> "VersionConstraint":
        return cls(lower=version, lower_inclusive=True)

    @classmethod
    def range(cls, lower: Version, upper: Version, upper_inclusive: bool = False) -> "VersionConstraint":
        return cls(lower=lower, lower_inclusive=True, upper=upper, upper_inclusive=upper_inclusive)

    @classmethod
    def from_operator(cls, op: str, version: Version) -> "VersionConstraint":
        if op in ("", "="):
            return cls.exact(version)
        if op == ">=":
            return cls(lower=version, lower_inclusive=True)
        if op == ">":
            return cls(lower=version, lower_inclusive=False)
        if op == "<=":
            return cls(upper=version, upper_inclusive=True)
        if op == "<":
            return cls(upper=version, upper_inclusive=False)
        raise VersionError(f"Unknown version operator '{op}'")

    @property
    def is_any(self) -> bool:
        return self.lower is None and self.upper is None

    def allows(self, version: Version) -> bool:
        if self.lower is not None:
            if version < self.lower or (version == self.lower and not self.lower_inclusive):
                return False
        if self.upper is not None:
            if version > self.upper or (version == self.upper and not self.upper_inclusive):
                return False
        return True

    def is_empty(self) -> bool:
        if self.lower is None or self.upper is None:
            return False
        if self.lower > self.upper:
            return True
        return self.lower == self.upper and not (self.lower_inclusive and self.upper_inclusive)

    def intersect(self, other: "VersionConstraint") -> "VersionConstraint":
        lower, lower_inclusive = self.lower, self.lower_inclusive
        if other.lower is not None:
            if lower is None or other.lower > lower:
                lower, lower_inclusive = other.lower, other.lower_inclusive
            elif other.lower == lower:
                lower_inclusive = lower_inclusive and other.lower_inclusive

        upper, upper_inclusive = self.upper, self.upper_inclusive
        if other.upper is not None:
            if upper is None or other.upper < upper:
                upper, upper_inclusive = other.upper, other.upper_inclusive
            elif other.upper == upper:
                upper_inclusive = upper_inclusive and other.upper_inclusive

        return VersionConstraint(
            lower=lower,
            lower_inclusive=lower_inclusive if lower is not None else True,
            upper=upper,
            upper_inclusive=upper_inclusive if upper is not None else False,
        )

    def __str__(self) -> str:
        if self.is_any:
            return "*"
        if self.lower is not None and self.lower == self.upper and self.lower_inclusive and self.upper_inclusive:
            return f"= {self.lower}"
        parts = []
        if self.lower is not None:
            parts.append(f"{'>=' if self.lower_inclusive else '>'} {self.lower}")
        if self.upper is not None:
            parts.append(f"{'<=' if self.upper_inclusive else '<'} {self.upper}")
        return " ".join(parts)


def parse_constraint(text: Optional[str]) -> VersionConstraint:
    """Parse ``*``, ``1.2.3``, ``>= 1.0`` or ``>= 1.0.0 < 2.0.0`` into a constraint."""

    raw = (text or "").strip()
    if raw in ("", "*", "any"):
        return VersionConstraint.any()

    constraint = VersionConstraint.any()
    position = 0
    for match in _COMPARATOR_RE.finditer(raw):
        gap = raw[position:match.start()].strip(" ,")
        if gap:
            raise VersionError(f"Invalid version constraint '{text}'")
        op, version = match.groups()
        constraint = constraint.intersect(VersionConstraint.from_operator(op or "", Version.parse(version)))
        position = match.end()
    if position == 0 or raw[position:].strip(" ,"):
        raise VersionError(f"Invalid version constraint '{text}'")
    return constraint


class DependencyKind(str, Enum):
    REQUIRED = ""
    INCOMPATIBLE = "!"
    OPTIONAL = "?"
    HIDDEN_OPTIONAL = "(?)"
    NO_LOAD_ORDER = "~"

    @property
    def is_optional(self) -> bool:
        return self in (DependencyKind.OPTIONAL, DependencyKind.HIDDEN_OPTIONAL)

    @property
    def is_required(self) -> bool:
        return self in (DependencyKind.REQUIRED, DependencyKind.NO_LOAD_ORDER)


@dataclass(frozen=True, slots=True)
class Dependency:
    name: str
    constraint: VersionConstraint = VersionConstraint()
    kind: DependencyKind = DependencyKind.REQUIRED

    @classmethod
    def parse(cls, value: str) -> "Dependency":
        match = _DEPENDENCY_RE.match(value or "")
        if not match:
            raise VersionError(f"Invalid dependency '{value}'")
        constraint = VersionConstraint.any()
        if match.group("op"):
            constraint = VersionConstraint.from_operator(match.group("op"), Version.parse(match.group("version")))
        return cls(
            name=match.group("name"),
            constraint=constraint,
            kind=DependencyKind(match.group("prefix") or ""),
        )

    def __str__(self) -> str:
        parts = [self.kind.value] if self.kind.value else []
        parts.append(self.name)
        if not self.constraint.is_any:
            parts.append(str(self.constraint))
        return " ".join(parts)


def normalize_game_version(value: str) -> str:
    """Canonical text of a ``factorio_version`` setting, keeping a bare series as ``major.minor``."""

    match = _VERSION_RE.match(value or "")
    if not match:
        raise VersionError(f"Invalid version '{value}'")
    version = Version.parse(value)
    return str(version) if match.group(3) is not None else version.series


def game_release(value: str) -> VersionConstraint:
    """The game versions a ``factorio_version`` setting stands for.

    ``"2.0.7"`` pins one release. ``"2.0"`` names the whole series, so any
    ``2.0.x`` satisfies an edge onto ``base``.
    """

    match = _VERSION_RE.match(value or "")
    if not match:
        raise VersionError(f"Invalid version '{value}'")
    version = Version.parse(value)
    if match.group(3) is not None:
        return VersionConstraint.exact(version)
    return VersionConstraint.range(version, Version(version.major, version.minor + 1))
