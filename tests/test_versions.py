import pytest

from furrctorio.errors import VersionError
from furrctorio.versions import (
    Dependency,
    DependencyKind,
    Version,
    VersionConstraint,
    game_release,
    normalize_game_version,
    parse_constraint,
)


class TestVersion:
    def test_parse_three_parts(self):
        assert Version.parse("1.2.3") == Version(1, 2, 3)

    def test_parse_two_parts_defaults_patch(self):
        assert Version.parse("1.1") == Version(1, 1, 0)
        assert str(Version.parse("1.1")) == "1.1.0"

    @pytest.mark.parametrize("raw", ["", "1", "1.2.3.4", "v1.2", "1.x"])
    def test_parse_rejects_garbage(self, raw):
        with pytest.raises(VersionError):
            Version.parse(raw)

    def test_ordering_is_numeric(self):
        assert Version.parse("1.10.0") > Version.parse("1.9.9")
        assert sorted([Version(2, 0, 0), Version(0, 18, 1), Version(1, 1, 0)]) == [
            Version(0, 18, 1),
            Version(1, 1, 0),
            Version(2, 0, 0),
        ]

    def test_series(self):
        assert Version(1, 1, 104).series == "1.1"


class TestConstraint:
    def test_any(self):
        constraint = parse_constraint("*")
        assert constraint.is_any
        assert constraint.allows(Version(0, 0, 1))
        assert str(constraint) == "*"

    def test_bare_version_is_exact(self):
        constraint = parse_constraint("1.2.0")
        assert constraint.allows(Version(1, 2, 0))
        assert not constraint.allows(Version(1, 2, 1))
        assert str(constraint) == "= 1.2.0"

    def test_range(self):
        constraint = parse_constraint(">= 1.0 < 2.0")
        assert constraint.allows(Version(1, 0, 0))
        assert constraint.allows(Version(1, 9, 9))
        assert not constraint.allows(Version(2, 0, 0))
        assert str(constraint) == ">= 1.0.0 < 2.0.0"

    def test_intersection_narrows(self):
        merged = VersionConstraint.minimum(Version(1, 0, 0)).intersect(
            VersionConstraint.from_operator("<=", Version(1, 5, 0))
        )
        assert merged == VersionConstraint.range(Version(1, 0, 0), Version(1, 5, 0), upper_inclusive=True)
        assert not merged.is_empty()

    def test_disjoint_intersection_is_empty(self):
        merged = parse_constraint(">= 2.0").intersect(parse_constraint("< 2.0"))
        assert merged.is_empty()

    def test_exclusive_bounds_on_same_version_are_empty(self):
        merged = parse_constraint("> 1.0").intersect(parse_constraint("<= 1.0"))
        assert merged.is_empty()

    @pytest.mark.parametrize("raw", ["~> 1.0", ">= abc", ">= 1.0 junk"])
    def test_invalid(self, raw):
        with pytest.raises(VersionError):
            parse_constraint(raw)


class TestDependency:
    def test_required_with_constraint(self):
        dep = Dependency.parse("base >= 1.1.0")
        assert dep.name == "base"
        assert dep.kind is DependencyKind.REQUIRED
        assert dep.constraint.allows(Version(1, 1, 0))
        assert not dep.constraint.allows(Version(1, 0, 0))

    @pytest.mark.parametrize(
        "raw,kind",
        [
            ("! bobs-ores", DependencyKind.INCOMPATIBLE),
            ("? angels-refining >= 0.12", DependencyKind.OPTIONAL),
            ("(?) helmod", DependencyKind.HIDDEN_OPTIONAL),
            ("~ flib >= 0.10.0", DependencyKind.NO_LOAD_ORDER),
        ],
    )
    def test_prefixes(self, raw, kind):
        assert Dependency.parse(raw).kind is kind

    def test_optional_and_required_flags(self):
        assert DependencyKind.OPTIONAL.is_optional
        assert DependencyKind.HIDDEN_OPTIONAL.is_optional
        assert DependencyKind.NO_LOAD_ORDER.is_required
        assert not DependencyKind.INCOMPATIBLE.is_required

    def test_str(self):
        assert str(Dependency.parse("?  flib >= 0.10")) == "? flib >= 0.10.0"
        assert str(Dependency.parse("flib")) == "flib"

    def test_invalid(self):
        with pytest.raises(VersionError):
            Dependency.parse("flib >= nope")


class TestGameRelease:
    def test_series_covers_every_patch(self):
        provided = game_release("2.0")

        assert provided.allows(Version(2, 0, 0))
        assert provided.allows(Version(2, 0, 72))
        assert not provided.allows(Version(2, 1, 0))
        assert not provided.intersect(parse_constraint(">= 2.0.7")).is_empty()

    def test_full_version_is_one_release(self):
        assert game_release("2.0.7") == VersionConstraint.exact(Version(2, 0, 7))

    def test_normalised_text_keeps_the_series(self):
        assert normalize_game_version("2.0") == "2.0"
        assert normalize_game_version("2.0.7") == "2.0.7"

    def test_invalid(self):
        with pytest.raises(VersionError):
            game_release("2")
