import json

import pytest
from pydantic import ValidationError

from furrctorio.errors import ManifestError
from furrctorio.manifest import (
    ManifestEntry,
    ModManifest,
    init_manifest,
    load_manifest,
    manifest_path,
    save_manifest,
)
from furrctorio.versions import Version


class TestManifestEntry:
    def test_defaults(self):
        entry = ManifestEntry(name="flib")
        assert entry.version == "*"
        assert entry.enabled is True
        assert entry.constraint.is_any

    @pytest.mark.parametrize("name", ["", "two words"])
    def test_rejects_bad_names(self, name):
        with pytest.raises(ValidationError):
            ManifestEntry(name=name)

    def test_rejects_bad_constraint(self):
        with pytest.raises(ValidationError):
            ManifestEntry(name="flib", version=">= banana")


class TestModManifest:
    def test_add_remove_find(self):
        manifest = ModManifest()
        manifest.add(ManifestEntry(name="flib", version=">= 0.12"))

        assert manifest.find("flib").constraint.allows(Version(0, 12, 0))
        with pytest.raises(ManifestError):
            manifest.add(ManifestEntry(name="flib"))

        manifest.remove("flib")
        with pytest.raises(ManifestError):
            manifest.remove("flib")
        with pytest.raises(ManifestError):
            manifest.find("flib")

    def test_constraints_keep_manifest_order(self, make_manifest):
        manifest = make_manifest("zeta", "alpha")
        assert list(manifest.constraints()) == ["zeta", "alpha"]

    def test_duplicate_entries_are_rejected(self):
        manifest = ModManifest(mods=[ManifestEntry(name="flib"), ManifestEntry(name="flib")])
        with pytest.raises(ManifestError):
            manifest.constraints()

    def test_factorio_version_is_normalised(self):
        assert ModManifest(factorio_version="1.1").factorio_version == "1.1"
        assert ModManifest(factorio_version=" 2.0.7 ").factorio_version == "2.0.7"

    def test_checksum_ignores_constraint_spelling(self):
        first = ModManifest(mods=[ManifestEntry(name="flib", version=">=0.12")])
        second = ModManifest(mods=[ManifestEntry(name="flib", version=">= 0.12.0")])
        assert first.checksum() == second.checksum()

    def test_checksum_tracks_enabled_flag(self):
        enabled = ModManifest(mods=[ManifestEntry(name="flib")])
        disabled = ModManifest(mods=[ManifestEntry(name="flib", enabled=False)])
        assert enabled.checksum() != disabled.checksum()


class TestPersistence:
    def test_init_save_load(self, cfg):
        manifest = init_manifest(cfg)
        assert manifest.factorio_version == "1.1"
        assert cfg.mods_dir.is_dir()

        manifest.add(ManifestEntry(name="flib", version=">= 0.12"))
        save_manifest(cfg, manifest)

        loaded = load_manifest(cfg)
        assert loaded == manifest
        assert loaded.checksum() == manifest.checksum()

    def test_init_refuses_to_overwrite(self, cfg):
        init_manifest(cfg)
        with pytest.raises(ManifestError):
            init_manifest(cfg)
        init_manifest(cfg, force=True)

    def test_load_missing(self, cfg):
        with pytest.raises(ManifestError):
            load_manifest(cfg)

    def test_load_invalid_json(self, cfg):
        manifest_path(cfg).write_text("{oops")
        with pytest.raises(ManifestError):
            load_manifest(cfg)

    def test_load_unsupported_schema(self, cfg):
        manifest_path(cfg).write_text(json.dumps({"schema_version": 7, "mods": []}))
        with pytest.raises(ManifestError):
            load_manifest(cfg)
