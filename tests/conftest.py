import json
import os
from pathlib import Path

import pytest

from furrctorio.cache import CacheStore
from furrctorio.config import load_config
from furrctorio.manifest import ManifestEntry, ModManifest
from furrctorio.source import InMemoryModSource


@pytest.fixture(autouse=True)
def isolated_env(tmp_path, monkeypatch):
    """Keep user config and FURRCTORIO_* variables from leaking into tests."""
    for key in list(os.environ):
        if key.startswith("FURRCTORIO_"):
            monkeypatch.delenv(key, raising=False)
    user_dir = tmp_path / "user-config"
    monkeypatch.setattr("furrctorio.config.USER_CONFIG_DIR", user_dir)
    monkeypatch.setattr("furrctorio.config.USER_CONFIG_PATH", user_dir / "config.json")


@pytest.fixture
def source():
    return InMemoryModSource()


@pytest.fixture
def make_manifest():
    def _make(*entries, factorio_version=None):
        mods = []
        for entry in entries:
            if isinstance(entry, str):
                entry = (entry, "*")
            name, version, *rest = entry
            mods.append(ManifestEntry(name=name, version=version, enabled=rest[0] if rest else True))
        return ModManifest(factorio_version=factorio_version, mods=mods)

    return _make


@pytest.fixture
def cache(tmp_path):
    return CacheStore(tmp_path / "cache")


@pytest.fixture
def server_root(tmp_path) -> Path:
    root = tmp_path / "server"
    root.mkdir(exist_ok=True)
    (root / ".furrctorio.json").write_text(
        json.dumps(
            {
                "name": "test-server",
                "factorio_version": "1.1",
                "cache_dir": str(tmp_path / "cache"),
                "network": {"retry_backoff": 0, "fetch_retries": 2},
            }
        )
    )
    return root


@pytest.fixture
def cfg(server_root):
    return load_config(root=server_root)


@pytest.fixture
def target(tmp_path) -> Path:
    path = tmp_path / "server" / "mods"
    path.mkdir(parents=True, exist_ok=True)
    return path
