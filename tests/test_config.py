import json

import pytest

from furrctorio import config as config_module
from furrctorio.config import (
    DEFAULT_LOCKFILE_FILENAME,
    DEFAULT_MANIFEST_FILENAME,
    ConfigError,
    UserConfig,
    load_config,
    load_user_config,
    save_user_config,
)


class TestLoadConfig:
    def test_defaults_without_config_file(self, tmp_path):
        cfg = load_config(root=tmp_path)

        assert cfg.server_root == tmp_path.resolve()
        assert cfg.mods_dir == tmp_path.resolve() / "mods"
        assert cfg.manifest_file == tmp_path.resolve() / DEFAULT_MANIFEST_FILENAME
        assert cfg.lockfile_file == tmp_path.resolve() / DEFAULT_LOCKFILE_FILENAME
        assert cfg.network.fetch_retries == 3
        assert cfg.resolver_budget == 10_000

    def test_reads_config_file(self, cfg, tmp_path):
        assert cfg.name == "test-server"
        assert cfg.factorio_version == "1.1"
        assert cfg.cache_dir == tmp_path / "cache"
        assert cfg.network.fetch_retries == 2
        assert cfg.network.retry_backoff == 0

    def test_environment_overrides_file(self, server_root, monkeypatch):
        monkeypatch.setenv("FURRCTORIO_MODS_DIR", "custom-mods")
        monkeypatch.setenv("FURRCTORIO_USERNAME", "engineer")
        monkeypatch.setenv("FURRCTORIO_TOKEN", "secret")
        monkeypatch.setenv("FURRCTORIO_FETCH_RETRIES", "7")

        cfg = load_config(root=server_root)

        assert cfg.mods_dir == server_root.resolve() / "custom-mods"
        assert cfg.username == "engineer"
        assert cfg.token == "secret"
        assert cfg.network.fetch_retries == 7

    def test_dotenv_in_server_root(self, server_root):
        (server_root / ".env").write_text("FURRCTORIO_MAX_WORKERS=9\n")

        cfg = load_config(root=server_root)

        assert cfg.network.max_workers == 9

    def test_invalid_json(self, tmp_path):
        (tmp_path / ".furrctorio.json").write_text("{nope")

        with pytest.raises(ConfigError) as excinfo:
            load_config(root=tmp_path)

        assert excinfo.value.exit_code == 2

    def test_falls_back_to_stored_root(self, server_root, tmp_path, monkeypatch):
        elsewhere = tmp_path / "elsewhere"
        elsewhere.mkdir()
        monkeypatch.chdir(elsewhere)
        save_user_config(UserConfig(server_root=server_root))

        cfg = load_config()

        assert cfg.server_root == server_root.resolve()

    def test_current_directory_wins_when_it_has_config(self, server_root, tmp_path, monkeypatch):
        monkeypatch.chdir(server_root)
        save_user_config(UserConfig(server_root=tmp_path))

        assert load_config().server_root == server_root.resolve()


class TestUserConfig:
    def test_round_trip(self, tmp_path):
        assert load_user_config().server_root is None

        path = save_user_config(UserConfig(server_root=tmp_path))

        assert path == config_module.USER_CONFIG_PATH
        assert json.loads(path.read_text())["server_root"] == str(tmp_path)
        assert load_user_config().server_root == tmp_path
