"""Tests for dispatch configuration."""

import pytest

from rook.config import DEFAULT_PARALLEL, MAX_PARALLEL, RookConfig, load_config


class TestRookConfig:
    def test_defaults(self):
        config = RookConfig()
        assert config.parallel == DEFAULT_PARALLEL
        assert config.host_timeout is None
        assert config.continue_on_error is False

    def test_with_overrides_ignores_none(self):
        config = RookConfig(parallel=5).with_overrides(parallel=None, host_timeout=60.0)
        assert config.parallel == 5
        assert config.host_timeout == 60.0

    @pytest.mark.parametrize(
        "settings, message",
        [
            ({"parallel": 0}, "at least 1"),
            ({"parallel": MAX_PARALLEL + 1}, "at most"),
            ({"host_timeout": 0}, "host_timeout must be positive"),
            ({"action_timeout": -1}, "action_timeout must be positive"),
        ],
    )
    def test_validate(self, settings, message):
        with pytest.raises(ValueError, match=message):
            RookConfig(**settings).validate()

    def test_from_dict_rejects_unknown(self):
        with pytest.raises(ValueError, match="Unknown config setting"):
            RookConfig.from_dict({"paralel": 3})


class TestLoadConfig:
    def test_load_file(self, tmp_path):
        path = tmp_path / "config.yml"
        path.write_text("parallel: 20\nhost_timeout: 600\nknown_hosts: ''\n")
        config = load_config(path)
        assert config.parallel == 20
        assert config.host_timeout == 600
        assert config.known_hosts == ""

    def test_missing_explicit_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config(tmp_path / "absent.yml")

    def test_not_a_mapping(self, tmp_path):
        path = tmp_path / "config.yml"
        path.write_text("- 1\n- 2\n")
        with pytest.raises(ValueError, match="mapping"):
            load_config(path)

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "config.yml"
        path.write_text("parallel: [1, 2\n")
        with pytest.raises(ValueError, match="Invalid YAML in config file"):
            load_config(path)

    def test_empty_file_gives_defaults(self, tmp_path):
        path = tmp_path / "config.yml"
        path.write_text("")
        assert load_config(path) == RookConfig()

    def test_default_path_optional(self, tmp_path, monkeypatch):
        monkeypatch.setenv("HOME", str(tmp_path))
        assert load_config() == RookConfig()
