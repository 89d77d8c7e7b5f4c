#!/usr/bin/env python3
"""Tests for config.py - engine settings discovery and merging."""

import sys
from pathlib import Path
from unittest.mock import patch

sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

import pytest
from config import (
    ConfigError,
    EngineSettings,
    get_config_path,
    get_state_dir,
    load_settings,
)


class TestEngineSettings:
    """Test EngineSettings validation and helpers."""

    def test_defaults(self):
        settings = EngineSettings()
        assert settings.max_workers == 4
        assert settings.max_attempts == 5
        assert settings.backoff_base == 1.0
        assert settings.backoff_max == 30.0
        assert settings.state_dir is None

    @pytest.mark.parametrize('kwargs', [
        {'max_workers': 0},
        {'max_attempts': -1},
        {'max_workers': True},
        {'max_attempts': '3'},
        {'backoff_base': -0.5},
        {'backoff_max': 'soon'},
    ])
    def test_invalid_values(self, kwargs):
        with pytest.raises(ConfigError):
            EngineSettings(**kwargs)

    def test_state_dir_string_becomes_path(self):
        assert EngineSettings(state_dir='/tmp/states').state_dir == Path('/tmp/states')

    def test_merged(self):
        settings = EngineSettings().merged({'max_workers': 8})
        assert settings.max_workers == 8
        assert settings.max_attempts == 5

    def test_merged_unknown_key(self):
        with pytest.raises(ConfigError, match='Unknown settings: parallelism'):
            EngineSettings().merged({'parallelism': 8})

    def test_delay_doubles_and_caps(self):
        settings = EngineSettings(backoff_base=1.0, backoff_max=5.0)
        assert [settings.delay_for(a) for a in range(1, 6)] == [1.0, 2.0, 4.0, 5.0, 5.0]

    def test_to_dict(self):
        assert EngineSettings(state_dir='/s').to_dict()['state_dir'] == '/s'
        assert 'state_dir' not in EngineSettings().to_dict()


class TestConfigDiscovery:
    """Test config file resolution."""

    def test_env_var(self, tmp_path, monkeypatch):
        config = tmp_path / 'custom.yaml'
        config.write_text('max_workers: 2\n')
        monkeypatch.setenv('RECONCILE_CONFIG', str(config))
        assert get_config_path() == config

    def test_env_var_missing_file(self, tmp_path, monkeypatch):
        monkeypatch.setenv('RECONCILE_CONFIG', str(tmp_path / 'missing.yaml'))
        with pytest.raises(ConfigError, match='does not exist'):
            get_config_path()

    def test_base_dir_file(self, tmp_path, monkeypatch):
        monkeypatch.delenv('RECONCILE_CONFIG', raising=False)
        (tmp_path / 'reconcile.yaml').write_text('max_workers: 2\n')
        with patch('config.get_base_dir', return_value=tmp_path):
            assert get_config_path() == tmp_path / 'reconcile.yaml'

    def test_no_file(self, tmp_path, monkeypatch):
        monkeypatch.delenv('RECONCILE_CONFIG', raising=False)
        with patch('config.get_base_dir', return_value=tmp_path):
            assert get_config_path() is None


class TestLoadSettings:
    """Test defaults -> file -> overrides merging."""

    def test_defaults_only(self, tmp_path, monkeypatch):
        monkeypatch.delenv('RECONCILE_CONFIG', raising=False)
        with patch('config.get_base_dir', return_value=tmp_path):
            assert load_settings() == EngineSettings()

    def test_engine_section(self, tmp_path):
        config = tmp_path / 'reconcile.yaml'
        config.write_text('engine:\n  max_workers: 16\n  backoff_max: 10\n')
        settings = load_settings(config)
        assert settings.max_workers == 16
        assert settings.backoff_max == 10

    def test_flat_file(self, tmp_path):
        config = tmp_path / 'reconcile.yaml'
        config.write_text('max_attempts: 2\n')
        assert load_settings(config).max_attempts == 2

    def test_overrides_win(self, tmp_path):
        config = tmp_path / 'reconcile.yaml'
        config.write_text('max_workers: 16\n')
        assert load_settings(config, overrides={'max_workers': 1}).max_workers == 1

    def test_invalid_yaml(self, tmp_path):
        config = tmp_path / 'reconcile.yaml'
        config.write_text('max_workers: [1\n')
        with pytest.raises(ConfigError, match='Invalid YAML'):
            load_settings(config)

    def test_non_mapping(self, tmp_path):
        config = tmp_path / 'reconcile.yaml'
        config.write_text('- 1\n- 2\n')
        with pytest.raises(ConfigError, match='must be a YAML object'):
            load_settings(config)

    def test_empty_file(self, tmp_path):
        config = tmp_path / 'reconcile.yaml'
        config.write_text('')
        assert load_settings(config) == EngineSettings()


class TestStateDir:
    """Test state directory resolution."""

    def test_default_under_base(self, tmp_path):
        with patch('config.get_base_dir', return_value=tmp_path):
            assert get_state_dir('web') == tmp_path / '.states' / 'web'

    def test_settings_override(self, tmp_path):
        settings = EngineSettings(state_dir=tmp_path / 'custom')
        assert get_state_dir('web', settings) == tmp_path / 'custom'
