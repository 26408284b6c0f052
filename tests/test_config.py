"""Tests for configuration management."""

import pytest
import tempfile
import yaml
from pathlib import Path
from config.config_manager import BoardConfig, ConfigManager, LedgerConfig, SyncConfig


class TestConfigManager:
    """Test suite for ConfigManager."""

    @pytest.fixture
    def temp_config_dir(self):
        """Create temporary directory for test configuration."""
        with tempfile.TemporaryDirectory() as tmpdir:
            yield Path(tmpdir)

    @pytest.fixture
    def sample_config(self):
        """Sample configuration dictionary."""
        return {
            'board': {
                'domain': 'example.com',
                'author_payment': 0,
                'change_policy': 'last_substantive',
                'consolidate_owner_funds': False
            },
            'ledger': {
                'dust': 5460,
                'fee_rate': 10000
            },
            'sync': {
                'scan_delta_days': 30,
                'pass_delay': 1.0
            },
            'storage': {
                'db_path': '~/.ledgerboard/data/board.db'
            },
            'logging': {
                'level': 'INFO',
                'log_path': '~/.ledgerboard/logs/app.log'
            }
        }

    def write_config(self, directory: Path, config: dict) -> Path:
        config_path = directory / "settings.yaml"
        with open(config_path, 'w') as f:
            yaml.dump(config, f)
        return config_path

    def test_bundled_defaults(self, temp_config_dir):
        """A missing user file falls back to the bundled settings and is written out."""
        config_path = temp_config_dir / "settings.yaml"
        manager = ConfigManager(config_path)

        assert manager.get_ledger_config() == LedgerConfig(dust=5460, fee_rate=10000)
        assert manager.get_board_config() == BoardConfig()
        assert config_path.exists()

    def test_get_config_section(self, temp_config_dir, sample_config):
        manager = ConfigManager(self.write_config(temp_config_dir, sample_config))

        assert manager.get_config('ledger') == {'dust': 5460, 'fee_rate': 10000}

    def test_get_config_key(self, temp_config_dir, sample_config):
        manager = ConfigManager(self.write_config(temp_config_dir, sample_config))

        assert manager.get_config('board', 'domain') == 'example.com'
        with pytest.raises(KeyError):
            manager.get_config('board', 'missing')
        with pytest.raises(KeyError):
            manager.get_config('network')

    def test_set_and_save(self, temp_config_dir, sample_config):
        """Saved values survive a new instance."""
        config_path = self.write_config(temp_config_dir, sample_config)
        manager = ConfigManager(config_path)
        manager.set_config('ledger', 'fee_rate', 20000)
        manager.save_config()

        assert ConfigManager(config_path).get_ledger_config().fee_rate == 20000

    def test_partial_user_config_is_merged(self, temp_config_dir):
        """User files only need the values they change."""
        config_path = self.write_config(temp_config_dir, {'ledger': {'fee_rate': 1000}})
        manager = ConfigManager(config_path)

        assert manager.get_ledger_config() == LedgerConfig(dust=5460, fee_rate=1000)
        assert manager.get_sync_config() == SyncConfig(scan_delta_days=30, pass_delay=1.0)

    def test_env_override(self, temp_config_dir, sample_config, monkeypatch):
        """LEDGERBOARD_<SECTION>__<KEY> variables override file values."""
        monkeypatch.setenv('LEDGERBOARD_LEDGER__DUST', '600')
        monkeypatch.setenv('LEDGERBOARD_BOARD__CONSOLIDATE_OWNER_FUNDS', 'true')
        monkeypatch.setenv('LEDGERBOARD_SYNC__PASS_DELAY', '0.5')
        manager = ConfigManager(self.write_config(temp_config_dir, sample_config))

        assert manager.get_ledger_config().dust == 600
        assert manager.get_board_config().consolidate_owner_funds is True
        assert manager.get_sync_config().pass_delay == 0.5

    def test_env_override_ignores_unknown_sections(self, temp_config_dir, sample_config, monkeypatch):
        monkeypatch.setenv('LEDGERBOARD_NETWORK__PORT', '9000')
        manager = ConfigManager(self.write_config(temp_config_dir, sample_config))

        with pytest.raises(KeyError):
            manager.get_config('network')

    def test_integer_pass_delay(self, temp_config_dir, sample_config):
        """Whole-second delays written as integers are accepted."""
        sample_config['sync']['pass_delay'] = 2
        manager = ConfigManager(self.write_config(temp_config_dir, sample_config))

        assert manager.get_sync_config().pass_delay == 2.0

    @pytest.mark.parametrize("section, key, value", [
        ('ledger', 'dust', 'lots'),
        ('ledger', 'fee_rate', -1),
        ('board', 'change_policy', 'first_chunk'),
        ('board', 'author_payment', 100),
        ('board', 'consolidate_owner_funds', 'maybe'),
        ('sync', 'scan_delta_days', 0),
        ('logging', 'level', 'LOUD'),
    ])
    def test_validation(self, temp_config_dir, sample_config, section, key, value):
        """Invalid values are rejected at load time."""
        sample_config[section][key] = value

        with pytest.raises(ValueError):
            ConfigManager(self.write_config(temp_config_dir, sample_config))

    def test_expand_path(self, temp_config_dir, sample_config):
        manager = ConfigManager(self.write_config(temp_config_dir, sample_config))

        assert manager.expand_path('~/board.db') == Path.home() / 'board.db'

    def test_invalid_yaml(self, temp_config_dir):
        config_path = temp_config_dir / "settings.yaml"
        config_path.write_text("board: [unclosed")

        with pytest.raises(ValueError):
            ConfigManager(config_path)
