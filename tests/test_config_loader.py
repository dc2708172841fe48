"""Tests for configuration loading and validation."""

import argparse

import pytest

from config_loader import ConfigLoader, get_nested


def valid_config(tmp_path):
    return {
        'source': {'url': 'https://old.example.com', 'secret': 'secret'},
        'destination': {
            'site_url': 'https://new.example.com',
            'content_dir': str(tmp_path),
            'table_prefix': 'wp_',
            'database': {'engine': 'sqlite', 'path': str(tmp_path / 'site.db')},
        },
        'migration': {'progress_save_interval': 10, 'max_files_per_batch': 100},
        'advanced': {'request_timeout': 30, 'max_retries': 5, 'chunk_max_retries': 3},
    }


class TestLoad:
    """Test YAML loading with environment substitution."""

    def test_env_substitution(self, tmp_path, monkeypatch):
        monkeypatch.setenv('MIGRATION_SECRET', 'from-env')
        path = tmp_path / 'config.yaml'
        path.write_text('source:\n  secret: "${MIGRATION_SECRET}"\n  extra: ["${UNSET_VARIABLE_X}"]\n')

        config = ConfigLoader.load(str(path))

        assert config['source']['secret'] == 'from-env'
        assert config['source']['extra'] == ['${UNSET_VARIABLE_X}']

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            ConfigLoader.load(str(tmp_path / 'missing.yaml'))

    def test_not_a_mapping(self, tmp_path):
        path = tmp_path / 'config.yaml'
        path.write_text('- a\n- b\n')

        with pytest.raises(ValueError):
            ConfigLoader.load(str(path))


class TestValidate:
    """Test required fields and value checks."""

    def test_valid(self, tmp_path):
        ConfigLoader.validate(valid_config(tmp_path))

    def test_connection_key_replaces_url_and_secret(self, tmp_path):
        config = valid_config(tmp_path)
        config['source'] = {'connection_key': 'https://old.example.com|c2VjcmV0'}

        ConfigLoader.validate(config)

    def test_source_optional_for_management(self, tmp_path):
        config = valid_config(tmp_path)
        del config['source']

        ConfigLoader.validate(config, require_source=False)
        with pytest.raises(ValueError, match='source.url'):
            ConfigLoader.validate(config)

    def test_unsubstituted_variable(self, tmp_path):
        config = valid_config(tmp_path)
        config['source']['secret'] = '${MIGRATION_SECRET}'

        with pytest.raises(ValueError, match='MIGRATION_SECRET'):
            ConfigLoader.validate(config)

    @pytest.mark.parametrize('path, value, message', [
        ('source.url', 'ftp://old.example.com', 'http or https'),
        ('destination.site_url', 'https://', 'missing hostname'),
        ('destination.table_prefix', 'wp-', 'table_prefix'),
        ('advanced.request_timeout', 0, 'request_timeout'),
        ('advanced.chunk_max_retries', -1, 'chunk_max_retries'),
        ('migration.progress_save_interval', 0, 'progress_save_interval'),
        ('migration.max_files_per_batch', 'many', 'max_files_per_batch'),
    ])
    def test_invalid_values(self, tmp_path, path, value, message):
        config = valid_config(tmp_path)
        section, key = path.split('.')
        config[section][key] = value

        with pytest.raises(ValueError, match=message):
            ConfigLoader.validate(config)

    def test_content_dir_must_be_directory(self, tmp_path):
        config = valid_config(tmp_path)
        file_path = tmp_path / 'not-a-dir'
        file_path.write_text('')
        config['destination']['content_dir'] = str(file_path)

        with pytest.raises(ValueError, match='not a directory'):
            ConfigLoader.validate(config)


class TestValidateDatabase:
    """Test database connection blocks."""

    def test_sqlite_needs_path(self):
        with pytest.raises(ValueError, match='db.path'):
            ConfigLoader.validate_database({'engine': 'sqlite'}, 'db')

    def test_mysql_needs_credentials(self):
        ConfigLoader.validate_database({'engine': 'mysql', 'host': 'localhost', 'user': 'wp', 'name': 'wp'}, 'db')
        with pytest.raises(ValueError, match='db.name'):
            ConfigLoader.validate_database({'engine': 'mysql', 'host': 'localhost', 'user': 'wp'}, 'db')

    def test_unknown_engine(self):
        with pytest.raises(ValueError, match='engine'):
            ConfigLoader.validate_database({'engine': 'postgres'}, 'db')

    def test_missing_block(self):
        with pytest.raises(ValueError, match='Missing required configuration: db'):
            ConfigLoader.validate_database({}, 'db')


class TestMergeWithArgs:
    """Test CLI overrides."""

    def test_cli_overrides(self, tmp_path):
        args = argparse.Namespace(source_url='https://other.example.com', connection_key=None,
                                  state_path='state.json', dry_run=True, log_file='run.log', verbose=2)

        merged = ConfigLoader.merge_with_args(valid_config(tmp_path), args)

        assert merged['source']['url'] == 'https://other.example.com'
        assert merged['migration']['state_path'] == 'state.json'
        assert merged['migration']['dry_run'] is True
        assert merged['logging'] == {'file': 'run.log', 'level': 'DEBUG'}

    def test_original_untouched(self, tmp_path):
        config = valid_config(tmp_path)
        args = argparse.Namespace(source_url='https://other.example.com', verbose=1)

        merged = ConfigLoader.merge_with_args(config, args)

        assert config['source']['url'] == 'https://old.example.com'
        assert merged['logging']['level'] == 'INFO'


class TestGetNested:
    """Test dotted lookups."""

    def test_lookup(self):
        config = {'a': {'b': {'c': 1}}, 'x': None}

        assert get_nested(config, 'a.b.c') == 1
        assert get_nested(config, 'a.b.missing', 'default') == 'default'
        assert get_nested(config, 'x.y') is None
