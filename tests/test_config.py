"""Test YAML configuration loading"""

import pytest
import yaml

from marksync.config import AppConfig, SourceConfig, load_config


def write_config(path, data):
    path.write_text(yaml.safe_dump(data))
    return path


class TestLoadConfig:

    def test_missing_file_gives_defaults(self, temp_dir):
        config = load_config(temp_dir / "missing.yaml")
        assert config.sources == []
        assert config.conflict_resolution == 'newest-wins'
        assert config.max_consecutive_failures == 3

    def test_full_config(self, temp_dir):
        path = write_config(temp_dir / "config.yaml", {
            'data_dir': str(temp_dir / "data"),
            'conflict_resolution': 'merge',
            'browser': {'name': 'brave', 'bookmarks_file': '~/Bookmarks'},
            'selected_source': 'github',
            'sources': [
                {'id': 'github', 'type': 'github', 'repository': 'me/bookmarks'},
                {'id': 'cloud', 'type': 'cloud', 'api_url': 'https://db', 'user_id': 'u'},
            ],
        })

        config = load_config(path)

        assert config.conflict_resolution == 'merge'
        assert config.browser.name == 'brave'
        assert config.browser.bookmarks_path.is_absolute()
        assert config.get_source().repository == 'me/bookmarks'
        assert config.get_source('cloud').user_id == 'u'
        assert config.data_path == temp_dir / "data"

    def test_unknown_keys_ignored(self, temp_dir):
        path = write_config(temp_dir / "config.yaml", {
            'colour': 'blue',
            'sources': [{'id': 'f', 'type': 'local-file', 'path': '/tmp/b.json', 'extra': 1}],
        })
        config = load_config(path)
        assert config.sources[0].path == '/tmp/b.json'

    @pytest.mark.parametrize("data", [
        {'conflict_resolution': 'coin-flip'},
        {'max_consecutive_failures': 0},
        {'sources': [{'id': 'x', 'type': 'ftp'}]},
        {'sources': [{'id': 'x', 'type': 'github'}, {'id': 'x', 'type': 'dropbox'}]},
        {'selected_source': 'nope'},
    ])
    def test_invalid_config_rejected(self, temp_dir, data):
        with pytest.raises(ValueError):
            load_config(write_config(temp_dir / "config.yaml", data))

    def test_non_mapping_rejected(self, temp_dir):
        path = temp_dir / "config.yaml"
        path.write_text("- just\n- a list\n")
        with pytest.raises(ValueError):
            load_config(path)

    def test_unknown_source_id(self):
        config = AppConfig(sources=[SourceConfig(id='a', type='github')])
        with pytest.raises(KeyError):
            config.get_source('b')
