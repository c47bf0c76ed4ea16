"""
config.py - Client configuration loaded from YAML
"""

import os
from pathlib import Path
from typing import Any, Dict, List, Optional
from dataclasses import dataclass, field
import logging

import yaml

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path(os.environ.get('MARKSYNC_CONFIG', '~/.marksync/config.yaml')).expanduser()

CONFLICT_STRATEGIES = ('newest-wins', 'merge', 'manual')
SOURCE_TYPES = ('local-file', 'github', 'dropbox', 'google-drive', 'cloud')


@dataclass
class SourceConfig:
    """Configuration of one remote bookmark store"""
    id: str
    type: str
    name: str = ''
    connected: bool = True
    # local-file / dropbox
    path: Optional[str] = None
    # github
    repository: Optional[str] = None
    branch: str = 'main'
    # google-drive
    file_name: Optional[str] = None
    folder_id: Optional[str] = None
    # cloud
    api_url: Optional[str] = None
    api_key: Optional[str] = None
    user_id: Optional[str] = None
    # token refresh
    client_id: Optional[str] = None
    client_secret: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'SourceConfig':
        known = set(cls.__dataclass_fields__)
        unknown = set(data) - known
        if unknown:
            logger.warning(f"Ignoring unknown source options: {sorted(unknown)}")
        return cls(**{k: v for k, v in data.items() if k in known})


@dataclass
class BrowserConfig:
    """Where the local bookmark tree lives"""
    name: str = 'chrome'
    bookmarks_file: str = '~/.config/google-chrome/Default/Bookmarks'

    @property
    def bookmarks_path(self) -> Path:
        return Path(self.bookmarks_file).expanduser()


@dataclass
class AppConfig:
    """Top-level client configuration"""
    data_dir: str = '~/.marksync'
    device_name: str = ''
    browser: BrowserConfig = field(default_factory=BrowserConfig)
    conflict_resolution: str = 'newest-wins'
    max_consecutive_failures: int = 3
    sync_interval_minutes: int = 15
    auto_sync: bool = True
    request_timeout: float = 10.0  # seconds
    max_retries: int = 3
    tombstone_max_age_days: int = 30
    debounce_seconds: float = 5.0
    selected_source: Optional[str] = None
    sources: List[SourceConfig] = field(default_factory=list)

    @property
    def data_path(self) -> Path:
        return Path(self.data_dir).expanduser()

    def get_source(self, source_id: Optional[str] = None) -> SourceConfig:
        """Look up a source by id, falling back to the selected one"""
        source_id = source_id or self.selected_source
        for source in self.sources:
            if source_id is None or source.id == source_id:
                return source
        raise KeyError(f"No source configured with id {source_id!r}")

    def validate(self):
        if self.conflict_resolution not in CONFLICT_STRATEGIES:
            raise ValueError(
                f"conflict_resolution must be one of {CONFLICT_STRATEGIES}, "
                f"got {self.conflict_resolution!r}"
            )
        if self.max_consecutive_failures < 1:
            raise ValueError("max_consecutive_failures must be at least 1")
        if self.request_timeout <= 0:
            raise ValueError("request_timeout must be positive")

        seen = set()
        for source in self.sources:
            if source.type not in SOURCE_TYPES:
                raise ValueError(f"Unknown source type {source.type!r} for {source.id!r}")
            if source.id in seen:
                raise ValueError(f"Duplicate source id {source.id!r}")
            seen.add(source.id)

        if self.selected_source and self.selected_source not in seen:
            raise ValueError(f"selected_source {self.selected_source!r} is not configured")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AppConfig':
        data = dict(data or {})
        browser = BrowserConfig(**(data.pop('browser', None) or {}))
        sources = [SourceConfig.from_dict(s) for s in data.pop('sources', None) or []]

        known = set(cls.__dataclass_fields__)
        unknown = set(data) - known
        if unknown:
            logger.warning(f"Ignoring unknown config keys: {sorted(unknown)}")

        config = cls(
            browser=browser,
            sources=sources,
            **{k: v for k, v in data.items() if k in known}
        )
        config.validate()
        return config


def load_config(path: Optional[Path] = None) -> AppConfig:
    """
    Load configuration from a YAML file
    A missing file yields the defaults (no sources configured)
    """
    path = Path(path).expanduser() if path else DEFAULT_CONFIG_PATH

    if not path.exists():
        logger.info(f"No config file at {path}, using defaults")
        return AppConfig()

    with open(path, 'r') as f:
        data = yaml.safe_load(f) or {}

    if not isinstance(data, dict):
        raise ValueError(f"Config file {path} must contain a mapping")

    config = AppConfig.from_dict(data)
    logger.debug(f"Loaded config from {path} with {len(config.sources)} sources")
    return config
