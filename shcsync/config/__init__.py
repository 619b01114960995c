"""Configuration schema and loader."""

from shcsync.config.loader import ConfigError, LoadedConfig, load_config
from shcsync.config.schema import SyncerConfig

__all__ = ["ConfigError", "LoadedConfig", "SyncerConfig", "load_config"]
