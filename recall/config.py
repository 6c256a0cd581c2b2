"""Configuration management for Screen Recall.

This module provides a hierarchical configuration system using YAML files and
Python dataclasses. It supports loading, saving, and updating configuration
values at runtime with defaults for every field.

Configuration Sections:
- capture: Sampling interval, OCR mode and stream frame rate
- privacy: Exclusion rules applied before anything is persisted
- storage: Location of the event database and screenshots
- context: Limits for the recall context preamble
- web: Query API server settings

The capture loop reads ``rule_set()`` and ``ocr_mode()`` on every tick, so
edits made through ``update()`` or ``reload()`` apply without restarting.

Example:
    >>> from recall.config import ConfigManager
    >>> config_mgr = ConfigManager()
    >>> print(config_mgr.config.capture.interval_seconds)
    10.0
    >>> config_mgr.update('capture', 'interval_seconds', 30.0)
    >>> config_mgr.rule_set().ignore_incognito
    True
"""

import dataclasses
import logging
from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import Optional

import yaml

from .models import DEFAULT_INTERVAL_SECONDS, ExclusionRuleSet, OcrMode, clamp_interval

logger = logging.getLogger(__name__)


@dataclass
class CaptureConfig:
    """Screen sampling configuration.

    Attributes:
        interval_seconds: Time between samples, clamped to [1, 300] (default: 10)
        ocr_mode: "fast" or "accurate" (default: accurate)
        max_frame_rate: Upper bound on frames per second delivered by the stream (default: 5)
    """
    interval_seconds: float = DEFAULT_INTERVAL_SECONDS
    ocr_mode: str = "accurate"
    max_frame_rate: float = 5.0


@dataclass
class PrivacyConfig:
    """Privacy controls and exclusion rules.

    Attributes:
        excluded_bundle_ids: Application identifiers (WM_CLASS instance) never captured
        excluded_title_keywords: Window title fragments that block capture (case-insensitive)
        ignore_incognito: Skip private/incognito browser windows (default: True)
    """
    excluded_bundle_ids: list[str] = field(default_factory=lambda: [
        "1password",
        "keepassxc",
        "bitwarden",
    ])
    excluded_title_keywords: list[str] = field(default_factory=list)
    ignore_incognito: bool = True


@dataclass
class StorageConfig:
    """Data storage configuration.

    Attributes:
        data_dir: Directory for the event database and screenshots (default: ~/screen-recall-data)
    """
    data_dir: str = "~/screen-recall-data"


@dataclass
class ContextConfig:
    """Recall context configuration.

    Attributes:
        max_events: Number of recent events rendered into the preamble (default: 5)
        ocr_char_budget: Characters of OCR text kept per event (default: 200)
    """
    max_events: int = 5
    ocr_char_budget: int = 200


@dataclass
class WebConfig:
    """Query API server configuration."""
    host: str = "127.0.0.1"
    port: int = 55556


@dataclass
class Config:
    """Top-level configuration container."""
    capture: CaptureConfig = field(default_factory=CaptureConfig)
    privacy: PrivacyConfig = field(default_factory=PrivacyConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    context: ContextConfig = field(default_factory=ContextConfig)
    web: WebConfig = field(default_factory=WebConfig)


SECTIONS = {
    'capture': CaptureConfig,
    'privacy': PrivacyConfig,
    'storage': StorageConfig,
    'context': ContextConfig,
    'web': WebConfig,
}


class ConfigManager:
    """Manages configuration loading, saving, and updates.

    Handles YAML configuration file I/O and merges user settings with
    defaults.

    Attributes:
        DEFAULT_PATH: Default configuration file location
        path: Actual configuration file path being used
        config: Current configuration object

    Example:
        >>> config_mgr = ConfigManager()
        >>> config_mgr.update('privacy', 'ignore_incognito', False)
        True
    """

    DEFAULT_PATH = Path("~/.config/screen-recall/config.yaml").expanduser()

    def __init__(self, path: Optional[Path] = None):
        """Initialize ConfigManager.

        Args:
            path: Custom config file path (uses DEFAULT_PATH if None)
        """
        self.path = Path(path).expanduser() if path else self.DEFAULT_PATH
        self._file_signature = self._signature()
        self.config = self._load()

    def _signature(self) -> Optional[tuple]:
        """(mtime_ns, size) of the config file, or None if it does not exist."""
        try:
            stat = self.path.stat()
        except OSError:
            return None
        return stat.st_mtime_ns, stat.st_size

    def _read(self) -> Config:
        with open(self.path) as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise yaml.YAMLError("top level of config must be a mapping")
        return self._dict_to_config(data)

    def _load(self) -> Config:
        """Load configuration from the YAML file.

        Returns:
            Config object with loaded or default values

        Note:
            Missing fields use dataclass defaults. Invalid YAML returns the
            default Config.
        """
        if not self.path.exists():
            logger.info(f"No config file at {self.path}, using defaults")
            return Config()
        try:
            config = self._read()
            logger.info(f"Loaded configuration from {self.path}")
            return config
        except (yaml.YAMLError, OSError, TypeError) as e:
            logger.warning(f"Failed to load config from {self.path}: {e}")
            logger.info("Using default configuration")
            return Config()

    def _refresh(self) -> None:
        """Pick up edits made to the file since it was last read or written.

        A file that fails to parse leaves the current configuration in place.
        """
        signature = self._signature()
        if signature is None or signature == self._file_signature:
            return
        self._file_signature = signature
        try:
            self.config = self._read()
            logger.info(f"Configuration file changed, reloaded {self.path}")
        except (yaml.YAMLError, OSError, TypeError) as e:
            logger.warning(f"Ignoring unreadable config edit in {self.path}: {e}")

    def _dict_to_config(self, data: dict) -> Config:
        """Construct Config from a dictionary, ignoring unknown keys."""
        def filter_known_fields(data_dict, dataclass_type) -> dict:
            if not isinstance(data_dict, dict):
                return {}
            known_fields = {f.name for f in dataclasses.fields(dataclass_type)}
            unknown = set(data_dict.keys()) - known_fields
            if unknown:
                logger.debug(f"Ignoring unknown config fields: {unknown}")
            return {k: v for k, v in data_dict.items() if k in known_fields}

        sections = {
            name: section_type(**filter_known_fields(data.get(name, {}), section_type))
            for name, section_type in SECTIONS.items()
        }
        return Config(**sections)

    def save(self) -> None:
        """Save current configuration to the YAML file.

        Raises:
            OSError: If the file write fails
        """
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, 'w') as f:
                yaml.dump(
                    asdict(self.config),
                    f,
                    default_flow_style=False,
                    sort_keys=False,
                    indent=2
                )
            self._file_signature = self._signature()
            logger.info(f"Saved configuration to {self.path}")
        except OSError as e:
            logger.error(f"Failed to save config to {self.path}: {e}")
            raise

    def update(self, section: str, key: str, value) -> bool:
        """Update a single configuration value and save.

        Returns:
            True if the value changed and was saved, False if unchanged or invalid
        """
        section_obj = getattr(self.config, section, None)
        if section not in SECTIONS or section_obj is None:
            logger.warning(f"Invalid config section: {section}")
            return False

        if not hasattr(section_obj, key):
            logger.warning(f"Invalid config key: {section}.{key}")
            return False

        old_value = getattr(section_obj, key)
        if old_value != value:
            setattr(section_obj, key, value)
            self.save()
            logger.info(f"Updated {section}.{key}: {old_value} -> {value}")
            return True

        logger.debug(f"No change for {section}.{key} (already {value})")
        return False

    def to_dict(self) -> dict:
        return asdict(self.config)

    def reload(self) -> None:
        """Reload configuration from file, picking up external edits."""
        self._file_signature = self._signature()
        self.config = self._load()
        logger.info("Configuration reloaded")

    # Typed accessors used by the capture pipeline. ocr_mode() and rule_set()
    # re-read the file when it changed, so edits apply on the next tick.

    def interval_seconds(self) -> float:
        try:
            return clamp_interval(self.config.capture.interval_seconds)
        except (TypeError, ValueError):
            logger.warning(f"Invalid capture.interval_seconds {self.config.capture.interval_seconds!r}")
            return DEFAULT_INTERVAL_SECONDS

    def ocr_mode(self) -> OcrMode:
        self._refresh()
        return OcrMode.parse(self.config.capture.ocr_mode)

    def rule_set(self) -> ExclusionRuleSet:
        """Build the exclusion rules from the current privacy section."""
        self._refresh()
        privacy = self.config.privacy
        return ExclusionRuleSet.from_lists(
            bundle_ids=privacy.excluded_bundle_ids,
            title_keywords=privacy.excluded_title_keywords,
            ignore_incognito=privacy.ignore_incognito,
        )
