"""
Configuration module for the Changelog Watcher.

Holds the operator-controlled notification toggles, the tracked GitHub
file, and the tracking markers written by the change detector. Everything
is persisted as a single JSON record.
"""

import os
import threading
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Optional

from changelog_watcher.utils import deep_merge, get_logger, safe_read_json, safe_write_json


# Module logger
logger = get_logger("config")

# Default path for the persisted configuration record
DEFAULT_CONFIG_PATH = "data/config.json"

DEFAULT_POLL_INTERVAL_MINUTES = 30

# Top-level keys accepted by ConfigStore.update
UPDATABLE_KEYS = ("notification", "github", "last_known_revision_id", "last_check_timestamp")


class ConfigError(Exception):
    """Raised when configuration values are invalid."""


class ConfigPersistenceError(ConfigError):
    """Raised when the configuration record cannot be written."""

    def __init__(self, message: str, filepath: Optional[str] = None):
        super().__init__(message)
        self.filepath = filepath


@dataclass
class NotificationConfig:
    """Operator toggles read by the scheduler and the notification sink."""
    enabled: bool = True
    sound_enabled: bool = True
    poll_interval_minutes: int = DEFAULT_POLL_INTERVAL_MINUTES


@dataclass
class GitHubConfig:
    """Location of the tracked changelog file."""
    owner: str = "anthropics"
    repo: str = "claude-code"
    file_path: str = "CHANGELOG.md"
    branch: str = "main"


@dataclass
class AppConfig:
    """
    The complete persisted record.

    Attributes:
        notification: Notification toggles.
        github: Tracked repository and file.
        last_known_revision_id: Revision the last notification was raised for,
            None if no check has observed a revision yet.
        last_check_timestamp: ISO 8601 time the revision above was recorded.
    """
    notification: NotificationConfig = field(default_factory=NotificationConfig)
    github: GitHubConfig = field(default_factory=GitHubConfig)
    last_known_revision_id: Optional[str] = None
    last_check_timestamp: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AppConfig":
        """
        Build an AppConfig from a (possibly partial) dictionary.

        Missing fields take their defaults; unknown keys inside the
        ``notification`` and ``github`` sections are ignored.

        Args:
            data: Dictionary as read from the JSON record.

        Returns:
            Validated AppConfig.

        Raises:
            ConfigError: If a value has the wrong type or range.
        """
        merged = deep_merge(AppConfig().to_dict(), data or {})

        notification = merged.get("notification")
        github = merged.get("github")
        if not isinstance(notification, dict) or not isinstance(github, dict):
            raise ConfigError("'notification' and 'github' must be objects")

        config = cls(
            notification=NotificationConfig(
                enabled=_parse_bool(notification.get("enabled"), "notification.enabled"),
                sound_enabled=_parse_bool(notification.get("sound_enabled"), "notification.sound_enabled"),
                poll_interval_minutes=_parse_interval(notification.get("poll_interval_minutes")),
            ),
            github=GitHubConfig(
                owner=str(github.get("owner", "")).strip(),
                repo=str(github.get("repo", "")).strip(),
                file_path=str(github.get("file_path", "")).strip(),
                branch=str(github.get("branch") or "main").strip(),
            ),
            last_known_revision_id=_optional_str(merged.get("last_known_revision_id")),
            last_check_timestamp=_optional_str(merged.get("last_check_timestamp")),
        )

        if not config.github.owner or not config.github.repo or not config.github.file_path:
            raise ConfigError("github.owner, github.repo and github.file_path are required")

        return config


def _parse_bool(value: Any, name: str) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in ("true", "1", "yes", "false", "0", "no"):
        return value.strip().lower() in ("true", "1", "yes")
    raise ConfigError(f"{name} must be a boolean, got: {value!r}")


def _parse_interval(value: Any) -> int:
    # bool is an int subclass
    if isinstance(value, bool) or not isinstance(value, (int, str)):
        raise ConfigError(f"notification.poll_interval_minutes must be an integer, got: {value!r}")
    try:
        minutes = int(value)
    except ValueError:
        raise ConfigError(f"notification.poll_interval_minutes must be an integer, got: {value!r}")
    if minutes <= 0:
        raise ConfigError(f"notification.poll_interval_minutes must be positive, got: {value!r}")
    return minutes


def _optional_str(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    return str(value)


class ConfigStore:
    """
    JSON-file backed configuration store.

    ``load`` never fails: a missing or corrupt file yields the defaults.
    ``update`` merges a partial record, validates it and writes it
    atomically. Updates from different threads are serialized, so each
    one merges over the record the previous one wrote.
    """

    def __init__(self, filepath: str = DEFAULT_CONFIG_PATH):
        self.filepath = filepath
        self._update_lock = threading.Lock()

    def load(self) -> AppConfig:
        """
        Load the configuration record.

        Returns:
            Stored AppConfig merged over defaults. Invalid stored values
            fall back to the defaults with a warning.
        """
        data = safe_read_json(self.filepath, default={})

        if not isinstance(data, dict):
            logger.warning(f"Unexpected data format in {self.filepath}, using defaults")
            return AppConfig()

        try:
            return AppConfig.from_dict(data)
        except ConfigError as e:
            logger.warning(f"Invalid configuration in {self.filepath}: {e}; using defaults")
            return AppConfig()

    def update(self, partial: Dict[str, Any]) -> AppConfig:
        """
        Merge ``partial`` into the stored record and persist it.

        ``notification`` and ``github`` are merged key by key; the
        tracking fields replace their stored values.

        Args:
            partial: Partial record, e.g. ``{"notification": {"enabled": False}}``.

        Returns:
            The updated AppConfig.

        Raises:
            ConfigError: If ``partial`` has unknown keys or invalid values.
            ConfigPersistenceError: If the record cannot be written.
        """
        unknown = set(partial) - set(UPDATABLE_KEYS)
        if unknown:
            raise ConfigError(f"Unknown configuration keys: {', '.join(sorted(unknown))}")

        # Held from read to write; a concurrent update must not merge over a stale record
        with self._update_lock:
            current = self.load()
            config = AppConfig.from_dict(deep_merge(current.to_dict(), partial))

            if not safe_write_json(self.filepath, config.to_dict()):
                raise ConfigPersistenceError(
                    f"Failed to save configuration to {self.filepath}",
                    filepath=self.filepath
                )

        logger.debug(f"Configuration updated: {', '.join(sorted(partial))}")
        return config


def get_config_filepath() -> str:
    """
    Get the filepath of the configuration record.

    Checks for the CONFIG_PATH environment variable,
    falls back to the default path if not set.

    Returns:
        Path to the configuration JSON file.
    """
    custom_path = os.environ.get("CONFIG_PATH", "")

    if custom_path.strip():
        return custom_path.strip()

    return DEFAULT_CONFIG_PATH
