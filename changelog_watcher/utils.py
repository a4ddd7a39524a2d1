"""
Utility functions for the Changelog Watcher.

This module provides:
- Central logging configuration
- Safe JSON read/write helpers
- Environment variable access
- Shared helper utilities used across modules
"""

import copy
import json
import logging
import os
import re
import shutil
import sys
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional


def setup_logging(level: str = "INFO") -> logging.Logger:
    """
    Configure and return the root logger for the application.

    Args:
        level: Logging level as string (DEBUG, INFO, WARNING, ERROR, CRITICAL).
               Defaults to INFO.

    Returns:
        Configured logger instance.
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    logging.basicConfig(
        level=log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        handlers=[
            logging.StreamHandler(sys.stdout)
        ]
    )

    logger = logging.getLogger("changelog_watcher")
    logger.setLevel(log_level)

    return logger


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger instance with the specified name.

    Args:
        name: Name for the logger, typically the module name.

    Returns:
        Logger instance configured as a child of the main application logger.
    """
    return logging.getLogger(f"changelog_watcher.{name}")


def safe_read_json(filepath: str, default: Optional[Any] = None) -> Any:
    """
    Safely read JSON data from a file.

    Args:
        filepath: Path to the JSON file.
        default: Value to return if the file doesn't exist or is invalid.

    Returns:
        Parsed JSON data or the default value on failure.
    """
    logger = get_logger("utils")

    try:
        path = Path(filepath)
        if not path.exists():
            logger.debug(f"File does not exist: {filepath}, returning default")
            return default

        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
            logger.debug(f"Successfully read JSON from {filepath}")
            return data

    except json.JSONDecodeError as e:
        logger.warning(f"Invalid JSON in {filepath}: {e}")
        return default
    except PermissionError as e:
        logger.error(f"Permission denied reading {filepath}: {e}")
        return default
    except OSError as e:
        logger.error(f"Unexpected error reading {filepath}: {e}")
        return default


def safe_write_json(filepath: str, data: Any, indent: int = 2) -> bool:
    """
    Safely write JSON data to a file using atomic write operation.

    Uses a temporary file and atomic rename to prevent data corruption
    if the write operation is interrupted.

    Args:
        filepath: Path to the JSON file.
        data: Data to serialize as JSON.
        indent: JSON indentation level. Defaults to 2.

    Returns:
        True if write was successful, False otherwise.
    """
    logger = get_logger("utils")

    try:
        path = Path(filepath)
        path.parent.mkdir(parents=True, exist_ok=True)

        fd, temp_path = tempfile.mkstemp(
            suffix=".json",
            prefix="changelog_watcher_",
            dir=path.parent
        )

        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=indent, ensure_ascii=False)

            # Atomic rename on POSIX, copy+delete on Windows
            shutil.move(temp_path, filepath)
            logger.debug(f"Successfully wrote JSON to {filepath}")
            return True

        except Exception:
            if os.path.exists(temp_path):
                os.unlink(temp_path)
            raise

    except PermissionError as e:
        logger.error(f"Permission denied writing {filepath}: {e}")
        return False
    except (OSError, TypeError, ValueError) as e:
        logger.error(f"Unexpected error writing {filepath}: {e}")
        return False


def get_env_var(name: str, required: bool = True, default: Optional[str] = None) -> Optional[str]:
    """
    Get an environment variable with optional requirement enforcement.

    Args:
        name: Name of the environment variable.
        required: If True, raises ValueError when variable is not set.
                  Defaults to True.
        default: Default value if variable is not set and not required.

    Returns:
        Value of the environment variable or default.

    Raises:
        ValueError: If required=True and the variable is not set.
    """
    value = os.environ.get(name)

    if value is None or value.strip() == "":
        if required:
            raise ValueError(f"Required environment variable '{name}' is not set")
        return default

    return value.strip()


def env_flag(name: str) -> bool:
    """Return True if the environment variable holds a truthy value."""
    return os.environ.get(name, "").strip().lower() in ("true", "1", "yes")


def deep_merge(base: Dict[str, Any], updates: Dict[str, Any]) -> Dict[str, Any]:
    """
    Recursively merge ``updates`` into a copy of ``base``.

    Nested dictionaries are merged key by key; any other value in
    ``updates`` replaces the value in ``base``.

    Args:
        base: Original dictionary (left untouched).
        updates: Partial dictionary of overrides.

    Returns:
        New merged dictionary.
    """
    merged = copy.deepcopy(base)

    for key, value in updates.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)

    return merged


def utc_timestamp() -> str:
    """Current UTC time as an ISO 8601 string with a trailing Z."""
    return datetime.now(timezone.utc).replace(tzinfo=None).isoformat() + "Z"


def sanitize_text(text: str) -> str:
    """
    Clean and normalize text content.

    Collapses runs of whitespace (including newlines) into single spaces.

    Args:
        text: Raw text to sanitize.

    Returns:
        Cleaned text string.
    """
    if not text:
        return ""

    cleaned = re.sub(r"\s+", " ", text)
    return cleaned.strip()


def truncate_text(text: str, max_length: int, ellipsis: str = "...") -> str:
    """
    Shorten text to at most ``max_length`` characters.

    Args:
        text: Text to shorten.
        max_length: Maximum length of the result, ellipsis included.
        ellipsis: Marker appended when the text was cut.

    Returns:
        The original text if it fits, otherwise a cut version ending in ``ellipsis``.
    """
    if len(text) <= max_length:
        return text

    if max_length <= len(ellipsis):
        return text[:max_length]

    return text[:max_length - len(ellipsis)].rstrip() + ellipsis
