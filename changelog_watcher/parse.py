"""
Parse module for the Changelog Watcher.

This module turns the raw markdown of a changelog into structured
version entries. The file is assumed to list versions newest first.
"""

import re
from dataclasses import dataclass, field
from datetime import date
from typing import List, Optional

from changelog_watcher.fetch import RemoteStateClient
from changelog_watcher.utils import get_logger


# Module logger
logger = get_logger("parse")

# Heading line carrying a version, e.g. "## v1.2.3 - 2023-12-01" or "# Version 1.2.3"
VERSION_HEADER_PATTERN = re.compile(
    r"^#+\s*(?:v?(\d+\.\d+\.\d+)|Version\s+(\d+\.\d+\.\d+))",
    re.IGNORECASE | re.ASCII
)

# Any calendar-looking date on the header line; not validated further
DATE_PATTERN = re.compile(r"(\d{4}-\d{2}-\d{2})", re.ASCII)


@dataclass
class VersionEntry:
    """
    One released version parsed from the changelog.

    Attributes:
        version: Version number without prefix, e.g. "1.2.3".
        date: ISO date from the header line, or the parse date if absent.
        changes: Bullet texts in document order.
        revision_id: Commit the parsed content was fetched at.
    """
    version: str
    date: str
    changes: List[str] = field(default_factory=list)
    revision_id: str = ""


def match_version_header(line: str) -> Optional[str]:
    """
    Return the version a header line announces, if any.

    Args:
        line: A single line of the changelog.

    Returns:
        The version string, or None if the line is not a version header.
    """
    match = VERSION_HEADER_PATTERN.match(line)
    if not match:
        return None
    return match.group(1) or match.group(2)


def parse_changelog(
    text: str,
    revision_id: str = "",
    today: Optional[date] = None
) -> List[VersionEntry]:
    """
    Parse changelog text into version entries.

    Lines are scanned top to bottom. A version header opens a new entry;
    lines starting with "-" inside an entry become its changes; all other
    lines are ignored. When a version appears twice, the first occurrence
    wins.

    Args:
        text: Raw changelog text.
        revision_id: Revision identifier to attach to each entry.
        today: Date used for headers without a date. Defaults to today.

    Returns:
        Entries in document order. Empty if no header matched.
    """
    if not text:
        return []

    default_date = (today or date.today()).isoformat()
    entries: List[VersionEntry] = []
    seen_versions = set()
    current: Optional[VersionEntry] = None

    def flush(entry: Optional[VersionEntry]) -> None:
        if entry is None or not entry.version:
            return
        if entry.version in seen_versions:
            logger.debug(f"Dropping duplicate entry for version {entry.version}")
            return
        seen_versions.add(entry.version)
        entries.append(entry)

    for line in text.splitlines():
        version = match_version_header(line)

        if version:
            flush(current)
            date_match = DATE_PATTERN.search(line)
            current = VersionEntry(
                version=version,
                date=date_match.group(1) if date_match else default_date,
                revision_id=revision_id,
            )
            continue

        stripped = line.strip()
        if current is not None and stripped.startswith("-"):
            current.changes.append(stripped[1:].strip())

    flush(current)

    logger.debug(f"Parsed {len(entries)} version entr{'y' if len(entries) == 1 else 'ies'}")
    return entries


def get_latest_version(
    client: RemoteStateClient,
    revision_id: str = "",
    today: Optional[date] = None
) -> Optional[VersionEntry]:
    """
    Fetch the changelog and return its newest entry.

    Args:
        client: Remote client for the tracked file.
        revision_id: Revision identifier to attach to the entry.
        today: Date used for headers without a date.

    Returns:
        The first parsed entry, or None if the file is absent or has no
        version headers.

    Raises:
        RemoteUnavailable: If GitHub cannot be reached.
    """
    content = client.fetch_file_content()
    if not content:
        logger.warning("Changelog content unavailable")
        return None

    entries = parse_changelog(content, revision_id=revision_id, today=today)
    if not entries:
        logger.warning("No version entries found in changelog")
        return None

    latest = entries[0]
    logger.info(f"Latest changelog version: {latest.version} ({len(latest.changes)} change(s))")
    return latest
