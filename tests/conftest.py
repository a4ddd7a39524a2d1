"""
Shared fixtures for the Changelog Watcher tests.
"""

import pytest
from unittest.mock import Mock

from changelog_watcher.config import ConfigStore
from changelog_watcher.fetch import RevisionRef


SAMPLE_CHANGELOG = """# Changelog

## v1.2.0 - 2024-03-01
- Added feature X
- Fixed bug Y
## v1.1.0
- Initial release
"""


@pytest.fixture
def anyio_backend():
    """Run async tests on asyncio only."""
    return "asyncio"


@pytest.fixture
def store(tmp_path):
    """Configuration store backed by a temporary file."""
    return ConfigStore(str(tmp_path / "config.json"))


@pytest.fixture
def make_revision():
    """Factory for RevisionRef objects."""
    def _make(sha: str) -> RevisionRef:
        return RevisionRef(
            sha=sha,
            message="Update CHANGELOG.md",
            author_name="Release Bot",
            date="2024-03-01T12:00:00Z",
            html_url=f"https://github.com/anthropics/claude-code/commit/{sha}",
        )
    return _make


@pytest.fixture
def mock_client():
    """Remote client double serving SAMPLE_CHANGELOG."""
    client = Mock()
    client.repository = "anthropics/claude-code"
    client.file_path = "CHANGELOG.md"
    client.fetch_latest_revision.return_value = None
    client.fetch_file_content.return_value = SAMPLE_CHANGELOG
    client.commit_history_url.return_value = (
        "https://github.com/anthropics/claude-code/commits/main/CHANGELOG.md"
    )
    client.check_connection.return_value = True
    return client
