"""
Tests for the compare module.

Tests cover:
- First check after install counts as a change
- Repeated identical revisions are a no-op
- Persisting the new revision before returning
- NotFound and remote errors
- Persistence failures
"""

from unittest.mock import Mock, patch

import pytest

from changelog_watcher.compare import (
    ChangeDetector,
    ChangeStatus,
    DetectionResult,
    TrackingState,
    has_revision_changed,
)
from changelog_watcher.config import ConfigPersistenceError, ConfigStore
from changelog_watcher.fetch import RemoteUnavailable


class TestHasRevisionChanged:
    """Tests for the decision rule."""

    def test_absent_marker_is_change(self):
        assert has_revision_changed(TrackingState(), "abc") is True

    def test_same_marker_is_no_change(self):
        assert has_revision_changed(TrackingState(last_known_revision_id="abc"), "abc") is False

    def test_different_marker_is_change(self):
        assert has_revision_changed(TrackingState(last_known_revision_id="abc"), "def") is True


class TestDetectionResult:
    def test_changed_property(self):
        assert DetectionResult(ChangeStatus.CHANGED).changed is True
        assert DetectionResult(ChangeStatus.UNCHANGED).changed is False


class TestChangeDetector:
    """Tests for check_for_change."""

    def test_first_check_is_a_change(self, mock_client, store, make_revision):
        """Test that an absent marker yields CHANGED and persists the sha."""
        mock_client.fetch_latest_revision.return_value = make_revision("abc123")
        detector = ChangeDetector(mock_client, store)

        result = detector.check_for_change()

        assert result.status is ChangeStatus.CHANGED
        assert result.revision.sha == "abc123"
        state = detector.load_state()
        assert state.last_known_revision_id == "abc123"
        assert state.last_check_timestamp.endswith("Z")

    def test_unchanged_revision_is_idempotent(self, mock_client, store, make_revision):
        """Test that repeating the same sha never writes again."""
        mock_client.fetch_latest_revision.return_value = make_revision("abc123")
        detector = ChangeDetector(mock_client, store)
        detector.check_for_change()

        with patch.object(store, "update", wraps=store.update) as mock_update:
            for _ in range(3):
                result = detector.check_for_change()
                assert result.status is ChangeStatus.UNCHANGED

        mock_update.assert_not_called()
        assert detector.load_state().last_known_revision_id == "abc123"

    def test_new_revision_is_a_change(self, mock_client, store, make_revision):
        store.update({"last_known_revision_id": "old"})
        mock_client.fetch_latest_revision.return_value = make_revision("new")
        detector = ChangeDetector(mock_client, store)

        result = detector.check_for_change()

        assert result.changed is True
        assert detector.load_state().last_known_revision_id == "new"

    def test_not_found_is_unchanged(self, mock_client, store):
        """Test that a file without history is silently unchanged."""
        mock_client.fetch_latest_revision.return_value = None
        detector = ChangeDetector(mock_client, store)

        with patch.object(store, "update") as mock_update:
            result = detector.check_for_change()

        assert result == DetectionResult(ChangeStatus.UNCHANGED)
        mock_update.assert_not_called()

    def test_remote_error_propagates(self, mock_client, store):
        mock_client.fetch_latest_revision.side_effect = RemoteUnavailable("offline")
        detector = ChangeDetector(mock_client, store)

        with pytest.raises(RemoteUnavailable):
            detector.check_for_change()

        assert detector.load_state().last_known_revision_id is None

    def test_persistence_failure_propagates(self, mock_client, store, make_revision):
        mock_client.fetch_latest_revision.return_value = make_revision("abc123")
        detector = ChangeDetector(mock_client, store)

        with patch("changelog_watcher.config.safe_write_json", return_value=False):
            with pytest.raises(ConfigPersistenceError):
                detector.check_for_change()

    def test_marker_only_takes_fetched_values(self, mock_client, store, make_revision):
        """Test that the stored marker is always a sha returned by GitHub."""
        fetched = ["a", "a", "b", "b", "c", "a"]
        mock_client.fetch_latest_revision.side_effect = [make_revision(sha) for sha in fetched]
        detector = ChangeDetector(mock_client, store)

        statuses = []
        for _ in fetched:
            statuses.append(detector.check_for_change().status)
            assert detector.load_state().last_known_revision_id in fetched

        assert statuses == [
            ChangeStatus.CHANGED,
            ChangeStatus.UNCHANGED,
            ChangeStatus.CHANGED,
            ChangeStatus.UNCHANGED,
            ChangeStatus.CHANGED,
            ChangeStatus.CHANGED,
        ]
        assert detector.load_state().last_known_revision_id == "a"

    def test_settings_survive_commit(self, mock_client, tmp_path, make_revision):
        store = ConfigStore(str(tmp_path / "config.json"))
        store.update({"notification": {"poll_interval_minutes": 5, "sound_enabled": False}})
        mock_client.fetch_latest_revision.return_value = make_revision("abc123")

        ChangeDetector(mock_client, store).check_for_change()

        config = store.load()
        assert config.notification.poll_interval_minutes == 5
        assert config.notification.sound_enabled is False

    def test_commit_returns_state(self, store):
        detector = ChangeDetector(Mock(), store)

        state = detector.commit("abc123")

        assert state.last_known_revision_id == "abc123"
