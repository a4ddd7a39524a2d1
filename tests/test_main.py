"""
Tests for the main module.

Tests cover:
- Full poll cycles against a mocked GitHub client
- At-most-once notification per revision
- Error notifications on connection failures
- Configuration updates, test notifications and the entry point
"""

import asyncio
import os
import threading
import time
from unittest.mock import AsyncMock, Mock, patch

import pytest

from changelog_watcher.fetch import RemoteUnavailable
from changelog_watcher.main import (
    EXIT_FAILURE,
    EXIT_SUCCESS,
    ChangelogMonitor,
    build_monitor,
    main,
    run_watcher,
)
from changelog_watcher.notify import (
    CONNECTION_ERROR_MESSAGE,
    ERROR_TITLE,
    TEST_TITLE,
    LogNotificationSink,
    NotificationError,
)
from changelog_watcher.utils import safe_write_json


@pytest.fixture
def sink():
    return LogNotificationSink()


@pytest.fixture
def monitor(store, sink, mock_client):
    monitor = ChangelogMonitor(store, sink, client=mock_client, startup_delay=60)
    yield monitor
    monitor.scheduler.stop()


@pytest.mark.anyio
class TestRunCheckCycle:
    """Tests for the poll cycle."""

    async def test_first_cycle_notifies(self, monitor, sink, mock_client, make_revision):
        """Test that the first observed revision raises a notification."""
        mock_client.fetch_latest_revision.return_value = make_revision("abc123")

        notified = await monitor.run_check_cycle()

        assert notified is True
        title, body = sink.history[0]
        assert title == "claude-code 1.2.0 Released!"
        assert body == "What's new:\nAdded feature X\nFixed bug Y"

    async def test_unchanged_cycle_is_silent(self, monitor, sink, mock_client, make_revision):
        mock_client.fetch_latest_revision.return_value = make_revision("abc123")

        await monitor.run_check_cycle()
        notified = await monitor.run_check_cycle()

        assert notified is False
        assert len(sink.history) == 1
        mock_client.fetch_file_content.assert_called_once()

    async def test_new_revision_notifies_again(self, monitor, sink, mock_client, make_revision):
        mock_client.fetch_latest_revision.side_effect = [make_revision("a"), make_revision("b")]

        await monitor.run_check_cycle()
        await monitor.run_check_cycle()

        assert len(sink.history) == 2

    async def test_not_found_is_silent(self, monitor, sink, mock_client):
        mock_client.fetch_latest_revision.return_value = None

        assert await monitor.run_check_cycle() is False
        assert sink.history == []

    async def test_disabled_notifications_still_commit(self, store, sink, mock_client, make_revision):
        store.update({"notification": {"enabled": False}})
        monitor = ChangelogMonitor(store, sink, client=mock_client)
        mock_client.fetch_latest_revision.return_value = make_revision("abc123")

        assert await monitor.run_check_cycle() is False

        assert sink.history == []
        assert store.load().last_known_revision_id == "abc123"

    async def test_remote_error_shows_error(self, monitor, sink, mock_client):
        """Test that connection failures surface one error notification."""
        mock_client.fetch_latest_revision.side_effect = RemoteUnavailable("offline")

        assert await monitor.run_check_cycle() is False

        assert sink.history == [(ERROR_TITLE, CONNECTION_ERROR_MESSAGE)]

    async def test_content_error_shows_error(self, monitor, sink, mock_client, store, make_revision):
        mock_client.fetch_latest_revision.return_value = make_revision("abc123")
        mock_client.fetch_file_content.side_effect = RemoteUnavailable("offline")

        await monitor.run_check_cycle()

        assert sink.history == [(ERROR_TITLE, CONNECTION_ERROR_MESSAGE)]
        assert store.load().last_known_revision_id == "abc123"

    async def test_empty_changelog_is_silent(self, monitor, sink, mock_client, make_revision):
        mock_client.fetch_latest_revision.return_value = make_revision("abc123")
        mock_client.fetch_file_content.return_value = "# Changelog"

        assert await monitor.run_check_cycle() is False
        assert sink.history == []

    async def test_failed_delivery_is_not_retried(self, store, mock_client, make_revision):
        """Test at-most-once: a failed notification is not repeated next poll."""
        sink = Mock()
        sink.show.side_effect = NotificationError("no display")
        monitor = ChangelogMonitor(store, sink, client=mock_client)
        mock_client.fetch_latest_revision.return_value = make_revision("abc123")

        assert await monitor.run_check_cycle() is False
        assert await monitor.run_check_cycle() is False

        sink.show.assert_called_once()
        assert store.load().last_known_revision_id == "abc123"

    async def test_actionable_with_history_url(self, store, mock_client, make_revision):
        sink = Mock()
        monitor = ChangelogMonitor(store, sink, client=mock_client)
        mock_client.fetch_latest_revision.return_value = make_revision("abc123")

        await monitor.run_check_cycle()

        kwargs = sink.show.call_args.kwargs
        assert kwargs["actionable"] is True
        assert kwargs["url"] == "https://github.com/anthropics/claude-code/commits/main/CHANGELOG.md"

    async def test_check_now(self, monitor, sink, mock_client, make_revision):
        mock_client.fetch_latest_revision.return_value = make_revision("abc123")

        await monitor.check_now()

        assert len(sink.history) == 1


@pytest.mark.anyio
class TestControlSurface:
    """Tests for configuration and test notifications."""

    async def test_update_config_propagates_sound(self, monitor, sink):
        config = await monitor.update_config({"notification": {"sound_enabled": False}})

        assert config.notification.sound_enabled is False
        assert sink.sound_enabled is False

    async def test_update_config_restarts_polling(self, monitor):
        monitor.scheduler.start()

        with patch.object(monitor.scheduler, "restart") as mock_restart:
            await monitor.update_config({"notification": {"poll_interval_minutes": 5}})

        mock_restart.assert_called_once_with(5)

    async def test_update_config_before_start(self, monitor):
        await monitor.update_config({"notification": {"poll_interval_minutes": 5}})

        assert monitor.scheduler.interval_minutes == 5
        assert monitor.scheduler.is_running is False

    async def test_update_config_new_repository(self, monitor, mock_client):
        with patch("changelog_watcher.main.RemoteStateClient") as mock_client_class:
            await monitor.update_config({"github": {"repo": "other-repo"}})

        mock_client.close.assert_called_once()
        assert mock_client_class.call_args.args[0].repo == "other-repo"
        assert monitor.client is mock_client_class.return_value
        assert monitor.detector.client is mock_client_class.return_value

    async def test_repository_change_mid_cycle(self, monitor, sink, mock_client, make_revision):
        """Test that a cycle in flight finishes on the client it started with."""
        reached = threading.Event()
        resume = threading.Event()

        def slow_fetch():
            reached.set()
            resume.wait(timeout=5)
            return make_revision("abc123")

        mock_client.fetch_latest_revision.side_effect = slow_fetch

        with patch("changelog_watcher.main.RemoteStateClient") as mock_client_class:
            cycle = asyncio.create_task(monitor.run_check_cycle())
            assert await asyncio.to_thread(reached.wait, 5)

            await monitor.update_config({"github": {"repo": "other-repo"}})
            mock_client.close.assert_not_called()

            resume.set()
            assert await cycle is True

        new_client = mock_client_class.return_value
        new_client.fetch_file_content.assert_not_called()
        mock_client.fetch_file_content.assert_called_once()
        assert sink.history[0][0] == "claude-code 1.2.0 Released!"
        mock_client.close.assert_called_once()
        assert monitor.client is new_client

    async def test_settings_update_during_cycle_keeps_revision(self, monitor, sink, mock_client, make_revision):
        """Test that a settings write racing a commit does not restore the old marker."""
        mock_client.fetch_latest_revision.return_value = make_revision("abc123")

        def slow_write(filepath, data):
            if data["notification"]["poll_interval_minutes"] == 5:
                time.sleep(0.2)
            return safe_write_json(filepath, data)

        with patch("changelog_watcher.config.safe_write_json", side_effect=slow_write):
            await asyncio.gather(
                monitor.update_config({"notification": {"poll_interval_minutes": 5}}),
                monitor.run_check_cycle(),
            )
        await monitor.run_check_cycle()

        assert len(sink.history) == 1
        config = monitor.get_config()
        assert config.last_known_revision_id == "abc123"
        assert config.notification.poll_interval_minutes == 5

    async def test_get_config_reads_tracking_state(self, monitor, store):
        store.update({"last_known_revision_id": "abc123"})

        assert monitor.get_config().last_known_revision_id == "abc123"

    async def test_test_notification(self, monitor, sink):
        assert await monitor.test_notification() is True
        assert sink.history[0][0] == TEST_TITLE

    async def test_start_and_stop(self, monitor, mock_client):
        await monitor.start()
        assert monitor.scheduler.is_running is True

        await monitor.stop()

        assert monitor.scheduler.is_running is False
        mock_client.close.assert_called_once()

    async def test_start_with_failed_connection_check(self, monitor, mock_client):
        mock_client.check_connection.return_value = False

        await monitor.start()

        assert monitor.scheduler.is_running is True


class TestEntryPoint:
    """Tests for process wiring."""

    @pytest.mark.anyio
    async def test_build_monitor_from_env(self, tmp_path):
        env = {"CONFIG_PATH": str(tmp_path / "config.json"), "GITHUB_TOKEN": "ghp_test"}
        with patch.dict(os.environ, env, clear=True):
            monitor = build_monitor(dry_run=True)

        assert isinstance(monitor.sink, LogNotificationSink)
        assert monitor.client.session.headers["Authorization"] == "Bearer ghp_test"
        monitor.client.close()

    @pytest.mark.anyio
    async def test_run_once(self, monitor, mock_client, make_revision):
        mock_client.fetch_latest_revision.return_value = make_revision("abc123")

        with patch("changelog_watcher.main.build_monitor", return_value=monitor):
            exit_code = await run_watcher(run_once=True)

        assert exit_code == EXIT_SUCCESS
        assert len(monitor.sink.history) == 1
        mock_client.close.assert_called_once()

    def test_main_success(self):
        with patch.dict(os.environ, {"RUN_ONCE": "true"}, clear=True):
            with patch("changelog_watcher.main.run_watcher", new=AsyncMock(return_value=EXIT_SUCCESS)) as mock_run:
                assert main() == EXIT_SUCCESS

        mock_run.assert_awaited_once_with(dry_run=False, run_once=True)

    def test_main_unexpected_error(self):
        with patch.dict(os.environ, {}, clear=True):
            with patch("changelog_watcher.main.run_watcher", new=AsyncMock(side_effect=RuntimeError("boom"))):
                assert main() == EXIT_FAILURE
