#!/usr/bin/env python3
"""
Main orchestration module for the Changelog Watcher.

This module coordinates the poll cycle:
fetch revision → compare/persist → fetch changelog → parse → format → notify

and exposes the control surface used by a host shell (check now, update
or read the configuration, send a test notification). It also provides
the process entry point, which handles logging setup and error handling.
"""

import asyncio
import os
import signal
import sys
from collections import Counter
from typing import Any, Callable, Dict, List, Optional

from changelog_watcher.compare import ChangeDetector
from changelog_watcher.config import AppConfig, ConfigStore, get_config_filepath
from changelog_watcher.fetch import RemoteStateClient, RemoteUnavailable
from changelog_watcher.notify import (
    CONNECTION_ERROR_MESSAGE,
    NotificationError,
    NotificationSink,
    format_changelog_message,
    format_notification_title,
    select_notification_sink,
)
from changelog_watcher.parse import get_latest_version
from changelog_watcher.scheduler import DEFAULT_STARTUP_DELAY, PollingScheduler
from changelog_watcher.utils import env_flag, get_env_var, get_logger, setup_logging


# Exit codes
EXIT_SUCCESS = 0
EXIT_FAILURE = 1

# Module logger
logger = get_logger("main")


class ChangelogMonitor:
    """
    Ties the remote client, change detector, notification sink and
    scheduler together.

    Args:
        store: Configuration store holding settings and tracking state.
        sink: Notification backend.
        token: Optional GitHub token.
        client: Remote client; built from the stored configuration if None.
        startup_delay: Seconds before the first scheduled check.
    """

    def __init__(
        self,
        store: ConfigStore,
        sink: NotificationSink,
        token: Optional[str] = None,
        client: Optional[RemoteStateClient] = None,
        startup_delay: float = DEFAULT_STARTUP_DELAY
    ):
        self.store = store
        self.token = token
        self.config = store.load()

        self.client = client or RemoteStateClient(self.config.github, token=token)
        self.detector = ChangeDetector(self.client, store)

        # Poll cycles running per client, and replaced clients awaiting close
        self._clients_in_use: Counter = Counter()
        self._retired_clients: List[RemoteStateClient] = []

        self.sink = sink
        self.sink.set_sound_enabled(self.config.notification.sound_enabled)

        self.scheduler = PollingScheduler(
            self.run_check_cycle,
            self.config.notification.poll_interval_minutes,
            startup_delay=startup_delay
        )

    async def _deliver(self, show: Callable[..., None], *args: Any, **kwargs: Any) -> bool:
        try:
            await asyncio.to_thread(show, *args, **kwargs)
            return True
        except NotificationError as e:
            logger.error(f"Failed to deliver notification: {e}")
            return False

    def _retire_client(self, client: RemoteStateClient) -> None:
        # Cycles still using the client close it when they finish
        if self._clients_in_use[client]:
            self._retired_clients.append(client)
        else:
            client.close()

    def _release_client(self, client: RemoteStateClient) -> None:
        self._clients_in_use[client] -= 1
        if self._clients_in_use[client] > 0:
            return

        del self._clients_in_use[client]
        if client in self._retired_clients:
            self._retired_clients.remove(client)
            client.close()

    async def run_check_cycle(self) -> bool:
        """
        Run one poll cycle.

        The cycle keeps the client, detector and settings it started with,
        even if ``update_config`` replaces them while it runs.

        Returns:
            True if a changelog notification was displayed.

        Raises:
            ConfigPersistenceError: If the new revision could not be saved.
        """
        client, detector, config = self.client, self.detector, self.config

        self._clients_in_use[client] += 1
        try:
            return await self._check(client, detector, config)
        finally:
            self._release_client(client)

    async def _check(
        self,
        client: RemoteStateClient,
        detector: ChangeDetector,
        config: AppConfig
    ) -> bool:
        logger.info(f"Checking {client.repository}:{client.file_path} for changes")

        try:
            result = await asyncio.to_thread(detector.check_for_change)

            if not result.changed:
                return False

            if not config.notification.enabled:
                logger.info("Change detected but notifications are disabled")
                return False

            entry = await asyncio.to_thread(get_latest_version, client, result.revision.sha)

        except RemoteUnavailable as e:
            logger.error(f"Error checking for updates: {e}")
            await self._deliver(self.sink.show_error, CONNECTION_ERROR_MESSAGE)
            return False

        if entry is None:
            logger.info("Changelog changed but no version entry could be read")
            return False

        title = format_notification_title(entry, config.github.repo)
        body = format_changelog_message(entry)

        logger.info(f"Notifying about version {entry.version}")
        return await self._deliver(
            self.sink.show,
            title,
            body,
            actionable=True,
            url=client.commit_history_url()
        )

    def check_now(self) -> asyncio.Task:
        """Start a poll cycle immediately without waiting for it."""
        return self.scheduler.fire()

    def get_config(self) -> AppConfig:
        """Current configuration, including the latest tracking state."""
        self.config = self.store.load()
        return self.config

    async def update_config(self, partial: Dict[str, Any]) -> AppConfig:
        """
        Apply a partial configuration update.

        Propagates the sound setting to the sink, points the client at a
        new file if the ``github`` section changed, and restarts polling
        with the new interval.

        Args:
            partial: Partial configuration record.

        Returns:
            The updated configuration.

        Raises:
            ConfigError: If the update is invalid.
            ConfigPersistenceError: If it cannot be saved.
        """
        previous = self.config
        self.config = await asyncio.to_thread(self.store.update, partial)

        self.sink.set_sound_enabled(self.config.notification.sound_enabled)

        if self.config.github != previous.github:
            logger.info(
                f"Tracked file changed to {self.config.github.owner}/{self.config.github.repo}:"
                f"{self.config.github.file_path}"
            )
            self._retire_client(self.client)
            self.client = RemoteStateClient(self.config.github, token=self.token)
            self.detector = ChangeDetector(self.client, self.store)

        interval = self.config.notification.poll_interval_minutes
        if self.scheduler.is_running:
            self.scheduler.restart(interval)
        else:
            self.scheduler.interval_minutes = interval

        return self.config

    async def test_notification(self) -> bool:
        """Display a test notification. Returns True if it was delivered."""
        return await self._deliver(self.sink.show_test)

    async def start(self) -> None:
        """Verify GitHub access and start polling."""
        if not await asyncio.to_thread(self.client.check_connection):
            logger.warning("GitHub connection check failed, checks may fail until it recovers")
        self.scheduler.start()

    async def stop(self) -> None:
        """Stop polling, wait for checks in flight and release the client."""
        self.scheduler.stop()
        await self.scheduler.wait_idle()
        self.client.close()


def build_monitor(dry_run: bool = False) -> ChangelogMonitor:
    """
    Create a ChangelogMonitor from the environment.

    Returns:
        Monitor using CONFIG_PATH, GITHUB_TOKEN and the platform's sink.
    """
    store = ConfigStore(get_config_filepath())
    config = store.load()

    token = get_env_var("GITHUB_TOKEN", required=False)
    if not token:
        logger.warning("GITHUB_TOKEN not set, using anonymous GitHub access (lower rate limit)")

    sink = select_notification_sink(
        sound_enabled=config.notification.sound_enabled,
        dry_run=dry_run
    )

    return ChangelogMonitor(store, sink, token=token)


async def run_watcher(dry_run: bool = False, run_once: bool = False) -> int:
    """
    Run the watcher until interrupted, or for a single cycle.

    Args:
        dry_run: If True, notifications are logged instead of displayed.
        run_once: If True, run one poll cycle and return.

    Returns:
        Exit code.
    """
    monitor = build_monitor(dry_run=dry_run)

    if run_once:
        try:
            await monitor.run_check_cycle()
        finally:
            monitor.client.close()
        return EXIT_SUCCESS

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Windows event loops have no signal handlers
            pass

    await monitor.start()
    try:
        await stop_event.wait()
    finally:
        await monitor.stop()

    return EXIT_SUCCESS


def main() -> int:
    """
    Main entry point for the Changelog Watcher.

    Sets up logging and runs the watcher with proper error handling.

    Returns:
        Exit code for the process.
    """
    log_level = os.environ.get("LOG_LEVEL", "INFO").upper()
    setup_logging(log_level)

    dry_run = env_flag("DRY_RUN")
    run_once = env_flag("RUN_ONCE")

    if dry_run:
        logger.info("Running in DRY RUN mode - notifications will only be logged")

    logger.info("=" * 60)
    logger.info("Changelog Watcher - Starting")
    logger.info("=" * 60)

    try:
        exit_code = asyncio.run(run_watcher(dry_run=dry_run, run_once=run_once))

    except KeyboardInterrupt:
        logger.warning("Watcher interrupted by user")
        return EXIT_SUCCESS

    except Exception as e:
        logger.exception(f"Unexpected error in watcher: {e}")
        return EXIT_FAILURE

    logger.info("Changelog Watcher - Stopped")
    return exit_code


if __name__ == "__main__":
    sys.exit(main())
