"""
Notify module for the Changelog Watcher.

This module renders a parsed version entry into a short notification and
delivers it. Delivery goes through a NotificationSink chosen once at
startup:
- macOS notification center (via osascript)
- An external command-line notifier (terminal-notifier or notify-send)
- Email via SMTP with TLS (optional, alongside a desktop sink)
- Logging only (dry run or headless hosts)
"""

import os
import shutil
import smtplib
import ssl
import subprocess
import sys
from datetime import datetime, timezone
from email.message import EmailMessage
from typing import List, Optional, Tuple

from changelog_watcher.parse import VersionEntry
from changelog_watcher.utils import get_env_var, get_logger, sanitize_text, truncate_text


# Module logger
logger = get_logger("notify")

# Formatting limits
MAX_DISPLAYED_CHANGES = 3
MAX_CHANGE_LENGTH = 120
CHANGE_SEPARATOR = "\n"

ERROR_TITLE = "Changelog Watcher Error"
TEST_TITLE = "Changelog Watcher"
TEST_MESSAGE = "Notification test successful! The watcher is working correctly."
CONNECTION_ERROR_MESSAGE = "Failed to check for updates. Please check your internet connection."

COMMAND_TIMEOUT = 10  # seconds
SMTP_TIMEOUT = 30  # seconds


class NotificationError(Exception):
    """Raised when a sink fails to deliver a notification."""

    def __init__(self, message: str, original_error: Optional[Exception] = None):
        super().__init__(message)
        self.original_error = original_error


# =============================================================================
# Formatting
# =============================================================================


def format_changelog_message(
    entry: VersionEntry,
    max_changes: int = MAX_DISPLAYED_CHANGES,
    max_change_length: int = MAX_CHANGE_LENGTH
) -> str:
    """
    Render a version entry as a short notification body.

    Shows at most ``max_changes`` changes, each cut to
    ``max_change_length`` characters, followed by a count of the
    remaining ones.

    Args:
        entry: Parsed version entry.
        max_changes: Number of changes to show.
        max_change_length: Maximum characters per displayed change.

    Returns:
        Notification body text.
    """
    if not entry.changes:
        return f"New version {entry.version} is available. Check the changelog for details."

    shown = [
        truncate_text(sanitize_text(change), max_change_length)
        for change in entry.changes[:max_changes]
    ]
    message = "What's new:\n" + CHANGE_SEPARATOR.join(shown)

    remaining = len(entry.changes) - max_changes
    if remaining > 0:
        message += f"\n... and {remaining} more change{'s' if remaining != 1 else ''}"

    return message


def format_notification_title(entry: VersionEntry, product: str) -> str:
    """Title line, e.g. "claude-code 1.2.0 Released!"."""
    return f"{product} {entry.version} Released!"


# =============================================================================
# Sinks
# =============================================================================


class NotificationSink:
    """
    Base class for notification delivery backends.

    Subclasses implement ``show``; errors and self-tests go through it
    with fixed titles.
    """

    name = "base"

    def __init__(self, sound_enabled: bool = True):
        self.sound_enabled = sound_enabled

    def set_sound_enabled(self, enabled: bool) -> None:
        self.sound_enabled = enabled

    def _resolve_sound(self, sound: Optional[bool]) -> bool:
        return self.sound_enabled if sound is None else sound

    def show(
        self,
        title: str,
        body: str,
        sound: Optional[bool] = None,
        actionable: bool = False,
        url: Optional[str] = None
    ) -> None:
        """
        Display a notification.

        Args:
            title: Notification title.
            body: Notification text.
            sound: Play a sound; None uses the sink's setting.
            actionable: Offer to open ``url`` when the notification is clicked.
            url: Link opened by actionable notifications.

        Raises:
            NotificationError: If delivery fails.
        """
        raise NotImplementedError

    def show_error(self, message: str) -> None:
        self.show(ERROR_TITLE, message, sound=False)

    def show_test(self, message: str = TEST_MESSAGE) -> None:
        self.show(TEST_TITLE, message)


class LogNotificationSink(NotificationSink):
    """Writes notifications to the log instead of displaying them."""

    name = "log"

    def __init__(self, sound_enabled: bool = True):
        super().__init__(sound_enabled)
        self.history: List[Tuple[str, str]] = []

    def show(self, title, body, sound=None, actionable=False, url=None) -> None:
        self.history.append((title, body))
        logger.info(f"[NOTIFICATION] {title}: {body}" + (f" ({url})" if url else ""))


class CommandNotificationSink(NotificationSink):
    """Base for sinks that shell out to a notifier command."""

    def build_command(
        self,
        title: str,
        body: str,
        sound: bool,
        actionable: bool,
        url: Optional[str]
    ) -> List[str]:
        raise NotImplementedError

    def show(self, title, body, sound=None, actionable=False, url=None) -> None:
        cmd = self.build_command(title, body, self._resolve_sound(sound), actionable, url)
        logger.debug(f"Running notifier: {cmd[0]}")

        try:
            subprocess.run(cmd, capture_output=True, text=True, check=True, timeout=COMMAND_TIMEOUT)
        except FileNotFoundError as e:
            raise NotificationError(f"Notifier command not found: {cmd[0]}", e)
        except subprocess.CalledProcessError as e:
            raise NotificationError(f"{cmd[0]} exited with {e.returncode}: {(e.stderr or '').strip()}", e)
        except subprocess.TimeoutExpired as e:
            raise NotificationError(f"{cmd[0]} timed out", e)


def _applescript_string(value: str) -> str:
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


class NotificationCenterSink(CommandNotificationSink):
    """macOS notification center through osascript."""

    name = "notification-center"

    def build_command(self, title, body, sound, actionable, url):
        # osascript notifications cannot carry click actions
        script = f"display notification {_applescript_string(body)} with title {_applescript_string(title)}"
        if sound:
            script += ' sound name "default"'
        return ["osascript", "-e", script]


class CommandLineNotifierSink(CommandNotificationSink):
    """External notifier: terminal-notifier on macOS, notify-send elsewhere."""

    name = "command-line"

    def __init__(self, command: str = "notify-send", sound_enabled: bool = True):
        super().__init__(sound_enabled)
        self.command = command

    def build_command(self, title, body, sound, actionable, url):
        if os.path.basename(self.command) == "terminal-notifier":
            cmd = [self.command, "-title", title, "-message", body]
            if sound:
                cmd.extend(["-sound", "default"])
            if actionable and url:
                cmd.extend(["-open", url])
            return cmd

        # notify-send has no sound or click support; the link goes in the body
        if actionable and url:
            body = f"{body}\n{url}"
        return [self.command, "--app-name=changelog-watcher", title, body]


class EmailNotificationSink(NotificationSink):
    """
    Sends notifications by email via SMTP with TLS.

    Supports both:
    - Port 465: SMTP_SSL (implicit TLS)
    - Other ports: SMTP with STARTTLS (explicit TLS)
    """

    name = "email"

    def __init__(
        self,
        smtp_host: str,
        smtp_port: int,
        smtp_user: str,
        smtp_password: str,
        email_from: str,
        email_to: str,
        sound_enabled: bool = True
    ):
        super().__init__(sound_enabled)
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.email_from = email_from
        self.email_to = email_to

    @classmethod
    def from_env(cls) -> "EmailNotificationSink":
        """
        Build the sink from SMTP_* and EMAIL_* environment variables.

        Raises:
            ValueError: If a variable is missing or SMTP_PORT is not an integer.
        """
        smtp_port_str = get_env_var("SMTP_PORT", required=True)
        try:
            smtp_port = int(smtp_port_str)
        except ValueError:
            raise ValueError(f"SMTP_PORT must be a valid integer, got: {smtp_port_str}")

        return cls(
            smtp_host=get_env_var("SMTP_HOST", required=True),
            smtp_port=smtp_port,
            smtp_user=get_env_var("SMTP_USER", required=True),
            smtp_password=get_env_var("SMTP_PASSWORD", required=True),
            email_from=get_env_var("EMAIL_FROM", required=True),
            email_to=get_env_var("EMAIL_TO", required=True),
        )

    def build_message(self, title: str, body: str, url: Optional[str] = None) -> EmailMessage:
        msg = EmailMessage()
        msg["Subject"] = title
        msg["From"] = self.email_from
        msg["To"] = self.email_to
        msg["Date"] = datetime.now(timezone.utc).strftime("%a, %d %b %Y %H:%M:%S +0000")

        text = body
        if url:
            text += f"\n\nView on GitHub: {url}"
        text += "\n\n--\nThis email was automatically sent by the Changelog Watcher."
        msg.set_content(text)
        return msg

    def show(self, title, body, sound=None, actionable=False, url=None) -> None:
        msg = self.build_message(title, body, url if actionable else None)
        ssl_context = ssl.create_default_context()

        logger.info(f"Connecting to SMTP server: {self.smtp_host}:{self.smtp_port}")

        try:
            if self.smtp_port == 465:
                with smtplib.SMTP_SSL(self.smtp_host, self.smtp_port, timeout=SMTP_TIMEOUT, context=ssl_context) as server:
                    server.login(self.smtp_user, self.smtp_password)
                    server.send_message(msg)
            else:
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=SMTP_TIMEOUT) as server:
                    server.starttls(context=ssl_context)
                    server.login(self.smtp_user, self.smtp_password)
                    server.send_message(msg)

        except smtplib.SMTPAuthenticationError as e:
            raise NotificationError(f"SMTP authentication failed: {e}", e)
        except smtplib.SMTPException as e:
            raise NotificationError(f"SMTP error while sending email: {e}", e)
        except ssl.SSLError as e:
            raise NotificationError(f"SSL/TLS error while sending email: {e}", e)
        except OSError as e:
            raise NotificationError(f"Failed to reach SMTP server: {e}", e)

        logger.info(f"Email notification sent to {self.email_to}")


class MultiNotificationSink(NotificationSink):
    """
    Fans a notification out to several sinks.

    Every sink is tried; if any failed, one NotificationError naming the
    failures is raised afterwards.
    """

    name = "multi"

    def __init__(self, sinks: List[NotificationSink], sound_enabled: bool = True):
        super().__init__(sound_enabled)
        self.sinks = list(sinks)
        for sink in self.sinks:
            sink.set_sound_enabled(sound_enabled)

    def set_sound_enabled(self, enabled: bool) -> None:
        super().set_sound_enabled(enabled)
        for sink in self.sinks:
            sink.set_sound_enabled(enabled)

    def show(self, title, body, sound=None, actionable=False, url=None) -> None:
        failures = []
        for sink in self.sinks:
            try:
                sink.show(title, body, sound=sound, actionable=actionable, url=url)
            except NotificationError as e:
                logger.error(f"{sink.name} notification failed: {e}")
                failures.append(f"{sink.name}: {e}")

        if failures:
            raise NotificationError("; ".join(failures))


# =============================================================================
# Selection
# =============================================================================


def is_email_configured() -> bool:
    """
    Check if email notification is configured.

    Returns:
        True if all email environment variables are set, False otherwise.
    """
    required_vars = [
        "SMTP_HOST", "SMTP_PORT", "SMTP_USER",
        "SMTP_PASSWORD", "EMAIL_FROM", "EMAIL_TO"
    ]

    for var in required_vars:
        value = os.environ.get(var)
        if not value or value.strip() == "":
            return False

    return True


def select_desktop_sink(platform: Optional[str] = None, sound_enabled: bool = True) -> NotificationSink:
    """
    Pick the desktop notification backend available on this host.

    Args:
        platform: Value of ``sys.platform``; defaults to the current one.
        sound_enabled: Initial sound setting.

    Returns:
        The preferred available sink, or a LogNotificationSink if the host
        has no notifier.
    """
    platform = platform or sys.platform

    if platform == "darwin":
        notifier = shutil.which("terminal-notifier")
        if notifier:
            return CommandLineNotifierSink(notifier, sound_enabled=sound_enabled)
        if shutil.which("osascript"):
            return NotificationCenterSink(sound_enabled=sound_enabled)
    else:
        notifier = shutil.which("notify-send")
        if notifier:
            return CommandLineNotifierSink(notifier, sound_enabled=sound_enabled)

    logger.warning(f"No desktop notifier found on {platform}, notifications will be logged only")
    return LogNotificationSink(sound_enabled=sound_enabled)


def select_notification_sink(
    platform: Optional[str] = None,
    sound_enabled: bool = True,
    dry_run: bool = False
) -> NotificationSink:
    """
    Build the notification sink for this process.

    Args:
        platform: Value of ``sys.platform``; defaults to the current one.
        sound_enabled: Initial sound setting.
        dry_run: If True, only log notifications.

    Returns:
        The configured sink; the email sink is added alongside the desktop
        one when SMTP settings are present.
    """
    if dry_run:
        logger.info("[DRY RUN] Notifications will be logged only")
        return LogNotificationSink(sound_enabled=sound_enabled)

    sink = select_desktop_sink(platform, sound_enabled=sound_enabled)
    logger.info(f"Using {sink.name} notification sink")

    if not is_email_configured():
        return sink

    try:
        email_sink = EmailNotificationSink.from_env()
    except ValueError as e:
        logger.error(f"Email configuration error: {e}")
        return sink

    logger.info(f"Email notifications enabled for {email_sink.email_to}")
    return MultiNotificationSink([sink, email_sink], sound_enabled=sound_enabled)
