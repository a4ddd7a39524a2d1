"""
Compare module for the Changelog Watcher.

This module decides whether the tracked file changed since the last
notification by comparing the newest commit sha against the persisted
marker, and commits the new marker before anyone is notified.

Two overlapping checks may both see the old marker and both report a
change; both then write the same sha, so the stored state converges.
"""

import enum
from dataclasses import dataclass
from typing import Optional

from changelog_watcher.config import AppConfig, ConfigStore
from changelog_watcher.fetch import RemoteStateClient, RevisionRef
from changelog_watcher.utils import get_logger, utc_timestamp


# Module logger
logger = get_logger("compare")


class ChangeStatus(enum.Enum):
    CHANGED = "changed"
    UNCHANGED = "unchanged"


@dataclass
class TrackingState:
    """What we have already notified about."""
    last_known_revision_id: Optional[str] = None
    last_check_timestamp: Optional[str] = None

    @classmethod
    def from_config(cls, config: AppConfig) -> "TrackingState":
        return cls(
            last_known_revision_id=config.last_known_revision_id,
            last_check_timestamp=config.last_check_timestamp,
        )


@dataclass
class DetectionResult:
    """
    Outcome of a single change check.

    Attributes:
        status: CHANGED or UNCHANGED.
        revision: The revision fetched from GitHub, None if the file has
                  no history.
    """
    status: ChangeStatus
    revision: Optional[RevisionRef] = None

    @property
    def changed(self) -> bool:
        return self.status is ChangeStatus.CHANGED


def has_revision_changed(state: TrackingState, revision_id: str) -> bool:
    """
    Decide whether ``revision_id`` warrants a notification.

    An absent stored marker counts as a change, so the very first check
    notifies about the current version.

    Args:
        state: Persisted tracking state.
        revision_id: Freshly fetched revision identifier.

    Returns:
        True if the marker is absent or differs from ``revision_id``.
    """
    return state.last_known_revision_id is None or state.last_known_revision_id != revision_id


class ChangeDetector:
    """Compares the newest revision with the persisted marker."""

    def __init__(self, client: RemoteStateClient, store: ConfigStore):
        self.client = client
        self.store = store

    def load_state(self) -> TrackingState:
        """Read the persisted tracking state."""
        return TrackingState.from_config(self.store.load())

    def commit(self, revision_id: str) -> TrackingState:
        """
        Persist ``revision_id`` as the last known revision.

        Raises:
            ConfigPersistenceError: If the store cannot be written.
        """
        config = self.store.update({
            "last_known_revision_id": revision_id,
            "last_check_timestamp": utc_timestamp(),
        })
        return TrackingState.from_config(config)

    def check_for_change(self) -> DetectionResult:
        """
        Check whether the tracked file has a new revision.

        On a change the new revision is persisted before returning, so a
        failed notification is never repeated on the next poll.

        Returns:
            DetectionResult with CHANGED or UNCHANGED.

        Raises:
            RemoteUnavailable: If GitHub cannot be reached.
            ConfigPersistenceError: If the new marker cannot be saved.
        """
        revision = self.client.fetch_latest_revision()
        if revision is None:
            logger.info("Tracked file has no revision history, nothing to compare")
            return DetectionResult(ChangeStatus.UNCHANGED)

        state = self.load_state()

        if not has_revision_changed(state, revision.sha):
            logger.info(f"No change since revision {revision.sha[:7]}")
            return DetectionResult(ChangeStatus.UNCHANGED, revision)

        previous = state.last_known_revision_id
        logger.info(
            f"Revision changed: {previous[:7] if previous else 'none'} -> {revision.sha[:7]}"
        )
        self.commit(revision.sha)

        return DetectionResult(ChangeStatus.CHANGED, revision)
