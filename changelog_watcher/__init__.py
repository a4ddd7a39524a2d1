"""
Changelog Watcher - Desktop notifications for new changelog releases.

This package provides functionality to:
- Poll GitHub for the latest commit touching a changelog file
- Detect new revisions against a persisted marker
- Parse the changelog into version entries
- Notify about the newest version via desktop notifications or email
"""

__version__ = "1.0.0"
__author__ = "Changelog Watcher Team"
