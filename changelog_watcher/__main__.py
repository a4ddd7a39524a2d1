"""Allow running the watcher with ``python -m changelog_watcher``."""

import sys

from changelog_watcher.main import main


if __name__ == "__main__":
    sys.exit(main())
