"""Per-window deduplication of URL checks."""

import threading


class DedupWindow:
    """Thread-safe set of URLs already checked in the current window.

    The tick loop reads and marks URLs while the reset loop clears the whole
    set, so every access goes through one lock. ``reset()`` replaces the set
    with a fresh empty one; entries never expire individually.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._checked: set[str] = set()

    def should_check(self, url: str) -> bool:
        """Return True if the URL has not been checked in this window."""
        with self._lock:
            return url not in self._checked

    def mark_checked(self, url: str) -> None:
        with self._lock:
            self._checked.add(url)

    def reset(self) -> None:
        """Start a new window: every URL becomes eligible again."""
        with self._lock:
            self._checked = set()

    def __len__(self) -> int:
        with self._lock:
            return len(self._checked)

    def __contains__(self, url: object) -> bool:
        with self._lock:
            return url in self._checked
