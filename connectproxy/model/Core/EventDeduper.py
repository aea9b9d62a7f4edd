import threading
from typing import Dict, Set, Tuple

from connectproxy.model.Core.header import EventCategory


class EventDeduper:
    """
    Process-wide bookkeeping deciding which events are worth reporting.

    Every read and write happens under a single lock. Flags are monotonic:
    once an event has been reported for a key it stays reported.
    """

    # Successful completions per key that may still trigger a report.
    SUCCESS_REPORT_LIMIT = 2

    def __init__(self):
        self.reported: Set[Tuple[EventCategory, str]] = set()
        self.forward_counts: Dict[str, int] = {}
        self.logged_forwarding: Set[str] = set()
        self.lock = threading.Lock()

    def first_time(self, category: EventCategory, key: str) -> bool:
        """Check-and-set the flag for (category, key). True only for the first caller."""
        with self.lock:
            if (category, key) in self.reported:
                return False
            self.reported.add((category, key))
            return True

    def record_success(self, key: str) -> bool:
        """
        Count a successful forward for key and decide whether to report it.

        The count allows up to SUCCESS_REPORT_LIMIT reports, but the logged
        flag is shared between them, so only the first success per key ever
        returns True.
        """
        with self.lock:
            count = self.forward_counts.get(key, 0) + 1
            self.forward_counts[key] = count
            if count <= self.SUCCESS_REPORT_LIMIT and key not in self.logged_forwarding:
                self.logged_forwarding.add(key)
                return True
            return False

    def was_reported(self, category: EventCategory, key: str) -> bool:
        """Read-only view of a flag, for inspection; never sets it."""
        with self.lock:
            return (category, key) in self.reported

    def success_count(self, key: str) -> int:
        """Read-only view of the success counter, for inspection."""
        with self.lock:
            return self.forward_counts.get(key, 0)
