from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Hashable


# Reserved keys: the same tracker serves per-instance retries and the
# process-wide sync retry paths.
BOOTSTRAP_KEY = "__bootstrap__"
DEFERRED_RESYNC_KEY = "__deferred_resync__"


@dataclass
class RetryEntry:
    attempt_count: int = 0
    created_at: float = field(default_factory=time.time)


class RetryTracker:
    """Per-key failure counters with an attempt ceiling.

    No entry for a key means no outstanding failure for it.
    """

    def __init__(self, max_attempts: int):
        self.max_attempts = max(0, int(max_attempts))
        self._entries: dict[Hashable, RetryEntry] = {}

    def record_failure(self, key: Hashable) -> int:
        entry = self._entries.get(key)
        if entry is None:
            entry = RetryEntry()
            self._entries[key] = entry
        entry.attempt_count += 1
        return entry.attempt_count

    def should_abandon(self, key: Hashable) -> bool:
        entry = self._entries.get(key)
        return entry is not None and entry.attempt_count > self.max_attempts

    def clear(self, key: Hashable) -> None:
        self._entries.pop(key, None)

    def attempts(self, key: Hashable) -> int:
        entry = self._entries.get(key)
        return entry.attempt_count if entry else 0

    def __contains__(self, key: Hashable) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def snapshot(self) -> dict[str, int]:
        return {str(k): e.attempt_count for k, e in self._entries.items()}
