"""Process-local read-through cache of quota answers.

Entries are keyed by (user_id, resource) and expire after a short TTL, or
earlier at an instant the caller supplies (the end of the AI recipe cycle or
of a trial). Writes never update an entry; they delete every entry for the
user and bump the user's generation so a read that started before the write
cannot store its result. Instances are not shared across processes and may
disagree with each other for at most one TTL.
"""

import itertools
from dataclasses import dataclass
from datetime import UTC, datetime

from cachetools import LRUCache, TTLCache

from pantry_billing.domain.tiers import QuotaResource


@dataclass(frozen=True)
class QuotaCheck:
    allowed: bool
    remaining: int | str  # int or "unlimited"
    limit: int | str

    def to_dict(self) -> dict:
        return {"allowed": self.allowed, "remaining": self.remaining, "limit": self.limit}


class QuotaCache:
    """TTL cache of QuotaCheck results per user and resource."""

    def __init__(self, ttl_seconds: float = 30, max_entries: int = 10_000, timer=None):
        kwargs = {"timer": timer} if timer is not None else {}
        self._entries: TTLCache = TTLCache(maxsize=max_entries, ttl=ttl_seconds, **kwargs)
        # Values come from one process-wide counter so an evicted generation is never reissued
        self._generations: LRUCache = LRUCache(maxsize=max_entries)
        self._counter = itertools.count(1)

    def generation(self, user_id: str) -> int:
        """Token to pass back to ``set``; changes whenever the user is invalidated."""
        return self._generations.get(user_id, 0)

    def get(self, user_id: str, resource: QuotaResource, now: datetime | None = None) -> QuotaCheck | None:
        entry = self._entries.get((user_id, resource))
        if entry is None:
            return None
        result, valid_until = entry
        if valid_until is not None and (now or datetime.now(UTC)) >= valid_until:
            self._entries.pop((user_id, resource), None)
            return None
        return result

    def set(
        self,
        user_id: str,
        resource: QuotaResource,
        result: QuotaCheck,
        generation: int | None = None,
        valid_until: datetime | None = None,
    ) -> bool:
        """Store ``result`` unless the user was invalidated since ``generation`` was read."""
        if generation is not None and generation != self.generation(user_id):
            return False
        self._entries[(user_id, resource)] = (result, valid_until)
        return True

    def invalidate(self, user_id: str) -> None:
        self._generations[user_id] = next(self._counter)
        for resource in QuotaResource:
            self._entries.pop((user_id, resource), None)

    def __len__(self) -> int:
        return len(self._entries)
