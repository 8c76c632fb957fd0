"""Short-lived memory of which entries each viewer has already been served."""

from __future__ import annotations

import hashlib
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Iterable


def build_fingerprint(
    forwarded_for: str | None,
    remote_address: str | None,
    user_agent: str | None,
    language: str | None,
) -> str:
    """Hash the client signals into a stable, opaque viewer key."""

    address = ""
    if forwarded_for:
        address = forwarded_for.split(",")[0].strip()
    if not address:
        address = (remote_address or "").strip()
    signals = {
        "ip": address,
        "lang": (language or "").strip(),
        "ua": (user_agent or "").strip(),
    }
    composed = "|".join(f"{name}={value}" for name, value in sorted(signals.items()))
    return hashlib.sha1(composed.encode("utf-8")).hexdigest()


@dataclass(slots=True)
class SessionMemoryEntry:
    fingerprint: str
    ids: list[int] = field(default_factory=list)
    updated_at: float = 0.0


class SessionMemory:
    """Process-local registry of recently served ids per fingerprint."""

    def __init__(
        self,
        ttl_seconds: float = 86_400,
        max_ids: int = 300,
        *,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl_seconds = ttl_seconds
        self.max_ids = max_ids
        self._clock = clock
        self._entries: dict[str, SessionMemoryEntry] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            self._expire(self._clock())
            return len(self._entries)

    def remember(self, fingerprint: str, ids: Iterable[int]) -> list[int]:
        """Append ``ids`` for ``fingerprint`` and return the stored list."""

        with self._lock:
            now = self._clock()
            self._expire(now)
            entry = self._entries.get(fingerprint)
            if entry is None:
                entry = SessionMemoryEntry(fingerprint)
                self._entries[fingerprint] = entry

            combined = [*entry.ids, *ids]
            seen: set[int] = set()
            latest_first: list[int] = []
            for item_id in reversed(combined):
                if item_id in seen:
                    continue
                seen.add(item_id)
                latest_first.append(item_id)
            ordered = latest_first[::-1]
            entry.ids = ordered[-self.max_ids:] if self.max_ids > 0 else []
            entry.updated_at = now
            return list(entry.ids)

    def recent(self, fingerprint: str) -> list[int]:
        with self._lock:
            self._expire(self._clock())
            entry = self._entries.get(fingerprint)
            return list(entry.ids) if entry else []

    def _expire(self, now: float) -> None:
        stale = [
            key
            for key, entry in self._entries.items()
            if now - entry.updated_at > self.ttl_seconds
        ]
        for key in stale:
            del self._entries[key]
