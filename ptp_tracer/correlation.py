"""
Sync correlation heuristic.

Until Announce traffic makes a BMCA election possible, the transmitter a
receiver listens to is guessed from the Sync (and Follow_Up) senders seen
recently in the receiver's domain. The guess is always overridden by the
election once it has a result for that domain.
"""

import time
from dataclasses import dataclass
from typing import Callable, Dict, List, NamedTuple, Optional, Tuple

from .config import STALE_SYNC_CONFIDENCE, SYNC_EXPIRY_SECONDS, SYNC_RECENT_SECONDS
from .messages import ClockIdentity


class Selection(NamedTuple):
    identity: Optional[ClockIdentity]
    confidence: float


# No Sync seen in the domain at all
NO_SYNC_TRAFFIC = Selection(None, 0.0)


@dataclass
class SyncSender:
    identity: ClockIdentity
    last_sync: float


class SyncCorrelationCache:
    def __init__(
        self,
        clock: Callable[[], float] = time.monotonic,
        recent_seconds: float = SYNC_RECENT_SECONDS,
        expiry_seconds: float = SYNC_EXPIRY_SECONDS,
    ):
        self._clock = clock
        self.recent_seconds = recent_seconds
        self.expiry_seconds = expiry_seconds
        self._senders: Dict[int, List[SyncSender]] = {}

    def record(self, domain: int, identity: ClockIdentity) -> None:
        """Upserts the sender's last Sync time, then drops expired entries."""
        now = self._clock()
        senders = self._senders.setdefault(domain, [])
        for sender in senders:
            if sender.identity == identity:
                sender.last_sync = now
                break
        else:
            senders.append(SyncSender(identity, now))
        self.expire()

    def expire(self) -> None:
        now = self._clock()
        for domain in list(self._senders):
            alive = [s for s in self._senders[domain] if now - s.last_sync < self.expiry_seconds]
            if alive:
                self._senders[domain] = alive
            else:
                del self._senders[domain]

    def domains(self) -> List[int]:
        self.expire()
        return list(self._senders)

    def senders(self, domain: int) -> List[SyncSender]:
        self.expire()
        return list(self._senders.get(domain, []))

    def most_recent(self, domain: int) -> Optional[Tuple[ClockIdentity, float]]:
        """
        Returns:
            tuple: (identity, age in seconds) of the latest Sync sender in the
            domain, or None if the domain has no live entry.
        """
        senders = self.senders(domain)
        if not senders:
            return None
        latest = max(senders, key=lambda s: s.last_sync)
        return latest.identity, self._clock() - latest.last_sync

    def select_transmitter(self, domain: int) -> Selection:
        """
        Guesses the transmitter for a receiver in the given domain.

        Returns:
            Selection: confidence 1.0 for a Sync younger than `recent_seconds`,
            STALE_SYNC_CONFIDENCE for an older one, NO_SYNC_TRAFFIC if the
            domain has no Sync sender at all.
        """
        latest = self.most_recent(domain)
        if latest is None:
            return NO_SYNC_TRAFFIC
        identity, age = latest
        if age < self.recent_seconds:
            return Selection(identity, 1.0)
        return Selection(identity, STALE_SYNC_CONFIDENCE)

    def clear(self) -> None:
        self._senders.clear()

    def __len__(self) -> int:
        return sum(len(senders) for senders in self._senders.values())
