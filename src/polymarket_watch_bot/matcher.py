from __future__ import annotations

from typing import Protocol

from .types import MatchEvent, TransferEvent, WatchlistEntry


class WatcherLookup(Protocol):
    def watchers_of(self, address: str) -> tuple[WatchlistEntry, ...]: ...


def match_transfer(event: TransferEvent, index: WatcherLookup) -> MatchEvent | None:
    """Return a MatchEvent if someone watches ``event.to_address`` and value moved.

    Zero-amount pairs stay in the payload of a batch; they just cannot
    trigger a match on their own.
    """
    watchers = index.watchers_of(event.to_address)
    if not watchers:
        return None
    if not any(amount > 0 for amount in event.amounts):
        return None
    return MatchEvent(transfer=event, watchers=watchers)
