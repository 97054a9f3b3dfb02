from __future__ import annotations

import asyncio
import logging
import math
import re
from typing import Any, Protocol

import httpx

from .types import WatchlistEntry

logger = logging.getLogger(__name__)

_ADDRESS_RE = re.compile(r"^0x[0-9a-f]{40}$")


class InvalidAddressError(ValueError):
    pass


class WatchlistStoreError(RuntimeError):
    pass


def normalize_address(address: str) -> str:
    if not isinstance(address, str):
        raise InvalidAddressError(f"Address must be a string, got {type(address).__name__}")
    text = address.strip().lower()
    if not _ADDRESS_RE.match(text):
        raise InvalidAddressError(f"Invalid address: {address!r}")
    return text


def normalize_subscriber_id(raw: Any) -> int:
    # bool is an int subclass; a True chat id is always a bug upstream.
    if isinstance(raw, bool):
        raise ValueError(f"Invalid subscriber id: {raw!r}")
    if isinstance(raw, int):
        return raw
    if isinstance(raw, float):
        if not math.isfinite(raw) or not raw.is_integer():
            raise ValueError(f"Invalid subscriber id: {raw!r}")
        return int(raw)
    if isinstance(raw, str):
        try:
            return int(raw.strip())
        except ValueError:
            raise ValueError(f"Invalid subscriber id: {raw!r}") from None
    raise ValueError(f"Invalid subscriber id: {raw!r}")


class WatchlistStore(Protocol):
    async def load_all(self) -> list[WatchlistEntry]: ...

    async def upsert(self, address: str, name: str | None, subscriber_id: int) -> None: ...

    async def delete(self, address: str, subscriber_id: int) -> None: ...


class SupabaseWatchlistStore:
    """Watchlist rows kept in a Supabase table via its PostgREST endpoint.

    Every failure raises WatchlistStoreError; a write is never dropped silently.
    """

    def __init__(
        self,
        url: str,
        key: str,
        table: str = "monitored_wallets",
        timeout: float = 15.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._endpoint = f"{url.rstrip('/')}/rest/v1/{table}"
        self._headers = {
            "apikey": key,
            "Authorization": f"Bearer {key}",
            "Content-Type": "application/json",
        }
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def close(self) -> None:
        await self._client.aclose()

    async def load_all(self) -> list[WatchlistEntry]:
        try:
            resp = await self._client.get(
                self._endpoint,
                params={"select": "address,name,chat_id"},
                headers=self._headers,
            )
            resp.raise_for_status()
            rows = resp.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise WatchlistStoreError(f"Failed to load watchlist: {exc}") from exc

        if not isinstance(rows, list):
            raise WatchlistStoreError("Unexpected watchlist response format")

        entries: list[WatchlistEntry] = []
        for row in rows:
            try:
                entries.append(
                    WatchlistEntry(
                        address=normalize_address(row["address"]),
                        subscriber_id=normalize_subscriber_id(row.get("chat_id")),
                        display_name=row.get("name") or None,
                    )
                )
            except (KeyError, TypeError, ValueError) as exc:
                raise WatchlistStoreError(f"Invalid watchlist row {row!r}: {exc}") from exc
        return entries

    async def upsert(self, address: str, name: str | None, subscriber_id: int) -> None:
        headers = {**self._headers, "Prefer": "resolution=merge-duplicates,return=minimal"}
        try:
            resp = await self._client.post(
                self._endpoint,
                params={"on_conflict": "address,chat_id"},
                json={"address": address, "name": name, "chat_id": subscriber_id},
                headers=headers,
            )
            resp.raise_for_status()
        except httpx.HTTPError as exc:
            raise WatchlistStoreError(f"Failed to add wallet {address}: {exc}") from exc

    async def delete(self, address: str, subscriber_id: int) -> None:
        try:
            resp = await self._client.delete(
                self._endpoint,
                params={"address": f"eq.{address}", "chat_id": f"eq.{subscriber_id}"},
                headers=self._headers,
            )
            resp.raise_for_status()
        except httpx.HTTPError as exc:
            raise WatchlistStoreError(
                f"Failed to remove wallet {address} for chat {subscriber_id}: {exc}"
            ) from exc


class WatchlistIndex:
    """In-memory address -> subscribers cache over a durable store.

    Writes go to the store first and only touch the cache once the store call
    returned. Reads are plain dict lookups and never await.
    """

    def __init__(self, store: WatchlistStore) -> None:
        self.store = store
        self._index: dict[str, dict[int, str | None]] = {}
        self._loaded = False
        self._load_lock = asyncio.Lock()

    @property
    def loaded(self) -> bool:
        return self._loaded

    async def load(self) -> None:
        if self._loaded:
            return
        async with self._load_lock:
            if self._loaded:
                return
            entries = await self.store.load_all()
            index: dict[str, dict[int, str | None]] = {}
            for entry in entries:
                index.setdefault(entry.address, {})[entry.subscriber_id] = entry.display_name
            self._index = index
            self._loaded = True
            logger.info(
                "Watchlist loaded: %d addresses, %d entries", len(index), len(entries)
            )

    def close(self) -> None:
        self._index = {}
        self._loaded = False

    def watchers_of(self, address: str) -> tuple[WatchlistEntry, ...]:
        try:
            key = normalize_address(address)
        except InvalidAddressError:
            return ()
        subscribers = self._index.get(key)
        if not subscribers:
            return ()
        return tuple(
            WatchlistEntry(address=key, subscriber_id=sid, display_name=name)
            for sid, name in subscribers.items()
        )

    def name_of(self, address: str) -> str | None:
        for entry in self.watchers_of(address):
            return entry.display_name
        return None

    def all_entries(self) -> list[WatchlistEntry]:
        return [
            WatchlistEntry(address=address, subscriber_id=sid, display_name=name)
            for address, subscribers in self._index.items()
            for sid, name in subscribers.items()
        ]

    def entries_for(self, subscriber_id: int) -> list[WatchlistEntry]:
        sid = normalize_subscriber_id(subscriber_id)
        return [entry for entry in self.all_entries() if entry.subscriber_id == sid]

    async def add(self, address: str, name: str | None, subscriber_id: int) -> WatchlistEntry:
        key = normalize_address(address)
        sid = normalize_subscriber_id(subscriber_id)
        display_name = (name or "").strip() or None

        await self.store.upsert(key, display_name, sid)

        # Rebuild the per-address map so concurrent readers see either the old or new dict.
        subscribers = dict(self._index.get(key, {}))
        subscribers[sid] = display_name
        self._index[key] = subscribers
        logger.info("Watching %s for subscriber %s (name=%s)", key, sid, display_name)
        return WatchlistEntry(address=key, subscriber_id=sid, display_name=display_name)

    async def remove(self, address: str, subscriber_id: int) -> None:
        key = normalize_address(address)
        sid = normalize_subscriber_id(subscriber_id)

        await self.store.delete(key, sid)

        subscribers = dict(self._index.get(key, {}))
        subscribers.pop(sid, None)
        if subscribers:
            self._index[key] = subscribers
        else:
            self._index.pop(key, None)
        logger.info("Stopped watching %s for subscriber %s", key, sid)
