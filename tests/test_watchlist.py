import asyncio
import json

import httpx
import pytest

from polymarket_watch_bot.types import WatchlistEntry
from polymarket_watch_bot.watchlist import (
    InvalidAddressError,
    SupabaseWatchlistStore,
    WatchlistIndex,
    WatchlistStoreError,
    normalize_address,
    normalize_subscriber_id,
)

ADDR = "0x" + "ab" * 20
OTHER = "0x" + "cd" * 20


class MemoryStore:
    def __init__(self, rows=None) -> None:
        self.rows = {(e.address, e.subscriber_id): e.display_name for e in rows or []}
        self.load_calls = 0
        self.fail_writes = False

    async def load_all(self) -> list[WatchlistEntry]:
        self.load_calls += 1
        return [WatchlistEntry(a, s, n) for (a, s), n in self.rows.items()]

    async def upsert(self, address: str, name, subscriber_id: int) -> None:
        if self.fail_writes:
            raise WatchlistStoreError("db down")
        self.rows[(address, subscriber_id)] = name

    async def delete(self, address: str, subscriber_id: int) -> None:
        if self.fail_writes:
            raise WatchlistStoreError("db down")
        self.rows.pop((address, subscriber_id), None)


def _loaded_index(rows=None) -> WatchlistIndex:
    index = WatchlistIndex(MemoryStore(rows))
    asyncio.run(index.load())
    return index


def test_normalize_address_lowercases_and_validates() -> None:
    assert normalize_address("  0x" + "AB" * 20 + " ") == ADDR
    with pytest.raises(InvalidAddressError):
        normalize_address("0x1234")
    with pytest.raises(InvalidAddressError):
        normalize_address("0x" + "zz" * 20)


def test_normalize_subscriber_id_rejects_non_integers() -> None:
    assert normalize_subscriber_id("-100123") == -100123
    assert normalize_subscriber_id(42.0) == 42
    for bad in (float("nan"), float("inf"), 1.5, True, "abc", None):
        with pytest.raises(ValueError):
            normalize_subscriber_id(bad)


def test_load_is_idempotent() -> None:
    store = MemoryStore([WatchlistEntry(ADDR, 1, "whale")])
    index = WatchlistIndex(store)

    async def scenario() -> None:
        await asyncio.gather(index.load(), index.load())
        await index.load()

    asyncio.run(scenario())
    assert store.load_calls == 1
    assert index.loaded is True
    assert index.watchers_of(ADDR) == (WatchlistEntry(ADDR, 1, "whale"),)


def test_watchers_of_is_case_insensitive_and_never_raises() -> None:
    index = _loaded_index([WatchlistEntry(ADDR, 1, None), WatchlistEntry(ADDR, 2, "b")])
    assert {w.subscriber_id for w in index.watchers_of(ADDR.upper().replace("0X", "0x"))} == {1, 2}
    assert index.watchers_of(OTHER) == ()
    assert index.watchers_of("not-an-address") == ()


def test_add_then_remove_round_trip_leaves_index_unchanged() -> None:
    index = _loaded_index([WatchlistEntry(OTHER, 7, "other")])
    before = index.all_entries()

    asyncio.run(index.add(ADDR.upper().replace("0X", "0x"), "whale", 99))
    assert index.watchers_of(ADDR) == (WatchlistEntry(ADDR, 99, "whale"),)
    assert index.name_of(ADDR) == "whale"

    asyncio.run(index.remove(ADDR, 99))
    assert index.watchers_of(ADDR) == ()
    assert index.all_entries() == before


def test_add_is_write_through_on_store_failure() -> None:
    index = _loaded_index()
    index.store.fail_writes = True

    with pytest.raises(WatchlistStoreError):
        asyncio.run(index.add(ADDR, "whale", 1))

    assert index.watchers_of(ADDR) == ()
    assert index.all_entries() == []


def test_remove_keeps_entry_when_store_fails() -> None:
    index = _loaded_index([WatchlistEntry(ADDR, 1, None)])
    index.store.fail_writes = True

    with pytest.raises(WatchlistStoreError):
        asyncio.run(index.remove(ADDR, 1))

    assert len(index.watchers_of(ADDR)) == 1


def test_add_rejects_malformed_address_without_touching_store() -> None:
    index = _loaded_index()
    with pytest.raises(InvalidAddressError):
        asyncio.run(index.add("0xnope", None, 1))
    assert index.store.rows == {}


def test_entries_for_projects_by_subscriber() -> None:
    index = _loaded_index(
        [WatchlistEntry(ADDR, 1, None), WatchlistEntry(OTHER, 1, "o"), WatchlistEntry(OTHER, 2, None)]
    )
    assert {e.address for e in index.entries_for(1)} == {ADDR, OTHER}
    assert [e.address for e in index.entries_for(2)] == [OTHER]


def test_close_clears_index() -> None:
    index = _loaded_index([WatchlistEntry(ADDR, 1, None)])
    index.close()
    assert index.loaded is False
    assert index.all_entries() == []


def test_supabase_store_loads_and_writes() -> None:
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        if request.method == "GET":
            return httpx.Response(
                200, json=[{"address": ADDR.upper().replace("0X", "0x"), "name": None, "chat_id": "12"}]
            )
        return httpx.Response(201)

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    store = SupabaseWatchlistStore("https://db.example.com/", "key", client=client)

    async def scenario() -> list[WatchlistEntry]:
        entries = await store.load_all()
        await store.upsert(OTHER, "alias", 5)
        await store.delete(OTHER, 5)
        await store.close()
        return entries

    entries = asyncio.run(scenario())
    assert entries == [WatchlistEntry(ADDR, 12, None)]

    get, post, delete = requests
    assert get.url.path == "/rest/v1/monitored_wallets"
    assert get.headers["apikey"] == "key"
    assert post.url.params["on_conflict"] == "address,chat_id"
    assert "merge-duplicates" in post.headers["Prefer"]
    assert json.loads(post.content) == {"address": OTHER, "name": "alias", "chat_id": 5}
    assert delete.url.params["address"] == f"eq.{OTHER}"
    assert delete.url.params["chat_id"] == "eq.5"


def test_supabase_store_raises_on_http_error() -> None:
    client = httpx.AsyncClient(
        transport=httpx.MockTransport(lambda request: httpx.Response(500, json={"message": "boom"}))
    )
    store = SupabaseWatchlistStore("https://db.example.com", "key", client=client)

    with pytest.raises(WatchlistStoreError):
        asyncio.run(store.upsert(ADDR, None, 1))


def test_supabase_store_rejects_invalid_chat_id() -> None:
    client = httpx.AsyncClient(
        transport=httpx.MockTransport(
            lambda request: httpx.Response(200, json=[{"address": ADDR, "name": None, "chat_id": "x"}])
        )
    )
    store = SupabaseWatchlistStore("https://db.example.com", "key", client=client)

    with pytest.raises(WatchlistStoreError):
        asyncio.run(store.load_all())
