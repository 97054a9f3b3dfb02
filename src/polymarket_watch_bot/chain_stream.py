from __future__ import annotations

import asyncio
import functools
import json
import logging
from collections.abc import Awaitable, Callable
from typing import Any, Protocol

import websockets
from eth_abi import decode as abi_decode
from eth_abi.exceptions import DecodingError
from eth_utils import keccak

from .types import ConnectionState, TransferEvent, TransferKind
from .watchlist import normalize_address

logger = logging.getLogger(__name__)

TRANSFER_SINGLE_TOPIC = "0x" + keccak(
    text="TransferSingle(address,address,address,uint256,uint256)"
).hex()
TRANSFER_BATCH_TOPIC = "0x" + keccak(
    text="TransferBatch(address,address,address,uint256[],uint256[])"
).hex()

EventCallback = Callable[[dict[str, Any]], None]
ClosedCallback = Callable[[int | None], None]
ErrorCallback = Callable[[BaseException], None]
TransferHandler = Callable[[TransferEvent], None]
Sleep = Callable[[float], Awaitable[Any]]


class RpcError(RuntimeError):
    def __init__(self, error: Any) -> None:
        self.error = error
        if isinstance(error, dict):
            message = f"JSON-RPC error {error.get('code')}: {error.get('message')}"
        else:
            message = f"JSON-RPC error: {error}"
        super().__init__(message)


class LogTransport(Protocol):
    async def connect(self) -> None: ...

    async def subscribe_logs(self, address: str, topics: list[str]) -> str: ...

    async def request(self, method: str, params: list[Any]) -> Any: ...

    async def close(self) -> None: ...


class TransportFactory(Protocol):
    def __call__(
        self,
        *,
        on_event: EventCallback,
        on_closed: ClosedCallback,
        on_error: ErrorCallback,
    ) -> LogTransport: ...


class WebSocketLogTransport:
    """JSON-RPC over a websocket, with close/error surfaced as callbacks.

    A single reader task owns the socket: responses are routed to the
    pending request with the same id, ``eth_subscription`` notifications go
    to ``on_event``. When the reader stops, ``on_closed`` or ``on_error`` fires
    once unless ``close()`` was requested.
    """

    def __init__(
        self,
        url: str,
        *,
        on_event: EventCallback,
        on_closed: ClosedCallback,
        on_error: ErrorCallback,
        open_timeout: float = 15.0,
        request_timeout: float = 15.0,
    ) -> None:
        self.url = url
        self.on_event = on_event
        self.on_closed = on_closed
        self.on_error = on_error
        self.open_timeout = open_timeout
        self.request_timeout = request_timeout
        self._ws: Any = None
        self._reader: asyncio.Task[None] | None = None
        self._pending: dict[int, asyncio.Future[Any]] = {}
        self._subscriptions: set[str] = set()
        self._next_id = 0
        self._closing = False

    async def connect(self) -> None:
        ws = await websockets.connect(
            self.url,
            ping_interval=20,
            ping_timeout=20,
            open_timeout=self.open_timeout,
        )
        if self._closing:
            # close() ran while the handshake was in flight.
            await ws.close()
            raise ConnectionError("Transport closed during connect")
        self._ws = ws
        self._reader = asyncio.create_task(self._read_loop())

    async def subscribe_logs(self, address: str, topics: list[str]) -> str:
        # Topics in a nested list are OR-ed in position 0.
        result = await self.request("eth_subscribe", ["logs", {"address": address, "topics": [topics]}])
        subscription_id = str(result)
        self._subscriptions.add(subscription_id)
        return subscription_id

    async def request(self, method: str, params: list[Any]) -> Any:
        if self._ws is None or self._closing:
            raise ConnectionError("Transport is not connected")
        self._next_id += 1
        request_id = self._next_id
        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        try:
            await self._ws.send(
                json.dumps({"jsonrpc": "2.0", "id": request_id, "method": method, "params": params})
            )
            return await asyncio.wait_for(future, timeout=self.request_timeout)
        finally:
            self._pending.pop(request_id, None)

    async def close(self) -> None:
        self._closing = True
        reader, self._reader = self._reader, None
        if reader is not None and reader is not asyncio.current_task():
            reader.cancel()
            await asyncio.gather(reader, return_exceptions=True)
        self._fail_pending(ConnectionError("Transport closed"))
        ws, self._ws = self._ws, None
        if ws is not None:
            await ws.close()

    async def _read_loop(self) -> None:
        ws = self._ws
        try:
            async for raw in ws:
                self._handle_message(raw)
        except asyncio.CancelledError:
            self._fail_pending(ConnectionError("Transport closed"))
            raise
        except Exception as exc:
            self._fail_pending(ConnectionError(f"Transport error: {exc}"))
            if not self._closing:
                self.on_error(exc)
            return

        self._fail_pending(ConnectionError("Transport closed"))
        if not self._closing:
            self.on_closed(getattr(ws, "close_code", None))

    def _handle_message(self, raw: str | bytes) -> None:
        try:
            message = json.loads(raw)
        except json.JSONDecodeError:
            logger.debug("Ignoring non-JSON websocket frame")
            return
        if not isinstance(message, dict):
            return

        request_id = message.get("id")
        if request_id is not None:
            future = self._pending.get(request_id)
            if future is None or future.done():
                return
            if "error" in message:
                future.set_exception(RpcError(message["error"]))
            else:
                future.set_result(message.get("result"))
            return

        if message.get("method") == "eth_subscription":
            params = message.get("params") or {}
            if str(params.get("subscription")) in self._subscriptions:
                result = params.get("result")
                if isinstance(result, dict):
                    self.on_event(result)
            return

        if "error" in message and not self._closing:
            self.on_error(RpcError(message["error"]))

    def _fail_pending(self, exc: BaseException) -> None:
        for future in self._pending.values():
            if not future.done():
                future.set_exception(exc)
        self._pending.clear()


def backoff_delay(attempt: int, base: float = 1.0, cap: float = 30.0, ceiling: int = 5) -> float:
    return min(cap, base * 2 ** min(max(attempt, 0), ceiling))


def _to_int(value: Any) -> int:
    if isinstance(value, bool):
        raise ValueError(f"Expected integer, got {value!r}")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        text = value.strip()
        if text.lower().startswith("0x"):
            return int(text, 16)
        return int(text)
    raise ValueError(f"Expected integer, got {value!r}")


def _topic_address(topic: str) -> str:
    text = topic.lower()
    if not text.startswith("0x") or len(text) != 66:
        raise ValueError(f"Malformed address topic: {topic!r}")
    return normalize_address("0x" + text[-40:])


def decode_transfer_log(log: dict[str, Any]) -> TransferEvent:
    """Decode a raw ``eth_subscribe("logs")`` payload into a TransferEvent.

    Raises ValueError for anything that is not a well-formed
    TransferSingle/TransferBatch log.
    """
    try:
        topics = [str(t).lower() for t in log["topics"]]
        data = str(log.get("data") or "0x")
        tx_hash = str(log["transactionHash"])
        log_index = _to_int(log["logIndex"])
        block_number = _to_int(log["blockNumber"])
        payload = bytes.fromhex(data[2:] if data.startswith("0x") else data)
    except (KeyError, TypeError, ValueError) as exc:
        raise ValueError(f"Malformed log: {exc}") from exc

    if len(topics) != 4:
        raise ValueError(f"Expected 4 topics, got {len(topics)}")
    operator, from_address, to_address = (_topic_address(t) for t in topics[1:4])

    try:
        if topics[0] == TRANSFER_SINGLE_TOPIC:
            token_id, amount = abi_decode(["uint256", "uint256"], payload)
            kind = TransferKind.SINGLE
            ids: tuple[int, ...] = (token_id,)
            amounts: tuple[int, ...] = (amount,)
        elif topics[0] == TRANSFER_BATCH_TOPIC:
            raw_ids, raw_amounts = abi_decode(["uint256[]", "uint256[]"], payload)
            kind = TransferKind.BATCH
            ids, amounts = tuple(raw_ids), tuple(raw_amounts)
        else:
            raise ValueError(f"Unexpected event topic {topics[0]}")
    except DecodingError as exc:
        raise ValueError(f"Undecodable transfer data: {exc}") from exc

    return TransferEvent(
        kind=kind,
        operator=operator,
        from_address=from_address,
        to_address=to_address,
        ids=ids,
        amounts=amounts,
        transaction_hash=tx_hash,
        log_index=log_index,
        block_number=block_number,
    )


class StreamConnection:
    """One live transfer-log subscription with a reconnect state machine.

    Connect failures and transport close/error all take the same path: tear
    the transport down and schedule a single reconnect after
    ``backoff_delay(attempt)``. Only ``stop()`` ends the cycle.
    """

    def __init__(
        self,
        ws_url: str,
        contract_address: str,
        on_transfer: TransferHandler,
        *,
        transport_factory: TransportFactory | None = None,
        backoff_base: float = 1.0,
        backoff_cap: float = 30.0,
        attempt_ceiling: int = 5,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        if not ws_url:
            raise ValueError("Stream websocket URL is not configured")
        self.ws_url = ws_url
        self.contract_address = normalize_address(contract_address)
        self.on_transfer = on_transfer
        self.backoff_base = backoff_base
        self.backoff_cap = backoff_cap
        self.attempt_ceiling = attempt_ceiling
        self._transport_factory = transport_factory or functools.partial(
            WebSocketLogTransport, ws_url
        )
        self._sleep = sleep

        self.state = ConnectionState.DISCONNECTED
        self.attempt = 0
        self.reconnect_delay: float | None = None
        self._transport: LogTransport | None = None
        self._reconnect_task: asyncio.Task[None] | None = None
        self._generation = 0
        self._stopped = True

    async def start(self) -> None:
        if not self._stopped:
            return
        self._stopped = False
        self.attempt = 0
        await self._connect()

    async def stop(self) -> None:
        self._stopped = True
        self._generation += 1
        task, self._reconnect_task = self._reconnect_task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        await self._teardown_transport()
        if self.state is not ConnectionState.DISCONNECTED:
            logger.info("Stream stopped")
        self.state = ConnectionState.DISCONNECTED
        self.reconnect_delay = None

    async def block_timestamp_ms(self, block_number: int) -> int | None:
        transport = self._transport
        if transport is None or self.state is not ConnectionState.CONNECTED:
            logger.warning("No live transport to resolve block %d timestamp", block_number)
            return None
        try:
            block = await transport.request("eth_getBlockByNumber", [hex(block_number), False])
            if not isinstance(block, dict):
                raise ValueError(f"unexpected block payload {block!r}")
            return _to_int(block["timestamp"]) * 1000
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("Failed to fetch block %d timestamp: %s", block_number, exc)
            return None

    async def _connect(self) -> None:
        self.state = ConnectionState.CONNECTING
        self.reconnect_delay = None
        self._generation += 1
        generation = self._generation
        transport = self._transport_factory(
            on_event=lambda log: self._handle_log(generation, log),
            on_closed=lambda code: self._handle_closed(generation, code),
            on_error=lambda exc: self._handle_error(generation, exc),
        )
        self._transport = transport

        try:
            await transport.connect()
            subscription_id = await transport.subscribe_logs(
                self.contract_address, [TRANSFER_SINGLE_TOPIC, TRANSFER_BATCH_TOPIC]
            )
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            if self._stopped or generation != self._generation:
                await transport.close()
                return
            logger.warning("Stream connect to %s failed: %s", self.ws_url, exc)
            self._schedule_reconnect()
            return

        if self._stopped or generation != self._generation:
            # stop() raced the handshake and may have closed a half-open socket.
            await transport.close()
            return
        self.attempt = 0
        self.state = ConnectionState.CONNECTED
        logger.info(
            "Connected to %s (contract=%s subscription=%s)",
            self.ws_url,
            self.contract_address,
            subscription_id,
        )

    def _schedule_reconnect(self) -> None:
        if self._stopped:
            return
        if self._reconnect_task is not None and not self._reconnect_task.done():
            return
        # Callbacks from the outgoing transport are stale from here on.
        self._generation += 1
        self.attempt += 1
        delay = backoff_delay(self.attempt, self.backoff_base, self.backoff_cap, self.attempt_ceiling)
        self.state = ConnectionState.RECONNECTING
        self.reconnect_delay = delay
        logger.warning("Reconnecting in %.1fs (attempt %d)", delay, self.attempt)
        self._reconnect_task = asyncio.create_task(self._reconnect_after(delay))

    async def _reconnect_after(self, delay: float) -> None:
        await self._teardown_transport()
        await self._sleep(delay)
        self._reconnect_task = None
        if self._stopped:
            return
        await self._connect()

    async def _teardown_transport(self) -> None:
        transport, self._transport = self._transport, None
        if transport is None:
            return
        try:
            await transport.close()
        except Exception as exc:
            logger.debug("Ignoring error while closing transport: %s", exc)

    def _handle_log(self, generation: int, log: dict[str, Any]) -> None:
        if self._stopped or generation != self._generation:
            return
        if log.get("removed"):
            logger.debug("Skipping removed log %s", log.get("transactionHash"))
            return
        try:
            event = decode_transfer_log(log)
        except ValueError as exc:
            logger.warning("Dropping malformed transfer log %s: %s", log.get("transactionHash"), exc)
            return
        try:
            self.on_transfer(event)
        except Exception:
            logger.exception("Transfer handler failed for %s", event.transaction_hash)

    def _handle_closed(self, generation: int, code: int | None) -> None:
        if self._stopped or generation != self._generation:
            return
        logger.warning("Websocket closed (code=%s), scheduling reconnect", code)
        self._schedule_reconnect()

    def _handle_error(self, generation: int, exc: BaseException) -> None:
        if self._stopped or generation != self._generation:
            return
        logger.warning("Websocket error (%s), scheduling reconnect", exc)
        self._schedule_reconnect()
