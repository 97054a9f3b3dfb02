from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Protocol

from .activity import ActivityClient, RecordCorrelator
from .chain_stream import StreamConnection
from .config import Settings
from .dispatcher import Dispatcher
from .matcher import match_transfer
from .telegram_notifier import Notifier, TelegramNotifier
from .types import (
    ConnectionState,
    CorrelatedRecord,
    CorrelationStatus,
    DispatchReport,
    MatchEvent,
    TransferEvent,
)
from .watchlist import SupabaseWatchlistStore, WatchlistIndex

logger = logging.getLogger(__name__)


class TransferStream(Protocol):
    state: ConnectionState

    async def start(self) -> None: ...

    async def stop(self) -> None: ...

    async def block_timestamp_ms(self, block_number: int) -> int | None: ...


@dataclass
class Metrics:
    transfers_seen: int = 0
    matches: int = 0
    correlated: int = 0
    unresolved: int = 0
    correlation_errors: int = 0
    alerts_sent: int = 0
    alerts_failed: int = 0


class AlertService:
    def __init__(
        self,
        settings: Settings,
        *,
        index: WatchlistIndex | None = None,
        stream: TransferStream | None = None,
        correlator: RecordCorrelator | None = None,
        notifier: Notifier | None = None,
    ) -> None:
        self.settings = settings
        self.metrics = Metrics()
        # Only clients built here are closed here; injected ones belong to the caller.
        self._closers: list[Callable[[], Awaitable[Any]]] = []

        if index is None:
            store = SupabaseWatchlistStore(
                settings.supabase_url, settings.supabase_key, settings.supabase_table
            )
            self._closers.append(store.close)
            index = WatchlistIndex(store)
        self.index = index

        if correlator is None:
            feed = ActivityClient(settings.poly_data_api_base)
            self._closers.append(feed.close)
            correlator = RecordCorrelator(
                feed,
                initial_delay=settings.correlation_initial_delay_seconds,
                retry_delay=settings.correlation_retry_delay_seconds,
                max_attempts=settings.correlation_max_attempts,
                page_size=settings.activity_page_size,
            )
        self.correlator = correlator

        if notifier is None:
            telegram = TelegramNotifier(settings.telegram_bot_token)
            self._closers.append(telegram.close)
            notifier = telegram
        self.dispatcher = Dispatcher(notifier)

        if stream is None:
            stream = StreamConnection(
                settings.polygon_wss_url,
                settings.ctf_contract_address,
                self.handle_transfer,
                backoff_base=settings.reconnect_base_seconds,
                backoff_cap=settings.reconnect_max_seconds,
                attempt_ceiling=settings.reconnect_attempt_ceiling,
            )
        self.stream = stream

        self._inflight: set[asyncio.Task[DispatchReport | None]] = set()
        self._closing = False
        self._stop_requested = asyncio.Event()

    async def run(self) -> None:
        health_task: asyncio.Task[None] | None = None
        try:
            await self.index.load()
            await self.stream.start()
            health_task = asyncio.create_task(self._health_loop())
            logger.info("Watching %d wallets", len(self.index.all_entries()))
            await self._stop_requested.wait()
        finally:
            if health_task is not None:
                health_task.cancel()
                await asyncio.gather(health_task, return_exceptions=True)
            await self.shutdown()

    def stop(self) -> None:
        self._stop_requested.set()

    def handle_transfer(self, event: TransferEvent) -> None:
        self.metrics.transfers_seen += 1
        if self._closing:
            return

        match = match_transfer(event, self.index)
        if match is None:
            return

        self.metrics.matches += 1
        logger.info(
            "Transfer to watched %s (tx=%s, watchers=%d)",
            match.address,
            event.transaction_hash,
            len(match.watchers),
        )
        task = asyncio.create_task(self.process_match(match))
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)

    async def process_match(self, match: MatchEvent) -> DispatchReport | None:
        transfer = match.transfer
        try:
            block_ts = transfer.block_timestamp_ms
            if block_ts is None:
                block_ts = await self.stream.block_timestamp_ms(transfer.block_number)

            result = await self.correlator.correlate(
                match.address, transfer.transaction_hash, block_ts
            )
            if result.status is CorrelationStatus.ERROR:
                self.metrics.correlation_errors += 1
                logger.warning(
                    "Activity feed unavailable for tx %s after %d attempts: %s",
                    transfer.transaction_hash,
                    result.attempts,
                    result.error,
                )
                return None
            if result.record is None:
                self.metrics.unresolved += 1
                logger.info(
                    "No matching BUY trade for tx %s (feed not updated yet or not a buy)",
                    transfer.transaction_hash,
                )
                return None

            self.metrics.correlated += 1
            report = await self.dispatcher.dispatch(
                CorrelatedRecord(record=result.record, match=match)
            )
            self.metrics.alerts_sent += report.delivered
            self.metrics.alerts_failed += report.failed
            return report
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Failed to process transfer %s", transfer.transaction_hash)
            return None

    async def shutdown(self) -> None:
        if self._closing:
            return
        self._closing = True
        await self.stream.stop()

        pending = set(self._inflight)
        if pending:
            logger.info("Waiting for %d in-flight correlations", len(pending))
            _, pending = await asyncio.wait(pending, timeout=self.settings.shutdown_grace_seconds)
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

        self.index.close()
        for close in self._closers:
            await close()

    async def _health_loop(self) -> None:
        while True:
            await asyncio.sleep(self.settings.health_log_interval_seconds)
            logger.info(
                (
                    "health transfers_seen=%d matches=%d correlated=%d unresolved=%d "
                    "errors=%d alerts_sent=%d alerts_failed=%d in_flight=%d state=%s"
                ),
                self.metrics.transfers_seen,
                self.metrics.matches,
                self.metrics.correlated,
                self.metrics.unresolved,
                self.metrics.correlation_errors,
                self.metrics.alerts_sent,
                self.metrics.alerts_failed,
                len(self._inflight),
                self.stream.state.value,
            )
