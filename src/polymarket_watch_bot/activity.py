from __future__ import annotations

import asyncio
import logging
import math
from collections.abc import Awaitable, Callable, Iterable
from typing import Any, Protocol

import httpx

from .types import ActivityRecord, CorrelationResult, CorrelationStatus

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 25
DEFAULT_INITIAL_DELAY_SECONDS = 5.0
DEFAULT_RETRY_DELAY_SECONDS = 5.0
DEFAULT_MAX_ATTEMPTS = 10

Sleep = Callable[[float], Awaitable[Any]]


class ActivityFeedError(RuntimeError):
    pass


class ActivityFeed(Protocol):
    async def fetch(
        self, address: str, limit: int = DEFAULT_PAGE_SIZE, offset: int = 0
    ) -> list[ActivityRecord]: ...


class ActivityClient:
    def __init__(
        self,
        api_base: str = "https://data-api.polymarket.com",
        timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.api_base = api_base.rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def close(self) -> None:
        await self._client.aclose()

    async def fetch(
        self, address: str, limit: int = DEFAULT_PAGE_SIZE, offset: int = 0
    ) -> list[ActivityRecord]:
        user = address.lower()
        try:
            resp = await self._client.get(
                f"{self.api_base}/activity",
                params={"user": user, "limit": limit, "offset": offset},
            )
            resp.raise_for_status()
            data = resp.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise ActivityFeedError(f"Failed to fetch activity for {user}: {exc}") from exc

        if not isinstance(data, list):
            raise ActivityFeedError(f"Unexpected activity response format for {user}")
        return list(parse_activity_rows(data))


def parse_activity_rows(rows: Iterable[Any]) -> Iterable[ActivityRecord]:
    for row in rows:
        record = parse_activity_record(row)
        if record is None:
            logger.debug("Skipping malformed activity row: %r", row)
            continue
        yield record


def parse_activity_record(row: Any) -> ActivityRecord | None:
    if not isinstance(row, dict):
        return None
    try:
        timestamp = int(float(row["timestamp"]))
    except (KeyError, TypeError, ValueError, OverflowError):
        return None

    return ActivityRecord(
        proxy_wallet=_string_or_none(row.get("proxyWallet")),
        timestamp=timestamp,
        type=str(row.get("type") or "").upper(),
        side=_upper_or_none(row.get("side")),
        transaction_hash=_string_or_none(row.get("transactionHash")),
        size=_float_or_none(row.get("size")),
        usdc_size=_float_or_none(row.get("usdcSize")),
        price=_float_or_none(row.get("price")),
        title=_string_or_none(row.get("title")),
        slug=_string_or_none(row.get("slug")),
        event_slug=_string_or_none(row.get("eventSlug")),
        outcome=_string_or_none(row.get("outcome")),
        outcome_index=_int_or_none(row.get("outcomeIndex")),
        asset=_string_or_none(row.get("asset")),
        condition_id=_string_or_none(row.get("conditionId")),
        name=_string_or_none(row.get("name")),
        pseudonym=_string_or_none(row.get("pseudonym")),
    )


def pick_trade_candidate(
    records: Iterable[ActivityRecord], transaction_hash: str | None
) -> ActivityRecord | None:
    """Return the BUY trade whose tx hash matches ``transaction_hash``.

    Matching is exact on the hash (case-insensitive). Without a hash there is
    nothing to match on, so the answer is always None.
    """
    if not transaction_hash:
        return None
    target = transaction_hash.lower()

    trades = [r for r in records if r.type == "TRADE" and r.side == "BUY"]
    # sorted() is stable, so equal timestamps keep feed order.
    trades = sorted(trades, key=lambda r: r.timestamp, reverse=True)
    for trade in trades:
        if trade.transaction_hash and trade.transaction_hash.lower() == target:
            return trade
    return None


class RecordCorrelator:
    """Poll the activity feed until the trade behind a transfer shows up.

    The feed lags the chain by a few seconds, so the first lookup waits
    ``initial_delay`` and later ones are spaced ``retry_delay`` apart, at most
    ``max_attempts`` fetches in total.
    """

    def __init__(
        self,
        feed: ActivityFeed,
        *,
        initial_delay: float = DEFAULT_INITIAL_DELAY_SECONDS,
        retry_delay: float = DEFAULT_RETRY_DELAY_SECONDS,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        page_size: int = DEFAULT_PAGE_SIZE,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if not (math.isfinite(initial_delay) and math.isfinite(retry_delay)):
            raise ValueError("Correlation delays must be finite")
        self.feed = feed
        self.initial_delay = initial_delay
        self.retry_delay = retry_delay
        self.max_attempts = max_attempts
        self.page_size = page_size
        self._sleep = sleep

    async def correlate(
        self,
        address: str,
        transaction_hash: str | None,
        block_timestamp_ms: int | None = None,
    ) -> CorrelationResult:
        user = address.lower()
        await self._sleep(self.initial_delay)

        last_error: Exception | None = None
        failures = 0
        for attempt in range(1, self.max_attempts + 1):
            try:
                records = await self.feed.fetch(user, limit=self.page_size)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                failures += 1
                last_error = exc
                logger.warning(
                    "Activity fetch for %s failed (attempt %d/%d): %s",
                    user,
                    attempt,
                    self.max_attempts,
                    exc,
                )
            else:
                candidate = pick_trade_candidate(records, transaction_hash)
                if candidate is not None:
                    logger.info(
                        "Correlated tx %s for %s on attempt %d", transaction_hash, user, attempt
                    )
                    return CorrelationResult(
                        status=CorrelationStatus.FOUND, attempts=attempt, record=candidate
                    )

            if attempt < self.max_attempts:
                await self._sleep(self.retry_delay)

        if failures == self.max_attempts:
            return CorrelationResult(
                status=CorrelationStatus.ERROR, attempts=self.max_attempts, error=last_error
            )
        logger.debug(
            "No activity for tx %s (%s, block_ts=%s) after %d attempts",
            transaction_hash,
            user,
            block_timestamp_ms,
            self.max_attempts,
        )
        return CorrelationResult(status=CorrelationStatus.NOT_FOUND, attempts=self.max_attempts)


def _string_or_none(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _upper_or_none(value: Any) -> str | None:
    text = _string_or_none(value)
    return text.upper() if text else None


def _float_or_none(value: Any) -> float | None:
    if value is None or value == "":
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def _int_or_none(value: Any) -> int | None:
    number = _float_or_none(value)
    return int(number) if number is not None else None
