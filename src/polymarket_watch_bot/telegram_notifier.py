from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any, Protocol

import httpx

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    async def send(self, chat_id: int, text: str) -> None: ...


class TelegramNotifier:
    def __init__(
        self,
        bot_token: str,
        timeout: float = 15.0,
        retries: int = 4,
        client: httpx.AsyncClient | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.retries = retries
        self._url = f"https://api.telegram.org/bot{bot_token}/sendMessage"
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._sleep = sleep

    async def close(self) -> None:
        await self._client.aclose()

    async def send(self, chat_id: int, text: str) -> None:
        delay = 1.0

        for attempt in range(self.retries):
            try:
                response = await self._client.post(
                    self._url,
                    json={
                        "chat_id": chat_id,
                        "text": text,
                        "parse_mode": "HTML",
                        "disable_web_page_preview": False,
                    },
                )

                if response.status_code == 429 and attempt < self.retries - 1:
                    retry_after = 2.0
                    try:
                        payload = response.json()
                        retry_after = float(
                            payload.get("parameters", {}).get("retry_after", retry_after)
                        )
                    except (ValueError, TypeError, AttributeError):
                        pass
                    logger.warning("Telegram rate limited. Sleeping %.1fs", retry_after)
                    await self._sleep(retry_after)
                    continue

                response.raise_for_status()
                data = response.json()
                if not data.get("ok", False):
                    raise RuntimeError(f"Telegram send failed: {data}")
                return
            except Exception as exc:
                if attempt == self.retries - 1:
                    raise
                logger.warning("Telegram send to %s attempt %d failed: %s", chat_id, attempt + 1, exc)
                await self._sleep(delay)
                delay *= 2
