from __future__ import annotations

import logging

from .formatting import format_activity_message
from .telegram_notifier import Notifier
from .types import CorrelatedRecord, DispatchReport

logger = logging.getLogger(__name__)


class Dispatcher:
    def __init__(self, notifier: Notifier) -> None:
        self.notifier = notifier

    async def dispatch(self, correlated: CorrelatedRecord) -> DispatchReport:
        match = correlated.match
        delivered = 0
        failed = 0

        for watcher in match.watchers:
            try:
                text = format_activity_message(
                    correlated.record,
                    address=match.address,
                    alias=watcher.display_name,
                )
                await self.notifier.send(watcher.subscriber_id, text)
            except Exception as exc:
                failed += 1
                logger.exception(
                    "Failed to notify subscriber %s for tx %s: %s",
                    watcher.subscriber_id,
                    match.transfer.transaction_hash,
                    exc,
                )
                continue
            delivered += 1

        logger.info(
            "Dispatched tx %s for %s: delivered=%d failed=%d",
            match.transfer.transaction_hash,
            match.address,
            delivered,
            failed,
        )
        return DispatchReport(delivered=delivered, failed=failed)
