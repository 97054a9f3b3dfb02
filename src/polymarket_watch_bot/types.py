from __future__ import annotations

import enum
from dataclasses import dataclass, field


@dataclass(frozen=True)
class WatchlistEntry:
    address: str
    subscriber_id: int
    display_name: str | None = None


class TransferKind(str, enum.Enum):
    SINGLE = "single"
    BATCH = "batch"


@dataclass(frozen=True)
class TransferEvent:
    kind: TransferKind
    operator: str
    from_address: str
    to_address: str
    ids: tuple[int, ...]
    amounts: tuple[int, ...]
    transaction_hash: str
    log_index: int
    block_number: int
    block_timestamp_ms: int | None = None

    def __post_init__(self) -> None:
        if len(self.ids) != len(self.amounts):
            raise ValueError(
                f"ids/amounts length mismatch ({len(self.ids)} != {len(self.amounts)})"
            )
        if self.kind is TransferKind.SINGLE and len(self.ids) != 1:
            raise ValueError("single transfer must carry exactly one id/amount pair")

    @property
    def pairs(self) -> list[tuple[int, int]]:
        return list(zip(self.ids, self.amounts))


@dataclass(frozen=True)
class MatchEvent:
    transfer: TransferEvent
    watchers: tuple[WatchlistEntry, ...]

    @property
    def address(self) -> str:
        return self.transfer.to_address


@dataclass(frozen=True)
class ActivityRecord:
    proxy_wallet: str | None
    timestamp: int
    type: str
    side: str | None
    transaction_hash: str | None
    size: float | None = None
    usdc_size: float | None = None
    price: float | None = None
    title: str | None = None
    slug: str | None = None
    event_slug: str | None = None
    outcome: str | None = None
    outcome_index: int | None = None
    asset: str | None = None
    condition_id: str | None = None
    name: str | None = None
    pseudonym: str | None = None


@dataclass(frozen=True)
class CorrelatedRecord:
    record: ActivityRecord
    match: MatchEvent


class CorrelationStatus(str, enum.Enum):
    FOUND = "found"
    NOT_FOUND = "not_found"
    ERROR = "error"


@dataclass(frozen=True)
class CorrelationResult:
    status: CorrelationStatus
    attempts: int
    record: ActivityRecord | None = None
    error: BaseException | None = field(default=None, compare=False)

    @property
    def found(self) -> bool:
        return self.status is CorrelationStatus.FOUND


class ConnectionState(str, enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"


@dataclass(frozen=True)
class DispatchReport:
    delivered: int = 0
    failed: int = 0
