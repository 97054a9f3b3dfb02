from __future__ import annotations

from datetime import datetime, timezone
from html import escape

from .types import ActivityRecord

PROFILE_BASE = "https://polymarket.com/profile"
EVENT_BASE = "https://polymarket.com/event"


def side_to_text(side: str | None) -> str:
    s = (side or "").upper()
    if s == "BUY":
        return "Bought"
    if s == "SELL":
        return "Sold"
    return "Unknown"


def short_address(address: str | None) -> str:
    if not address:
        return "-"
    addr = address.strip()
    if len(addr) <= 10:
        return addr
    return f"{addr[:6]}...{addr[-4:]}"


def format_amount(value: float | None, decimals: int = 2) -> str:
    if value is None:
        return "-"
    return f"{value:,.{decimals}f}"


def trade_time_text(ts: int | None) -> str:
    if ts is None:
        return "-"
    # The feed reports seconds; tolerate milliseconds too.
    seconds = ts / 1000 if ts > 1_000_000_000_000 else ts
    try:
        dt = datetime.fromtimestamp(seconds, tz=timezone.utc)
    except (ValueError, OverflowError, OSError):
        return "-"
    return dt.strftime("%Y-%m-%d %H:%M:%S UTC")


def build_profile_link(address: str | None) -> str | None:
    if not address:
        return None
    return f"{PROFILE_BASE}/{address.lower()}"


def build_event_link(record: ActivityRecord) -> str | None:
    if not record.slug or not record.event_slug:
        return None
    return f"{EVENT_BASE}/{record.event_slug}/{record.slug}"


def format_activity_message(
    record: ActivityRecord,
    *,
    address: str | None = None,
    alias: str | None = None,
) -> str:
    profile_address = (address or record.proxy_wallet or "").lower() or None
    short_addr = short_address(profile_address)
    user_label = f"{alias} ({short_addr})" if alias else short_addr
    amount = record.usdc_size if record.usdc_size is not None else record.size

    lines = [
        "🚨 <b>Polymarket Watch Alert</b>",
        f"👤 <b>User:</b> {escape(user_label)}",
        f"🛒 <b>Action:</b> {side_to_text(record.side)}",
        f"📅 <b>Market:</b> {escape(record.title or 'Unknown market')}",
        f"🎯 <b>Outcome:</b> {escape(record.outcome or 'Unknown')}",
        f"💰 <b>Amount:</b> ${format_amount(amount)}",
        f"📊 <b>Avg price:</b> ${format_amount(record.price, 4)}",
        f"⏰ <b>Time:</b> {trade_time_text(record.timestamp)}",
    ]

    links: list[str] = []
    profile_url = build_profile_link(profile_address)
    if profile_url:
        links.append(f'<a href="{escape(profile_url, quote=True)}">Profile</a>')
    event_url = build_event_link(record)
    if event_url:
        links.append(f'<a href="{escape(event_url, quote=True)}">Market</a>')
    if links:
        lines.append(f"🔗 {' | '.join(links)}")

    return "\n".join(lines)
