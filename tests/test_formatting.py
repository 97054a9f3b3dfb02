from polymarket_watch_bot.formatting import (
    build_event_link,
    build_profile_link,
    format_activity_message,
    short_address,
    side_to_text,
    trade_time_text,
)
from polymarket_watch_bot.types import ActivityRecord


def _record(**overrides) -> ActivityRecord:
    fields = dict(
        proxy_wallet="0x1234567890ABCDEF1234567890abcdef12345678",
        timestamp=1770724800,
        type="TRADE",
        side="BUY",
        transaction_hash="0xabc",
        size=300.0,
        usdc_size=125000.0,
        price=0.52,
        title="Will X <happen>?",
        slug="will-x-happen",
        event_slug="x-event",
        outcome="Yes",
    )
    fields.update(overrides)
    return ActivityRecord(**fields)


def test_side_to_text() -> None:
    assert side_to_text("buy") == "Bought"
    assert side_to_text("SELL") == "Sold"
    assert side_to_text(None) == "Unknown"


def test_short_address() -> None:
    assert short_address("0x1234567890abcdef") == "0x1234...cdef"
    assert short_address(None) == "-"


def test_links() -> None:
    assert build_profile_link("0xABC") == "https://polymarket.com/profile/0xabc"
    assert build_event_link(_record()) == "https://polymarket.com/event/x-event/will-x-happen"
    assert build_event_link(_record(slug=None)) is None


def test_trade_time_accepts_seconds_and_milliseconds() -> None:
    assert trade_time_text(1770724800) == "2026-02-10 12:00:00 UTC"
    assert trade_time_text(1770724800000) == "2026-02-10 12:00:00 UTC"


def test_format_activity_message_contains_required_fields() -> None:
    text = format_activity_message(_record(), alias="Whale & Co")

    assert "Whale &amp; Co (0x1234...5678)" in text
    assert "🛒 <b>Action:</b> Bought" in text
    assert "Will X &lt;happen&gt;?" in text
    assert "🎯 <b>Outcome:</b> Yes" in text
    assert "$125,000.00" in text
    assert "$0.5200" in text
    assert "2026-02-10 12:00:00 UTC" in text
    assert "https://polymarket.com/profile/0x1234567890abcdef1234567890abcdef12345678" in text
    assert "https://polymarket.com/event/x-event/will-x-happen" in text


def test_format_activity_message_falls_back_to_size_and_placeholders() -> None:
    text = format_activity_message(
        _record(usdc_size=None, price=None, title=None, outcome=None, slug=None),
        address="0x" + "ab" * 20,
    )
    assert "$300.00" in text
    assert "Unknown market" in text
    assert "Avg price:</b> $-" in text
    assert "Market</a>" not in text
    assert "0xabab...abab" in text


def test_trade_time_out_of_range_renders_placeholder() -> None:
    assert trade_time_text(900_000_000_000) == "-"
    assert trade_time_text(-(10**18)) == "-"
    assert "⏰ <b>Time:</b> -" in format_activity_message(_record(timestamp=900_000_000_000))
