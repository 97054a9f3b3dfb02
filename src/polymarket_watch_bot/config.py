from __future__ import annotations

import os
from dataclasses import dataclass

from dotenv import load_dotenv

DEFAULT_CTF_CONTRACT = "0x4d97dcd97ec945f40cf65f87097ace5ea0476045"


@dataclass(frozen=True)
class Settings:
    telegram_bot_token: str
    polygon_wss_url: str
    supabase_url: str
    supabase_key: str
    supabase_table: str
    ctf_contract_address: str
    poly_data_api_base: str
    correlation_initial_delay_seconds: float
    correlation_retry_delay_seconds: float
    correlation_max_attempts: int
    activity_page_size: int
    reconnect_base_seconds: float
    reconnect_max_seconds: float
    reconnect_attempt_ceiling: int
    health_log_interval_seconds: int
    shutdown_grace_seconds: float
    log_level: str


def _required(name: str) -> str:
    value = os.getenv(name, "").strip()
    if not value:
        raise ValueError(f"Missing required environment variable: {name}")
    return value


def _optional_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None


def _optional_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}") from None


def load_settings() -> Settings:
    load_dotenv()
    settings = Settings(
        telegram_bot_token=_required("TELEGRAM_BOT_TOKEN"),
        polygon_wss_url=_required("POLYGON_WSS"),
        supabase_url=_required("SUPABASE_URL"),
        supabase_key=_required("SUPABASE_KEY"),
        supabase_table=os.getenv("SUPABASE_TABLE", "monitored_wallets").strip(),
        ctf_contract_address=os.getenv("CTF_CONTRACT_ADDRESS", DEFAULT_CTF_CONTRACT)
        .strip()
        .lower(),
        poly_data_api_base=os.getenv(
            "POLY_DATA_API_BASE", "https://data-api.polymarket.com"
        ).strip(),
        correlation_initial_delay_seconds=_optional_float("CORRELATION_INITIAL_DELAY_SECONDS", 5.0),
        correlation_retry_delay_seconds=_optional_float("CORRELATION_RETRY_DELAY_SECONDS", 5.0),
        correlation_max_attempts=_optional_int("CORRELATION_MAX_ATTEMPTS", 10),
        activity_page_size=_optional_int("ACTIVITY_PAGE_SIZE", 25),
        reconnect_base_seconds=_optional_float("RECONNECT_BASE_SECONDS", 1.0),
        reconnect_max_seconds=_optional_float("RECONNECT_MAX_SECONDS", 30.0),
        reconnect_attempt_ceiling=_optional_int("RECONNECT_ATTEMPT_CEILING", 5),
        health_log_interval_seconds=_optional_int("HEALTH_LOG_INTERVAL_SECONDS", 60),
        shutdown_grace_seconds=_optional_float("SHUTDOWN_GRACE_SECONDS", 10.0),
        log_level=os.getenv("LOG_LEVEL", "INFO").strip().upper(),
    )
    if settings.correlation_max_attempts < 1:
        raise ValueError("CORRELATION_MAX_ATTEMPTS must be at least 1")
    return settings
