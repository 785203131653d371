"""Environment driven settings for Furfolio."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation

from dotenv import load_dotenv

from furfolio.grooming.stats import RETENTION_RISK_DAYS, REWARD_THRESHOLD, TOP_SPENDER_THRESHOLD

load_dotenv()


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from exc



def _env_decimal(name: str, default: Decimal) -> Decimal:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = Decimal(raw.strip())
    except InvalidOperation as exc:
        raise ValueError(f"{name} must be a number, got {raw!r}") from exc
    if not value.is_finite():
        raise ValueError(f"{name} must be a number, got {raw!r}")
    return value


@dataclass
class Config:
    database_path: str = field(
        default_factory=lambda: os.environ.get("FURFOLIO_DATABASE", "furfolio.db")
    )
    secret_key: str = field(
        default_factory=lambda: os.environ.get("FURFOLIO_SECRET_KEY", "furfolio-secret")
    )
    reward_threshold: int = field(
        default_factory=lambda: _env_int("FURFOLIO_REWARD_THRESHOLD", REWARD_THRESHOLD)
    )
    retention_days: int = field(
        default_factory=lambda: _env_int("FURFOLIO_RETENTION_DAYS", RETENTION_RISK_DAYS)
    )
    top_spender_threshold: Decimal = field(
        default_factory=lambda: _env_decimal("FURFOLIO_TOP_SPENDER_THRESHOLD", TOP_SPENDER_THRESHOLD)
    )
    log_level: str = field(
        default_factory=lambda: os.environ.get("FURFOLIO_LOG_LEVEL", "INFO").upper()
    )

    def __post_init__(self) -> None:
        if self.reward_threshold < 1:
            raise ValueError("reward_threshold must be at least 1")
        if self.retention_days < 0:
            raise ValueError("retention_days must not be negative")


__all__ = ["Config"]
