"""Shared configuration loader and Pydantic settings.

Sections:
  - positions: expiry horizon, opposite-signal lookbacks, batch size
  - oracle / chain: price oracle and RPC endpoints, per-call timeouts
  - verification: thresholds, probe timeouts, batch size
  - selector: lookback windows, factor weights, trending size
  - storage / observability
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, field_validator


_PROJECT_ROOT = Path(__file__).resolve().parent.parent

SELECTOR_FACTORS = ("pnl", "confidence", "reputation", "recency", "conviction")


class PositionConfig(BaseModel):
    max_age_days: int = 30
    batch_size: int = 10
    # action of the NEW signal -> days to look back for positions it closes
    opposite_lookback_days: dict[str, int] = Field(default_factory=lambda: {
        "SELL": 30, "SHORT": 90, "BUY": 90,
    })


class OracleConfig(BaseModel):
    provider: str = "coingecko"  # coingecko | static
    coingecko_url: str = "https://api.coingecko.com/api/v3"
    dexscreener_url: str = "https://api.dexscreener.com/latest/dex"
    timeout_secs: float = 5.0
    max_retries: int = 2
    static_prices: dict[str, float] = Field(default_factory=dict)


class ChainConfig(BaseModel):
    rpc_url: str = Field(
        default_factory=lambda: os.environ.get("BASE_RPC_URL", "https://mainnet.base.org")
    )
    timeout_secs: float = 5.0


class VerificationConfig(BaseModel):
    verified_threshold: float = 60.0
    min_closed_signals: int = 5
    recent_activity_days: int = 30
    probe_timeout_secs: float = 5.0
    batch_size: int = 10


class SelectorConfig(BaseModel):
    windows_hours: list[int] = Field(default_factory=lambda: [24, 168, 720])
    weights: dict[str, float] = Field(default_factory=lambda: {
        "pnl": 40.0,
        "confidence": 20.0,
        "reputation": 20.0,
        "recency": 15.0,
        "conviction": 5.0,
    })
    pnl_cap_pct: float = 50.0        # PnL at which the pnl factor saturates
    leverage_cap: float = 20.0       # leverage at which the conviction half saturates
    trending_window_hours: int = 24
    trending_top_n: int = 5

    @field_validator("weights")
    @classmethod
    def _weights_cover_factors(cls, v: dict[str, float]) -> dict[str, float]:
        missing = set(SELECTOR_FACTORS) - set(v)
        unknown = set(v) - set(SELECTOR_FACTORS)
        if missing or unknown:
            raise ValueError(
                f"selector weights must cover exactly {SELECTOR_FACTORS}: "
                f"missing={sorted(missing)} unknown={sorted(unknown)}"
            )
        if any(w < 0 for w in v.values()):
            raise ValueError("selector weights must be non-negative")
        return v

    @field_validator("windows_hours")
    @classmethod
    def _windows_ascending(cls, v: list[int]) -> list[int]:
        if not v or any(h <= 0 for h in v) or v != sorted(v):
            raise ValueError("windows_hours must be positive and ascending")
        return v


class StorageConfig(BaseModel):
    sqlite_path: str = "data/ledger.db"


class ObservabilityConfig(BaseModel):
    log_level: str = "INFO"
    log_format: str = "json"
    log_file: str = "logs/ledger.log"


class LedgerConfig(BaseModel):
    positions: PositionConfig = Field(default_factory=PositionConfig)
    oracle: OracleConfig = Field(default_factory=OracleConfig)
    chain: ChainConfig = Field(default_factory=ChainConfig)
    verification: VerificationConfig = Field(default_factory=VerificationConfig)
    selector: SelectorConfig = Field(default_factory=SelectorConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    observability: ObservabilityConfig = Field(default_factory=ObservabilityConfig)


def load_config(path: str | Path | None = None) -> LedgerConfig:
    """Load config from YAML file, falling back to defaults."""
    if path is None:
        path = _PROJECT_ROOT / "config.yaml"
    path = Path(path)
    if path.exists():
        with open(path) as f:
            raw: dict[str, Any] = yaml.safe_load(f) or {}
        return LedgerConfig(**raw)
    return LedgerConfig()
