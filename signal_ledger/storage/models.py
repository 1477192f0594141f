"""Ledger records — Pydantic models for providers and signals.

One canonical ``SignalRecord`` covers both API submissions (camelCase
keys) and rows from the older flat trade log (snake_case keys, ``pnl``
instead of ``pnl_pct``). ``source`` records where a row came from and is
never branched on by the engines.
"""

from __future__ import annotations

import datetime as dt
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


def utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def _as_utc(value: dt.datetime | None) -> dt.datetime | None:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=dt.timezone.utc)
    return value


# ── Enums ────────────────────────────────────────────────────────────

class SignalAction(str, Enum):
    LONG = "LONG"
    SHORT = "SHORT"
    BUY = "BUY"
    SELL = "SELL"


class SignalStatus(str, Enum):
    OPEN = "open"
    CLOSED = "closed"
    STOPPED = "stopped"


class SignalCategory(str, Enum):
    SPOT = "spot"
    FUTURES = "futures"
    OPTIONS = "options"
    DEFI = "defi"
    NFT = "nft"
    MACRO = "macro"
    SWING = "swing"
    SCALP = "scalp"
    ARBITRAGE = "arbitrage"


class SignalSource(str, Enum):
    API = "api"
    LEGACY = "legacy"


class CloseReason(str, Enum):
    TAKE_PROFIT = "take_profit"
    STOP_LOSS = "stop_loss"
    EXPIRED = "expired"
    OPPOSITE_SIGNAL = "opposite_signal"


class Tier(str, Enum):
    UNRANKED = "unranked"
    BRONZE = "bronze"
    SILVER = "silver"
    GOLD = "gold"
    DIAMOND = "diamond"

    @property
    def rank(self) -> int:
        return _TIER_ORDER.index(self)


_TIER_ORDER = (Tier.UNRANKED, Tier.BRONZE, Tier.SILVER, Tier.GOLD, Tier.DIAMOND)


class CheckType(str, Enum):
    SOCIAL = "social"
    ONCHAIN = "onchain"
    TRACK_RECORD = "track_record"
    SIGNAL_QUALITY = "signal_quality"


class CheckStatus(str, Enum):
    PASS = "pass"
    WARN = "warn"
    FAIL = "fail"


# ── Records ──────────────────────────────────────────────────────────

class SignalRecord(BaseModel):
    """A provider's published trade claim and its lifecycle state."""
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        use_enum_values=False,
    )

    id: str
    provider: str
    action: SignalAction
    token: str = ""
    token_address: str | None = None
    chain: str = "base"
    category: SignalCategory = SignalCategory.SPOT

    entry_price: float | None = None
    leverage: float | None = 1.0
    collateral_usd: float | None = None
    stop_loss_pct: float | None = None
    take_profit_pct: float | None = None

    tx_hash: str | None = None
    exit_tx_hash: str | None = None
    confidence: float | None = None
    reasoning: str | None = None

    status: SignalStatus = SignalStatus.OPEN
    timestamp: dt.datetime = Field(default_factory=utcnow)
    expires_at: dt.datetime | None = None

    # live valuation, meaningful only while open
    current_price: float | None = None
    unrealized_pnl_pct: float | None = None
    unrealized_pnl_usd: float | None = None
    max_drawdown_pct: float | None = None

    # realised outcome, meaningful only once closed/stopped
    exit_price: float | None = None
    exit_timestamp: dt.datetime | None = None
    pnl_pct: float | None = None
    pnl_usd: float | None = None

    parent_signal_id: str | None = None
    source: SignalSource = SignalSource.API

    @field_validator("provider")
    @classmethod
    def _lower_provider(cls, v: str) -> str:
        return v.lower()

    @field_validator("action", mode="before")
    @classmethod
    def _upper_action(cls, v: Any) -> Any:
        return v.upper() if isinstance(v, str) else v

    @field_validator("status", "category", mode="before")
    @classmethod
    def _lower_enum(cls, v: Any) -> Any:
        return v.lower() if isinstance(v, str) else v

    @field_validator("timestamp", "expires_at", "exit_timestamp")
    @classmethod
    def _utc(cls, v: dt.datetime | None) -> dt.datetime | None:
        return _as_utc(v)

    @property
    def is_open(self) -> bool:
        return self.status == SignalStatus.OPEN

    @property
    def effective_pnl_pct(self) -> float | None:
        """Realised PnL once closed, live PnL while open."""
        if self.is_open:
            return self.unrealized_pnl_pct
        return self.pnl_pct


class ProviderRecord(BaseModel):
    """A registered signal provider and its derived trust projection."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    address: str
    name: str
    bio: str | None = None
    description: str | None = None
    avatar: str | None = None
    chain: str = "base"
    agent: str | None = None
    website: str | None = None
    twitter: str | None = None
    farcaster: str | None = None
    github: str | None = None
    registered_at: dt.datetime = Field(default_factory=utcnow)

    # derived: overwritten wholesale by the verification job
    verified: bool = False
    overall_score: float = 0.0
    tier: Tier = Tier.UNRANKED
    badges: list[str] = Field(default_factory=list)
    checks: list[dict[str, Any]] = Field(default_factory=list)
    verified_at: dt.datetime | None = None

    @field_validator("address")
    @classmethod
    def _lower_address(cls, v: str) -> str:
        return v.lower()

    @field_validator("registered_at", "verified_at")
    @classmethod
    def _utc(cls, v: dt.datetime | None) -> dt.datetime | None:
        return _as_utc(v)


# ── Helpers ──────────────────────────────────────────────────────────

def parse_signal(raw: dict[str, Any], source: SignalSource = SignalSource.API) -> SignalRecord:
    """Normalise an API payload or legacy trade row into a SignalRecord."""
    data = dict(raw)
    if "pnl" in data and "pnl_pct" not in data and "pnlPct" not in data:
        data["pnl_pct"] = data.pop("pnl")
    data.setdefault("source", source.value)
    return SignalRecord.model_validate(data)


def lifecycle_violations(signal: SignalRecord) -> list[str]:
    """List the lifecycle invariants this signal breaks (empty if none)."""
    problems: list[str] = []
    if signal.is_open and signal.pnl_pct is not None:
        problems.append("pnl_pct set on open signal")
    if not signal.is_open:
        if signal.pnl_pct is None:
            problems.append("closed signal missing pnl_pct")
        if signal.exit_price is None:
            problems.append("closed signal missing exit_price")
    if (signal.exit_price is None) != (signal.exit_timestamp is None):
        problems.append("exit_price and exit_timestamp not set together")
    return problems
