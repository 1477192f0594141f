"""Provider verification — multi-check trust score, tier and badges.

Checks (ordered, each bounded):
  1. social          0-25  plausible twitter/farcaster/github handles, reachable website
  2. onchain         0-30  wallet transaction count, ETH balance, platform activity
  3. track_record    0-35  signal count, win rate, average return, consistency, recency
  4. signal_quality  0-10  share of signals carrying an entry tx hash

A check that cannot be evaluated yields WARN with score 0; no check is
required to succeed. Inputs are gathered once into a VerificationInputs
snapshot and scoring is a pure function of that snapshot, so a re-run
on unchanged data returns the same score, tier and badges.

Tiers (lower bound inclusive):
  unranked [0, 20)  bronze [20, 40)  silver [40, 60)  gold [60, 80)  diamond [80, 100]
"""

from __future__ import annotations

import asyncio
import datetime as dt
import re
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, TypeVar

from signal_ledger.analytics.provider_stats import compute_provider_stats
from signal_ledger.config import VerificationConfig
from signal_ledger.connectors.chain_rpc import ChainRPCClient
from signal_ledger.connectors.web_probe import WebsiteProbe
from signal_ledger.errors import ProviderNotFoundError
from signal_ledger.observability.logger import get_logger
from signal_ledger.storage.database import Database
from signal_ledger.storage.models import (
    CheckStatus,
    CheckType,
    ProviderRecord,
    SignalRecord,
    Tier,
    utcnow,
)

log = get_logger(__name__)

T = TypeVar("T")

MAX_SCORE = 100.0

CHECK_MAX: dict[CheckType, float] = {
    CheckType.SOCIAL: 25.0,
    CheckType.ONCHAIN: 30.0,
    CheckType.TRACK_RECORD: 35.0,
    CheckType.SIGNAL_QUALITY: 10.0,
}

# Highest floor first
TIER_FLOORS: tuple[tuple[Tier, float], ...] = (
    (Tier.DIAMOND, 80.0),
    (Tier.GOLD, 60.0),
    (Tier.SILVER, 40.0),
    (Tier.BRONZE, 20.0),
    (Tier.UNRANKED, 0.0),
)

_TWITTER_RE = re.compile(r"^@?[A-Za-z0-9_]{1,15}$")
_FARCASTER_RE = re.compile(r"^@?[a-z0-9][a-z0-9-]{0,15}(\.eth)?$")
_GITHUB_RE = re.compile(r"^[A-Za-z0-9](?:[A-Za-z0-9-]{0,38})$")

_SOCIAL_POINTS: tuple[tuple[str, re.Pattern[str], float], ...] = (
    ("twitter", _TWITTER_RE, 8.0),
    ("farcaster", _FARCASTER_RE, 6.0),
    ("github", _GITHUB_RE, 5.0),
)
_WEBSITE_POINTS = 6.0


def _check_tables() -> None:
    if set(CHECK_MAX) != set(CheckType):
        raise RuntimeError("CHECK_MAX must cover every CheckType")
    if sum(CHECK_MAX.values()) != MAX_SCORE:
        raise RuntimeError("check maxima must add up to MAX_SCORE")
    tiers = [t for t, _ in TIER_FLOORS]
    floors = [f for _, f in TIER_FLOORS]
    if set(tiers) != set(Tier) or len(tiers) != len(Tier):
        raise RuntimeError("TIER_FLOORS must list every Tier exactly once")
    if floors != sorted(floors, reverse=True) or len(set(floors)) != len(floors) or floors[-1] != 0:
        raise RuntimeError("TIER_FLOORS must be strictly descending and end at 0")
    if [t.rank for t in tiers] != sorted((t.rank for t in tiers), reverse=True):
        raise RuntimeError("TIER_FLOORS must follow tier order")


_check_tables()


# ── Data Models ──────────────────────────────────────────────────────

@dataclass
class VerificationCheck:
    """One entry of a provider's audit trail."""
    type: CheckType
    status: CheckStatus
    score: float
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "status": self.status.value,
            "score": self.score,
            "details": self.details,
        }


@dataclass(frozen=True)
class VerificationInputs:
    """Everything scoring needs, captured once per provider."""
    address: str
    provider: ProviderRecord | None
    signals: tuple[SignalRecord, ...]
    tx_count: int | None
    balance_eth: float | None
    website_reachable: bool | None
    as_of: dt.datetime


@dataclass
class ProviderVerification:
    address: str
    overall_score: float
    tier: Tier
    verified: bool
    checks: list[VerificationCheck]
    badges: list[str]
    as_of: dt.datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "address": self.address,
            "overall_score": self.overall_score,
            "tier": self.tier.value,
            "verified": self.verified,
            "checks": [c.to_dict() for c in self.checks],
            "badges": list(self.badges),
            "as_of": self.as_of.isoformat(),
        }


# ── Checks ───────────────────────────────────────────────────────────

def _bounded(check_type: CheckType, score: float) -> float:
    return max(0.0, min(CHECK_MAX[check_type], score))


def check_social(inputs: VerificationInputs, config: VerificationConfig) -> VerificationCheck:
    provider = inputs.provider
    if provider is None:
        return VerificationCheck(CheckType.SOCIAL, CheckStatus.WARN, 0.0, {"error": "provider_not_found"})

    handles = {name: getattr(provider, name) for name, _, _ in _SOCIAL_POINTS}
    if not any(handles.values()) and not provider.website:
        return VerificationCheck(CheckType.SOCIAL, CheckStatus.WARN, 0.0, {"note": "no_socials"})

    score = 0.0
    details: dict[str, Any] = {}
    for name, pattern, points in _SOCIAL_POINTS:
        handle = handles[name]
        if not handle:
            continue
        if pattern.match(handle.strip()):
            score += points
            details[name] = "plausible"
        else:
            details[name] = "implausible"

    if provider.website:
        if inputs.website_reachable is True:
            score += _WEBSITE_POINTS
            details["website"] = "reachable"
        elif inputs.website_reachable is False:
            details["website"] = "unreachable"
        else:
            details["website"] = "unverified"

    score = _bounded(CheckType.SOCIAL, score)
    status = CheckStatus.PASS if score > 15 else CheckStatus.WARN if score > 8 else CheckStatus.FAIL
    return VerificationCheck(CheckType.SOCIAL, status, score, details)


def _band(value: float, bands: tuple[tuple[float, float], ...]) -> float:
    """Points of the first band whose (exclusive) floor ``value`` exceeds."""
    for floor, points in bands:
        if value > floor:
            return points
    return 0.0


_TX_BANDS = ((1000, 15.0), (500, 12.0), (100, 10.0), (50, 7.0), (10, 4.0), (1, 2.0))
_BALANCE_BANDS = ((10, 10.0), (1, 7.0), (0.1, 4.0), (0.01, 2.0))
_PLATFORM_BANDS = ((50, 5.0), (20, 3.0), (5, 2.0), (0, 1.0))


def check_onchain(inputs: VerificationInputs, config: VerificationConfig) -> VerificationCheck:
    if inputs.tx_count is None and inputs.balance_eth is None:
        return VerificationCheck(CheckType.ONCHAIN, CheckStatus.WARN, 0.0, {"error": "rpc_unavailable"})

    details: dict[str, Any] = {"platform_signals": len(inputs.signals)}
    score = _band(len(inputs.signals), _PLATFORM_BANDS)
    if inputs.tx_count is not None:
        details["transaction_count"] = inputs.tx_count
        score += _band(inputs.tx_count, _TX_BANDS)
    if inputs.balance_eth is not None:
        details["balance_eth"] = inputs.balance_eth
        score += _band(inputs.balance_eth, _BALANCE_BANDS)

    score = _bounded(CheckType.ONCHAIN, score)
    status = CheckStatus.PASS if score > 20 else CheckStatus.WARN if score > 10 else CheckStatus.FAIL
    return VerificationCheck(CheckType.ONCHAIN, status, score, details)


def check_track_record(inputs: VerificationInputs, config: VerificationConfig) -> VerificationCheck:
    stats = compute_provider_stats(list(inputs.signals))
    if stats.total_signals == 0:
        return VerificationCheck(CheckType.TRACK_RECORD, CheckStatus.WARN, 0.0, {"note": "no_history"})

    meets_minimum = stats.closed_signals >= config.min_closed_signals
    details: dict[str, Any] = {
        "total_signals": stats.total_signals,
        "closed_signals": stats.closed_signals,
        "winning_signals": stats.winning_signals,
        "meets_minimum": meets_minimum,
    }

    score = _band(stats.total_signals, ((100, 10.0), (50, 8.0), (20, 6.0), (10, 4.0), (5, 2.0)))

    if stats.closed_signals > 0:
        details["win_rate"] = round(stats.win_rate, 4)
        details["average_return"] = round(stats.average_return, 4)
        details["consistency_score"] = round(stats.consistency_score, 4)

        win_rate = stats.win_rate
        if win_rate >= 80:
            score += 15
        elif win_rate >= 70:
            score += 12
        elif win_rate >= 60:
            score += 10
        elif win_rate >= 50:
            score += 7
        elif win_rate >= 40:
            score += 4
        else:
            score -= 2

        avg = stats.average_return
        if avg >= 10:
            score += 10
        elif avg >= 5:
            score += 7
        elif avg >= 2:
            score += 5
        elif avg >= 0:
            score += 2
        else:
            score -= 3

        if stats.return_std_dev < 10:
            score += 5

    window_start = inputs.as_of - dt.timedelta(days=config.recent_activity_days)
    recent = sum(1 for s in inputs.signals if window_start <= s.timestamp <= inputs.as_of)
    details["recent_signals"] = recent
    score += _band(recent, ((10, 3.0), (5, 2.0), (0, 1.0)))

    score = _bounded(CheckType.TRACK_RECORD, score)
    if score > 25 and meets_minimum:
        status = CheckStatus.PASS
    elif score > 15:
        status = CheckStatus.WARN
    else:
        status = CheckStatus.FAIL
    return VerificationCheck(CheckType.TRACK_RECORD, status, score, details)


def check_signal_quality(inputs: VerificationInputs, config: VerificationConfig) -> VerificationCheck:
    total = len(inputs.signals)
    if total == 0:
        return VerificationCheck(CheckType.SIGNAL_QUALITY, CheckStatus.WARN, 0.0, {"note": "no_signals"})

    with_tx = sum(1 for s in inputs.signals if s.tx_hash)
    ratio = with_tx / total
    details = {"with_tx_hash": with_tx, "total_signals": total, "ratio": round(ratio, 4)}
    if ratio >= 0.9:
        return VerificationCheck(CheckType.SIGNAL_QUALITY, CheckStatus.PASS, 10.0, details)
    if ratio >= 0.5:
        return VerificationCheck(CheckType.SIGNAL_QUALITY, CheckStatus.WARN, 5.0, details)
    return VerificationCheck(CheckType.SIGNAL_QUALITY, CheckStatus.FAIL, 2.0 if with_tx else 0.0, details)


CHECKS: tuple[tuple[CheckType, Callable[[VerificationInputs, VerificationConfig], VerificationCheck]], ...] = (
    (CheckType.SOCIAL, check_social),
    (CheckType.ONCHAIN, check_onchain),
    (CheckType.TRACK_RECORD, check_track_record),
    (CheckType.SIGNAL_QUALITY, check_signal_quality),
)


# ── Tier & badges ────────────────────────────────────────────────────

def tier_for_score(score: float) -> Tier:
    for tier, floor in TIER_FLOORS:
        if score >= floor:
            return tier
    return Tier.UNRANKED


def _detail(checks: dict[CheckType, VerificationCheck], check_type: CheckType, key: str) -> float:
    check = checks.get(check_type)
    if check is None:
        return 0.0
    value = check.details.get(key)
    return float(value) if isinstance(value, (int, float)) else 0.0


def _proven(checks: dict[CheckType, VerificationCheck]) -> bool:
    check = checks.get(CheckType.TRACK_RECORD)
    return bool(check and check.details.get("meets_minimum"))


def _status(checks: dict[CheckType, VerificationCheck], check_type: CheckType) -> CheckStatus | None:
    check = checks.get(check_type)
    return check.status if check else None


BADGE_RULES: tuple[tuple[str, Callable[[dict[CheckType, VerificationCheck]], bool]], ...] = (
    ("social_verified", lambda c: _status(c, CheckType.SOCIAL) == CheckStatus.PASS),
    ("whale_trader", lambda c: _detail(c, CheckType.ONCHAIN, "transaction_count") > 1000),
    ("active_trader", lambda c: 100 < _detail(c, CheckType.ONCHAIN, "transaction_count") <= 1000),
    ("high_volume", lambda c: _status(c, CheckType.TRACK_RECORD) == CheckStatus.PASS
        and _detail(c, CheckType.TRACK_RECORD, "total_signals") > 100),
    ("high_accuracy", lambda c: _proven(c) and _detail(c, CheckType.TRACK_RECORD, "win_rate") >= 80),
    ("high_returns", lambda c: _proven(c) and _detail(c, CheckType.TRACK_RECORD, "average_return") >= 10),
    ("consistent", lambda c: _proven(c) and _detail(c, CheckType.TRACK_RECORD, "consistency_score") >= 80),
    ("fully_transparent", lambda c: c.get(CheckType.SIGNAL_QUALITY) is not None
        and c[CheckType.SIGNAL_QUALITY].score >= CHECK_MAX[CheckType.SIGNAL_QUALITY]),
)


def compute_badges(checks: list[VerificationCheck]) -> list[str]:
    """Badges are a function of the check list only, in rule order."""
    by_type = {c.type: c for c in checks}
    return [name for name, rule in BADGE_RULES if rule(by_type)]


def score_verification(
    inputs: VerificationInputs,
    config: VerificationConfig | None = None,
) -> ProviderVerification:
    """Pure scoring of a gathered snapshot."""
    config = config or VerificationConfig()
    checks = [fn(inputs, config) for _, fn in CHECKS]
    overall = max(0.0, min(MAX_SCORE, sum(c.score for c in checks)))
    return ProviderVerification(
        address=inputs.address,
        overall_score=overall,
        tier=tier_for_score(overall),
        verified=overall >= config.verified_threshold,
        checks=checks,
        badges=compute_badges(checks),
        as_of=inputs.as_of,
    )


def verification_requirements() -> dict[Tier, list[str]]:
    """Human-readable summary of what each tier takes."""
    return {
        Tier.UNRANKED: ["Registered provider"],
        Tier.BRONZE: ["Score 20+: a linked social account or some on-chain history"],
        Tier.SILVER: ["Score 40+: socials plus an active wallet or a first track record"],
        Tier.GOLD: [
            "Score 60+ (verified)",
            f"Track record with {VerificationConfig().min_closed_signals}+ closed signals",
            "Most signals backed by a transaction hash",
        ],
        Tier.DIAMOND: [
            "Score 80+",
            "Passing social, on-chain and track-record checks",
        ],
    }


# ── Engine ───────────────────────────────────────────────────────────

class VerificationEngine:
    """Gathers provider inputs from the store and probes, then scores them."""

    def __init__(
        self,
        db: Database,
        chain: ChainRPCClient | None = None,
        website_probe: WebsiteProbe | None = None,
        config: VerificationConfig | None = None,
        clock: Callable[[], dt.datetime] = utcnow,
    ):
        self._db = db
        self._config = config or VerificationConfig()
        self._chain = chain
        self._probe = website_probe
        self._clock = clock

    async def close(self) -> None:
        if self._chain:
            await self._chain.close()
        if self._probe:
            await self._probe.close()

    async def _probe_call(self, name: str, address: str, call: Awaitable[T]) -> T | None:
        try:
            return await asyncio.wait_for(call, self._config.probe_timeout_secs)
        except asyncio.TimeoutError:
            log.warning("verification.probe_timeout", probe=name, address=address[:10])
        except Exception as e:
            log.warning("verification.probe_failed", probe=name, address=address[:10], error=str(e))
        return None

    async def _noop(self) -> None:
        return None

    async def gather_inputs(self, address: str) -> VerificationInputs:
        address = address.lower()
        provider = self._db.get_provider(address)
        signals = tuple(self._db.list_signals_by_provider(address))

        tx_call = self._chain.get_transaction_count(address) if self._chain else self._noop()
        bal_call = self._chain.get_balance_eth(address) if self._chain else self._noop()
        web_call = (
            self._probe.is_reachable(provider.website)
            if self._probe and provider and provider.website
            else self._noop()
        )
        tx_count, balance, reachable = await asyncio.gather(
            self._probe_call("tx_count", address, tx_call),
            self._probe_call("balance", address, bal_call),
            self._probe_call("website", address, web_call),
        )
        return VerificationInputs(
            address=address,
            provider=provider,
            signals=signals,
            tx_count=tx_count,
            balance_eth=balance,
            website_reachable=reachable,
            as_of=self._clock(),
        )

    async def calculate_verification(self, address: str) -> ProviderVerification:
        """Score a provider. No side effects on the store."""
        inputs = await self.gather_inputs(address)
        verification = score_verification(inputs, self._config)
        log.info(
            "verification.calculated",
            address=verification.address[:10],
            score=verification.overall_score,
            tier=verification.tier.value,
            verified=verification.verified,
        )
        return verification

    def persist_verification(self, verification: ProviderVerification) -> None:
        """Overwrite score, tier, verified, badges and checks together."""
        written = self._db.update_provider_trust(
            verification.address,
            score=verification.overall_score,
            tier=verification.tier,
            verified=verification.verified,
            badges=list(verification.badges),
            checks=[c.to_dict() for c in verification.checks],
            verified_at=verification.as_of,
        )
        if not written:
            raise ProviderNotFoundError(verification.address)
