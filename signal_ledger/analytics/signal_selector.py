"""Signal selector — signal of the day and per-category trending lists.

Composite score (0-100 with default weights) is a weighted sum of
independent factors, each normalised to [0, 1]:

  pnl         realised PnL once closed, live PnL while open; already
              direction-adjusted, so a good SHORT counts like a good LONG.
              Saturates at ``pnl_cap_pct``; losses contribute 0.
  confidence  provider-stated confidence, 0 when absent
  reputation  provider overall_score / 100 from the last verification run
  recency     linear decay from 1 (now) to 0 (window start)
  conviction  half leverage (log scale up to ``leverage_cap``), half
              collateral size (log scale, $100 -> 0 up to $10k -> 1)

Every factor's contribution is kept in ``breakdown`` and the reasoning
string is built from it, so the pick is explainable and reproducible.
"""

from __future__ import annotations

import datetime as dt
import math
from dataclasses import dataclass, field
from typing import Any, Callable

from signal_ledger.config import SELECTOR_FACTORS, SelectorConfig
from signal_ledger.errors import InvariantViolationError
from signal_ledger.observability.logger import get_logger
from signal_ledger.storage.database import Database
from signal_ledger.storage.models import (
    ProviderRecord,
    SignalCategory,
    SignalRecord,
    lifecycle_violations,
    utcnow,
)

log = get_logger(__name__)

FACTOR_LABELS: dict[str, str] = {
    "pnl": "strong PnL",
    "confidence": "high confidence",
    "reputation": "trusted provider",
    "recency": "fresh call",
    "conviction": "high conviction size",
}

if set(FACTOR_LABELS) != set(SELECTOR_FACTORS):
    raise RuntimeError("FACTOR_LABELS must cover every selector factor")

_DOMINANT_SHARE = 0.25
_MAX_REASONS = 3


@dataclass
class ScoredSignal:
    signal: SignalRecord
    score: float
    breakdown: dict[str, float] = field(default_factory=dict)
    reasoning: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "signal": self.signal.model_dump(mode="json", by_alias=True, exclude_none=True),
            "score": round(self.score, 4),
            "breakdown": {k: round(v, 4) for k, v in self.breakdown.items()},
            "reasoning": self.reasoning,
        }


@dataclass
class SignalOfTheDay:
    signal: SignalRecord
    provider: ProviderRecord | None
    score: float
    breakdown: dict[str, float]
    reasoning: str
    window_hours: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "signal": self.signal.model_dump(mode="json", by_alias=True, exclude_none=True),
            "provider": (
                self.provider.model_dump(mode="json", by_alias=True, exclude_none=True)
                if self.provider else None
            ),
            "score": round(self.score, 4),
            "breakdown": {k: round(v, 4) for k, v in self.breakdown.items()},
            "reasoning": self.reasoning,
            "window_hours": self.window_hours,
        }


# ── Scoring ──────────────────────────────────────────────────────────

def _clamp01(value: float) -> float:
    return max(0.0, min(1.0, value))


def factor_values(
    signal: SignalRecord,
    provider: ProviderRecord | None,
    now: dt.datetime,
    window_hours: int,
    config: SelectorConfig,
) -> dict[str, float]:
    """Normalised [0, 1] value of every factor for one signal."""
    pnl = signal.effective_pnl_pct
    pnl_value = _clamp01(pnl / config.pnl_cap_pct) if pnl is not None and config.pnl_cap_pct > 0 else 0.0

    confidence = _clamp01(signal.confidence) if signal.confidence is not None else 0.0
    reputation = _clamp01(provider.overall_score / 100) if provider else 0.0

    age_hours = (now - signal.timestamp).total_seconds() / 3600
    recency = _clamp01(1 - age_hours / window_hours)

    leverage = signal.leverage or 1.0
    lev_part = 0.0
    if leverage > 1 and config.leverage_cap > 1:
        lev_part = min(1.0, math.log(leverage) / math.log(config.leverage_cap))
    collateral = signal.collateral_usd or 0.0
    size_part = min(1.0, math.log10(collateral / 100) / 2) if collateral >= 100 else 0.0
    conviction = (lev_part + size_part) / 2

    return {
        "pnl": pnl_value,
        "confidence": confidence,
        "reputation": reputation,
        "recency": recency,
        "conviction": conviction,
    }


def _window_label(window_hours: int) -> str:
    if window_hours > 24 and window_hours % 24 == 0:
        return f"last {window_hours // 24}d"
    return f"last {window_hours}h"


def build_reasoning(breakdown: dict[str, float], window_hours: int) -> str:
    """Name the factors carrying at least a quarter of the score."""
    total = sum(breakdown.values())
    window = _window_label(window_hours)
    if total <= 0:
        return f"no standout factors ({window})"
    order = {name: i for i, name in enumerate(SELECTOR_FACTORS)}
    dominant = sorted(
        (name for name, value in breakdown.items() if value > 0 and value >= total * _DOMINANT_SHARE),
        key=lambda name: (-breakdown[name], order[name]),
    )[:_MAX_REASONS]
    if not dominant:
        return f"balanced score ({window})"
    return " + ".join(FACTOR_LABELS[name] for name in dominant) + f" ({window})"


def score_signal(
    signal: SignalRecord,
    provider: ProviderRecord | None,
    now: dt.datetime,
    window_hours: int,
    config: SelectorConfig | None = None,
) -> ScoredSignal:
    config = config or SelectorConfig()
    problems = lifecycle_violations(signal)
    if problems:
        raise InvariantViolationError("; ".join(problems), signal_id=signal.id)

    values = factor_values(signal, provider, now, window_hours, config)
    breakdown = {name: config.weights[name] * values[name] for name in SELECTOR_FACTORS}
    return ScoredSignal(
        signal=signal,
        score=sum(breakdown.values()),
        breakdown=breakdown,
        reasoning=build_reasoning(breakdown, window_hours),
    )


def rank_key(scored: ScoredSignal) -> tuple[float, float, str]:
    """Highest score, then latest timestamp, then smallest id."""
    return (-round(scored.score, 6), -scored.signal.timestamp.timestamp(), scored.signal.id)


# ── Selector ─────────────────────────────────────────────────────────

class SignalSelector:
    """Read-only ranking over recent signals."""

    def __init__(
        self,
        db: Database,
        config: SelectorConfig | None = None,
        clock: Callable[[], dt.datetime] = utcnow,
    ):
        self._db = db
        self._config = config or SelectorConfig()
        self._clock = clock

    def _candidates(self, now: dt.datetime, window_hours: int) -> list[SignalRecord]:
        since = now - dt.timedelta(hours=window_hours)
        return [
            s for s in self._db.list_recent_signals(since)
            if s.entry_price is not None and s.entry_price > 0 and s.timestamp <= now
        ]

    def _score_all(
        self,
        signals: list[SignalRecord],
        providers: dict[str, ProviderRecord],
        now: dt.datetime,
        window_hours: int,
    ) -> list[ScoredSignal]:
        scored: list[ScoredSignal] = []
        for signal in signals:
            try:
                scored.append(score_signal(
                    signal, providers.get(signal.provider), now, window_hours, self._config,
                ))
            except InvariantViolationError as e:
                log.warning("selector.signal_skipped", signal_id=signal.id, error=str(e))
        scored.sort(key=rank_key)
        return scored

    def _provider_map(self) -> dict[str, ProviderRecord]:
        return {p.address: p for p in self._db.list_providers()}

    def select_signal_of_the_day(self) -> SignalOfTheDay | None:
        """Best signal from the narrowest window that has candidates."""
        now = self._clock()
        providers: dict[str, ProviderRecord] | None = None

        for window_hours in self._config.windows_hours:
            candidates = self._candidates(now, window_hours)
            if not candidates:
                continue
            if providers is None:
                providers = self._provider_map()
            scored = self._score_all(candidates, providers, now, window_hours)
            if not scored:
                continue

            best = scored[0]
            log.info(
                "selector.signal_of_the_day",
                signal_id=best.signal.id,
                score=round(best.score, 2),
                window_hours=window_hours,
                candidates=len(scored),
            )
            return SignalOfTheDay(
                signal=best.signal,
                provider=providers.get(best.signal.provider),
                score=best.score,
                breakdown=best.breakdown,
                reasoning=best.reasoning,
                window_hours=window_hours,
            )

        log.info("selector.no_candidates", max_window_hours=self._config.windows_hours[-1])
        return None

    def get_trending_by_category(
        self,
        window_hours: int | None = None,
        top_n: int | None = None,
    ) -> dict[SignalCategory, list[ScoredSignal]]:
        """Top N per category; categories without candidates are absent."""
        if window_hours is None:
            window_hours = self._config.trending_window_hours
        if top_n is None:
            top_n = self._config.trending_top_n
        if window_hours <= 0:
            raise ValueError("window_hours must be positive")
        if top_n <= 0:
            raise ValueError("top_n must be positive")

        now = self._clock()
        candidates = self._candidates(now, window_hours)
        if not candidates:
            return {}
        scored = self._score_all(candidates, self._provider_map(), now, window_hours)

        grouped: dict[SignalCategory, list[ScoredSignal]] = {}
        for category in SignalCategory:
            members = [s for s in scored if s.signal.category == category]
            if members:
                grouped[category] = members[:top_n]
        return grouped
