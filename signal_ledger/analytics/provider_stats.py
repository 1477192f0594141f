"""Provider track-record statistics derived from the signal ledger."""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any

from signal_ledger.storage.models import SignalRecord


@dataclass
class ProviderStats:
    total_signals: int = 0
    open_signals: int = 0
    closed_signals: int = 0      # closed/stopped with a resolvable pnl_pct
    winning_signals: int = 0
    win_rate: float = 0.0        # percent of closed signals with pnl > 0
    average_return: float = 0.0  # mean closed pnl_pct
    return_std_dev: float = 0.0
    consistency_score: float = 0.0
    sharpe_ratio: float = 0.0
    max_drawdown_pct: float = 0.0
    streak: int = 0              # +n winning / -n losing, most recent first
    with_tx_hash: int = 0
    capital_deployed_usd: float = 0.0
    realized_pnl_usd: float = 0.0
    unrealized_pnl_usd: float = 0.0

    @property
    def roi_pct(self) -> float:
        if self.capital_deployed_usd <= 0:
            return 0.0
        return (self.realized_pnl_usd + self.unrealized_pnl_usd) / self.capital_deployed_usd * 100

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_signals": self.total_signals,
            "open_signals": self.open_signals,
            "closed_signals": self.closed_signals,
            "winning_signals": self.winning_signals,
            "win_rate": round(self.win_rate, 2),
            "average_return": round(self.average_return, 4),
            "return_std_dev": round(self.return_std_dev, 4),
            "consistency_score": round(self.consistency_score, 2),
            "sharpe_ratio": round(self.sharpe_ratio, 2),
            "max_drawdown_pct": round(self.max_drawdown_pct, 2),
            "streak": self.streak,
            "with_tx_hash": self.with_tx_hash,
            "capital_deployed_usd": round(self.capital_deployed_usd, 2),
            "realized_pnl_usd": round(self.realized_pnl_usd, 2),
            "unrealized_pnl_usd": round(self.unrealized_pnl_usd, 2),
            "roi_pct": round(self.roi_pct, 2),
        }


def compute_provider_stats(signals: list[SignalRecord]) -> ProviderStats:
    """Aggregate one provider's signals. Order of ``signals`` does not matter."""
    stats = ProviderStats(total_signals=len(signals))
    if not signals:
        return stats

    ordered = sorted(signals, key=lambda s: (s.timestamp, s.id))
    closed = [s for s in ordered if not s.is_open and s.pnl_pct is not None]
    returns = [s.pnl_pct for s in closed if s.pnl_pct is not None]

    stats.open_signals = sum(1 for s in ordered if s.is_open)
    stats.closed_signals = len(closed)
    stats.winning_signals = sum(1 for r in returns if r > 0)
    stats.with_tx_hash = sum(1 for s in ordered if s.tx_hash)
    stats.capital_deployed_usd = sum(s.collateral_usd or 0.0 for s in ordered)
    stats.realized_pnl_usd = sum(s.pnl_usd or 0.0 for s in closed)
    stats.unrealized_pnl_usd = sum(s.unrealized_pnl_usd or 0.0 for s in ordered if s.is_open)
    stats.max_drawdown_pct = min((s.max_drawdown_pct or 0.0 for s in ordered), default=0.0)

    if returns:
        mean = sum(returns) / len(returns)
        std = math.sqrt(sum((r - mean) ** 2 for r in returns) / len(returns))
        stats.win_rate = stats.winning_signals / len(returns) * 100
        stats.average_return = mean
        stats.return_std_dev = std
        stats.consistency_score = 100 - min(100.0, std * 2)
        if len(returns) > 1:
            sample_std = math.sqrt(sum((r - mean) ** 2 for r in returns) / (len(returns) - 1))
            stats.sharpe_ratio = mean / sample_std if sample_std > 0 else 0.0
        stats.streak = _current_streak(returns)

    return stats


def _current_streak(returns: list[float]) -> int:
    streak = 0
    for r in reversed(returns):
        if r > 0 and streak >= 0:
            streak += 1
        elif r < 0 and streak <= 0:
            streak -= 1
        else:
            break
    return streak
