"""Tests for provider track-record statistics."""

from __future__ import annotations

import datetime as dt

import pytest

from signal_ledger.analytics.provider_stats import compute_provider_stats
from signal_ledger.storage.models import SignalRecord

NOW = dt.datetime(2026, 3, 15, 12, 0, tzinfo=dt.timezone.utc)


def _signal(i: int, pnl: float | None = None, **overrides) -> SignalRecord:
    ts = NOW - dt.timedelta(days=30 - i)
    defaults = dict(
        id=f"s{i:02d}",
        provider="0x" + "1" * 40,
        action="LONG",
        token="ETH",
        entry_price=100.0,
        collateral_usd=100.0,
        timestamp=ts,
    )
    if pnl is not None:
        defaults.update(
            status="closed", pnl_pct=pnl, pnl_usd=pnl, exit_price=100.0 + pnl,
            exit_timestamp=ts + dt.timedelta(hours=1),
        )
    defaults.update(overrides)
    return SignalRecord(**defaults)


class TestComputeProviderStats:

    def test_empty(self):
        stats = compute_provider_stats([])
        assert stats.total_signals == 0
        assert stats.win_rate == 0.0
        assert stats.roi_pct == 0.0

    def test_win_rate_and_average(self):
        signals = [_signal(1, 10.0), _signal(2, -5.0), _signal(3, 20.0), _signal(4, 15.0)]
        stats = compute_provider_stats(signals)
        assert stats.closed_signals == 4
        assert stats.winning_signals == 3
        assert stats.win_rate == pytest.approx(75.0)
        assert stats.average_return == pytest.approx(10.0)

    def test_open_signals_counted_separately(self):
        signals = [_signal(1, 10.0), _signal(2, unrealized_pnl_pct=4.0, unrealized_pnl_usd=4.0)]
        stats = compute_provider_stats(signals)
        assert stats.total_signals == 2
        assert stats.open_signals == 1
        assert stats.closed_signals == 1
        assert stats.unrealized_pnl_usd == pytest.approx(4.0)

    def test_consistency_from_std_dev(self):
        stats = compute_provider_stats([_signal(i, 10.0) for i in range(5)])
        assert stats.return_std_dev == 0.0
        assert stats.consistency_score == 100.0

        spread = compute_provider_stats([_signal(1, 60.0), _signal(2, -40.0)])
        assert spread.return_std_dev == pytest.approx(50.0)
        assert spread.consistency_score == 0.0

    def test_streak_counts_most_recent_run(self):
        signals = [_signal(1, -3.0), _signal(2, 5.0), _signal(3, 7.0), _signal(4, 1.0)]
        assert compute_provider_stats(signals).streak == 3

        losing = [_signal(1, 5.0), _signal(2, -1.0), _signal(3, -2.0)]
        assert compute_provider_stats(losing).streak == -2

    def test_order_independent(self):
        signals = [_signal(1, -3.0), _signal(2, 5.0), _signal(3, 7.0)]
        assert compute_provider_stats(signals) == compute_provider_stats(list(reversed(signals)))

    def test_roi_and_capital(self):
        signals = [_signal(1, 10.0), _signal(2, 30.0)]
        stats = compute_provider_stats(signals)
        assert stats.capital_deployed_usd == 200.0
        assert stats.realized_pnl_usd == pytest.approx(40.0)
        assert stats.roi_pct == pytest.approx(20.0)

    def test_tx_hash_and_drawdown(self):
        signals = [
            _signal(1, 5.0, tx_hash="0x1", max_drawdown_pct=-12.0),
            _signal(2, 5.0, max_drawdown_pct=-3.0),
        ]
        stats = compute_provider_stats(signals)
        assert stats.with_tx_hash == 1
        assert stats.max_drawdown_pct == -12.0

    def test_sharpe_needs_two_returns(self):
        assert compute_provider_stats([_signal(1, 5.0)]).sharpe_ratio == 0.0
        assert compute_provider_stats([_signal(1, 5.0), _signal(2, 15.0)]).sharpe_ratio > 0
