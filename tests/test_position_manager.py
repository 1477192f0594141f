"""Tests for the position engine — live refresh, auto-close, expiry, pairing."""

from __future__ import annotations

import asyncio
import datetime as dt
from unittest.mock import AsyncMock, patch

import pytest

from signal_ledger.config import OracleConfig, PositionConfig
from signal_ledger.connectors.price_oracle import PriceQuote, StaticPriceOracle
from signal_ledger.engine.position_manager import PositionEngine
from signal_ledger.errors import StoreUnavailableError, StoreWriteError
from signal_ledger.storage.database import Database
from signal_ledger.storage.models import SignalRecord, SignalStatus

NOW = dt.datetime(2026, 3, 15, 12, 0, tzinfo=dt.timezone.utc)
PROVIDER = "0x" + "a" * 40


# ── Helpers ──────────────────────────────────────────────────────────

def _insert_signal(db: Database, **overrides) -> SignalRecord:
    """Insert an open signal with sensible defaults."""
    defaults = dict(
        id="sig-001",
        provider=PROVIDER,
        action="LONG",
        token="ETH",
        entry_price=100.0,
        leverage=1.0,
        collateral_usd=100.0,
        timestamp=NOW - dt.timedelta(hours=1),
    )
    defaults.update(overrides)
    signal = SignalRecord(**defaults)
    db.insert_signal(signal)
    return signal


def _oracle(prices: dict[str, float | None]) -> AsyncMock:
    async def _get_price(key: str):
        price = prices.get(key)
        return PriceQuote(key=key, price=price, source="test") if price is not None else None

    oracle = AsyncMock()
    oracle.get_price.side_effect = _get_price
    return oracle


def _engine(db: Database, oracle, **oracle_kw) -> PositionEngine:
    return PositionEngine(
        db, oracle, PositionConfig(), OracleConfig(**oracle_kw), clock=lambda: NOW,
    )


# ── refresh_positions: valuation ─────────────────────────────────────

class TestRefreshValuation:

    @pytest.mark.asyncio
    async def test_open_signal_gets_unrealized_pnl(self, db):
        _insert_signal(db, id="s1", leverage=2.0, collateral_usd=200.0)
        result = await _engine(db, _oracle({"ETH": 105.0})).refresh_positions()

        assert result.processed == 1
        assert result.auto_closed == []
        stored = db.get_signal("s1")
        assert stored.status == SignalStatus.OPEN
        assert stored.current_price == 105.0
        assert stored.unrealized_pnl_pct == pytest.approx(10.0)
        assert stored.unrealized_pnl_usd == pytest.approx(20.0)
        assert stored.pnl_pct is None

    @pytest.mark.asyncio
    async def test_no_open_signals(self, db):
        oracle = _oracle({})
        result = await _engine(db, oracle).refresh_positions()
        assert result.processed == 0
        oracle.get_price.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_one_oracle_call_per_distinct_key(self, db):
        _insert_signal(db, id="s1", token="ETH")
        _insert_signal(db, id="s2", token="eth", action="SHORT")
        _insert_signal(db, id="s3", token="BTC", entry_price=60000.0)
        oracle = _oracle({"ETH": 101.0, "BTC": 61000.0})

        result = await _engine(db, oracle).refresh_positions()

        assert result.processed == 3
        assert oracle.get_price.await_count == 2
        keys = sorted(call.args[0] for call in oracle.get_price.await_args_list)
        assert keys == ["BTC", "ETH"]

    @pytest.mark.asyncio
    async def test_token_address_used_as_key(self, db):
        addr = "0x" + "B" * 40
        _insert_signal(db, id="s1", token="MEME", token_address=addr)
        oracle = _oracle({addr.lower(): 150.0})

        result = await _engine(db, oracle).refresh_positions()

        assert result.processed == 1
        oracle.get_price.assert_awaited_once_with(addr.lower())

    @pytest.mark.asyncio
    async def test_signal_without_entry_price_ignored(self, db):
        _insert_signal(db, id="s1", entry_price=None)
        oracle = _oracle({"ETH": 100.0})
        result = await _engine(db, oracle).refresh_positions()
        assert result.processed == 0
        oracle.get_price.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_drawdown_tracks_worst_unrealized(self, db):
        _insert_signal(db, id="s1")
        await _engine(db, _oracle({"ETH": 90.0})).refresh_positions()
        assert db.get_signal("s1").max_drawdown_pct == pytest.approx(-10.0)

        await _engine(db, _oracle({"ETH": 95.0})).refresh_positions()
        assert db.get_signal("s1").max_drawdown_pct == pytest.approx(-10.0)

        await _engine(db, _oracle({"ETH": 130.0})).refresh_positions()
        assert db.get_signal("s1").max_drawdown_pct == pytest.approx(-10.0)

    @pytest.mark.asyncio
    async def test_deep_drawdown_without_stop_loss_stays_open(self, db):
        _insert_signal(db, id="s1", leverage=5.0)
        result = await _engine(db, _oracle({"ETH": 90.0})).refresh_positions()

        signal = db.get_signal("s1")
        assert result.auto_closed == []
        assert signal.status == SignalStatus.OPEN
        assert signal.max_drawdown_pct == pytest.approx(-50.0)

    @pytest.mark.asyncio
    async def test_works_with_static_oracle(self, db):
        _insert_signal(db, id="s1", token="sol", entry_price=150.0)
        result = await _engine(db, StaticPriceOracle({"SOL": 165.0})).refresh_positions()
        assert result.processed == 1
        assert db.get_signal("s1").unrealized_pnl_pct == pytest.approx(10.0)


# ── refresh_positions: auto-close ────────────────────────────────────

class TestRefreshAutoClose:

    @pytest.mark.asyncio
    async def test_take_profit_closes(self, db):
        _insert_signal(db, id="s1", take_profit_pct=10.0, stop_loss_pct=5.0)
        result = await _engine(db, _oracle({"ETH": 112.0})).refresh_positions()

        assert result.auto_closed == [{"id": "s1", "close_reason": "take_profit"}]
        stored = db.get_signal("s1")
        assert stored.status == SignalStatus.CLOSED
        assert stored.pnl_pct == pytest.approx(12.0)
        assert stored.pnl_usd == pytest.approx(12.0)
        assert stored.exit_price == 112.0
        assert stored.exit_timestamp == NOW
        assert stored.unrealized_pnl_pct is None
        assert stored.unrealized_pnl_usd is None
        assert stored.current_price is None

    @pytest.mark.asyncio
    async def test_final_pnl_not_recomputed_later(self, db):
        _insert_signal(db, id="s1", take_profit_pct=10.0)
        await _engine(db, _oracle({"ETH": 112.0})).refresh_positions()
        await _engine(db, _oracle({"ETH": 200.0})).refresh_positions()
        assert db.get_signal("s1").pnl_pct == pytest.approx(12.0)

    @pytest.mark.asyncio
    async def test_stop_loss_marks_stopped(self, db):
        _insert_signal(db, id="s1", action="SHORT", stop_loss_pct=5.0, take_profit_pct=20.0)
        result = await _engine(db, _oracle({"ETH": 108.0})).refresh_positions()

        assert result.auto_closed == [{"id": "s1", "close_reason": "stop_loss"}]
        stored = db.get_signal("s1")
        assert stored.status == SignalStatus.STOPPED
        assert stored.pnl_pct == pytest.approx(-8.0)

    @pytest.mark.asyncio
    async def test_take_profit_precedence(self, db):
        _insert_signal(db, id="s1", take_profit_pct=-10.0, stop_loss_pct=5.0)
        result = await _engine(db, _oracle({"ETH": 92.0})).refresh_positions()
        assert result.auto_closed == [{"id": "s1", "close_reason": "take_profit"}]
        assert db.get_signal("s1").status == SignalStatus.CLOSED

    @pytest.mark.asyncio
    async def test_update_reports_close_flag(self, db):
        _insert_signal(db, id="s1", take_profit_pct=10.0)
        _insert_signal(db, id="s2", token="BTC", entry_price=100.0)
        result = await _engine(db, _oracle({"ETH": 115.0, "BTC": 101.0})).refresh_positions()

        by_id = {u.signal_id: u for u in result.updates}
        assert by_id["s1"].should_close is True
        assert by_id["s1"].close_reason == "take_profit"
        assert by_id["s2"].should_close is False
        assert by_id["s2"].close_reason is None


# ── refresh_positions: failures ──────────────────────────────────────

class TestRefreshFailures:

    @pytest.mark.asyncio
    async def test_failed_key_skips_only_dependent_signals(self, db):
        _insert_signal(db, id="s1", token="ETH")
        _insert_signal(db, id="s2", token="BTC")
        result = await _engine(db, _oracle({"ETH": 110.0, "BTC": None})).refresh_positions()

        assert result.processed == 1
        assert result.skipped_no_price == 1
        assert result.price_failures == 1
        assert db.get_signal("s2").current_price is None

    @pytest.mark.asyncio
    async def test_oracle_exception_is_per_key(self, db):
        _insert_signal(db, id="s1", token="ETH")
        _insert_signal(db, id="s2", token="BTC")

        async def _get_price(key: str):
            if key == "BTC":
                raise RuntimeError("boom")
            return PriceQuote(key=key, price=110.0)

        oracle = AsyncMock()
        oracle.get_price.side_effect = _get_price
        result = await _engine(db, oracle).refresh_positions()

        assert result.processed == 1
        assert result.price_failures == 1

    @pytest.mark.asyncio
    async def test_oracle_timeout_is_per_key(self, db):
        _insert_signal(db, id="s1", token="ETH")
        _insert_signal(db, id="s2", token="BTC")

        async def _get_price(key: str):
            if key == "BTC":
                await asyncio.sleep(1)
            return PriceQuote(key=key, price=110.0)

        oracle = AsyncMock()
        oracle.get_price.side_effect = _get_price
        result = await _engine(db, oracle, timeout_secs=0.05).refresh_positions()

        assert result.processed == 1
        assert result.skipped_no_price == 1

    @pytest.mark.asyncio
    async def test_non_positive_quote_ignored(self, db):
        _insert_signal(db, id="s1")
        result = await _engine(db, _oracle({"ETH": 0.0})).refresh_positions()
        assert result.processed == 0
        assert result.skipped_no_price == 1

    @pytest.mark.asyncio
    async def test_zero_entry_price_reported_not_raised(self, db):
        _insert_signal(db, id="bad", entry_price=0.0)
        _insert_signal(db, id="good", entry_price=100.0)
        result = await _engine(db, _oracle({"ETH": 110.0})).refresh_positions()

        assert result.processed == 1
        assert [(e.record_id, e.kind) for e in result.errors] == [("bad", "invalid_data")]
        assert db.get_signal("bad").current_price is None

    @pytest.mark.asyncio
    async def test_zero_entry_price_reported_without_quote(self, db):
        _insert_signal(db, id="bad", token="NOPE", entry_price=0.0)
        oracle = _oracle({})
        result = await _engine(db, oracle).refresh_positions()

        assert [(e.record_id, e.kind) for e in result.errors] == [("bad", "invalid_data")]
        assert result.skipped_no_price == 0
        oracle.get_price.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_non_positive_leverage_clamped_with_warning(self, db):
        _insert_signal(db, id="s1", leverage=0.0)
        result = await _engine(db, _oracle({"ETH": 110.0})).refresh_positions()

        assert [w.kind for w in result.warnings] == ["leverage_clamped"]
        assert db.get_signal("s1").unrealized_pnl_pct == pytest.approx(10.0)

    @pytest.mark.asyncio
    async def test_concurrent_close_is_not_clobbered(self, db):
        _insert_signal(db, id="s1", take_profit_pct=5.0)

        async def _get_price(key: str):
            # someone else closes the signal after the snapshot was read
            db.update_signal("s1", {
                "status": SignalStatus.CLOSED,
                "exit_price": 99.0,
                "exit_timestamp": NOW,
                "pnl_pct": -1.0,
            })
            return PriceQuote(key=key, price=120.0)

        oracle = AsyncMock()
        oracle.get_price.side_effect = _get_price
        result = await _engine(db, oracle).refresh_positions()

        assert result.conflicts == 1
        assert result.auto_closed == []
        stored = db.get_signal("s1")
        assert stored.exit_price == 99.0
        assert stored.pnl_pct == -1.0

    @pytest.mark.asyncio
    async def test_write_failure_does_not_abort_batch(self, db):
        _insert_signal(db, id="s1")
        _insert_signal(db, id="s2")
        original = db.update_signal

        def _flaky(signal_id, fields, expected_status=None):
            if signal_id == "s1":
                raise StoreWriteError("disk full", record_id=signal_id)
            return original(signal_id, fields, expected_status)

        with patch.object(db, "update_signal", side_effect=_flaky):
            result = await _engine(db, _oracle({"ETH": 103.0})).refresh_positions()

        assert result.processed == 1
        assert [(e.record_id, e.kind) for e in result.errors] == [("s1", "write_failed")]
        assert db.get_signal("s2").current_price == 103.0

    @pytest.mark.asyncio
    async def test_store_unavailable_propagates(self, db):
        db.close()
        with pytest.raises(StoreUnavailableError):
            await _engine(db, _oracle({})).refresh_positions()


# ── close_expired_signals ────────────────────────────────────────────

class TestCloseExpired:

    @pytest.mark.asyncio
    async def test_closes_only_past_horizon(self, db):
        _insert_signal(db, id="old", timestamp=NOW - dt.timedelta(days=40))
        _insert_signal(db, id="young", timestamp=NOW - dt.timedelta(days=3))

        closed = await _engine(db, _oracle({})).close_expired_signals(30)

        assert closed == 1
        old = db.get_signal("old")
        assert old.status == SignalStatus.CLOSED
        assert old.pnl_pct == 0.0
        assert old.exit_price == 100.0
        assert old.exit_timestamp == NOW
        assert db.get_signal("young").status == SignalStatus.OPEN

    @pytest.mark.asyncio
    async def test_keeps_last_unrealized_pnl(self, db):
        _insert_signal(db, id="old", timestamp=NOW - dt.timedelta(days=40), collateral_usd=50.0)
        db.update_signal("old", {
            "current_price": 104.0, "unrealized_pnl_pct": 4.0, "unrealized_pnl_usd": 2.0,
        })

        await _engine(db, _oracle({})).close_expired_signals(30)

        old = db.get_signal("old")
        assert old.pnl_pct == 4.0
        assert old.pnl_usd == pytest.approx(2.0)
        assert old.exit_price == 104.0
        assert old.unrealized_pnl_pct is None

    @pytest.mark.asyncio
    async def test_own_expiry_closes_early(self, db):
        _insert_signal(
            db, id="s1",
            timestamp=NOW - dt.timedelta(days=2),
            expires_at=NOW - dt.timedelta(hours=1),
        )
        closed = await _engine(db, _oracle({})).close_expired_signals(30)
        assert closed == 1
        assert db.get_signal("s1").status == SignalStatus.CLOSED

    @pytest.mark.asyncio
    async def test_default_horizon_from_config(self, db):
        _insert_signal(db, id="old", timestamp=NOW - dt.timedelta(days=31))
        assert await _engine(db, _oracle({})).close_expired_signals() == 1

    @pytest.mark.asyncio
    async def test_already_closed_untouched(self, db):
        _insert_signal(
            db, id="done", timestamp=NOW - dt.timedelta(days=40),
            status="closed", exit_price=120.0, exit_timestamp=NOW - dt.timedelta(days=35),
            pnl_pct=20.0,
        )
        assert await _engine(db, _oracle({})).close_expired_signals(30) == 0
        assert db.get_signal("done").pnl_pct == 20.0


# ── close_opposing_positions ─────────────────────────────────────────

class TestOpposingSignals:

    def test_sell_closes_open_buy(self, db):
        _insert_signal(db, id="buy", action="BUY", entry_price=100.0, collateral_usd=100.0,
                       timestamp=NOW - dt.timedelta(days=5))
        sell = _insert_signal(db, id="sell", action="SELL", entry_price=120.0,
                              tx_hash="0xfeed", timestamp=NOW)

        closed = _engine(db, _oracle({})).close_opposing_positions(sell)

        assert closed == ["buy"]
        buy = db.get_signal("buy")
        assert buy.status == SignalStatus.CLOSED
        assert buy.exit_price == 120.0
        assert buy.pnl_pct == pytest.approx(20.0)
        assert buy.pnl_usd == pytest.approx(20.0)
        assert buy.exit_tx_hash == "0xfeed"
        assert buy.exit_timestamp == NOW
        assert db.get_signal("sell").parent_signal_id == "buy"

    def test_short_closes_long(self, db):
        _insert_signal(db, id="long", action="LONG", entry_price=100.0, leverage=3.0)
        short = _insert_signal(db, id="short", action="SHORT", entry_price=90.0, timestamp=NOW)

        assert _engine(db, _oracle({})).close_opposing_positions(short) == ["long"]
        assert db.get_signal("long").pnl_pct == pytest.approx(-30.0)

    def test_other_provider_and_token_untouched(self, db):
        _insert_signal(db, id="other-provider", action="BUY", provider="0x" + "c" * 40)
        _insert_signal(db, id="other-token", action="BUY", token="BTC")
        sell = _insert_signal(db, id="sell", action="SELL", entry_price=110.0, timestamp=NOW)

        assert _engine(db, _oracle({})).close_opposing_positions(sell) == []
        assert db.get_signal("other-provider").status == SignalStatus.OPEN
        assert db.get_signal("other-token").status == SignalStatus.OPEN
        assert db.get_signal("sell").parent_signal_id is None

    def test_lookback_window_respected(self, db):
        _insert_signal(db, id="stale-buy", action="BUY", timestamp=NOW - dt.timedelta(days=45))
        sell = _insert_signal(db, id="sell", action="SELL", entry_price=110.0, timestamp=NOW)
        assert _engine(db, _oracle({})).close_opposing_positions(sell) == []

    def test_long_closes_nothing(self, db):
        _insert_signal(db, id="short", action="SHORT")
        long = _insert_signal(db, id="long", action="LONG", entry_price=90.0, timestamp=NOW)
        assert _engine(db, _oracle({})).close_opposing_positions(long) == []
