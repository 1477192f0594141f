"""Tests for the periodic position and verification jobs."""

from __future__ import annotations

import datetime as dt
from unittest.mock import AsyncMock, patch

import pytest

from signal_ledger.analytics.verification import VerificationEngine
from signal_ledger.config import OracleConfig, PositionConfig, VerificationConfig
from signal_ledger.connectors.price_oracle import StaticPriceOracle
from signal_ledger.engine.jobs import run_position_job, run_verification_job
from signal_ledger.engine.position_manager import PositionEngine
from signal_ledger.errors import StoreUnavailableError, StoreWriteError
from signal_ledger.observability.metrics import metrics
from signal_ledger.storage.database import Database
from signal_ledger.storage.models import ProviderRecord, SignalRecord, Tier

NOW = dt.datetime(2026, 3, 15, 12, 0, tzinfo=dt.timezone.utc)


def _addr(n: int) -> str:
    return "0x" + f"{n:040x}"


def _insert_signal(db: Database, **overrides) -> SignalRecord:
    defaults = dict(
        id="sig-001",
        provider=_addr(1),
        action="LONG",
        token="ETH",
        entry_price=100.0,
        timestamp=NOW - dt.timedelta(hours=1),
    )
    defaults.update(overrides)
    signal = SignalRecord(**defaults)
    db.insert_signal(signal)
    return signal


@pytest.fixture(autouse=True)
def _reset_metrics():
    metrics.reset()
    yield
    metrics.reset()


# ── Position job ─────────────────────────────────────────────────────

class TestPositionJob:

    @pytest.mark.asyncio
    async def test_aggregates_refresh_and_expiry(self, db):
        _insert_signal(db, id="tp", take_profit_pct=10.0)
        _insert_signal(db, id="sl", token="BTC", stop_loss_pct=5.0)
        _insert_signal(db, id="open", token="SOL")
        _insert_signal(db, id="stale", token="DOGE", timestamp=NOW - dt.timedelta(days=45))

        oracle = StaticPriceOracle({"ETH": 115.0, "BTC": 90.0, "SOL": 101.0})
        engine = PositionEngine(db, oracle, PositionConfig(), OracleConfig(), clock=lambda: NOW)

        result = await run_position_job(engine)

        assert result.processed == 3
        assert result.auto_closed == 2
        assert result.close_reasons == {"stop_loss": 1, "take_profit": 1}
        assert result.expired == 1
        assert result.skipped_no_price == 1
        assert metrics.counter("positions.auto_closed") == 2
        assert metrics.counter("positions.closed.take_profit") == 1
        assert "jobs.positions" in metrics.snapshot()["timings_ms"]

    @pytest.mark.asyncio
    async def test_result_serialisable(self, db):
        engine = PositionEngine(db, StaticPriceOracle({}), clock=lambda: NOW)
        data = (await run_position_job(engine)).to_dict()
        assert data["processed"] == 0
        assert data["errors"] == []


# ── Verification job ─────────────────────────────────────────────────

def _engine(db: Database, tx_count: int = 1500) -> VerificationEngine:
    chain = AsyncMock()
    chain.get_transaction_count.return_value = tx_count
    chain.get_balance_eth.return_value = 12.0
    probe = AsyncMock()
    probe.is_reachable.return_value = True
    return VerificationEngine(db, chain, probe, VerificationConfig(), clock=lambda: NOW)


def _seed_provider(db: Database, n: int, closed: int = 0) -> str:
    address = _addr(n)
    db.upsert_provider(ProviderRecord(
        address=address, name=f"provider-{n}", twitter=f"p{n}_calls",
        registered_at=NOW - dt.timedelta(days=90) + dt.timedelta(seconds=n),
    ))
    for i in range(closed):
        ts = NOW - dt.timedelta(days=2, hours=i)
        _insert_signal(
            db, id=f"p{n}-s{i}", provider=address, status="closed", pnl_pct=12.0,
            exit_price=112.0, exit_timestamp=ts + dt.timedelta(hours=1), tx_hash="0xtx",
            timestamp=ts,
        )
    return address


class TestVerificationJob:

    @pytest.mark.asyncio
    async def test_updates_every_provider(self, db):
        a = _seed_provider(db, 1, closed=10)
        b = _seed_provider(db, 2)

        result = await run_verification_job(_engine(db), db, batch_size=1)

        assert result.total == 2
        assert result.updated == 2
        assert result.errors == []
        assert db.get_provider(a).verified is True
        assert db.get_provider(b).verified_at == NOW

    @pytest.mark.asyncio
    async def test_tier_changes_and_newly_verified(self, db):
        _seed_provider(db, 1, closed=10)
        result = await run_verification_job(_engine(db), db)

        tier = db.get_provider(_addr(1)).tier
        assert tier != Tier.UNRANKED
        assert result.tier_changes == {tier.value: 1}
        assert result.newly_verified == 1

        again = await run_verification_job(_engine(db), db)
        assert again.tier_changes == {}
        assert again.newly_verified == 0

    @pytest.mark.asyncio
    async def test_single_failure_counted(self, db):
        _seed_provider(db, 1, closed=10)
        _seed_provider(db, 2, closed=10)
        original = db.update_provider_trust

        def _flaky(address, **kwargs):
            if address == _addr(1):
                raise StoreWriteError("locked", record_id=address)
            return original(address, **kwargs)

        with patch.object(db, "update_provider_trust", side_effect=_flaky):
            result = await run_verification_job(_engine(db), db)

        assert result.updated == 1
        assert [e["address"] for e in result.errors] == [_addr(1)]
        assert metrics.counter("verification.errors") == 1

    @pytest.mark.asyncio
    async def test_store_unavailable_propagates(self, db):
        _seed_provider(db, 1)
        engine = _engine(db)

        with patch.object(db, "get_provider", side_effect=StoreUnavailableError("gone")):
            with pytest.raises(StoreUnavailableError):
                await run_verification_job(engine, db)

    @pytest.mark.asyncio
    async def test_no_providers(self, db):
        result = await run_verification_job(_engine(db), db)
        assert result.total == 0
        assert result.to_dict()["tier_changes"] == {}
