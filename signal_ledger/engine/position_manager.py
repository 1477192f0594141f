"""Position manager — live valuation and auto-close of open signals.

Exit rules, first match wins:
  1. Take-profit: pnl_pct >= take_profit_pct          -> closed
  2. Stop-loss:   pnl_pct <= -stop_loss_pct           -> stopped
  3. Expiry:      older than the horizon or past expires_at -> closed
  4. Opposite signal: a new SELL/SHORT/BUY from the same provider on
     the same token closes the matching BUY/LONG/SHORT  -> closed

Every signal is an independent unit of work. Oracle failures and single
write failures are counted in the result; only an unreachable store
aborts the run.
"""

from __future__ import annotations

import asyncio
import datetime as dt
from dataclasses import dataclass, field
from typing import Any, Callable

from signal_ledger.config import OracleConfig, PositionConfig
from signal_ledger.connectors.price_oracle import PriceOracle
from signal_ledger.engine.pnl import (
    OPPOSING_ACTION,
    calculate_pnl_pct,
    calculate_pnl_usd,
    close_status,
    effective_leverage,
    evaluate_close,
    valuation_key,
)
from signal_ledger.errors import InvalidSignalDataError, StoreWriteError
from signal_ledger.observability.logger import get_logger
from signal_ledger.storage.database import Database
from signal_ledger.storage.models import CloseReason, SignalRecord, SignalStatus, utcnow

log = get_logger(__name__)


@dataclass
class PositionUpdate:
    """Outcome of valuing one open signal."""
    signal_id: str
    current_price: float
    pnl_pct: float
    pnl_usd: float | None
    should_close: bool = False
    close_reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.signal_id,
            "current_price": self.current_price,
            "pnl_pct": round(self.pnl_pct, 4),
            "pnl_usd": round(self.pnl_usd, 2) if self.pnl_usd is not None else None,
            "should_close": self.should_close,
            "close_reason": self.close_reason,
        }


@dataclass
class RecordError:
    """A per-record problem reported instead of raised."""
    record_id: str
    kind: str  # "invalid_data" | "write_failed" | "leverage_clamped" | "invariant"
    message: str

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.record_id, "kind": self.kind, "message": self.message}


@dataclass
class RefreshResult:
    """Aggregate result of one refresh_positions() run."""
    processed: int = 0
    updates: list[PositionUpdate] = field(default_factory=list)
    auto_closed: list[dict[str, str]] = field(default_factory=list)
    prices_resolved: int = 0
    price_failures: int = 0
    skipped_no_price: int = 0
    conflicts: int = 0
    errors: list[RecordError] = field(default_factory=list)
    warnings: list[RecordError] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "processed": self.processed,
            "auto_closed": list(self.auto_closed),
            "prices_resolved": self.prices_resolved,
            "price_failures": self.price_failures,
            "skipped_no_price": self.skipped_no_price,
            "conflicts": self.conflicts,
            "errors": [e.to_dict() for e in self.errors],
            "warnings": [w.to_dict() for w in self.warnings],
            "updates": [u.to_dict() for u in self.updates],
        }


class PositionEngine:
    """Values open signals against the oracle and enforces exit rules."""

    def __init__(
        self,
        db: Database,
        oracle: PriceOracle,
        config: PositionConfig | None = None,
        oracle_config: OracleConfig | None = None,
        clock: Callable[[], dt.datetime] = utcnow,
    ):
        self._db = db
        self._oracle = oracle
        self._config = config or PositionConfig()
        self._oracle_config = oracle_config or OracleConfig()
        self._clock = clock

    # ── Live valuation ───────────────────────────────────────────────

    async def refresh_positions(self) -> RefreshResult:
        """Revalue every open signal and close those that hit TP/SL."""
        result = RefreshResult()
        signals: list[SignalRecord] = []
        for signal in self._db.list_open_signals():
            if signal.entry_price is None:
                continue
            if signal.entry_price <= 0:
                log.warning("positions.invalid_signal", signal_id=signal.id, entry_price=signal.entry_price)
                result.errors.append(RecordError(
                    signal.id, "invalid_data", f"entry_price must be positive, got {signal.entry_price}",
                ))
                continue
            signals.append(signal)
        if not signals:
            log.info("positions.refresh_complete", processed=0, errors=len(result.errors))
            return result

        keys = sorted({k for k in (valuation_key(s) for s in signals) if k})
        prices = await self._resolve_prices(keys)
        result.prices_resolved = len(prices)
        result.price_failures = len(keys) - len(prices)

        now = self._clock()
        for signal in signals:
            key = valuation_key(signal)
            if key is None:
                result.errors.append(RecordError(
                    signal.id, "invalid_data", "signal has neither token nor token_address",
                ))
                continue
            price = prices.get(key)
            if price is None:
                result.skipped_no_price += 1
                continue

            try:
                update = self._apply_price(signal, price, now, result)
            except InvalidSignalDataError as e:
                log.warning("positions.invalid_signal", signal_id=signal.id, error=str(e))
                result.errors.append(RecordError(signal.id, "invalid_data", str(e)))
                continue
            except StoreWriteError as e:
                log.error("positions.write_failed", signal_id=signal.id, error=str(e))
                result.errors.append(RecordError(signal.id, "write_failed", str(e)))
                continue

            if update is None:
                result.conflicts += 1
                continue

            result.processed += 1
            result.updates.append(update)
            if update.should_close and update.close_reason:
                result.auto_closed.append({"id": signal.id, "close_reason": update.close_reason})

        log.info(
            "positions.refresh_complete",
            processed=result.processed,
            auto_closed=len(result.auto_closed),
            skipped=result.skipped_no_price,
            conflicts=result.conflicts,
            errors=len(result.errors),
        )
        return result

    async def _resolve_prices(self, keys: list[str]) -> dict[str, float]:
        """One oracle call per distinct key, bounded and individually timed out."""
        semaphore = asyncio.Semaphore(max(1, self._config.batch_size))
        timeout = self._oracle_config.timeout_secs

        async def _fetch(key: str) -> tuple[str, float | None]:
            async with semaphore:
                try:
                    quote = await asyncio.wait_for(self._oracle.get_price(key), timeout)
                except asyncio.TimeoutError:
                    log.warning("oracle.timeout", key=key, timeout_secs=timeout)
                    return key, None
                except Exception as e:
                    log.warning("oracle.price_failed", key=key, error=str(e))
                    return key, None
            if quote is None or quote.price is None or quote.price <= 0:
                return key, None
            return key, float(quote.price)

        pairs = await asyncio.gather(*(_fetch(k) for k in keys))
        return {k: p for k, p in pairs if p is not None}

    def _apply_price(
        self,
        signal: SignalRecord,
        price: float,
        now: dt.datetime,
        result: RefreshResult,
    ) -> PositionUpdate | None:
        """Compute PnL, decide, and write. None means the signal was closed elsewhere."""
        entry = signal.entry_price
        if entry is None or entry <= 0:
            raise InvalidSignalDataError(
                f"entry_price must be positive, got {entry}",
                signal_id=signal.id, field="entry_price",
            )
        leverage, clamped = effective_leverage(signal.leverage)
        if clamped:
            log.warning("positions.leverage_clamped", signal_id=signal.id, leverage=signal.leverage)
            result.warnings.append(RecordError(
                signal.id, "leverage_clamped", f"leverage {signal.leverage} treated as 1",
            ))

        pnl_pct = calculate_pnl_pct(signal.action, entry, price, leverage)
        pnl_usd = calculate_pnl_usd(signal.collateral_usd, pnl_pct)
        drawdown = min(signal.max_drawdown_pct or 0.0, pnl_pct, 0.0)
        reason = evaluate_close(pnl_pct, signal.take_profit_pct, signal.stop_loss_pct)

        if reason is None:
            written = self._db.update_signal(
                signal.id,
                {
                    "current_price": price,
                    "unrealized_pnl_pct": pnl_pct,
                    "unrealized_pnl_usd": pnl_usd,
                    "max_drawdown_pct": drawdown,
                },
                expected_status=SignalStatus.OPEN,
            )
        else:
            written = self._db.update_signal(
                signal.id,
                self._closure_fields(reason, price, pnl_pct, pnl_usd, now, drawdown),
                expected_status=SignalStatus.OPEN,
            )

        if not written:
            log.info("positions.closed_elsewhere", signal_id=signal.id)
            return None

        if reason is not None:
            log.info(
                "position.auto_closed",
                signal_id=signal.id,
                reason=reason.value,
                pnl_pct=round(pnl_pct, 2),
                exit_price=price,
            )
        return PositionUpdate(
            signal_id=signal.id,
            current_price=price,
            pnl_pct=pnl_pct,
            pnl_usd=pnl_usd,
            should_close=reason is not None,
            close_reason=reason.value if reason else None,
        )

    @staticmethod
    def _closure_fields(
        reason: CloseReason,
        exit_price: float,
        pnl_pct: float,
        pnl_usd: float | None,
        now: dt.datetime,
        drawdown: float | None = None,
    ) -> dict[str, Any]:
        fields: dict[str, Any] = {
            "status": close_status(reason),
            "exit_price": exit_price,
            "exit_timestamp": now,
            "pnl_pct": pnl_pct,
            "pnl_usd": pnl_usd,
            "current_price": None,
            "unrealized_pnl_pct": None,
            "unrealized_pnl_usd": None,
        }
        if drawdown is not None:
            fields["max_drawdown_pct"] = drawdown
        return fields

    # ── Expiry ───────────────────────────────────────────────────────

    async def close_expired_signals(self, max_age_days: int | None = None) -> int:
        """Force-close open signals past the horizon or their own expires_at.

        Final PnL is the last known unrealized value, else 0.
        """
        days = self._config.max_age_days if max_age_days is None else max_age_days
        now = self._clock()
        horizon = now - dt.timedelta(days=days)

        closed = 0
        for signal in self._db.list_open_signals():
            past_horizon = signal.timestamp < horizon
            past_expiry = signal.expires_at is not None and signal.expires_at <= now
            if not (past_horizon or past_expiry):
                continue

            pnl_pct = signal.unrealized_pnl_pct if signal.unrealized_pnl_pct is not None else 0.0
            exit_price = signal.current_price
            if exit_price is None:
                exit_price = signal.entry_price if signal.entry_price is not None else 0.0
            fields = self._closure_fields(
                CloseReason.EXPIRED,
                exit_price,
                pnl_pct,
                calculate_pnl_usd(signal.collateral_usd, pnl_pct),
                now,
            )
            try:
                if self._db.update_signal(signal.id, fields, expected_status=SignalStatus.OPEN):
                    closed += 1
                    log.info(
                        "position.expired",
                        signal_id=signal.id,
                        age_days=round((now - signal.timestamp).total_seconds() / 86400, 1),
                        pnl_pct=round(pnl_pct, 2),
                    )
            except StoreWriteError as e:
                log.error("positions.expire_failed", signal_id=signal.id, error=str(e))

        if closed:
            log.info("positions.expired_closed", count=closed, max_age_days=days)
        return closed

    # ── Opposite-signal pairing ──────────────────────────────────────

    def close_opposing_positions(self, new_signal: SignalRecord) -> list[str]:
        """Close the provider's open positions that ``new_signal`` reverses.

        SELL closes BUY, SHORT closes LONG, BUY covers SHORT. The new
        signal's entry price is the exit price of the closed ones.
        """
        opposite = OPPOSING_ACTION.get(new_signal.action)
        if opposite is None or not new_signal.token:
            return []
        exit_price = new_signal.entry_price
        if exit_price is None or exit_price <= 0:
            log.warning("positions.pairing_skipped", signal_id=new_signal.id, reason="no_entry_price")
            return []

        lookback = self._config.opposite_lookback_days.get(new_signal.action.value, 30)
        since = new_signal.timestamp - dt.timedelta(days=lookback)
        candidates = self._db.list_open_signals_for(
            new_signal.provider, new_signal.token, opposite, since,
        )

        closed_ids: list[str] = []
        for open_signal in candidates:
            if open_signal.id == new_signal.id:
                continue
            try:
                leverage, _ = effective_leverage(open_signal.leverage)
                pnl_pct = calculate_pnl_pct(
                    open_signal.action, open_signal.entry_price or 0.0, exit_price, leverage,
                )
                fields = self._closure_fields(
                    CloseReason.OPPOSITE_SIGNAL,
                    exit_price,
                    pnl_pct,
                    calculate_pnl_usd(open_signal.collateral_usd, pnl_pct),
                    new_signal.timestamp,
                )
                fields["exit_tx_hash"] = new_signal.tx_hash
                if self._db.update_signal(open_signal.id, fields, expected_status=SignalStatus.OPEN):
                    closed_ids.append(open_signal.id)
                    log.info(
                        "position.paired_close",
                        signal_id=open_signal.id,
                        closed_by=new_signal.id,
                        pnl_pct=round(pnl_pct, 2),
                    )
            except (InvalidSignalDataError, StoreWriteError) as e:
                log.warning("positions.pairing_failed", signal_id=open_signal.id, error=str(e))

        if closed_ids:
            try:
                self._db.update_signal(new_signal.id, {"parent_signal_id": closed_ids[0]})
            except StoreWriteError as e:
                log.warning("positions.parent_link_failed", signal_id=new_signal.id, error=str(e))
        return closed_ids
