"""PnL math for leveraged directional positions.

pnl_pct = direction * (current - entry) / entry * 100 * leverage

where direction is +1 for LONG/BUY and -1 for SHORT/SELL.
"""

from __future__ import annotations

from signal_ledger.errors import InvalidSignalDataError
from signal_ledger.storage.models import CloseReason, SignalAction, SignalRecord, SignalStatus

_DIRECTION: dict[SignalAction, int] = {
    SignalAction.LONG: 1,
    SignalAction.BUY: 1,
    SignalAction.SHORT: -1,
    SignalAction.SELL: -1,
}

# Action of a new signal -> open action it closes
OPPOSING_ACTION: dict[SignalAction, SignalAction] = {
    SignalAction.SELL: SignalAction.BUY,
    SignalAction.SHORT: SignalAction.LONG,
    SignalAction.BUY: SignalAction.SHORT,
}

_CLOSE_STATUS: dict[CloseReason, SignalStatus] = {
    CloseReason.TAKE_PROFIT: SignalStatus.CLOSED,
    CloseReason.STOP_LOSS: SignalStatus.STOPPED,
    CloseReason.EXPIRED: SignalStatus.CLOSED,
    CloseReason.OPPOSITE_SIGNAL: SignalStatus.CLOSED,
}

if set(_DIRECTION) != set(SignalAction) or set(_CLOSE_STATUS) != set(CloseReason):
    raise RuntimeError("PnL mapping tables must cover every action and close reason")


def direction(action: SignalAction) -> int:
    return _DIRECTION[action]


def close_status(reason: CloseReason) -> SignalStatus:
    return _CLOSE_STATUS[reason]


def calculate_pnl_pct(
    action: SignalAction,
    entry_price: float,
    current_price: float,
    leverage: float = 1.0,
) -> float:
    """Leveraged PnL percentage of the entry price move."""
    if entry_price <= 0:
        raise InvalidSignalDataError(
            f"entry_price must be positive, got {entry_price}", field="entry_price",
        )
    return direction(action) * ((current_price - entry_price) / entry_price) * 100 * leverage


def calculate_pnl_usd(collateral_usd: float | None, pnl_pct: float) -> float | None:
    if collateral_usd is None:
        return None
    return collateral_usd * (pnl_pct / 100)


def valuation_key(signal: SignalRecord) -> str | None:
    """Oracle key: lowercased contract address, else uppercased symbol."""
    if signal.token_address:
        return signal.token_address.lower()
    if signal.token:
        return signal.token.upper()
    return None


def effective_leverage(leverage: float | None) -> tuple[float, bool]:
    """Return (leverage, clamped). Missing means 1; non-positive is clamped to 1."""
    if leverage is None:
        return 1.0, False
    if leverage <= 0:
        return 1.0, True
    return float(leverage), False


def evaluate_close(
    pnl_pct: float,
    take_profit_pct: float | None,
    stop_loss_pct: float | None,
) -> CloseReason | None:
    """Take-profit is checked before stop-loss; first match wins."""
    if take_profit_pct is not None and pnl_pct >= take_profit_pct:
        return CloseReason.TAKE_PROFIT
    if stop_loss_pct is not None and pnl_pct <= -stop_loss_pct:
        return CloseReason.STOP_LOSS
    return None
