"""Periodic jobs invoked by an external driver (cron, CLI).

There is no internal scheduler: each job is a single pass that returns
an aggregate result. Per-record failures are counted; only an
unreachable store aborts a job.
"""

from __future__ import annotations

import asyncio
import time
from collections import Counter
from dataclasses import dataclass, field
from typing import Any

from signal_ledger.analytics.verification import VerificationEngine
from signal_ledger.engine.position_manager import PositionEngine
from signal_ledger.errors import StoreUnavailableError
from signal_ledger.observability.logger import get_logger
from signal_ledger.observability.metrics import metrics
from signal_ledger.storage.database import Database
from signal_ledger.storage.models import ProviderRecord

log = get_logger(__name__)


@dataclass
class PositionJobResult:
    """Summary of one refresh + expiry pass."""
    started_at: float
    duration_secs: float = 0.0
    processed: int = 0
    auto_closed: int = 0
    close_reasons: dict[str, int] = field(default_factory=dict)
    expired: int = 0
    skipped_no_price: int = 0
    conflicts: int = 0
    errors: list[dict[str, str]] = field(default_factory=list)
    warnings: list[dict[str, str]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "duration_secs": self.duration_secs,
            "processed": self.processed,
            "auto_closed": self.auto_closed,
            "close_reasons": dict(self.close_reasons),
            "expired": self.expired,
            "skipped_no_price": self.skipped_no_price,
            "conflicts": self.conflicts,
            "errors": list(self.errors),
            "warnings": list(self.warnings),
        }


@dataclass
class VerificationJobResult:
    """Summary of one verification pass over all providers."""
    started_at: float
    duration_secs: float = 0.0
    total: int = 0
    updated: int = 0
    newly_verified: int = 0
    tier_changes: dict[str, int] = field(default_factory=dict)
    errors: list[dict[str, str]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "duration_secs": self.duration_secs,
            "total": self.total,
            "updated": self.updated,
            "newly_verified": self.newly_verified,
            "tier_changes": dict(self.tier_changes),
            "errors": list(self.errors),
        }


# ── Positions ────────────────────────────────────────────────────────

async def run_position_job(
    engine: PositionEngine,
    max_age_days: int | None = None,
) -> PositionJobResult:
    """Revalue open signals, then force-close expired ones."""
    result = PositionJobResult(started_at=time.time())

    with metrics.timer("jobs.positions"):
        refresh = await engine.refresh_positions()
        expired = await engine.close_expired_signals(max_age_days)

    reasons = Counter(c["close_reason"] for c in refresh.auto_closed)
    result.processed = refresh.processed
    result.auto_closed = len(refresh.auto_closed)
    result.close_reasons = dict(sorted(reasons.items()))
    result.expired = expired
    result.skipped_no_price = refresh.skipped_no_price
    result.conflicts = refresh.conflicts
    result.errors = [e.to_dict() for e in refresh.errors]
    result.warnings = [w.to_dict() for w in refresh.warnings]
    result.duration_secs = round(time.time() - result.started_at, 2)

    metrics.incr("positions.processed", result.processed)
    metrics.incr("positions.auto_closed", result.auto_closed)
    metrics.incr("positions.expired", result.expired)
    metrics.incr("positions.errors", len(result.errors))
    for reason, count in reasons.items():
        metrics.incr(f"positions.closed.{reason}", count)

    log.info(
        "jobs.positions_complete",
        processed=result.processed,
        auto_closed=result.auto_closed,
        expired=result.expired,
        errors=len(result.errors),
        duration=result.duration_secs,
    )
    return result


# ── Verification ─────────────────────────────────────────────────────

async def _verify_one(engine: VerificationEngine, provider: ProviderRecord) -> tuple[str, str, bool]:
    verification = await engine.calculate_verification(provider.address)
    engine.persist_verification(verification)
    return provider.address, verification.tier.value, verification.verified


async def run_verification_job(
    engine: VerificationEngine,
    db: Database,
    batch_size: int = 10,
) -> VerificationJobResult:
    """Recompute and persist trust for every provider, batch by batch."""
    result = VerificationJobResult(started_at=time.time())
    providers = db.list_providers()
    result.total = len(providers)
    tier_changes: Counter[str] = Counter()
    size = max(1, batch_size)

    with metrics.timer("jobs.verification"):
        for start in range(0, len(providers), size):
            batch = providers[start:start + size]
            outcomes = await asyncio.gather(
                *(_verify_one(engine, p) for p in batch), return_exceptions=True,
            )
            for provider, outcome in zip(batch, outcomes):
                if isinstance(outcome, StoreUnavailableError):
                    raise outcome
                if isinstance(outcome, BaseException):
                    log.error(
                        "verification.provider_failed",
                        address=provider.address[:10],
                        error=str(outcome),
                    )
                    result.errors.append({"address": provider.address, "error": str(outcome)})
                    continue

                _, new_tier, verified = outcome
                result.updated += 1
                if new_tier != provider.tier.value:
                    tier_changes[new_tier] += 1
                    log.info(
                        "verification.tier_changed",
                        address=provider.address[:10],
                        old_tier=provider.tier.value,
                        new_tier=new_tier,
                    )
                if verified and not provider.verified:
                    result.newly_verified += 1

    result.tier_changes = dict(sorted(tier_changes.items()))
    result.duration_secs = round(time.time() - result.started_at, 2)

    metrics.incr("verification.updated", result.updated)
    metrics.incr("verification.errors", len(result.errors))
    metrics.incr("verification.newly_verified", result.newly_verified)

    log.info(
        "jobs.verification_complete",
        total=result.total,
        updated=result.updated,
        newly_verified=result.newly_verified,
        tier_changes=result.tier_changes,
        errors=len(result.errors),
        duration=result.duration_secs,
    )
    return result
