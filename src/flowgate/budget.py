# budget.py
"""
Dual-axis resource governor.

The ledger tracks tokens, cost and wall-clock seconds against the current
tier. Admission (try_admit) reserves only a concurrency slot; numeric usage is
debited at settle(). Requests admitted back-to-back before any of them settles
all see the same favorable snapshot and can overshoot the cap once they settle.
That optimistic window is the baseline contract; the only hard backpressure at
admission time is the slot count.
"""
from __future__ import annotations

import json
import logging
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Optional, Set

from pydantic import BaseModel, Field

from .model import Usage

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------
# Ledger schema (persisted)
# ---------------------------------------------------------------------

class Tier(BaseModel):
    monthly_cost_cap: float = Field(gt=0)
    token_cap: int = Field(gt=0)
    wall_time_cap: float = Field(gt=0)


class LedgerUsage(BaseModel):
    tokens: int = 0
    cost_usd: float = 0.0
    wall_time_sec: float = 0.0
    session_start: Optional[float] = None


class Alerts(BaseModel):
    warning_at: float = 0.8
    stop_at: float = 0.95


class Limits(BaseModel):
    max_concurrency: int = Field(default=3, ge=1)
    max_wall_time_per_attempt: float = Field(default=300.0, gt=0)


def default_tiers() -> Dict[str, Tier]:
    return {
        "minimal": Tier(monthly_cost_cap=3, token_cap=100_000, wall_time_cap=2 * 3600),
        "standard": Tier(monthly_cost_cap=10, token_cap=350_000, wall_time_cap=8 * 3600),
        "pro": Tier(monthly_cost_cap=30, token_cap=1_000_000, wall_time_cap=24 * 3600),
    }


class BudgetLedger(BaseModel):
    tiers: Dict[str, Tier] = Field(default_factory=default_tiers)
    current_tier: str = "minimal"
    usage: LedgerUsage = Field(default_factory=LedgerUsage)
    alerts: Alerts = Field(default_factory=Alerts)
    limits: Limits = Field(default_factory=Limits)
    active_request_ids: Set[str] = Field(default_factory=set)

    def tier(self) -> Tier:
        try:
            return self.tiers[self.current_tier]
        except KeyError:
            raise KeyError(
                f"Unknown budget tier {self.current_tier!r}. Known tiers: {sorted(self.tiers)}"
            ) from None


# ---------------------------------------------------------------------
# Decisions / snapshots
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class UsageRates:
    tokens: float
    cost: float
    wall_time: float

    @property
    def max_rate(self) -> float:
        return max(self.tokens, self.cost, self.wall_time)


@dataclass(frozen=True)
class AdmissionDecision:
    allowed: bool
    reason: Optional[str]
    usage_rates: UsageRates
    warning: bool = False


@dataclass(frozen=True)
class BudgetStatus:
    tier: str
    tokens: int
    token_cap: int
    cost_usd: float
    monthly_cost_cap: float
    wall_time_sec: float          # settled work + current session
    wall_time_cap: float
    active_requests: int
    max_concurrency: int
    rates: UsageRates


# ---------------------------------------------------------------------
# Governor
# ---------------------------------------------------------------------

class ResourceGovernor:
    """
    File-backed, lock-guarded budget ledger.

    All mutation goes through try_admit / settle and the administrative
    calls (reset, change_tier, update_limits, update_alerts). Every
    read-modify-write holds the same lock.
    """

    def __init__(
        self,
        path: str | Path,
        *,
        tier: Optional[str] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.path = Path(path)
        self._clock = clock
        self._lock = threading.Lock()
        self._ledger = self._load(tier)
        self._ledger.usage.session_start = self._clock()

    # ---- persistence ----

    def _load(self, tier: Optional[str]) -> BudgetLedger:
        if not self.path.exists():
            ledger = BudgetLedger()
            if tier is not None:
                ledger.current_tier = tier
            ledger.tier()
            log.info("Creating budget ledger %s (tier=%s)", self.path, ledger.current_tier)
            self._write(ledger)
            return ledger

        try:
            ledger = BudgetLedger.model_validate_json(self.path.read_text(encoding="utf-8"))
        except ValueError as e:
            raise ValueError(f"Failed to read budget ledger {self.path}: {e}") from e

        if ledger.active_request_ids:
            # reservations of a process that never settled them
            log.warning(
                "Dropping %d stale reservation(s) from %s",
                len(ledger.active_request_ids), self.path,
            )
            ledger.active_request_ids.clear()
        if tier is not None and tier != ledger.current_tier:
            ledger.current_tier = tier
        ledger.tier()
        return ledger

    def _write(self, ledger: BudgetLedger) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        data = json.loads(ledger.model_dump_json())
        data["active_request_ids"] = sorted(ledger.active_request_ids)
        tmp.write_text(json.dumps(data, indent=2, sort_keys=True), encoding="utf-8")
        tmp.replace(self.path)

    def _save(self) -> None:
        self._write(self._ledger)

    # ---- rates ----

    def _session_wall_time(self) -> float:
        start = self._ledger.usage.session_start
        if start is None:
            return self._ledger.usage.wall_time_sec
        return self._ledger.usage.wall_time_sec + max(0.0, self._clock() - start)

    def _rates(self, estimate: Usage) -> UsageRates:
        tier = self._ledger.tier()
        usage = self._ledger.usage
        projected_wall = self._session_wall_time() + estimate.wall_time_sec
        return UsageRates(
            tokens=(usage.tokens + estimate.tokens) / tier.token_cap,
            cost=(usage.cost_usd + estimate.cost_usd) / tier.monthly_cost_cap,
            wall_time=projected_wall / tier.wall_time_cap,
        )

    # ---- admission ----

    def try_admit(self, estimate: Usage, request_id: str) -> AdmissionDecision:
        """
        Admission check before work starts.

        Denies if the concurrency slots are full, if the estimate exceeds the
        per-attempt wall-time limit, or if the projected max rate reaches
        alerts.stop_at. Warns (but allows) at alerts.warning_at.
        """
        with self._lock:
            ledger = self._ledger
            rates = self._rates(estimate)
            max_rate = rates.max_rate

            active = len(ledger.active_request_ids)
            if active >= ledger.limits.max_concurrency:
                return AdmissionDecision(
                    allowed=False,
                    reason=f"concurrency limit reached ({active}/{ledger.limits.max_concurrency})",
                    usage_rates=rates,
                )

            if estimate.wall_time_sec > ledger.limits.max_wall_time_per_attempt:
                return AdmissionDecision(
                    allowed=False,
                    reason=(
                        f"per-attempt wall time limit exceeded: {estimate.wall_time_sec}s > "
                        f"{ledger.limits.max_wall_time_per_attempt}s"
                    ),
                    usage_rates=rates,
                )

            if max_rate >= ledger.alerts.stop_at:
                return AdmissionDecision(
                    allowed=False,
                    reason=f"budget limit reached ({max_rate * 100:.1f}% of {ledger.current_tier} tier)",
                    usage_rates=rates,
                )

            warning = max_rate >= ledger.alerts.warning_at
            if warning:
                log.warning(
                    "Approaching budget limit: %.1f%% of %s tier", max_rate * 100, ledger.current_tier
                )

            ledger.active_request_ids.add(request_id)
            return AdmissionDecision(allowed=True, reason=None, usage_rates=rates, warning=warning)

    def settle(self, actual: Usage, request_id: str) -> None:
        """Debit actual usage, free the request's slot, persist."""
        with self._lock:
            usage = self._ledger.usage
            usage.tokens += int(actual.tokens)
            usage.cost_usd += float(actual.cost_usd)
            usage.wall_time_sec += float(actual.wall_time_sec)
            self._ledger.active_request_ids.discard(request_id)
            self._save()

    # ---- administration ----

    def status(self) -> BudgetStatus:
        with self._lock:
            ledger = self._ledger
            tier = ledger.tier()
            return BudgetStatus(
                tier=ledger.current_tier,
                tokens=ledger.usage.tokens,
                token_cap=tier.token_cap,
                cost_usd=ledger.usage.cost_usd,
                monthly_cost_cap=tier.monthly_cost_cap,
                wall_time_sec=self._session_wall_time(),
                wall_time_cap=tier.wall_time_cap,
                active_requests=len(ledger.active_request_ids),
                max_concurrency=ledger.limits.max_concurrency,
                rates=self._rates(Usage()),
            )

    def reset(self) -> None:
        with self._lock:
            self._ledger.usage = LedgerUsage(session_start=self._clock())
            self._ledger.active_request_ids.clear()
            self._save()
        log.info("Budget usage reset")

    def change_tier(self, name: str) -> None:
        with self._lock:
            if name not in self._ledger.tiers:
                raise KeyError(f"Unknown budget tier {name!r}. Known tiers: {sorted(self._ledger.tiers)}")
            self._ledger.current_tier = name
            self._save()
        log.info("Budget tier changed to %s", name)

    def update_limits(
        self,
        *,
        max_concurrency: Optional[int] = None,
        max_wall_time_per_attempt: Optional[float] = None,
    ) -> Limits:
        with self._lock:
            data = self._ledger.limits.model_dump()
            if max_concurrency is not None:
                data["max_concurrency"] = max_concurrency
            if max_wall_time_per_attempt is not None:
                data["max_wall_time_per_attempt"] = max_wall_time_per_attempt
            self._ledger.limits = Limits.model_validate(data)
            self._save()
            return self._ledger.limits

    def update_alerts(
        self,
        *,
        warning_at: Optional[float] = None,
        stop_at: Optional[float] = None,
    ) -> Alerts:
        with self._lock:
            alerts = self._ledger.alerts
            new = Alerts(
                warning_at=alerts.warning_at if warning_at is None else warning_at,
                stop_at=alerts.stop_at if stop_at is None else stop_at,
            )
            if new.warning_at > new.stop_at:
                raise ValueError(f"warning_at ({new.warning_at}) must not exceed stop_at ({new.stop_at})")
            self._ledger.alerts = new
            self._save()
            return new

    @property
    def ledger(self) -> BudgetLedger:
        """Deep copy of the current ledger (read-only view)."""
        with self._lock:
            return self._ledger.model_copy(deep=True)

    @property
    def active_requests(self) -> int:
        return len(self._ledger.active_request_ids)
