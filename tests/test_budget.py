from __future__ import annotations

import json
import threading
from pathlib import Path

import pytest

from flowgate.budget import BudgetLedger, LedgerUsage, ResourceGovernor, Tier
from flowgate.model import Usage


def _write_ledger(path: Path, ledger: BudgetLedger) -> None:
    data = json.loads(ledger.model_dump_json())
    path.write_text(json.dumps(data), encoding="utf-8")


@pytest.fixture
def small_tier_path(tmp_path: Path) -> Path:
    path = tmp_path / "budget.json"
    _write_ledger(
        path,
        BudgetLedger(
            tiers={"small": Tier(monthly_cost_cap=100.0, token_cap=1000, wall_time_cap=10_000.0)},
            current_tier="small",
        ),
    )
    return path


def _with_usage(path: Path, tokens: int) -> None:
    ledger = BudgetLedger.model_validate_json(path.read_text(encoding="utf-8"))
    ledger.usage = LedgerUsage(tokens=tokens)
    _write_ledger(path, ledger)


def test_first_use_creates_default_ledger(tmp_path: Path, clock) -> None:
    path = tmp_path / "state" / "budget.json"
    gov = ResourceGovernor(path, clock=clock)
    assert path.exists()
    data = json.loads(path.read_text(encoding="utf-8"))
    assert data["current_tier"] == "minimal"
    assert set(data["tiers"]) == {"minimal", "standard", "pro"}
    assert gov.status().tokens == 0


def test_projected_rate_at_stop_threshold_is_denied(small_tier_path: Path, clock) -> None:
    _with_usage(small_tier_path, 960)
    gov = ResourceGovernor(small_tier_path, clock=clock)

    decision = gov.try_admit(Usage(tokens=100), "r1")
    assert decision.allowed is False
    assert decision.usage_rates.tokens == pytest.approx(1.06)
    assert "budget limit" in decision.reason
    assert gov.active_requests == 0


def test_projected_rate_in_warning_band_is_allowed_with_warning(small_tier_path: Path, clock) -> None:
    _with_usage(small_tier_path, 900)
    gov = ResourceGovernor(small_tier_path, clock=clock)

    decision = gov.try_admit(Usage(tokens=10), "r1")
    assert decision.allowed is True
    assert decision.warning is True
    assert decision.usage_rates.max_rate == pytest.approx(0.91)
    assert gov.active_requests == 1


def test_admission_reserves_slot_but_not_usage(governor: ResourceGovernor) -> None:
    assert governor.try_admit(Usage(tokens=50_000), "a").allowed
    # estimate is not debited: a second look sees the same usage
    assert governor.status().tokens == 0
    assert governor.try_admit(Usage(tokens=50_000), "b").allowed


def test_concurrency_slots_are_enforced(governor: ResourceGovernor) -> None:
    governor.update_limits(max_concurrency=2)
    assert governor.try_admit(Usage(), "a").allowed
    assert governor.try_admit(Usage(), "b").allowed
    denied = governor.try_admit(Usage(), "c")
    assert denied.allowed is False
    assert "concurrency" in denied.reason

    governor.settle(Usage(), "a")
    assert governor.try_admit(Usage(), "c").allowed


def test_per_attempt_wall_time_limit(governor: ResourceGovernor) -> None:
    decision = governor.try_admit(Usage(wall_time_sec=301), "slow")
    assert decision.allowed is False
    assert "wall time" in decision.reason


def test_settle_debits_usage_and_persists(tmp_path: Path, clock) -> None:
    path = tmp_path / "budget.json"
    gov = ResourceGovernor(path, clock=clock)
    assert gov.try_admit(Usage(tokens=10), "r1").allowed
    gov.settle(Usage(tokens=120, cost_usd=0.002, wall_time_sec=1.5), "r1")

    data = json.loads(path.read_text(encoding="utf-8"))
    assert data["usage"]["tokens"] == 120
    assert data["usage"]["cost_usd"] == pytest.approx(0.002)
    assert data["usage"]["wall_time_sec"] == pytest.approx(1.5)
    assert data["active_request_ids"] == []

    reopened = ResourceGovernor(path, clock=clock)
    assert reopened.status().tokens == 120


def test_in_flight_wall_time_counts_toward_rate(small_tier_path: Path, clock) -> None:
    gov = ResourceGovernor(small_tier_path, clock=clock)
    clock.advance(5_000)
    status = gov.status()
    assert status.wall_time_sec == pytest.approx(5_000)
    assert status.rates.wall_time == pytest.approx(0.5)
    # only settled work is recorded in the ledger
    assert gov.ledger.usage.wall_time_sec == 0


def test_stale_reservations_are_dropped_on_load(tmp_path: Path, clock) -> None:
    path = tmp_path / "budget.json"
    ledger = BudgetLedger()
    ledger.active_request_ids = {"old-1", "old-2", "old-3"}
    _write_ledger(path, ledger)

    gov = ResourceGovernor(path, clock=clock)
    assert gov.active_requests == 0
    assert gov.try_admit(Usage(), "new").allowed


def test_change_tier_and_unknown_tier(governor: ResourceGovernor) -> None:
    governor.change_tier("pro")
    assert governor.status().tier == "pro"
    assert governor.status().token_cap == 1_000_000
    with pytest.raises(KeyError):
        governor.change_tier("platinum")


def test_reset_zeroes_usage(governor: ResourceGovernor) -> None:
    governor.try_admit(Usage(), "r")
    governor.settle(Usage(tokens=500, cost_usd=1.0), "r")
    governor.reset()
    status = governor.status()
    assert status.tokens == 0
    assert status.cost_usd == 0


def test_alert_thresholds_must_be_ordered(governor: ResourceGovernor) -> None:
    with pytest.raises(ValueError):
        governor.update_alerts(warning_at=0.9, stop_at=0.5)
    alerts = governor.update_alerts(warning_at=0.5)
    assert alerts.warning_at == 0.5
    assert alerts.stop_at == 0.95


def test_concurrent_admit_and_settle_keep_the_ledger_consistent(tmp_path: Path, clock) -> None:
    path = tmp_path / "budget.json"
    gov = ResourceGovernor(path, clock=clock)
    gov.change_tier("pro")
    gov.update_limits(max_concurrency=3)

    workers, rounds, tokens = 8, 25, 7
    seen = {"peak": 0, "denied": 0, "admitted": 0}
    lock = threading.Lock()
    start = threading.Barrier(workers)

    def worker(n: int) -> None:
        start.wait()
        for i in range(rounds):
            request_id = f"w{n}-{i}"
            decision = gov.try_admit(Usage(tokens=tokens), request_id)
            with lock:
                seen["peak"] = max(seen["peak"], gov.active_requests)
                if not decision.allowed:
                    seen["denied"] += 1
                    continue
                seen["admitted"] += 1
            gov.settle(Usage(tokens=tokens, cost_usd=0.001), request_id)

    threads = [threading.Thread(target=worker, args=(n,)) for n in range(workers)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(10)

    assert seen["admitted"] + seen["denied"] == workers * rounds
    assert seen["peak"] <= 3
    assert gov.active_requests == 0
    assert gov.status().tokens == seen["admitted"] * tokens

    on_disk = BudgetLedger.model_validate_json(path.read_text(encoding="utf-8"))
    assert on_disk.usage.tokens == seen["admitted"] * tokens
    assert on_disk.active_request_ids == set()
