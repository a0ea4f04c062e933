from __future__ import annotations
import os
from pathlib import Path

HOME = os.environ.get("FLOWGATE_HOME", ".flowgate")
LEDGER_PATH = os.environ.get("FLOWGATE_LEDGER_PATH")  # default: <home>/budget.json
CACHE_DIR = os.environ.get("FLOWGATE_CACHE_DIR")  # default: <home>/cache
CACHE_MAX_MB = int(os.environ.get("FLOWGATE_CACHE_MAX_MB", "100"))
BUDGET_TIER = os.environ.get("FLOWGATE_BUDGET_TIER")  # default: ledger's current tier
LOG_LEVEL_ENV = "FLOWGATE_LOG_LEVEL"


def ledger_path(home: str | Path = HOME) -> Path:
    return Path(LEDGER_PATH) if LEDGER_PATH else Path(home) / "budget.json"


def cache_dir(home: str | Path = HOME) -> Path:
    return Path(CACHE_DIR) if CACHE_DIR else Path(home) / "cache"


def cache_max_bytes() -> int:
    return CACHE_MAX_MB * 1024 * 1024
