# cache.py
from __future__ import annotations

import hashlib
import json
import logging
import shutil
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------
# Core idea
# ---------------------------------------------------------------------
# Step-level memoization:
#   cache_key = hash(
#       step_type,
#       stable serialization of the step config,
#       bounded stable serialization of the step input,
#   )
#
# Two steps of one type with different config (template, prompt, ...)
# never share an entry.
#
# Layout:
#   root/
#     <step_type>/
#       <key>.json      {key, step_type, payload, written_at, ttl}
#
# Writes go to <key>.json.tmp and are renamed into place, so a reader sees
# either the old entry or the new one. Concurrent writers to the same key
# race; last rename wins.
# ---------------------------------------------------------------------


DEFAULT_CACHE_DIR = ".flowgate/cache"
DEFAULT_TTL = 24 * 60 * 60
DEFAULT_MAX_BYTES = 100 * 1024 * 1024
SWEEP_INITIAL_DELAY = 5.0
SWEEP_INTERVAL = 24 * 60 * 60
MAX_KEY_INPUT_CHARS = 64 * 1024
KEY_VERSION = 2  # bump this if you change hashing format


@dataclass(frozen=True)
class CacheHit:
    hit: bool
    key: str
    reason: str  # human readable
    value: Any = None


@dataclass(frozen=True)
class CacheStats:
    total_files: int
    total_bytes: int
    oldest_written_at: Optional[float]
    newest_written_at: Optional[float]


def _sha256_str(s: str) -> str:
    return hashlib.sha256(s.encode("utf-8")).hexdigest()


def _json_dumps_stable(obj) -> str:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)


def bounded_serialization(value: Any, limit: int = MAX_KEY_INPUT_CHARS) -> str:
    """
    Stable JSON of `value`, bounded to `limit` characters.

    Longer inputs keep their prefix plus length and digest of the full text,
    so two different large inputs never share a key.
    """
    text = _json_dumps_stable(value)
    if len(text) <= limit:
        return text
    return _json_dumps_stable(
        {"prefix": text[:limit], "length": len(text), "sha256": _sha256_str(text)}
    )


def compute_cache_key(
    step_type: str,
    step_input: Any,
    config: Optional[Mapping[str, Any]] = None,
) -> str:
    payload = {
        "v": KEY_VERSION,
        "step_type": step_type,
        "config": _json_dumps_stable(dict(config or {})),
        "input": bounded_serialization(step_input),
    }
    return _sha256_str(_json_dumps_stable(payload))


def _safe_dirname(step_type: str) -> str:
    cleaned = "".join(c if c.isalnum() or c in "-_." else "_" for c in step_type)
    return cleaned or "_"


class MemoStore:
    """
    File-based memo store for step results.

    Keys are derived from (step_type, config, input); step_type is part of
    both the hash and the directory, so unrelated step types never collide.
    """

    def __init__(
        self,
        root: str | Path = DEFAULT_CACHE_DIR,
        *,
        max_bytes: int = DEFAULT_MAX_BYTES,
        default_ttl: float = DEFAULT_TTL,
        sweep_delay: float = SWEEP_INITIAL_DELAY,
        sweep_interval: float = SWEEP_INTERVAL,
        clock: Callable[[], float] = time.time,
    ):
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)
        self.max_bytes = max_bytes
        self.default_ttl = default_ttl
        self._clock = clock
        self._sweep_delay = sweep_delay
        self._sweep_interval = sweep_interval
        self._sweep_started = False
        self._timer: Optional[threading.Timer] = None
        self._timer_lock = threading.Lock()
        self._closed = False

    # ---- keys / paths ----

    def key_for(
        self,
        step_type: str,
        step_input: Any,
        config: Optional[Mapping[str, Any]] = None,
    ) -> str:
        digest = compute_cache_key(step_type, step_input, config)
        return f"{_safe_dirname(step_type)}/{digest}"

    def entry_path(self, key: str) -> Path:
        type_dir, _, digest = key.rpartition("/")
        if not type_dir or not digest:
            raise ValueError(f"Malformed cache key: {key!r}")
        return self.root / type_dir / f"{digest}.json"

    def _iter_entry_files(self) -> Iterable[Path]:
        # deterministic traversal
        for p in sorted(self.root.glob("*/*.json")):
            if p.is_file():
                yield p

    # ---- get / set ----

    def get(self, key: str) -> CacheHit:
        """Return the cached value, deleting the entry if it has expired or is unreadable."""
        self._start_sweeper()
        path = self.entry_path(key)
        if not path.exists():
            return CacheHit(hit=False, key=key, reason="cache miss")

        try:
            entry = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            path.unlink(missing_ok=True)
            return CacheHit(hit=False, key=key, reason=f"cache entry unreadable: {e}")

        if self._expired(entry):
            path.unlink(missing_ok=True)
            return CacheHit(hit=False, key=key, reason="cache entry expired")

        return CacheHit(hit=True, key=key, reason="cache hit", value=entry.get("payload"))

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> bool:
        """
        Write an entry. Returns False (and logs) when `value` is not JSON
        serialisable; such results are simply not memoized.
        """
        self._start_sweeper()
        path = self.entry_path(key)
        entry = {
            "key": key,
            "step_type": key.rpartition("/")[0],
            "payload": value,
            "written_at": self._clock(),
            "ttl": self.default_ttl if ttl is None else float(ttl),
        }
        try:
            text = json.dumps(entry, sort_keys=True, indent=2, ensure_ascii=False)
        except (TypeError, ValueError) as e:
            log.warning("Not caching %s: payload is not JSON serialisable (%s)", key, e)
            return False

        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(".json.tmp")
        try:
            # write tmp, then atomic rename
            tmp.write_text(text, encoding="utf-8")
            tmp.replace(path)
        finally:
            if tmp.exists():
                tmp.unlink(missing_ok=True)
        return True

    def delete(self, key: str) -> None:
        self.entry_path(key).unlink(missing_ok=True)

    def clear(self) -> int:
        """Delete every entry. Returns the number of entry files removed."""
        removed = 0
        for d in sorted(self.root.iterdir()):
            if d.is_dir():
                removed += sum(1 for _ in d.glob("*.json"))
                shutil.rmtree(d)
        log.info("Cleared cache %s (%d entries)", self.root, removed)
        return removed

    # ---- maintenance ----

    def _expired(self, entry: Dict[str, Any]) -> bool:
        written_at = float(entry.get("written_at", 0))
        ttl = float(entry.get("ttl", self.default_ttl))
        return self._clock() - written_at > ttl

    def _read_entries(self) -> List[Tuple[Path, Optional[Dict[str, Any]]]]:
        out: List[Tuple[Path, Optional[Dict[str, Any]]]] = []
        for p in self._iter_entry_files():
            try:
                out.append((p, json.loads(p.read_text(encoding="utf-8"))))
            except (OSError, ValueError):
                out.append((p, None))
        return out

    def sweep(self) -> int:
        """Delete expired (and corrupt) entries. Returns the number deleted."""
        deleted = 0
        for p, entry in self._read_entries():
            if entry is None or self._expired(entry):
                p.unlink(missing_ok=True)
                deleted += 1
        if deleted:
            log.info("Cache sweep: removed %d entr%s", deleted, "y" if deleted == 1 else "ies")
        return deleted

    def enforce_size_limit(self, max_bytes: Optional[int] = None) -> int:
        """
        Delete oldest-by-write-time entries until the store is under `max_bytes`.
        Returns the number deleted.
        """
        limit = self.max_bytes if max_bytes is None else max_bytes
        sized: List[Tuple[float, int, Path]] = []
        total = 0
        for p, entry in self._read_entries():
            size = p.stat().st_size
            total += size
            if entry is None:
                written_at = p.stat().st_mtime
            else:
                written_at = float(entry.get("written_at", p.stat().st_mtime))
            sized.append((written_at, size, p))

        if total <= limit:
            return 0

        log.warning("Cache size %.2fMB exceeds limit %.2fMB", total / 1024 / 1024, limit / 1024 / 1024)
        deleted = 0
        for _written_at, size, p in sorted(sized, key=lambda t: (t[0], str(t[2]))):
            if total <= limit:
                break
            p.unlink(missing_ok=True)
            total -= size
            deleted += 1
        return deleted

    def stats(self) -> CacheStats:
        files = 0
        size = 0
        oldest: Optional[float] = None
        newest: Optional[float] = None
        for p, entry in self._read_entries():
            if entry is None or self._expired(entry):
                continue
            files += 1
            size += p.stat().st_size
            w = float(entry.get("written_at", 0))
            oldest = w if oldest is None else min(oldest, w)
            newest = w if newest is None else max(newest, w)
        return CacheStats(files, size, oldest, newest)

    # ---- background sweep ----

    def _start_sweeper(self) -> None:
        """Once per store lifetime: sweep `sweep_delay` after first use, then every `sweep_interval`."""
        with self._timer_lock:
            if self._sweep_started or self._closed:
                return
            self._sweep_started = True
            self._schedule(self._sweep_delay)

    def _schedule(self, delay: float) -> None:
        timer = threading.Timer(delay, self._sweep_tick)
        timer.daemon = True
        timer.name = f"flowgate-cache-sweep-{id(self):x}"
        self._timer = timer
        timer.start()

    def _sweep_tick(self) -> None:
        try:
            self.sweep()
        except OSError as e:
            log.warning("Cache sweep failed: %s", e)
        with self._timer_lock:
            if not self._closed:
                self._schedule(self._sweep_interval)

    def close(self) -> None:
        with self._timer_lock:
            self._closed = True
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None

    def __enter__(self) -> "MemoStore":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
