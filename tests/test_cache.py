from __future__ import annotations

import json
import threading
from pathlib import Path

from flowgate.cache import MAX_KEY_INPUT_CHARS, MemoStore, bounded_serialization, compute_cache_key


def test_set_then_get_returns_payload(memo: MemoStore) -> None:
    key = memo.key_for("upper", "hello")
    assert memo.get(key).hit is False
    assert memo.set(key, {"text": "HELLO"}) is True

    hit = memo.get(key)
    assert hit.hit is True
    assert hit.value == {"text": "HELLO"}


def test_step_type_is_part_of_the_key(memo: MemoStore) -> None:
    a = memo.key_for("upper", "same input")
    b = memo.key_for("lower", "same input")
    assert a != b
    memo.set(a, "A")
    assert memo.get(b).hit is False
    assert memo.entry_path(a).parent.name == "upper"


def test_step_config_is_part_of_the_key(memo: MemoStore) -> None:
    hello = memo.key_for("template", "bob", {"template": "hello {input}"})
    bye = memo.key_for("template", "bob", {"template": "bye {input}"})
    assert hello != bye
    assert memo.key_for("template", "bob", {"template": "hello {input}"}) == hello
    assert memo.key_for("echo", "bob", {}) == memo.key_for("echo", "bob")

    memo.set(hello, "hello bob")
    assert memo.get(bye).hit is False


def test_delete_removes_one_entry(memo: MemoStore) -> None:
    keep = memo.key_for("echo", "keep")
    drop = memo.key_for("echo", "drop")
    memo.set(keep, 1)
    memo.set(drop, 2)

    memo.delete(drop)
    memo.delete(drop)

    assert memo.get(drop).hit is False
    assert not memo.entry_path(drop).exists()
    assert memo.get(keep).value == 1


def test_key_is_stable_across_dict_ordering() -> None:
    assert compute_cache_key("t", {"a": 1, "b": 2}) == compute_cache_key("t", {"b": 2, "a": 1})
    assert compute_cache_key("t", [1, 2]) != compute_cache_key("t", [2, 1])


def test_large_inputs_are_bounded_but_still_distinct() -> None:
    big_a = "x" * (MAX_KEY_INPUT_CHARS * 2)
    big_b = "x" * (MAX_KEY_INPUT_CHARS * 2 - 1) + "y"
    ser = bounded_serialization(big_a)
    assert len(ser) < len(big_a)
    assert compute_cache_key("t", big_a) != compute_cache_key("t", big_b)


def test_expired_entries_miss_and_are_deleted(memo: MemoStore, clock) -> None:
    key = memo.key_for("echo", 1)
    memo.set(key, "v", ttl=10)
    clock.advance(5)
    assert memo.get(key).hit is True
    clock.advance(6)
    miss = memo.get(key)
    assert miss.hit is False
    assert "expired" in miss.reason
    assert not memo.entry_path(key).exists()


def test_sweep_removes_only_expired(memo: MemoStore, clock) -> None:
    short = memo.key_for("echo", "short")
    long = memo.key_for("echo", "long")
    memo.set(short, 1, ttl=1)
    memo.set(long, 2, ttl=1000)
    clock.advance(2)

    assert memo.sweep() == 1
    assert memo.get(long).hit is True
    assert not memo.entry_path(short).exists()


def test_unserialisable_payload_is_not_cached(memo: MemoStore) -> None:
    key = memo.key_for("echo", "obj")
    assert memo.set(key, object()) is False
    assert memo.get(key).hit is False


def test_corrupt_entry_is_treated_as_miss(memo: MemoStore) -> None:
    key = memo.key_for("echo", "x")
    path = memo.entry_path(key)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("{not json", encoding="utf-8")
    assert memo.get(key).hit is False
    assert not path.exists()


def test_size_limit_evicts_oldest_first(memo: MemoStore, clock) -> None:
    keys = []
    for i in range(4):
        k = memo.key_for("echo", i)
        memo.set(k, "p" * 200)
        keys.append(k)
        clock.advance(1)

    one_entry = memo.entry_path(keys[0]).stat().st_size
    deleted = memo.enforce_size_limit(max_bytes=one_entry * 2)
    assert deleted == 2
    assert [memo.get(k).hit for k in keys] == [False, False, True, True]


def test_clear_and_stats(memo: MemoStore) -> None:
    for i in range(3):
        memo.set(memo.key_for("a", i), i)
    memo.set(memo.key_for("b", 0), 0)

    stats = memo.stats()
    assert stats.total_files == 4
    assert stats.total_bytes > 0

    assert memo.clear() == 4
    assert memo.stats().total_files == 0


def test_entry_file_layout(memo: MemoStore, clock) -> None:
    key = memo.key_for("upper", "hi")
    memo.set(key, "HI", ttl=60)
    entry = json.loads(memo.entry_path(key).read_text(encoding="utf-8"))
    assert entry["payload"] == "HI"
    assert entry["ttl"] == 60
    assert entry["written_at"] == clock.now
    assert entry["step_type"] == "upper"


def test_sweeper_runs_after_first_use(tmp_path: Path) -> None:
    swept = threading.Event()

    class Probe(MemoStore):
        def sweep(self) -> int:
            swept.set()
            return 0

    store = Probe(tmp_path / "c", sweep_delay=0.01, sweep_interval=3600)
    try:
        assert not swept.is_set()
        store.get(store.key_for("echo", 1))
        assert swept.wait(2)
    finally:
        store.close()
