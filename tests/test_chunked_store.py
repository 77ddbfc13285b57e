import json
import os
import shutil
import threading

import pytest

from transcript_hub.cache.chunked_store import ChunkedCacheStore, chunk_filename, segment_filename
from transcript_hub.cache.keys import cache_key, parse_cache_key
from transcript_hub.cache.migrate import migrate_monolith
from transcript_hub.summaries.store import SummaryStore


def _chunk_files(root):
    return sorted(os.listdir(os.path.join(root, "chunks")))


def _read_chunk(root, chunk_id):
    with open(os.path.join(root, "chunks", chunk_filename(chunk_id)), encoding="utf-8") as f:
        return json.load(f)


def test_cache_key_format_and_parse():
    assert cache_key("aapl", 2024, 3) == "AAPL-2024-Q3"
    assert parse_cache_key("AAPL-2024-Q3") == ("AAPL", 2024, 3)
    with pytest.raises(ValueError):
        parse_cache_key("AAPL-2024-Q5")


def test_get_miss_returns_none(tmp_path):
    store = ChunkedCacheStore(str(tmp_path), capacity=3)
    assert store.get("AAA-2024-Q1") is None
    assert not store.exists("AAA-2024-Q1")
    assert store.count() == 0


def test_put_is_idempotent_upsert(tmp_path):
    store = ChunkedCacheStore(str(tmp_path), capacity=3)
    store.put("AAA-2024-Q1", {"transcript": "first"})
    store.put("AAA-2024-Q1", {"transcript": "second"})

    assert store.count() == 1
    assert store.get("AAA-2024-Q1") == {"transcript": "second"}
    assert _read_chunk(str(tmp_path), 0) == {"AAA-2024-Q1": {"transcript": "second"}}


def test_chunk_seals_at_capacity(tmp_path):
    n = 4
    store = ChunkedCacheStore(str(tmp_path), capacity=n)
    for i in range(n + 1):
        store.put(f"T{i}-2024-Q1", {"i": i})

    assert _chunk_files(str(tmp_path)) == ["chunk_0000.json", "chunk_0001.json"]
    assert len(_read_chunk(str(tmp_path), 0)) == n
    assert len(_read_chunk(str(tmp_path), 1)) == 1
    assert store.chunk_count() == 2


def test_update_rewrites_original_chunk_only(tmp_path):
    store = ChunkedCacheStore(str(tmp_path), capacity=2)
    store.put("A-2024-Q1", {"v": 1})
    store.put("B-2024-Q1", {"v": 1})
    store.put("C-2024-Q1", {"v": 1})
    store.put("A-2024-Q1", {"v": 2})

    assert _read_chunk(str(tmp_path), 0)["A-2024-Q1"] == {"v": 2}
    assert "A-2024-Q1" not in _read_chunk(str(tmp_path), 1)
    assert store.count() == 3


def test_reload_from_disk(tmp_path):
    store = ChunkedCacheStore(str(tmp_path), capacity=2)
    for i in range(5):
        store.put(f"T{i}-2023-Q4", {"i": i})

    reopened = ChunkedCacheStore(str(tmp_path), capacity=2)
    assert reopened.count() == 5
    assert reopened.get("T3-2023-Q4") == {"i": 3}
    # New keys keep appending to the open chunk.
    reopened.put("T5-2023-Q4", {"i": 5})
    assert len(_read_chunk(str(tmp_path), 2)) == 2


def test_resident_chunks_are_bounded(tmp_path):
    store = ChunkedCacheStore(str(tmp_path), capacity=1, max_resident_chunks=2)
    for i in range(5):
        store.put(f"T{i}-2024-Q1", {"i": i})
    for i in range(5):
        assert store.get(f"T{i}-2024-Q1") == {"i": i}
    assert len(store._resident) <= 2


def test_get_returns_copy(tmp_path):
    store = ChunkedCacheStore(str(tmp_path))
    store.put("AAA-2024-Q1", {"transcript": "x"})
    got = store.get("AAA-2024-Q1")
    got["transcript"] = "mutated"
    assert store.get("AAA-2024-Q1") == {"transcript": "x"}


def test_put_many_writes_batches(tmp_path):
    store = ChunkedCacheStore(str(tmp_path), capacity=10)
    written = store.put_many((f"T{i}-2024-Q2", {"i": i}) for i in range(25))

    assert written == 25
    assert store.count() == 25
    assert _chunk_files(str(tmp_path)) == ["chunk_0000.json", "chunk_0001.json", "chunk_0002.json"]


def test_concurrent_puts_keep_every_key(tmp_path):
    store = ChunkedCacheStore(str(tmp_path), capacity=5)

    def writer(offset):
        for i in range(20):
            store.put(f"W{offset}X{i}-2024-Q1", {"i": i})

    threads = [threading.Thread(target=writer, args=(n,)) for n in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert store.count() == 80
    reopened = ChunkedCacheStore(str(tmp_path), capacity=5)
    assert reopened.count() == 80
    assert all(len(_read_chunk(str(tmp_path), c)) <= 5 for c in range(reopened.chunk_count()))


def _segment_path(root, chunk_id):
    return os.path.join(root, "index", segment_filename(chunk_id))


def test_rebuild_index_when_index_missing(tmp_path):
    store = ChunkedCacheStore(str(tmp_path), capacity=2)
    for i in range(3):
        store.put(f"T{i}-2024-Q1", {"i": i})
    shutil.rmtree(os.path.join(str(tmp_path), "index"))

    reopened = ChunkedCacheStore(str(tmp_path), capacity=2)
    assert reopened.count() == 3
    assert reopened.get("T2-2024-Q1") == {"i": 2}
    assert os.path.exists(_segment_path(str(tmp_path), 0))
    assert os.path.exists(_segment_path(str(tmp_path), 1))


def test_insert_leaves_sealed_segments_untouched(tmp_path):
    root = str(tmp_path)
    store = ChunkedCacheStore(root, capacity=2)
    for i in range(3):
        store.put(f"T{i}-2024-Q1", {"i": i})
    sealed = os.stat(_segment_path(root, 0))

    store.put("T3-2024-Q1", {"i": 3})
    store.put("T4-2024-Q1", {"i": 4})

    after = os.stat(_segment_path(root, 0))
    assert (after.st_ino, after.st_mtime_ns) == (sealed.st_ino, sealed.st_mtime_ns)
    with open(_segment_path(root, 2), encoding="utf-8") as f:
        assert json.load(f) == {"chunk": 2, "keys": ["T4-2024-Q1"]}


def test_overwrite_does_not_rewrite_segment(tmp_path):
    root = str(tmp_path)
    store = ChunkedCacheStore(root, capacity=2)
    store.put("A-2024-Q1", {"v": 1})
    before = os.stat(_segment_path(root, 0))

    store.put("A-2024-Q1", {"v": 2})

    after = os.stat(_segment_path(root, 0))
    assert (after.st_ino, after.st_mtime_ns) == (before.st_ino, before.st_mtime_ns)


def test_single_index_file_is_split_into_segments(tmp_path):
    root = str(tmp_path)
    os.makedirs(os.path.join(root, "chunks"))
    chunks = {0: {"A-2024-Q1": {"v": 1}, "B-2024-Q1": {"v": 2}}, 1: {"C-2024-Q1": {"v": 3}}}
    for chunk_id, entries in chunks.items():
        with open(os.path.join(root, "chunks", chunk_filename(chunk_id)), "w", encoding="utf-8") as f:
            json.dump(entries, f)
    with open(os.path.join(root, "index.json"), "w", encoding="utf-8") as f:
        json.dump({"capacity": 2, "keys": {"A-2024-Q1": 0, "B-2024-Q1": 0, "C-2024-Q1": 1}}, f)

    store = ChunkedCacheStore(root, capacity=2)

    assert store.count() == 3
    assert store.get("C-2024-Q1") == {"v": 3}
    assert not os.path.exists(os.path.join(root, "index.json"))
    assert sorted(os.listdir(os.path.join(root, "index"))) == ["segment_0000.json", "segment_0001.json"]
    store.put("D-2024-Q1", {"v": 4})
    assert ChunkedCacheStore(root, capacity=2).get("D-2024-Q1") == {"v": 4}


def test_missing_segment_is_restored_from_its_chunk(tmp_path):
    root = str(tmp_path)
    store = ChunkedCacheStore(root, capacity=2)
    for i in range(4):
        store.put(f"T{i}-2024-Q1", {"i": i})
    os.remove(_segment_path(root, 1))

    reopened = ChunkedCacheStore(root, capacity=2)

    assert reopened.count() == 4
    assert reopened.get("T3-2024-Q1") == {"i": 3}
    assert os.path.exists(_segment_path(root, 1))


def test_rebuild_index_drops_segments_without_chunks(tmp_path):
    root = str(tmp_path)
    store = ChunkedCacheStore(root, capacity=2)
    for i in range(3):
        store.put(f"T{i}-2024-Q1", {"i": i})
    os.remove(os.path.join(root, "chunks", chunk_filename(1)))

    assert store.rebuild_index() == 2
    assert not os.path.exists(_segment_path(root, 1))
    assert store.get("T2-2024-Q1") is None


def test_migrate_monolith_streams_into_chunks(tmp_path):
    source = tmp_path / "transcripts.json"
    entries = {f"T{i}-2022-Q{(i % 4) + 1}": {"ticker": f"T{i}", "transcript": "text", "score": 1.5} for i in range(7)}
    source.write_text(json.dumps(entries), encoding="utf-8")

    store = ChunkedCacheStore(str(tmp_path / "cache"), capacity=3)
    written = migrate_monolith(str(source), store)

    assert written == 7
    assert store.count() == 7
    assert store.chunk_count() == 3
    assert store.get("T4-2022-Q1") == {"ticker": "T4", "transcript": "text", "score": 1.5}


def test_migrate_missing_source_raises(tmp_path):
    store = ChunkedCacheStore(str(tmp_path / "cache"))
    with pytest.raises(FileNotFoundError):
        migrate_monolith(str(tmp_path / "nope.json"), store)


def test_migrate_records_transcript_rows(tmp_path):
    source = tmp_path / "transcripts.json"
    entries = {
        "AAA-2024-Q2": {"ticker": "AAA", "date": "2024-06-20", "transcript": "hello"},
        "BBB-2023-Q4": {"ticker": "BBB", "transcript": "hi"},
    }
    source.write_text(json.dumps(entries), encoding="utf-8")
    store = ChunkedCacheStore(str(tmp_path / "cache"), capacity=3)
    summary_store = SummaryStore(tmp_path / "transcripts.db")
    try:
        migrate_monolith(str(source), store, summary_store)
        assert summary_store.list_unsummarized() == ["AAA-2024-Q2", "BBB-2023-Q4"]
    finally:
        summary_store.close()
