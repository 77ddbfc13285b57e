"""Sharded on-disk key/value store for the transcript cache.

Layout under the store root:

    index/segment_0000.json    {"chunk": 0, "keys": ["AAPL-2024-Q3", ...]}
    chunks/chunk_0000.json     {"AAPL-2024-Q3": {...payload...}, ...}
    chunks/chunk_0001.json

New keys are appended to the highest-numbered (open) chunk until it holds `capacity`
entries, then a new chunk is opened. Each chunk has its own index segment listing the keys
it holds, so a write touches one chunk file and at most one segment, both bounded by
`capacity`. Updates to an existing key rewrite only the chunk that already holds it. The
segment is written after the chunk, so it never points at an entry that is not on disk.
A single index.json from older layouts is split into segments on first open.
"""
import copy
import logging
import os
import re
import threading
from collections import OrderedDict, defaultdict
from typing import Any, Dict, Iterable, List, Optional, Tuple

from transcript_hub.core.errors import PersistenceError
from transcript_hub.utils.fileio import atomic_write_json, read_json

logger = logging.getLogger(__name__)

LEGACY_INDEX_FILE = "index.json"
INDEX_DIR = "index"
CHUNKS_DIR = "chunks"
_CHUNK_RE = re.compile(r"^chunk_(\d{4,})\.json$")
_SEGMENT_RE = re.compile(r"^segment_(\d{4,})\.json$")


def chunk_filename(chunk_id: int) -> str:
    return f"chunk_{chunk_id:04d}.json"


def segment_filename(chunk_id: int) -> str:
    return f"segment_{chunk_id:04d}.json"


class ChunkedCacheStore:
    """Key/value cache split into bounded JSON chunk files, each with its own index segment.
    Why available: Keeps the transcript cache writable and readable without loading or rewriting one giant file; only chunks that are touched are hydrated into memory."""

    def __init__(self, root: str, capacity: int = 200, max_resident_chunks: int = 8):
        if capacity <= 0:
            raise ValueError("capacity must be > 0")
        self.root = root
        self.capacity = capacity
        self.max_resident_chunks = max(1, max_resident_chunks)

        self._index_lock = threading.Lock()
        self._locks_guard = threading.Lock()
        self._chunk_locks: Dict[int, threading.Lock] = {}
        self._resident_lock = threading.Lock()
        self._resident: "OrderedDict[int, Dict[str, Any]]" = OrderedDict()

        self._keys: Dict[str, int] = {}
        self._chunk_keys: Dict[int, List[str]] = defaultdict(list)
        self._reserved: Dict[str, int] = {}
        self._counts: Dict[int, int] = defaultdict(int)
        self._open_chunk = 0

        try:
            os.makedirs(self._chunks_dir, exist_ok=True)
            os.makedirs(self._index_dir, exist_ok=True)
        except OSError as e:
            raise PersistenceError(f"Cannot create cache directory {root}: {e}") from e
        self._load_index()

    # -------------------------
    # Paths / loading
    # -------------------------

    @property
    def _chunks_dir(self) -> str:
        return os.path.join(self.root, CHUNKS_DIR)

    @property
    def _index_dir(self) -> str:
        return os.path.join(self.root, INDEX_DIR)

    @property
    def _legacy_index_path(self) -> str:
        return os.path.join(self.root, LEGACY_INDEX_FILE)

    def _chunk_path(self, chunk_id: int) -> str:
        return os.path.join(self._chunks_dir, chunk_filename(chunk_id))

    def _segment_path(self, chunk_id: int) -> str:
        return os.path.join(self._index_dir, segment_filename(chunk_id))

    def _load_index(self) -> None:
        segment_ids = self._segment_ids_on_disk()
        if not segment_ids and os.path.exists(self._legacy_index_path):
            self._split_legacy_index()
            return
        for chunk_id in segment_ids:
            data = read_json(self._segment_path(chunk_id)) or {}
            self._index_chunk(chunk_id, data.get("keys") or [])
        for chunk_id in self._chunk_ids_on_disk():
            if chunk_id in self._chunk_keys:
                continue
            logger.warning("cache_segment_missing_rebuilding", extra={"root": self.root, "chunk": chunk_id})
            self._index_chunk(chunk_id, read_json(self._chunk_path(chunk_id)) or {})
            self._write_segment(chunk_id)
        self._recount()

    def _split_legacy_index(self) -> None:
        data = read_json(self._legacy_index_path) or {}
        by_chunk: Dict[int, List[str]] = defaultdict(list)
        for key, chunk_id in (data.get("keys") or {}).items():
            by_chunk[int(chunk_id)].append(str(key))
        for chunk_id, keys in by_chunk.items():
            self._index_chunk(chunk_id, keys)
            self._write_segment(chunk_id)
        self._remove_legacy_index()
        self._recount()
        logger.info("cache_index_split", extra={"root": self.root, "segments": len(by_chunk), "keys": len(self._keys)})

    def _remove_legacy_index(self) -> None:
        try:
            if os.path.exists(self._legacy_index_path):
                os.remove(self._legacy_index_path)
        except OSError as e:
            raise PersistenceError(f"Failed to remove {self._legacy_index_path}: {e}") from e

    def _index_chunk(self, chunk_id: int, keys: Iterable[str]) -> None:
        listed = self._chunk_keys[chunk_id]
        for key in keys:
            key = str(key)
            if key not in self._keys:
                listed.append(key)
            self._keys[key] = chunk_id

    def _recount(self) -> None:
        self._counts = defaultdict(int)
        for chunk_id in self._keys.values():
            self._counts[chunk_id] += 1
        self._open_chunk = max(self._counts) if self._counts else 0

    def _chunk_ids_on_disk(self) -> List[int]:
        return _ids_in(self._chunks_dir, _CHUNK_RE)

    def _segment_ids_on_disk(self) -> List[int]:
        return _ids_in(self._index_dir, _SEGMENT_RE)

    def _lock_for(self, chunk_id: int) -> threading.Lock:
        with self._locks_guard:
            lock = self._chunk_locks.get(chunk_id)
            if lock is None:
                lock = threading.Lock()
                self._chunk_locks[chunk_id] = lock
            return lock

    def _hydrate(self, chunk_id: int) -> Dict[str, Any]:
        """Return the resident entries of a chunk, reading the file on a miss. Caller holds the chunk lock."""
        with self._resident_lock:
            entries = self._resident.get(chunk_id)
            if entries is not None:
                self._resident.move_to_end(chunk_id)
                return entries
        path = self._chunk_path(chunk_id)
        entries = read_json(path) if os.path.exists(path) else {}
        self._remember(chunk_id, entries)
        return entries

    def _remember(self, chunk_id: int, entries: Dict[str, Any]) -> None:
        with self._resident_lock:
            self._resident[chunk_id] = entries
            self._resident.move_to_end(chunk_id)
            while len(self._resident) > self.max_resident_chunks:
                evicted, _ = self._resident.popitem(last=False)
                logger.debug("cache_chunk_evicted", extra={"chunk": evicted})

    def _write_segment(self, chunk_id: int) -> None:
        """Persist the key list of one chunk. Caller holds the index lock or is still constructing the store."""
        atomic_write_json(self._segment_path(chunk_id), {"chunk": chunk_id, "keys": list(self._chunk_keys[chunk_id])})

    def _commit_keys(self, new_keys: Dict[str, int]) -> None:
        """Move reserved keys into the index and rewrite the segments of the chunks they landed in. Caller holds the index lock."""
        touched = set()
        for key, chunk_id in new_keys.items():
            self._reserved.pop(key, None)
            self._keys[key] = chunk_id
            self._chunk_keys[chunk_id].append(key)
            touched.add(chunk_id)
        for chunk_id in sorted(touched):
            self._write_segment(chunk_id)

    def _reserve(self, key: str) -> Tuple[int, bool]:
        """Pick the chunk for key, reserving a slot in the open chunk if the key is new. Caller holds the index lock."""
        existing = self._keys.get(key)
        if existing is None:
            existing = self._reserved.get(key)
        if existing is not None:
            return existing, False
        if self._counts[self._open_chunk] >= self.capacity:
            self._open_chunk += 1
            logger.info("cache_chunk_sealed", extra={"sealed": self._open_chunk - 1, "opened": self._open_chunk})
        chunk_id = self._open_chunk
        self._counts[chunk_id] += 1
        self._reserved[key] = chunk_id
        return chunk_id, True

    def _release(self, keys: Iterable[str]) -> None:
        """Undo reservations after a failed chunk write. Caller holds the index lock."""
        for key in keys:
            chunk_id = self._reserved.pop(key, None)
            if chunk_id is not None:
                self._counts[chunk_id] -= 1

    def _write_entries(self, chunk_id: int, updates: Dict[str, Any]) -> None:
        with self._lock_for(chunk_id):
            current = self._hydrate(chunk_id)
            merged = dict(current)
            merged.update(updates)
            atomic_write_json(self._chunk_path(chunk_id), merged)
            self._remember(chunk_id, merged)

    # -------------------------
    # Public API
    # -------------------------

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        """Return a copy of the payload stored under key, or None when the key is absent."""
        with self._index_lock:
            chunk_id = self._keys.get(key)
        if chunk_id is None:
            return None
        with self._lock_for(chunk_id):
            entries = self._hydrate(chunk_id)
            payload = entries.get(key)
        return copy.deepcopy(payload) if payload is not None else None

    def exists(self, key: str) -> bool:
        with self._index_lock:
            return key in self._keys

    def count(self) -> int:
        with self._index_lock:
            return len(self._keys)

    def keys(self) -> List[str]:
        with self._index_lock:
            return list(self._keys)

    def chunk_count(self) -> int:
        with self._index_lock:
            return len([c for c, n in self._counts.items() if n > 0])

    def put(self, key: str, payload: Dict[str, Any]) -> None:
        """Insert or overwrite the payload for key. Raises PersistenceError if the chunk or its index segment cannot be written."""
        with self._index_lock:
            chunk_id, is_new = self._reserve(key)
        try:
            self._write_entries(chunk_id, {key: payload})
        except PersistenceError:
            if is_new:
                with self._index_lock:
                    self._release([key])
            raise
        if is_new:
            with self._index_lock:
                self._commit_keys({key: chunk_id})

    def put_many(self, items: Iterable[Tuple[str, Dict[str, Any]]]) -> int:
        """Bulk upsert from an iterable of (key, payload) pairs, writing each touched chunk and its segment once per batch of `capacity` entries. Returns the number of entries written.
        Why available: Used by the monolith migration so a large cache can be streamed in without rewriting chunks per entry."""
        written = 0
        batch: List[Tuple[str, Dict[str, Any]]] = []
        for item in items:
            batch.append(item)
            if len(batch) >= self.capacity:
                written += self._put_batch(batch)
                batch = []
        if batch:
            written += self._put_batch(batch)
        return written

    def _put_batch(self, batch: List[Tuple[str, Dict[str, Any]]]) -> int:
        by_chunk: Dict[int, Dict[str, Any]] = defaultdict(dict)
        new_keys: Dict[str, int] = {}
        with self._index_lock:
            for key, payload in batch:
                chunk_id, is_new = self._reserve(key)
                by_chunk[chunk_id][key] = payload
                if is_new:
                    new_keys[key] = chunk_id
        try:
            for chunk_id in sorted(by_chunk):
                self._write_entries(chunk_id, by_chunk[chunk_id])
        except PersistenceError:
            with self._index_lock:
                self._release(new_keys)
            raise
        if new_keys:
            with self._index_lock:
                self._commit_keys(new_keys)
        return sum(len(entries) for entries in by_chunk.values())

    def rebuild_index(self) -> int:
        """Rescan every chunk file and rewrite all index segments from their contents. Returns the number of keys indexed.
        Why available: Maintenance path when segments are stale or lost (e.g. chunks copied in by hand)."""
        chunk_ids = self._chunk_ids_on_disk()
        scanned = {chunk_id: list(read_json(self._chunk_path(chunk_id)) or {}) for chunk_id in chunk_ids}
        with self._index_lock:
            self._keys = {}
            self._chunk_keys = defaultdict(list)
            self._reserved = {}
            for chunk_id in chunk_ids:
                self._index_chunk(chunk_id, scanned[chunk_id])
                self._write_segment(chunk_id)
            for stale in set(self._segment_ids_on_disk()) - set(chunk_ids):
                try:
                    os.remove(self._segment_path(stale))
                except OSError as e:
                    raise PersistenceError(f"Failed to remove stale segment {stale}: {e}") from e
            self._remove_legacy_index()
            self._recount()
            count = len(self._keys)
        with self._resident_lock:
            self._resident.clear()
        logger.info("cache_index_rebuilt", extra={"root": self.root, "keys": count, "segments": len(chunk_ids)})
        return count


def _ids_in(directory: str, pattern: "re.Pattern") -> List[int]:
    ids = []
    for name in os.listdir(directory):
        m = pattern.match(name)
        if m:
            ids.append(int(m.group(1)))
    return sorted(ids)
