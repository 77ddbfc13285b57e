import json
import os
import tempfile
from typing import Any

from transcript_hub.core.errors import PersistenceError


def atomic_write_json(path: str, obj: Any) -> None:
    """Write obj as JSON to a temp file beside path, fsync, then os.replace it into place. Readers see either the old file or the new one, never a partial write.
    Why available: Shared by the job store snapshots and the chunked cache so a crash mid-write cannot corrupt persisted state."""
    directory = os.path.dirname(path) or "."
    try:
        os.makedirs(directory, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(prefix=".tmp-", suffix=".json", dir=directory)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(obj, f, ensure_ascii=False)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise
    except (OSError, TypeError, ValueError) as e:
        raise PersistenceError(f"Failed to write {path}: {e}") from e


def read_json(path: str) -> Any:
    """Load a JSON file; OSError and decode errors surface as PersistenceError."""
    try:
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)
    except (OSError, ValueError) as e:
        raise PersistenceError(f"Failed to read {path}: {e}") from e
