"""
Key/value store for watermarks and run results.

Keys:
    sync:watermark:<pipeline>   last committed source cursor per pipeline
    sync:last_run               ISO timestamp of the last run start
    sync:last_result            JSON summary of the last run

There is no transaction shared with the reporting store. A crash between a
committed chunk and the watermark write replays that window on the next run,
which the idempotent upserts absorb.
"""

import json
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, Optional

import structlog

logger = structlog.get_logger(__name__)

WATERMARK_PREFIX = "sync:watermark:"
LAST_RUN_KEY = "sync:last_run"
LAST_RESULT_KEY = "sync:last_result"


def watermark_key(pipeline: str) -> str:
    return f"{WATERMARK_PREFIX}{pipeline}"


class StateStore:
    """get/put interface shared by the stores."""

    def get(self, key: str) -> Optional[Any]:
        raise NotImplementedError

    def put(self, key: str, value: Any) -> None:
        raise NotImplementedError

    def delete(self, key: str) -> None:
        raise NotImplementedError

    def get_watermark(self, pipeline: str) -> Optional[str]:
        return self.get(watermark_key(pipeline))

    def put_watermark(self, pipeline: str, value: str) -> None:
        self.put(watermark_key(pipeline), value)

    def reset_watermark(self, pipeline: str) -> None:
        self.delete(watermark_key(pipeline))


class MemoryStateStore(StateStore):
    """In-process store, for tests and dry runs."""

    def __init__(self, initial: Optional[Dict[str, Any]] = None):
        self.data: Dict[str, Any] = dict(initial or {})

    def get(self, key: str) -> Optional[Any]:
        return self.data.get(key)

    def put(self, key: str, value: Any) -> None:
        self.data[key] = value

    def delete(self, key: str) -> None:
        self.data.pop(key, None)


class FileStateStore(StateStore):
    """
    JSON file store.

    Every put rewrites the file through a temporary file and os.replace, so a
    crash leaves either the old or the new state on disk.
    """

    def __init__(self, path):
        self.path = Path(path)

    def _load(self) -> Dict[str, Any]:
        if not self.path.exists():
            return {}
        with self.path.open("r", encoding="utf-8") as f:
            data = json.load(f)
        if not isinstance(data, dict):
            raise ValueError(f"State file {self.path} does not contain a JSON object")
        return data

    def _save(self, data: Dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=self.path.parent, prefix=".state-", suffix=".json")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, ensure_ascii=False, indent=2, default=str)
            os.replace(tmp_path, self.path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

    def get(self, key: str) -> Optional[Any]:
        return self._load().get(key)

    def put(self, key: str, value: Any) -> None:
        data = self._load()
        data[key] = value
        self._save(data)
        logger.debug("State saved", key=key, path=str(self.path))

    def delete(self, key: str) -> None:
        data = self._load()
        if key in data:
            del data[key]
            self._save(data)
