"""File-backed project storage for the tool server.

Project data lives as one JSON document per key under
``<data_dir>/projects/<project_id>/``. Writes go to a temporary file and
are moved into place under a file lock, so a concurrent reader sees
either the old or the new document. Errors reported by background jobs
are appended to ``<data_dir>/logs/errors.jsonl``.
"""

from __future__ import annotations

import json
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from filelock import FileLock

from .orchestrator.exceptions import NoActiveProjectError

logger = logging.getLogger(__name__)

DEFAULT_DATA_DIR = Path.home() / ".forest-data"
ACTIVE_PROJECT_KEY = "activeProject"


def _write_json_atomic(path: Path, data: Any, lock_timeout: int) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    lock = FileLock(str(path.with_suffix(path.suffix + ".lock")), timeout=lock_timeout)
    with lock:
        tmp_path = path.with_suffix(path.suffix + ".tmp")
        tmp_path.write_text(json.dumps(data, indent=2, default=str), encoding="utf-8")
        os.replace(tmp_path, path)


class JsonDataPersistence:
    """Per-project JSON documents on disk."""

    def __init__(self, data_dir: Optional[Path] = None, lock_timeout: int = 10) -> None:
        """Initialize the store.

        Args:
            data_dir: Root data directory (default: ~/.forest-data)
            lock_timeout: Seconds to wait for a file lock
        """
        self.data_dir = Path(data_dir or DEFAULT_DATA_DIR).expanduser()
        self._lock_timeout = lock_timeout

    @property
    def error_log_path(self) -> Path:
        return self.data_dir / "logs" / "errors.jsonl"

    def project_dir(self, project_id: str) -> Path:
        if not project_id or "/" in project_id or "\\" in project_id or project_id in (".", ".."):
            raise ValueError(f"Invalid project id: {project_id!r}")
        return self.data_dir / "projects" / project_id

    def load_project_data(self, project_id: str, key: str) -> Any:
        """Load the document stored under ``key``.

        Returns:
            Parsed JSON, or None if the document does not exist

        Raises:
            json.JSONDecodeError: If the document is corrupt
        """
        path = self.project_dir(project_id) / key
        if not path.exists():
            return None
        return json.loads(path.read_text(encoding="utf-8"))

    def save_project_data(self, project_id: str, key: str, data: Any) -> None:
        _write_json_atomic(self.project_dir(project_id) / key, data, self._lock_timeout)

    def log_error(
        self,
        context: str,
        error: BaseException,
        meta: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Append an error record to the JSONL error log."""
        record = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "context": context,
            "errorType": type(error).__name__,
            "message": str(error),
            "meta": dict(meta or {}),
        }
        path = self.error_log_path
        path.parent.mkdir(parents=True, exist_ok=True)
        lock = FileLock(str(path.with_suffix(".lock")), timeout=self._lock_timeout)
        with lock:
            with open(path, "a", encoding="utf-8") as f:
                f.write(json.dumps(record, default=str) + "\n")
        logger.debug(f"Recorded error for {context}")


class ActiveProjectRegistry:
    """Tracks the active project in ``<data_dir>/config.json``."""

    def __init__(self, data_dir: Optional[Path] = None, lock_timeout: int = 10) -> None:
        self.data_dir = Path(data_dir or DEFAULT_DATA_DIR).expanduser()
        self._lock_timeout = lock_timeout

    @property
    def config_path(self) -> Path:
        return self.data_dir / "config.json"

    def _read(self) -> Dict[str, Any]:
        if not self.config_path.exists():
            return {}
        data = json.loads(self.config_path.read_text(encoding="utf-8"))
        return data if isinstance(data, dict) else {}

    def get_active_project(self) -> Optional[str]:
        return self._read().get(ACTIVE_PROJECT_KEY) or None

    def require_active_project(self) -> str:
        project_id = self.get_active_project()
        if not project_id:
            raise NoActiveProjectError()
        return project_id

    def set_active_project(self, project_id: str) -> None:
        data = self._read()
        data[ACTIVE_PROJECT_KEY] = project_id
        _write_json_atomic(self.config_path, data, self._lock_timeout)
        logger.info(f"Active project set to {project_id}")


__all__ = [
    "ACTIVE_PROJECT_KEY",
    "DEFAULT_DATA_DIR",
    "ActiveProjectRegistry",
    "JsonDataPersistence",
]
