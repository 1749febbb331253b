"""Small persisted local state shared by the reconciler and archive layer."""

import json
from pathlib import Path
from typing import Any

import structlog

from medicare_billing.config import get_settings

logger = structlog.get_logger(__name__)


class SuppressionFlag:
    """Persisted switch that stops the reconciler merging remote records.

    Set after a destructive local clear so a routine refresh does not silently
    repopulate the cleared view. Cleared by a successful server-side bulk
    archive/restore or a manual reset.
    """

    KEY = "remoteSyncSuppressed"

    def __init__(self, path: str | Path | None = None):
        self._path = Path(path or get_settings().billing_state_path)

    @property
    def path(self) -> Path:
        return self._path

    def _load(self) -> dict[str, Any]:
        if not self._path.exists():
            return {}
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.warning("billing_state_unreadable", path=str(self._path), error=str(e))
            return {}
        if not isinstance(data, dict):
            return {}
        return data

    def _write(self, value: bool) -> None:
        state = self._load()
        state[self.KEY] = value
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_name(self._path.name + ".tmp")
        tmp_path.write_text(json.dumps(state, indent=2), encoding="utf-8")
        tmp_path.replace(self._path)

    def is_set(self) -> bool:
        return bool(self._load().get(self.KEY, False))

    def set(self) -> None:
        self._write(True)
        logger.info("remote_sync_suppressed", path=str(self._path))

    def clear(self) -> None:
        if not self.is_set():
            return
        self._write(False)
        logger.info("remote_sync_resumed", path=str(self._path))
