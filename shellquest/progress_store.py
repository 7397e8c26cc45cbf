"""JSON persistence for adventure progress.

One file per adventure, PROGRESS_DIR/<adventure_id>.json, holding the
ProgressState fields plus a lastSaved timestamp.
"""

from __future__ import annotations

import json
import logging
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from .mission import ProgressState

LOGGER = logging.getLogger(__name__)

_SAFE_ID = re.compile(r"[^A-Za-z0-9_.-]+")


def _safe_name(value: str, fallback: str) -> str:
    return _SAFE_ID.sub("_", value).strip("._") or fallback


class ProgressStore:
    def __init__(self, directory: Union[str, Path]):
        self.directory = Path(directory)

    def for_user(self, username: str) -> "ProgressStore":
        """Store rooted in a per-learner subdirectory."""
        return ProgressStore(self.directory / _safe_name(username, "user"))

    def path_for(self, adventure_id: str) -> Path:
        return self.directory / f"{_safe_name(adventure_id, 'adventure')}.json"

    def load_raw(self, adventure_id: str) -> Optional[Dict[str, Any]]:
        path = self.path_for(adventure_id)
        if not path.exists():
            return None
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            LOGGER.warning("Ignoring unreadable progress file %s: %s", path, exc)
            return None
        if not isinstance(data, dict):
            LOGGER.warning("Ignoring malformed progress file %s", path)
            return None
        return data

    def load(self, adventure_id: str) -> Optional[ProgressState]:
        data = self.load_raw(adventure_id)
        if data is None:
            return None
        try:
            return ProgressState.from_dict(data)
        except (TypeError, ValueError) as exc:
            LOGGER.warning("Ignoring malformed progress for %s: %s", adventure_id, exc)
            return None

    def save(self, adventure_id: str, progress: ProgressState) -> Optional[Path]:
        """Write progress; returns the file path, or None if the write failed."""
        path = self.path_for(adventure_id)
        data = progress.to_dict()
        data["lastSaved"] = datetime.now(timezone.utc).isoformat()
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(json.dumps(data, indent=2), encoding="utf-8")
        except OSError:
            LOGGER.exception("Failed to save progress for %s to %s", adventure_id, path)
            return None
        LOGGER.debug("Saved progress for %s", adventure_id)
        return path

    def clear(self, adventure_id: str) -> bool:
        path = self.path_for(adventure_id)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        except OSError:
            LOGGER.exception("Failed to remove progress file %s", path)
            return False
        LOGGER.info("Cleared saved progress for %s", adventure_id)
        return True

    def list_saved(self) -> List[str]:
        if not self.directory.is_dir():
            return []
        return sorted(path.stem for path in self.directory.glob("*.json"))
