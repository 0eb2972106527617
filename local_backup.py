"""
Local device storage and the tiered draft backup store built on top of it.
"""

import json
import logging
import re
from pathlib import Path
from typing import Dict, Optional, Union

from data_models import BackupSnapshot

logger = logging.getLogger(__name__)

CURRENT_DRAFT_KEY = "current_story_draft_id"


def backup_key(draft_id: str) -> str:
    return f"story_draft_{draft_id}_backup"


def emergency_key(draft_id: str) -> str:
    return f"story_draft_{draft_id}_emergency"


class MemoryKeyValueStorage:
    """In-process key/value storage"""

    def __init__(self):
        self._data: Dict[str, str] = {}

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value

    def remove(self, key: str) -> None:
        self._data.pop(key, None)


class FileKeyValueStorage:
    """Key/value storage with one file per key under a directory"""

    _SAFE_KEY = re.compile(r"[^A-Za-z0-9_.-]")

    def __init__(self, directory: Union[str, Path]):
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)

    def _path_for(self, key: str) -> Path:
        return self.directory / f"{self._SAFE_KEY.sub('_', key)}.json"

    def get(self, key: str) -> Optional[str]:
        path = self._path_for(key)
        if not path.exists():
            return None
        return path.read_text(encoding="utf-8")

    def set(self, key: str, value: str) -> None:
        path = self._path_for(key)
        temp_path = path.with_suffix(".tmp")
        temp_path.write_text(value, encoding="utf-8")
        # Atomic rename
        temp_path.replace(path)

    def remove(self, key: str) -> None:
        path = self._path_for(key)
        if path.exists():
            path.unlink()


class LocalBackupStore:
    """Primary and emergency draft backups keyed by draft identity"""

    def __init__(self, storage):
        self.storage = storage

    def write_backup(self, draft_id: str, snapshot: BackupSnapshot) -> None:
        self.storage.set(backup_key(draft_id), json.dumps(snapshot.to_dict(), ensure_ascii=False))
        logger.debug(f"Backup written for draft {draft_id}")

    def read_backup(self, draft_id: str) -> Optional[BackupSnapshot]:
        return self._read(backup_key(draft_id))

    def clear_backup(self, draft_id: str) -> None:
        self.storage.remove(backup_key(draft_id))

    def write_emergency_backup(self, draft_id: str, snapshot: BackupSnapshot) -> None:
        self.storage.set(emergency_key(draft_id), json.dumps(snapshot.to_dict(), ensure_ascii=False))
        logger.info(f"Emergency backup written for draft {draft_id}")

    def read_emergency_backup(self, draft_id: str) -> Optional[BackupSnapshot]:
        return self._read(emergency_key(draft_id))

    def clear_emergency_backup(self, draft_id: str) -> None:
        self.storage.remove(emergency_key(draft_id))

    def recover_from_backup(self, draft_id: str) -> Optional[BackupSnapshot]:
        """Primary backup if present, else the emergency one, else None"""
        snapshot = self.read_backup(draft_id)
        if snapshot is not None:
            return snapshot
        return self.read_emergency_backup(draft_id)

    def remember_current_draft(self, draft_id: str) -> None:
        self.storage.set(CURRENT_DRAFT_KEY, draft_id)

    def current_draft_id(self) -> Optional[str]:
        return self.storage.get(CURRENT_DRAFT_KEY)

    def forget_current_draft(self) -> None:
        self.storage.remove(CURRENT_DRAFT_KEY)

    def _read(self, key: str) -> Optional[BackupSnapshot]:
        raw = self.storage.get(key)
        if raw is None:
            return None
        try:
            return BackupSnapshot.from_dict(json.loads(raw))
        except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
            logger.warning(f"Ignoring unreadable backup under {key}: {e}")
            return None
