"""
Remote record store used by the persistence engine.
"""

import asyncio
import copy
import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional, Union

logger = logging.getLogger(__name__)


class RecordStoreError(Exception):
    """Raised when the record store cannot read or write a record"""
    pass


class RecordStore:
    """Interface of the remote draft store; updates are idempotent upserts"""

    async def update_record(self, record_id: str, fields: Dict[str, Any]) -> Dict[str, Any]:
        raise NotImplementedError

    async def read_status(self, record_id: str) -> Optional[str]:
        record = await self.read_record(record_id)
        return record.get("status") if record else None

    async def read_record(self, record_id: str) -> Optional[Dict[str, Any]]:
        raise NotImplementedError


class JsonFileRecordStore(RecordStore):
    """Keeps every record in one JSON document on disk"""

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)
        self._lock = asyncio.Lock()

    def _load_all(self) -> Dict[str, Dict[str, Any]]:
        if not self.path.exists():
            return {}
        try:
            with open(self.path, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except (json.JSONDecodeError, IOError) as e:
            raise RecordStoreError(f"Failed to read records from {self.path}: {e}") from e
        if not isinstance(data, dict):
            raise RecordStoreError(f"Invalid records file format: {self.path}")
        return data

    def _write_all(self, records: Dict[str, Dict[str, Any]]) -> None:
        temp_path = self.path.with_suffix('.tmp')
        try:
            with open(temp_path, 'w', encoding='utf-8') as f:
                json.dump(records, f, indent=2, ensure_ascii=False)
            temp_path.replace(self.path)
        except IOError as e:
            raise RecordStoreError(f"Failed to write records to {self.path}: {e}") from e

    async def update_record(self, record_id: str, fields: Dict[str, Any]) -> Dict[str, Any]:
        loop = asyncio.get_running_loop()

        def upsert() -> Dict[str, Any]:
            records = self._load_all()
            record = records.setdefault(record_id, {"id": record_id})
            record.update(copy.deepcopy(fields))
            self._write_all(records)
            return record

        async with self._lock:
            record = await loop.run_in_executor(None, upsert)

        logger.debug(f"Record {record_id} updated: {sorted(fields)}")
        return record

    async def read_record(self, record_id: str) -> Optional[Dict[str, Any]]:
        loop = asyncio.get_running_loop()
        async with self._lock:
            records = await loop.run_in_executor(None, self._load_all)
        return records.get(record_id)
