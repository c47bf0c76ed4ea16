"""
client/store.py - Persistent settings and per-source sync metadata
"""

import asyncio
import json
import os
import uuid
from pathlib import Path
from typing import Any, Dict, Optional
import logging

import aiofiles

logger = logging.getLogger(__name__)


class SettingsStore:
    """
    JSON key-value store in the data directory.

    Keys in use: deviceId, lastSync, sources (status per source) and
    sourceState (lastSync, checksum, snapshot, consecutiveFailures per
    source id). Writes go to a temp file first so a crash never leaves a
    half-written settings file.
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        self._data: Dict[str, Any] = {}
        self._loaded = False
        self._lock = asyncio.Lock()

    async def load(self) -> Dict[str, Any]:
        if self.path.exists():
            async with aiofiles.open(self.path, 'r', encoding='utf-8') as f:
                text = await f.read()
            try:
                self._data = json.loads(text) if text.strip() else {}
            except ValueError as e:
                # Settings only hold sync bookkeeping; starting over is safe
                logger.error(f"Settings file {self.path} is corrupt, starting fresh: {e}")
                self._data = {}
        self._loaded = True
        return dict(self._data)

    async def _save(self):
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_name(self.path.name + '.tmp')
        async with aiofiles.open(tmp_path, 'w', encoding='utf-8') as f:
            await f.write(json.dumps(self._data, indent=2, sort_keys=True))
        os.replace(tmp_path, self.path)

    def get(self, key: str, default: Any = None) -> Any:
        return self._data.get(key, default)

    async def set(self, key: str, value: Any):
        await self.update({key: value})

    async def update(self, values: Dict[str, Any]):
        async with self._lock:
            self._data.update(values)
            await self._save()

    async def remove(self, *keys: str):
        async with self._lock:
            for key in keys:
                self._data.pop(key, None)
            await self._save()

    async def clear(self):
        async with self._lock:
            self._data = {}
            await self._save()

    async def get_or_create_device_id(self) -> str:
        device_id = self.get('deviceId')
        if not device_id:
            device_id = str(uuid.uuid4())
            await self.set('deviceId', device_id)
            logger.info(f"Generated device id {device_id}")
        return device_id

    def source_state(self, source_id: str) -> Dict[str, Any]:
        return dict(self._data.get('sourceState', {}).get(source_id, {}))

    async def update_source_state(self, source_id: str, **values):
        async with self._lock:
            states = self._data.setdefault('sourceState', {})
            state = states.setdefault(source_id, {})
            state.update(values)
            await self._save()

    async def clear_source_state(self, source_id: str):
        async with self._lock:
            self._data.get('sourceState', {}).pop(source_id, None)
            await self._save()

    def last_sync(self) -> Optional[str]:
        return self.get('lastSync')
