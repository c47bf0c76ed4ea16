"""
client/scheduler.py - Periodic sync and sync-on-change

SyncScheduler runs scheduled cycles on the event loop and keeps a short
history. BookmarkFileWatcher uses watchdog to notice browser edits and
schedules a debounced sync.
"""

import asyncio
import time
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Set
from dataclasses import dataclass, asdict
import logging

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from ..sync.engine import SyncResult, SyncTrigger

logger = logging.getLogger(__name__)

SYNC_INTERVALS = (5, 15, 30, 60, 360, 1440)  # minutes
DEFAULT_SYNC_INTERVAL = 15
MAX_HISTORY_SIZE = 100


def validate_sync_interval(minutes: Any) -> int:
    """Snap to a supported interval; anything unusable becomes the default"""
    try:
        minutes = int(minutes)
    except (TypeError, ValueError):
        return DEFAULT_SYNC_INTERVAL
    if minutes in SYNC_INTERVALS:
        return minutes
    if minutes <= 0:
        return DEFAULT_SYNC_INTERVAL
    return min(SYNC_INTERVALS, key=lambda interval: abs(interval - minutes))


def get_next_sync_time(last_sync: Optional[float], interval_minutes: int) -> float:
    """Epoch seconds of the next due sync (now if never synced)"""
    if not last_sync:
        return time.time()
    return last_sync + interval_minutes * 60


def should_sync(last_sync: Optional[float], interval_minutes: int,
                now: Optional[float] = None) -> bool:
    now = now if now is not None else time.time()
    return now >= get_next_sync_time(last_sync, interval_minutes)


@dataclass
class SyncHistoryEntry:
    source_id: str
    trigger: str
    status: str
    action: str
    started_at: float
    duration: float
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.status == 'success'


def calculate_sync_stats(history: List[SyncHistoryEntry]) -> Dict[str, Any]:
    if not history:
        return {
            'total_syncs': 0,
            'successful_syncs': 0,
            'failed_syncs': 0,
            'success_rate': 0.0,
            'avg_duration': 0.0,
            'last_sync_time': None,
        }

    successful = sum(1 for entry in history if entry.success)
    return {
        'total_syncs': len(history),
        'successful_syncs': successful,
        'failed_syncs': len(history) - successful,
        'success_rate': successful / len(history) * 100,
        'avg_duration': sum(entry.duration for entry in history) / len(history),
        'last_sync_time': max(entry.started_at for entry in history),
    }


class SyncScheduler:
    """
    Runs session.sync_all on an interval.
    Cycles rejected as busy or paused are recorded like any other.
    """

    def __init__(self, session, interval_minutes: int = DEFAULT_SYNC_INTERVAL):
        self.session = session
        self.interval_minutes = validate_sync_interval(interval_minutes)
        self.history: List[SyncHistoryEntry] = []
        self.last_sync: Optional[float] = None
        self._task: Optional[asyncio.Task] = None
        self._stopped = asyncio.Event()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def _record(self, trigger: SyncTrigger, started_at: float, result: SyncResult):
        self.history.append(SyncHistoryEntry(
            source_id=result.source_id,
            trigger=trigger.value,
            status=result.status.value,
            action=result.action,
            started_at=started_at,
            duration=result.duration,
            error=result.error,
        ))
        del self.history[:-MAX_HISTORY_SIZE]

    async def run_once(self, trigger: SyncTrigger = SyncTrigger.SCHEDULED) -> Dict[str, SyncResult]:
        started_at = time.time()
        results = await self.session.sync_all(trigger)
        for result in results.values():
            self._record(trigger, started_at, result)
        self.last_sync = started_at
        return results

    async def _loop(self):
        logger.info(f"Scheduled sync every {self.interval_minutes} minutes")
        while not self._stopped.is_set():
            if should_sync(self.last_sync, self.interval_minutes):
                try:
                    await self.run_once()
                except Exception as e:
                    # keep the schedule alive; the next interval retries
                    self.last_sync = time.time()
                    logger.error(f"Scheduled sync failed: {e}", exc_info=True)
            delay = max(get_next_sync_time(self.last_sync, self.interval_minutes) - time.time(), 1)
            try:
                await asyncio.wait_for(self._stopped.wait(), timeout=delay)
            except asyncio.TimeoutError:
                continue

    def start(self) -> asyncio.Task:
        self._stopped.clear()
        self._task = asyncio.get_running_loop().create_task(self._loop())
        return self._task

    async def stop(self):
        self._stopped.set()
        if self._task is not None:
            await self._task
            self._task = None
        logger.info("Scheduler stopped")

    def get_stats(self) -> Dict[str, Any]:
        stats = calculate_sync_stats(self.history)
        stats['interval_minutes'] = self.interval_minutes
        stats['next_sync_time'] = get_next_sync_time(self.last_sync, self.interval_minutes)
        return stats

    def get_history(self) -> List[Dict[str, Any]]:
        return [asdict(entry) for entry in self.history]


class BookmarkFileWatcher(FileSystemEventHandler):
    """
    Watches the browser's bookmarks file and calls on_change after the
    file has been quiet for debounce_seconds. Events arrive on the
    observer thread and are handed to the event loop.
    """

    def __init__(self, path: Path, on_change: Callable[[], Any],
                 loop: asyncio.AbstractEventLoop, debounce_seconds: float = 5.0,
                 is_busy: Optional[Callable[[], bool]] = None):
        super().__init__()
        self.path = Path(path).resolve()
        self.on_change = on_change
        self.loop = loop
        self.debounce_seconds = debounce_seconds
        self.is_busy = is_busy
        self._timer: Optional[asyncio.TimerHandle] = None
        self._observer: Optional[Observer] = None
        self._tasks: Set[asyncio.Task] = set()

    def _matches(self, event: FileSystemEvent) -> bool:
        paths = [event.src_path, getattr(event, 'dest_path', '')]
        return any(p and Path(p).resolve() == self.path for p in paths)

    def on_any_event(self, event: FileSystemEvent):
        if event.is_directory or not self._matches(event):
            return
        self.loop.call_soon_threadsafe(self._schedule)

    def _schedule(self):
        if self.is_busy and self.is_busy():
            # our own write during a sync cycle
            return
        if self._timer is not None:
            self._timer.cancel()
        self._timer = self.loop.call_later(self.debounce_seconds, self._fire)

    def _fire(self):
        self._timer = None
        logger.info("Bookmarks changed, syncing")
        result = self.on_change()
        if asyncio.iscoroutine(result):
            task = self.loop.create_task(result)
            self._tasks.add(task)
            task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task):
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Sync after bookmark change failed: {error}", exc_info=error)

    def start(self):
        self._observer = Observer()
        self._observer.schedule(self, str(self.path.parent), recursive=False)
        self._observer.start()
        logger.info(f"Watching {self.path}")

    def stop(self):
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        if self._observer is not None:
            self._observer.stop()
            self._observer.join()
            self._observer = None
