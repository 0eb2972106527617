"""
Debounced, mode-aware persistence of the wizard draft to the record store.

The scheduler decides *whether* and *when* to write, the retry coordinator
decides *how hard* to try. A failed attempt always leaves a local backup
behind; a successful one removes it.
"""

import asyncio
import copy
import logging
import re
import time
from dataclasses import asdict
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from change_detector import has_real_changes, persistence_snapshot
from config_manager import PersistenceConfig
from data_models import BackupSnapshot, Draft, PersistenceState, Stage, StageState
from local_backup import LocalBackupStore
from pause_gate import PauseGate
from record_store import RecordStore

logger = logging.getLogger(__name__)

_UUID_V4 = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-4[0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}$",
    re.IGNORECASE
)


def is_valid_draft_id(draft_id: Optional[str]) -> bool:
    return bool(draft_id) and bool(_UUID_V4.match(draft_id))


class PersistenceMode(Enum):
    """How eagerly the draft is written back"""
    DRAFT = "draft"
    REVIEW = "review"
    FINAL = "final"
    EXPORT = "export"


class PersistenceError(Exception):
    """Raised when a draft could not be written to the record store"""
    pass


class InvalidDraftIdError(PersistenceError):
    """Raised for draft identities that cannot be addressed remotely"""
    pass


class RetryCoordinator:
    """Runs a write with bounded exponential backoff and local backups"""

    def __init__(self,
                 backups: LocalBackupStore,
                 state: Optional[PersistenceState] = None,
                 max_retries: int = 3,
                 retry_delay: float = 2.0,
                 clock: Callable[[], float] = time.time):
        self.backups = backups
        self.state = state if state is not None else PersistenceState()
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.retry_count = 0
        self._clock = clock

    def _calculate_retry_delay(self, attempt: int) -> float:
        return self.retry_delay * (2 ** (attempt - 1))

    async def save(self, draft: Draft, stage_state: StageState,
                   write_fn: Callable[[], Awaitable[Any]]) -> None:
        """Write the draft, retrying up to max_retries times before giving up"""
        if not is_valid_draft_id(draft.id):
            logger.error(f"Invalid draft id {draft.id!r} - skipping save")
            raise InvalidDraftIdError(f"Invalid draft id: {draft.id!r}")

        while True:
            try:
                await write_fn()
            except Exception as e:
                self.backups.write_backup(draft.id, BackupSnapshot(
                    draft=copy.deepcopy(draft),
                    stage_state=copy.deepcopy(stage_state),
                    timestamp=self._clock()
                ))
                if self.retry_count >= self.max_retries:
                    logger.error(
                        f"Save of draft {draft.id} failed after {self.retry_count + 1} attempts: {e}. "
                        f"Latest backup kept for recovery"
                    )
                    self.retry_count = 0
                    raise PersistenceError(f"Failed to save draft {draft.id}: {e}") from e

                self.retry_count += 1
                delay = self._calculate_retry_delay(self.retry_count)
                logger.warning(
                    f"Save of draft {draft.id} failed (retry {self.retry_count}/{self.max_retries}): "
                    f"{e}. Retrying in {delay:.2f}s"
                )
                await asyncio.sleep(delay)
            else:
                self.retry_count = 0
                self.backups.clear_backup(draft.id)
                self.state.last_save_time = self._clock()
                return


class PersistenceScheduler:
    """Owns the single debounce timer of one draft"""

    def __init__(self,
                 record_store: RecordStore,
                 retry_coordinator: RetryCoordinator,
                 pause_gate: PauseGate,
                 config: Optional[PersistenceConfig] = None):
        self.config = config or PersistenceConfig()
        self.record_store = record_store
        self.retry_coordinator = retry_coordinator
        self.pause_gate = pause_gate
        self.state = retry_coordinator.state
        self.state.final_states = set(self.config.final_states)

        self._last_saved: Optional[Dict[str, Any]] = None
        self._untracked_pending = False
        self._token = 0
        self._timer: Optional[asyncio.Task] = None
        self._firing: Set[asyncio.Task] = set()
        self._tasks: Set[asyncio.Task] = set()
        self._save_lock = asyncio.Lock()

        self._save_callbacks: List[Callable[[Draft], None]] = []
        self._error_callbacks: List[Callable[[Exception], None]] = []

    def add_save_callback(self, callback: Callable[[Draft], None]):
        self._save_callbacks.append(callback)

    def add_error_callback(self, callback: Callable[[Exception], None]):
        self._error_callbacks.append(callback)

    def determine_mode(self, stage_state: StageState, export_active: bool = False) -> PersistenceMode:
        if export_active:
            return PersistenceMode.EXPORT
        if stage_state.is_completed(Stage.DEDICATORIA) or stage_state.is_completed(Stage.EXPORT):
            return PersistenceMode.FINAL
        if stage_state.is_completed(Stage.PREVIEW) or stage_state.is_completed(Stage.STORY):
            return PersistenceMode.REVIEW
        return PersistenceMode.DRAFT

    def get_delay(self, mode: PersistenceMode) -> float:
        if mode == PersistenceMode.REVIEW:
            return self.config.review_delay
        if mode == PersistenceMode.FINAL:
            return self.config.final_delay
        if mode == PersistenceMode.EXPORT:
            return 0.0
        return self.config.draft_delay

    @property
    def has_pending_save(self) -> bool:
        return any(not task.done() for task in self._tasks)

    def mark_saved(self, draft: Draft) -> None:
        """Use `draft` as the baseline, e.g. right after loading it from the store"""
        self._last_saved = persistence_snapshot(draft)
        self._untracked_pending = False
        self.state.is_dirty = False

    def reset_baseline(self) -> None:
        self._last_saved = None

    def submit(self, draft: Draft, stage_state: StageState, export_active: bool = False,
               force: bool = False) -> bool:
        """Apply a draft change; returns True when a debounced save was scheduled.

        `force` skips only the change check, for untracked content such as
        page artifacts that must still reach the record.
        """
        force = force or self._untracked_pending
        if not force and not has_real_changes(draft, self._last_saved):
            if self._timer is not None and not self._timer.done() and self._timer not in self._firing:
                # Back to the saved state: the pending write is obsolete
                self.cancel()
                self._token += 1
                self.state.is_dirty = False
            logger.debug("No real changes - skipping persistence")
            return False
        self.state.is_dirty = True
        if force:
            self._untracked_pending = True

        mode = self.determine_mode(stage_state, export_active)
        if mode == PersistenceMode.EXPORT:
            logger.debug("Export mode - persistence disabled")
            return False

        if not self.pause_gate.can_persist_now():
            logger.debug("Persistence temporarily paused - change kept locally")
            return False

        self._schedule(
            self.get_delay(mode),
            copy.deepcopy(draft),
            copy.deepcopy(stage_state),
            mode
        )
        return True

    def cancel(self) -> None:
        """Drop the pending timer unless its save is already in flight"""
        timer = self._timer
        if timer is not None and not timer.done() and timer not in self._firing:
            timer.cancel()
        self._timer = None

    def _schedule(self, delay: float, draft: Draft, stage_state: StageState, mode: PersistenceMode):
        self.cancel()
        self._token += 1
        token = self._token

        task = asyncio.get_running_loop().create_task(
            self._fire_after(token, delay, draft, stage_state, mode)
        )
        self._timer = task
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        logger.debug(f"Save of draft {draft.id} scheduled in {delay}s (mode: {mode.value})")

    async def _fire_after(self, token: int, delay: float, draft: Draft,
                          stage_state: StageState, mode: PersistenceMode):
        await asyncio.sleep(delay)
        if token != self._token:
            return

        task = asyncio.current_task()
        self._firing.add(task)
        try:
            async with self._save_lock:
                if token != self._token:
                    logger.debug("Superseded by a newer change - skipping save")
                    return
                if not self.pause_gate.can_persist_now():
                    logger.debug("Persistence paused before the timer fired - skipping save")
                    return
                try:
                    await self._persist(draft, stage_state, mode, token)
                except PersistenceError as e:
                    self.state.last_error = e
                    logger.error(f"Autosave failed for draft {draft.id}: {e}")
                    self._notify_error(e)
        finally:
            self._firing.discard(task)

    async def save_now(self, draft: Draft, stage_state: StageState,
                       export_active: bool = False) -> None:
        """Write immediately, bypassing the debounce window; raises on failure"""
        self.cancel()
        self._token += 1
        token = self._token
        mode = self.determine_mode(stage_state, export_active)
        async with self._save_lock:
            await self._persist(copy.deepcopy(draft), copy.deepcopy(stage_state), mode, token)

    async def _persist(self, draft: Draft, stage_state: StageState,
                       mode: PersistenceMode, token: int) -> None:
        async def write():
            remote_status = await self.record_store.read_status(draft.id)
            payload = self.build_payload(draft, stage_state, mode, remote_status)
            await self.record_store.update_record(draft.id, payload)

        await self.retry_coordinator.save(draft, stage_state, write)

        self._last_saved = persistence_snapshot(draft)
        self.state.last_error = None
        if token == self._token:
            self.state.is_dirty = False
            self._untracked_pending = False
        logger.info(f"Draft {draft.id} saved (mode: {mode.value})")

        for callback in self._save_callbacks:
            try:
                callback(draft)
            except Exception as e:
                logger.warning(f"Save callback failed: {e}")

    def build_payload(self, draft: Draft, stage_state: StageState,
                      mode: PersistenceMode, remote_status: Optional[str]) -> Dict[str, Any]:
        """Fields to write; never downgrades a final remote status"""
        meta = draft.meta
        payload: Dict[str, Any] = {
            "updated_at": datetime.now(timezone.utc).isoformat(),
            "wizard_state": stage_state.to_dict(),
        }

        if meta.title:
            payload["title"] = meta.title

        if mode in (PersistenceMode.DRAFT, PersistenceMode.REVIEW):
            dedicatoria = meta.dedicatoria
            payload.update({
                "theme": meta.theme,
                "target_age": meta.target_age,
                "literary_style": meta.literary_style,
                "central_message": meta.central_message,
                "additional_details": meta.additional_details,
                "dedicatoria_text": (dedicatoria.text or None) if dedicatoria else None,
                "dedicatoria_image_url": dedicatoria.image_url if dedicatoria else None,
                "dedicatoria_layout": {
                    "layout": dedicatoria.layout,
                    "alignment": dedicatoria.alignment,
                    "image_size": dedicatoria.image_size,
                } if dedicatoria else None,
                "characters": [asdict(character) for character in draft.characters],
                "pages": [asdict(page) for page in draft.pages],
                "design": asdict(draft.design),
            })

        if remote_status in self.state.final_states:
            logger.debug(f"Preserving final status {remote_status!r} of draft {draft.id}")
        else:
            payload["status"] = "draft"

        return payload

    async def save_stage_state(self, draft_id: str, stage_state: StageState) -> bool:
        """Write only the wizard_state field, once; used for stage transitions"""
        if not is_valid_draft_id(draft_id):
            logger.error(f"Invalid draft id {draft_id!r} - wizard state not saved")
            return False
        try:
            async with self._save_lock:
                await self.record_store.update_record(draft_id, {
                    "wizard_state": stage_state.to_dict(),
                    "updated_at": datetime.now(timezone.utc).isoformat(),
                })
            return True
        except Exception as e:
            logger.error(f"Error updating wizard state of draft {draft_id}: {e}")
            return False

    async def flush(self) -> None:
        """Wait for every scheduled save to finish"""
        pending = [task for task in self._tasks if not task.done()]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    def _notify_error(self, error: Exception):
        for callback in self._error_callbacks:
            try:
                callback(error)
            except Exception as e:
                logger.warning(f"Error callback failed: {e}")
