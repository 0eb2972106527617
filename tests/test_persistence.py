"""
Tests for debounced persistence, retry with backups, and status preservation.
"""

import asyncio
import pytest
from unittest.mock import AsyncMock, MagicMock

from config_manager import PersistenceConfig
from data_models import Dedicatoria, Draft, Meta, Page, PersistenceState, Stage, StageState, StageStatus
from local_backup import LocalBackupStore, MemoryKeyValueStorage
from pause_gate import EXPORT_STARTED, PauseGate, SignalBus
from persistence import (
    InvalidDraftIdError, PersistenceError, PersistenceMode, PersistenceScheduler,
    RetryCoordinator, is_valid_draft_id
)
from record_store import RecordStore

DRAFT_ID = "3f2b8c1e-4d5a-4b6c-8d7e-9f0a1b2c3d4e"


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def record_store():
    store = MagicMock(spec=RecordStore)
    store.update_record = AsyncMock(return_value={})
    store.read_status = AsyncMock(return_value=None)
    return store


@pytest.fixture
def backups():
    return LocalBackupStore(MemoryKeyValueStorage())


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def signal_bus():
    return SignalBus()


@pytest.fixture
def scheduler(record_store, backups, clock, signal_bus):
    config = PersistenceConfig(
        draft_delay=0.01, review_delay=0.02, final_delay=0.03,
        retry_delay=0.001, pause_duration=8.0
    )
    state = PersistenceState()
    gate = PauseGate(state, signal_bus, cooldown=config.pause_duration, clock=clock)
    coordinator = RetryCoordinator(backups, state, max_retries=config.max_retries,
                                   retry_delay=config.retry_delay)
    return PersistenceScheduler(record_store, coordinator, gate, config)


@pytest.fixture
def draft():
    return Draft(id=DRAFT_ID, meta=Meta(title="A", theme=""))


def written_payloads(record_store):
    return [c.args[1] for c in record_store.update_record.await_args_list]


class TestDraftIds:

    def test_uuid_v4_accepted(self):
        assert is_valid_draft_id(DRAFT_ID)

    @pytest.mark.parametrize("draft_id", [None, "", "draft-1", "3f2b8c1e-4d5a-1b6c-8d7e-9f0a1b2c3d4e"])
    def test_other_ids_rejected(self, draft_id):
        assert not is_valid_draft_id(draft_id)


class TestPersistenceModes:

    def test_mode_from_stage_state(self, scheduler):
        state = StageState()
        assert scheduler.determine_mode(state) == PersistenceMode.DRAFT

        state.statuses[Stage.STORY] = StageStatus.COMPLETED
        assert scheduler.determine_mode(state) == PersistenceMode.REVIEW

        state.statuses[Stage.DEDICATORIA] = StageStatus.COMPLETED
        assert scheduler.determine_mode(state) == PersistenceMode.FINAL

        assert scheduler.determine_mode(state, export_active=True) == PersistenceMode.EXPORT

    def test_delays_per_mode(self, scheduler):
        assert scheduler.get_delay(PersistenceMode.DRAFT) == 0.01
        assert scheduler.get_delay(PersistenceMode.REVIEW) == 0.02
        assert scheduler.get_delay(PersistenceMode.FINAL) == 0.03

    def test_default_delays(self):
        config = PersistenceConfig()
        assert (config.draft_delay, config.review_delay, config.final_delay) == (1.5, 3.0, 6.0)
        assert config.pause_duration == 8.0


class TestDebounce:

    @pytest.mark.asyncio
    async def test_rapid_mutations_produce_one_write(self, scheduler, record_store, draft):
        for i in range(5):
            draft.meta.title = f"Title {i}"
            assert scheduler.submit(draft, StageState())

        await scheduler.flush()

        assert record_store.update_record.await_count == 1
        payload = written_payloads(record_store)[0]
        assert payload["title"] == "Title 4"
        assert not scheduler.state.is_dirty

    @pytest.mark.asyncio
    async def test_theme_change_is_written_after_window(self, scheduler, record_store, draft):
        scheduler.mark_saved(draft)
        draft.meta.theme = "forest"
        scheduler.submit(draft, StageState())

        await asyncio.sleep(0.05)

        assert record_store.update_record.await_count == 1
        assert written_payloads(record_store)[0]["theme"] == "forest"

    @pytest.mark.asyncio
    async def test_unchanged_draft_is_not_written(self, scheduler, record_store, draft):
        scheduler.mark_saved(draft)

        assert not scheduler.submit(draft, StageState())
        await scheduler.flush()

        record_store.update_record.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_revert_cancels_pending_write(self, scheduler, record_store, draft):
        scheduler.mark_saved(draft)
        draft.meta.title = "B"
        assert scheduler.submit(draft, StageState())

        draft.meta.title = "A"
        assert not scheduler.submit(draft, StageState())
        await scheduler.flush()

        record_store.update_record.assert_not_awaited()
        assert not scheduler.state.is_dirty

    @pytest.mark.asyncio
    async def test_later_edits_do_not_leak_into_scheduled_write(self, scheduler, record_store, draft):
        draft.meta.title = "Scheduled"
        scheduler.submit(draft, StageState())
        draft.meta.title = "Edited after submit"

        await scheduler.flush()

        assert written_payloads(record_store)[0]["title"] == "Scheduled"

    @pytest.mark.asyncio
    async def test_export_mode_does_not_schedule(self, scheduler, record_store, draft):
        assert not scheduler.submit(draft, StageState(), export_active=True)
        assert scheduler.state.is_dirty
        assert not scheduler.has_pending_save

    @pytest.mark.asyncio
    async def test_forced_submit_writes_untracked_content(self, scheduler, record_store, draft):
        scheduler.mark_saved(draft)
        draft.pages = [Page(id="p1", page_number=1, image_url="https://cdn.example/p1.png")]

        assert not scheduler.submit(draft, StageState())
        assert scheduler.submit(draft, StageState(), force=True)
        await scheduler.flush()

        assert record_store.update_record.await_count == 1
        assert written_payloads(record_store)[0]["pages"][0]["image_url"] == "https://cdn.example/p1.png"
        assert not scheduler.state.is_dirty

    @pytest.mark.asyncio
    async def test_forced_write_survives_tracked_revert(self, scheduler, record_store, draft):
        scheduler.mark_saved(draft)
        draft.pages = [Page(id="p1", page_number=1, image_url="https://cdn.example/p1.png")]
        assert scheduler.submit(draft, StageState(), force=True)

        draft.meta.title = "B"
        assert scheduler.submit(draft, StageState())
        draft.meta.title = "A"
        assert scheduler.submit(draft, StageState())
        await scheduler.flush()

        assert record_store.update_record.await_count == 1
        assert written_payloads(record_store)[0]["pages"][0]["image_url"] == "https://cdn.example/p1.png"


class TestPauseGate:

    @pytest.mark.asyncio
    async def test_paused_changes_stay_local(self, scheduler, record_store, draft, clock):
        scheduler.pause_gate.pause(8.0)

        assert not scheduler.submit(draft, StageState())
        await scheduler.flush()

        record_store.update_record.assert_not_awaited()
        assert scheduler.state.is_dirty

    @pytest.mark.asyncio
    async def test_writes_resume_after_pause_expires(self, scheduler, record_store, draft, clock):
        scheduler.pause_gate.pause(8.0)
        assert not scheduler.submit(draft, StageState())

        clock.now += 8.5
        draft.meta.title = "After export"
        assert scheduler.submit(draft, StageState())
        await scheduler.flush()

        assert record_store.update_record.await_count == 1
        assert not scheduler.state.is_blocked

    @pytest.mark.asyncio
    async def test_signal_while_timer_pending_skips_write(self, scheduler, record_store, draft, signal_bus):
        assert scheduler.submit(draft, StageState())
        signal_bus.publish(EXPORT_STARTED, draft_id=DRAFT_ID)

        await scheduler.flush()

        record_store.update_record.assert_not_awaited()


class TestRetryAndBackup:

    @pytest.mark.asyncio
    async def test_exhausted_retries_leave_backup(self, scheduler, record_store, backups, draft):
        record_store.update_record.side_effect = Exception("network down")

        with pytest.raises(PersistenceError):
            await scheduler.save_now(draft, StageState())

        assert record_store.update_record.await_count == 4
        snapshot = backups.read_backup(DRAFT_ID)
        assert snapshot is not None
        assert snapshot.draft.meta.title == "A"
        assert scheduler.retry_coordinator.retry_count == 0

    @pytest.mark.asyncio
    async def test_next_save_starts_fresh_counter(self, scheduler, record_store, backups, draft):
        record_store.update_record.side_effect = Exception("network down")
        with pytest.raises(PersistenceError):
            await scheduler.save_now(draft, StageState())

        record_store.update_record.side_effect = [Exception("still down"), {}]
        await scheduler.save_now(draft, StageState())

        assert record_store.update_record.await_count == 6
        assert backups.read_backup(DRAFT_ID) is None
        assert scheduler.state.last_save_time > 0

    @pytest.mark.asyncio
    async def test_autosave_failure_is_reported(self, scheduler, record_store, draft):
        record_store.update_record.side_effect = Exception("timeout")
        errors = []
        scheduler.add_error_callback(errors.append)

        scheduler.submit(draft, StageState())
        await scheduler.flush()

        assert len(errors) == 1
        assert isinstance(errors[0], PersistenceError)
        assert scheduler.state.last_error is errors[0]
        assert scheduler.state.is_dirty

    @pytest.mark.asyncio
    async def test_backoff_doubles(self, backups):
        coordinator = RetryCoordinator(backups, retry_delay=2.0)
        assert [coordinator._calculate_retry_delay(n) for n in (1, 2, 3)] == [2.0, 4.0, 8.0]

    @pytest.mark.asyncio
    async def test_no_retry_budget_still_leaves_backup(self, backups, draft):
        coordinator = RetryCoordinator(backups, max_retries=0, retry_delay=0.001)
        write = AsyncMock(side_effect=Exception("network down"))

        with pytest.raises(PersistenceError):
            await coordinator.save(draft, StageState(), write)

        write.assert_awaited_once()
        assert backups.read_backup(DRAFT_ID).draft.meta.title == "A"

    @pytest.mark.asyncio
    async def test_invalid_id_is_rejected_without_backup(self, scheduler, record_store, backups):
        draft = Draft(id="not-a-uuid", meta=Meta(title="X"))

        with pytest.raises(InvalidDraftIdError):
            await scheduler.save_now(draft, StageState())

        record_store.update_record.assert_not_awaited()
        assert backups.read_backup("not-a-uuid") is None


class TestPayload:

    @pytest.mark.asyncio
    async def test_final_remote_status_is_preserved(self, scheduler, record_store, draft):
        record_store.read_status.return_value = "completed"
        draft.meta.theme = "sea"

        await scheduler.save_now(draft, StageState())

        payload = written_payloads(record_store)[0]
        assert "status" not in payload
        assert payload["theme"] == "sea"

    @pytest.mark.asyncio
    async def test_non_final_status_is_set_to_draft(self, scheduler, record_store, draft):
        record_store.read_status.return_value = "draft"

        await scheduler.save_now(draft, StageState())

        assert written_payloads(record_store)[0]["status"] == "draft"

    def test_final_mode_writes_title_and_state_only(self, scheduler, draft):
        draft.meta.dedicatoria = Dedicatoria(text="Para Ana")
        payload = scheduler.build_payload(draft, StageState(), PersistenceMode.FINAL, None)

        assert payload["title"] == "A"
        assert "wizard_state" in payload
        assert "theme" not in payload
        assert "dedicatoria_text" not in payload

    def test_draft_mode_includes_dedicatoria_layout(self, scheduler, draft):
        draft.meta.dedicatoria = Dedicatoria(text="Para Ana", layout="imagen-abajo")
        payload = scheduler.build_payload(draft, StageState(), PersistenceMode.DRAFT, None)

        assert payload["dedicatoria_text"] == "Para Ana"
        assert payload["dedicatoria_layout"]["layout"] == "imagen-abajo"


class TestStageStatePersistence:

    @pytest.mark.asyncio
    async def test_stage_state_written_alone(self, scheduler, record_store):
        state = StageState()
        state.statuses[Stage.CHARACTERS] = StageStatus.COMPLETED

        assert await scheduler.save_stage_state(DRAFT_ID, state)

        payload = written_payloads(record_store)[0]
        assert set(payload) == {"wizard_state", "updated_at"}
        assert payload["wizard_state"]["characters"]["status"] == "completado"

    @pytest.mark.asyncio
    async def test_stage_state_failure_returns_false(self, scheduler, record_store):
        record_store.update_record.side_effect = Exception("offline")
        assert not await scheduler.save_stage_state(DRAFT_ID, StageState())

    @pytest.mark.asyncio
    async def test_stage_state_invalid_id(self, scheduler, record_store):
        assert not await scheduler.save_stage_state("bad", StageState())
        record_store.update_record.assert_not_awaited()
