#!/usr/bin/env python3
"""
Story Wizard session: the caller-facing surface of the sync engine.
Wires persistence, pause signals, stage progression and bulk generation
around one draft, and provides the `story-wizard` command line.
"""

import argparse
import asyncio
import logging
import os
import sys
import uuid
from dataclasses import asdict
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from dotenv import load_dotenv
from rich.console import Console
from rich.progress import Progress, SpinnerColumn, TextColumn, BarColumn, MofNCompleteColumn
from rich.table import Table

from config_manager import AppConfig, get_config
from data_models import (
    BackupSnapshot, BulkGenerationProgress, Character, Dedicatoria, DesignSettings,
    Draft, Meta, Page, PersistenceState, Stage, StageState, TaskState
)
from local_backup import FileKeyValueStorage, LocalBackupStore
from pause_gate import EXPORT_STARTED, STATUS_UPDATED, PauseGate, SignalBus
from persistence import PersistenceScheduler, RetryCoordinator, is_valid_draft_id
from record_store import JsonFileRecordStore, RecordStore, RecordStoreError
from task_orchestrator import BulkTaskOrchestrator
from workflow_manager import StageError, StageProgressionStateMachine

logger = logging.getLogger(__name__)


class WizardSessionError(Exception):
    """Base exception for wizard session errors"""
    pass


def draft_from_record(record: Dict[str, Any]) -> Draft:
    """Rebuild a draft from the fields written by the persistence scheduler"""
    dedicatoria = None
    if record.get("dedicatoria_text") or record.get("dedicatoria_image_url"):
        layout = record.get("dedicatoria_layout") or {}
        dedicatoria = Dedicatoria(
            text=record.get("dedicatoria_text") or "",
            image_url=record.get("dedicatoria_image_url"),
            **layout
        )

    return Draft(
        id=record["id"],
        characters=[Character.from_dict(c) for c in record.get("characters", [])],
        pages=[Page(**p) for p in record.get("pages", [])],
        meta=Meta(
            title=record.get("title") or "",
            theme=record.get("theme") or "",
            target_age=record.get("target_age") or "",
            literary_style=record.get("literary_style") or "",
            central_message=record.get("central_message") or "",
            additional_details=record.get("additional_details") or "",
            status=record.get("status") or "draft",
            dedicatoria=dedicatoria,
        ),
        design=DesignSettings(**(record.get("design") or {})),
    )


class WizardSession:
    """One editing session over one draft identity"""

    def __init__(self,
                 draft: Draft,
                 config: AppConfig,
                 record_store: RecordStore,
                 storage: Any,
                 generation_service: Any = None,
                 signal_bus: Optional[SignalBus] = None,
                 stage_state: Optional[StageState] = None):
        self.config = config
        self.draft = draft
        self.record_store = record_store
        self.signal_bus = signal_bus or SignalBus()
        self.backups = LocalBackupStore(storage)
        self.export_active = False

        persistence_config = config.persistence
        self.persistence_state = PersistenceState()
        self.pause_gate = PauseGate(
            self.persistence_state,
            self.signal_bus,
            cooldown=persistence_config.pause_duration
        )
        self.retry_coordinator = RetryCoordinator(
            self.backups,
            self.persistence_state,
            max_retries=persistence_config.max_retries,
            retry_delay=persistence_config.retry_delay
        )
        self.scheduler = PersistenceScheduler(
            record_store, self.retry_coordinator, self.pause_gate, persistence_config
        )
        self.stage_machine = StageProgressionStateMachine(config.workflow, stage_state)
        self.orchestrator = BulkTaskOrchestrator(
            generation_service,
            lambda: self.draft,
            max_concurrent=config.api.max_concurrent
        )
        self.orchestrator.add_item_callback(self._on_item_finished)

        self.backups.remember_current_draft(draft.id)
        logger.info(f"Wizard session started for draft {draft.id}")

    @classmethod
    async def open(cls,
                   draft_id: str,
                   config: AppConfig,
                   record_store: RecordStore,
                   storage: Any,
                   generation_service: Any = None,
                   signal_bus: Optional[SignalBus] = None) -> "WizardSession":
        """Load a draft from the record store, or start an empty one"""
        if not is_valid_draft_id(draft_id):
            raise WizardSessionError(f"Invalid draft id: {draft_id!r}")

        try:
            record = await record_store.read_record(draft_id)
        except RecordStoreError as e:
            raise WizardSessionError(f"Could not load draft {draft_id}: {e}") from e

        if record:
            try:
                draft = draft_from_record(record)
                stage_state = StageState.from_dict(record.get("wizard_state"))
            except (KeyError, TypeError, ValueError) as e:
                raise WizardSessionError(f"Stored draft {draft_id} is malformed: {e}") from e
        else:
            draft = Draft(id=draft_id)
            stage_state = StageState()

        session = cls(draft, config, record_store, storage, generation_service, signal_bus, stage_state)
        if record:
            session.scheduler.mark_saved(draft)
        if session.backups.recover_from_backup(draft_id) is not None:
            logger.warning(f"Unsaved local backup found for draft {draft_id}")
        return session

    @property
    def stage_state(self) -> StageState:
        return self.stage_machine.state

    @property
    def current_stage(self) -> Stage:
        return self.stage_machine.current_stage

    @property
    def progress(self) -> BulkGenerationProgress:
        return self.orchestrator.progress

    @property
    def task_states(self) -> Dict[str, TaskState]:
        return self.orchestrator.registry.snapshot()

    @property
    def is_generating(self) -> bool:
        return self.orchestrator.is_generating

    def submit_draft_change(self, draft: Optional[Draft] = None) -> bool:
        """Apply a draft change locally and hand it to the autosave pipeline"""
        if draft is not None:
            if draft.id != self.draft.id:
                raise WizardSessionError(
                    f"Draft {draft.id} does not belong to this session ({self.draft.id})"
                )
            self.draft = draft
        return self.scheduler.submit(self.draft, self.stage_state, self.export_active)

    def _on_item_finished(self, item_id: str, state: TaskState):
        # Page artifacts are not change-tracked, so their write-back is forced
        if state == TaskState.COMPLETED:
            self.scheduler.submit(self.draft, self.stage_state, self.export_active, force=True)

    async def generate_all(self) -> None:
        await self.orchestrator.generate_all()

    async def retry_failed_pages(self) -> None:
        await self.orchestrator.retry_failed_pages()

    async def generate_page(self, page_id: str) -> str:
        return await self.orchestrator.generate_page(page_id)

    def can_proceed(self) -> bool:
        return self.stage_machine.can_proceed(self.draft)

    async def advance(self) -> bool:
        """Move to the next stage and store the new wizard state right away"""
        if not self.stage_machine.advance(self.draft):
            return False
        await self.scheduler.save_stage_state(self.draft.id, self.stage_state)
        return True

    def retreat(self) -> bool:
        return self.stage_machine.retreat()

    def assign_characters(self, count: int) -> None:
        self.stage_machine.assign_characters(count)

    def begin_export(self) -> None:
        """Enter the export critical section; autosave stays off until it ends"""
        self.export_active = True
        self.signal_bus.publish(EXPORT_STARTED, draft_id=self.draft.id)
        logger.info(f"Export started for draft {self.draft.id}")

    async def complete_export(self, status: str = "completed") -> None:
        """Write the terminal status and leave the export critical section"""
        try:
            await self.record_store.update_record(self.draft.id, {
                "status": status,
                "updated_at": datetime.now(timezone.utc).isoformat(),
            })
        except Exception as e:
            self.export_active = False
            logger.error(f"Export of draft {self.draft.id} failed: {e}")
            raise WizardSessionError(f"Export failed: {e}") from e

        self.draft.meta.status = status
        try:
            self.stage_machine.complete_export()
        except StageError as e:
            logger.warning(f"Export stage not marked complete: {e}")

        self.export_active = False
        self.signal_bus.publish(STATUS_UPDATED, draft_id=self.draft.id, status=status)
        await self.scheduler.save_stage_state(self.draft.id, self.stage_state)

    def recover_from_backup(self, draft_id: Optional[str] = None) -> Optional[BackupSnapshot]:
        return self.backups.recover_from_backup(draft_id or self.draft.id)

    def restore_backup(self) -> bool:
        """Replace the local draft with its backup and schedule a save"""
        snapshot = self.recover_from_backup()
        if snapshot is None:
            return False
        self.draft = snapshot.draft
        self.stage_machine.load(snapshot.stage_state)
        self.scheduler.reset_baseline()
        self.submit_draft_change()
        logger.info(f"Draft {self.draft.id} restored from backup taken at {snapshot.timestamp}")
        return True

    async def save_now(self) -> None:
        await self.scheduler.save_now(self.draft, self.stage_state, self.export_active)

    async def flush(self) -> None:
        await self.scheduler.flush()

    def close(self) -> None:
        """End the session, keeping an emergency copy of unsaved changes"""
        if self.persistence_state.is_dirty:
            self.backups.write_emergency_backup(self.draft.id, BackupSnapshot(
                draft=self.draft,
                stage_state=self.stage_state,
                timestamp=datetime.now(timezone.utc).timestamp()
            ))
        self.scheduler.cancel()
        self.pause_gate.detach()
        logger.info(f"Wizard session closed for draft {self.draft.id}")


def _configure_logging(verbose: bool):
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            logging.FileHandler('story_wizard.log'),
            logging.StreamHandler()
        ]
    )


def _display_status(console: Console, session: WizardSession):
    summary = session.stage_machine.get_flow_summary()
    table = Table(title=f"Draft {session.draft.id}", show_header=True)
    table.add_column("Stage", style="cyan")
    table.add_column("Status", style="green")
    for stage, status in summary["stages"].items():
        marker = " <" if stage == summary["current_stage"] else ""
        table.add_row(stage, f"{status}{marker}")
    console.print(table)

    state = session.persistence_state
    console.print(
        f"[blue]Title: {session.draft.meta.title or '-'} | pages: {len(session.draft.pages)} | "
        f"unsaved changes: {state.is_dirty}[/blue]"
    )


def _display_generation(console: Console, session: WizardSession):
    table = Table(title="Page generation", show_header=True)
    table.add_column("Page", style="cyan")
    table.add_column("State", style="green")
    table.add_column("Detail")
    errors = session.orchestrator.registry.errors
    for page in session.draft.pages:
        state = session.orchestrator.registry.get(page.id)
        detail = str(errors[page.id]) if page.id in errors else (page.image_url or "")
        table.add_row(f"{page.page_number} ({page.id})", state.value, detail)
    console.print(table)


async def _run_generation(console: Console, session: WizardSession, retry_failed: bool):
    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        MofNCompleteColumn(),
        console=console
    ) as progress:
        task = progress.add_task("Generating pages...", total=None)

        def on_progress(state: BulkGenerationProgress):
            progress.update(task, total=state.total, completed=state.completed + state.failed)

        session.orchestrator.add_progress_callback(on_progress)
        await session.generate_all()
        if retry_failed and session.progress.failed:
            progress.update(task, description="Retrying failed pages...")
            await session.retry_failed_pages()

    _display_generation(console, session)


def main():
    """Command line entry point"""
    console = Console()

    parser = argparse.ArgumentParser(
        description="Story Wizard draft sync and page generation",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s                              # Show the status of the last draft
  %(prog)s --draft-id ID --generate     # Generate missing page illustrations
  %(prog)s --draft-id ID --recover      # Restore a draft from its local backup
        """
    )
    parser.add_argument("--config", "-c", default="wizard_config.json",
                        help="Path to configuration file (default: wizard_config.json)")
    parser.add_argument("--draft-id", "-d", help="Draft identity (UUID); defaults to the last draft")
    parser.add_argument("--recover", action="store_true", help="Restore the draft from its local backup")
    parser.add_argument("--generate", action="store_true", help="Generate illustrations for pages without one")
    parser.add_argument("--retry-failed", action="store_true", help="Retry failed pages once after generating")
    parser.add_argument("--api-key", help="Google Gemini API key (or set GEMINI_API_KEY env var)")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging")

    args = parser.parse_args()
    load_dotenv()

    try:
        config = get_config(args.config)
        _configure_logging(args.verbose or config.ui.verbose_logging)
        if not config.ui.color_output:
            console = Console(no_color=True)

        storage = FileKeyValueStorage(config.storage.backup_dir)
        record_store = JsonFileRecordStore(config.storage.records_path)
        draft_id = args.draft_id or LocalBackupStore(storage).current_draft_id() or str(uuid.uuid4())

        generation_service = None
        if args.generate:
            from gemini_service import GeminiArtifactService
            api_key = args.api_key or os.getenv("GEMINI_API_KEY")
            if not api_key:
                console.print("[red]A Gemini API key is required for --generate[/red]")
                sys.exit(1)
            generation_service = GeminiArtifactService(api_key, asdict(config))

        async def run_async():
            session = await WizardSession.open(draft_id, config, record_store, storage, generation_service)
            try:
                if args.recover:
                    if session.restore_backup():
                        await session.save_now()
                        console.print("[green]Draft restored from local backup and saved[/green]")
                    else:
                        console.print("[yellow]No local backup found for this draft[/yellow]")

                if args.generate:
                    await _run_generation(console, session, args.retry_failed)
                    await session.save_now()

                _display_status(console, session)
            finally:
                await session.flush()
                session.close()

        asyncio.run(run_async())

    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted by user[/yellow]")
    except Exception as e:
        console.print(f"[red]Fatal error: {e}[/red]")
        logger.exception("Fatal error in main")
        sys.exit(1)


if __name__ == "__main__":
    main()
