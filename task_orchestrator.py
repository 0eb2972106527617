"""
Concurrent fan-out of per-page artifact generation with selective retry.
"""

import asyncio
import logging
from typing import Any, Callable, Dict, Iterable, List, Optional, Set

from data_models import BulkGenerationProgress, Draft, Page, TaskState

logger = logging.getLogger(__name__)


class ArtifactGenerationError(Exception):
    """Raised when a single requested artifact could not be produced"""
    def __init__(self, item_id: str, message: str, original_error: Exception = None):
        super().__init__(f"Generation for '{item_id}' failed: {message}")
        self.item_id = item_id
        self.original_error = original_error


class TaskStateRegistry:
    """Per-item generation state plus the last error of each item"""

    def __init__(self):
        self._states: Dict[str, TaskState] = {}
        self.errors: Dict[str, Exception] = {}

    def get(self, item_id: str) -> TaskState:
        return self._states.get(item_id, TaskState.PENDING)

    def set(self, item_id: str, state: TaskState) -> None:
        self._states[item_id] = state
        if state != TaskState.ERROR:
            self.errors.pop(item_id, None)

    def seed(self, item_ids: Iterable[str], state: TaskState) -> None:
        for item_id in item_ids:
            self.set(item_id, state)

    def record_error(self, item_id: str, error: Exception) -> None:
        self._states[item_id] = TaskState.ERROR
        self.errors[item_id] = error

    def ids_in(self, state: TaskState) -> List[str]:
        return [item_id for item_id, current in self._states.items() if current == state]

    def snapshot(self) -> Dict[str, TaskState]:
        return dict(self._states)

    def clear(self) -> None:
        self._states.clear()
        self.errors.clear()

    def __contains__(self, item_id: str) -> bool:
        return item_id in self._states

    def __len__(self) -> int:
        return len(self._states)


class BulkTaskOrchestrator:
    """Runs one independent generation job per page and tracks the outcome"""

    def __init__(self,
                 generation_service: Any,
                 get_draft: Callable[[], Draft],
                 registry: Optional[TaskStateRegistry] = None,
                 max_concurrent: int = 0):
        self.generation_service = generation_service
        self._get_draft = get_draft
        self.registry = registry or TaskStateRegistry()
        self.progress = BulkGenerationProgress()
        self._batch_ids: Set[str] = set()
        self.max_concurrent = max_concurrent
        self.is_generating = False

        self._item_callbacks: List[Callable[[str, TaskState], None]] = []
        self._progress_callbacks: List[Callable[[BulkGenerationProgress], None]] = []

    def add_item_callback(self, callback: Callable[[str, TaskState], None]):
        """Called after an item reaches completed or error"""
        self._item_callbacks.append(callback)

    def add_progress_callback(self, callback: Callable[[BulkGenerationProgress], None]):
        self._progress_callbacks.append(callback)

    def build_item_payload(self, page: Page, draft: Draft) -> Dict[str, Any]:
        return {
            "story_id": draft.id,
            "page_id": page.id,
            "page_number": page.page_number,
            "text": page.text,
            "prompt": page.prompt,
            "visual_style": draft.design.visual_style,
            "color_palette": draft.design.color_palette,
            "characters": [
                {"name": c.name, "description": c.description, "thumbnail_url": c.thumbnail_url}
                for c in draft.characters
            ],
        }

    async def generate_all(self, items: Optional[List[Page]] = None) -> None:
        """Generate every page lacking an artifact; always resolves"""
        if self.is_generating:
            logger.warning("Generation already running - ignoring generate_all")
            return

        draft = self._get_draft()
        candidates = draft.pages if items is None else items
        pending = [page for page in candidates if not page.image_url]
        if not pending:
            logger.info("All pages already have artifacts - nothing to generate")
            return

        item_ids = [page.id for page in pending]
        self._batch_ids = set(item_ids)
        self.progress = BulkGenerationProgress(total=len(item_ids))
        self._start(item_ids)

        logger.info(f"Starting generation of {len(item_ids)} pages")
        await self._run_pass(pending)

    async def retry_failed_pages(self) -> None:
        """Re-run only the items currently in error state"""
        if self.is_generating:
            logger.warning("Generation already running - ignoring retry")
            return

        draft = self._get_draft()
        pages = []
        for item_id in self.registry.ids_in(TaskState.ERROR):
            page = draft.get_page(item_id)
            if page is None:
                logger.warning(f"Failed page {item_id} no longer exists - not retried")
                continue
            pages.append(page)

        if not pages:
            logger.info("No failed pages to retry")
            return

        item_ids = [page.id for page in pages]
        self._start(item_ids)

        logger.info(f"Retrying {len(item_ids)} failed pages")
        await self._run_pass(pages)

    async def generate_page(self, page_id: str) -> str:
        """Regenerate a single page; raises ArtifactGenerationError on failure"""
        if self.is_generating:
            raise ArtifactGenerationError(page_id, "bulk generation in progress")

        draft = self._get_draft()
        page = draft.get_page(page_id)
        if page is None:
            raise ArtifactGenerationError(page_id, "page not found")

        self._start([page_id])
        try:
            artifact_url = await self._request_artifact(page, draft)
        except Exception as e:
            self._finish(page_id, TaskState.ERROR, e)
            raise ArtifactGenerationError(page_id, str(e), e) from e

        page.image_url = artifact_url
        self._finish(page_id, TaskState.COMPLETED)
        return artifact_url

    async def _run_pass(self, pages: List[Page]) -> None:
        self.is_generating = True
        semaphore = asyncio.Semaphore(self.max_concurrent) if self.max_concurrent else None

        async def run_one(page: Page) -> bool:
            if semaphore is None:
                return await self._generate_item(page)
            async with semaphore:
                return await self._generate_item(page)

        try:
            results = await asyncio.gather(*(run_one(page) for page in pages), return_exceptions=True)
            for page, result in zip(pages, results):
                if isinstance(result, Exception):
                    logger.error(f"Unexpected error while generating page {page.id}: {result}")
        finally:
            self.is_generating = False

        logger.info(
            f"Generation pass finished: {self.progress.completed}/{self.progress.total} completed, "
            f"{self.progress.failed} failed"
        )

    async def _generate_item(self, page: Page) -> bool:
        draft = self._get_draft()
        try:
            artifact_url = await self._request_artifact(page, draft)
        except Exception as e:
            logger.warning(f"Page {page.id} failed: {e}")
            self._finish(page.id, TaskState.ERROR, e)
            return False

        target = draft.get_page(page.id) or page
        target.image_url = artifact_url
        logger.debug(f"Page {page.id} completed")
        self._finish(page.id, TaskState.COMPLETED)
        return True

    async def _request_artifact(self, page: Page, draft: Draft) -> str:
        result = await self.generation_service.generate_artifact(self.build_item_payload(page, draft))
        if not result or not result.artifact_url:
            raise ArtifactGenerationError(page.id, "service returned no artifact")
        return result.artifact_url

    def _start(self, item_ids: List[str]) -> None:
        """Mark items as generating; items outside the batch join it"""
        self._batch_ids.update(item_ids)
        self.registry.seed(item_ids, TaskState.GENERATING)
        self.progress.in_progress.update(item_ids)
        self._recount()

    def _finish(self, item_id: str, state: TaskState, error: Optional[Exception] = None) -> None:
        # State, counters and in-progress entry of one item move together
        if error is not None:
            self.registry.record_error(item_id, error)
        else:
            self.registry.set(item_id, state)
        self.progress.in_progress.discard(item_id)
        self._recount()
        self._notify_item(item_id, state)

    def _recount(self) -> None:
        """Derive the aggregate counters from the registry over the batch"""
        states = [self.registry.get(item_id) for item_id in self._batch_ids]
        self.progress.total = len(self._batch_ids)
        self.progress.completed = states.count(TaskState.COMPLETED)
        self.progress.failed = states.count(TaskState.ERROR)

    def _notify_item(self, item_id: str, state: TaskState) -> None:
        for callback in self._item_callbacks:
            try:
                callback(item_id, state)
            except Exception as e:
                logger.warning(f"Item callback failed: {e}")
        for callback in self._progress_callbacks:
            try:
                callback(self.progress)
            except Exception as e:
                logger.warning(f"Progress callback failed: {e}")

    def summary(self) -> Dict[str, Any]:
        """Counts for display"""
        states = self.registry.snapshot()
        return {
            "is_generating": self.is_generating,
            "total": self.progress.total,
            "completed": self.progress.completed,
            "failed": self.progress.failed,
            "in_progress": len(self.progress.in_progress),
            "progress_percentage": self.progress.progress_percentage,
            "states": {
                state.value: sum(1 for s in states.values() if s == state)
                for state in TaskState
            },
            "errors": {item_id: str(error) for item_id, error in self.registry.errors.items()},
        }
