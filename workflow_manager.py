"""
Stage progression for the story wizard.
Tracks the active stage, which stages are complete, and whether the user may advance.
"""

import logging
from typing import Any, Callable, Dict, List, Optional

from config_manager import WorkflowConfig
from data_models import Draft, Stage, StageState, StageStatus, STAGE_ORDER

logger = logging.getLogger(__name__)


class WorkflowError(Exception):
    """Base exception for workflow errors"""
    pass


class StageError(WorkflowError):
    """Exception raised when a stage transition is not allowed"""
    def __init__(self, stage_name: str, message: str):
        super().__init__(f"Stage '{stage_name}': {message}")
        self.stage_name = stage_name


def _characters_ready(draft: Draft) -> bool:
    return bool(draft.characters) and all(
        c.name.strip() and c.has_description() and c.thumbnail_url
        for c in draft.characters
    )


def _story_ready(draft: Draft) -> bool:
    meta = draft.meta
    return bool(meta.target_age and meta.literary_style and meta.central_message)


def _design_ready(draft: Draft) -> bool:
    return bool(draft.design.visual_style and draft.design.color_palette)


def _preview_ready(draft: Draft) -> bool:
    return bool(draft.pages) and all(page.image_url for page in draft.pages)


def _dedicatoria_choice_ready(draft: Draft) -> bool:
    return draft.meta.dedicatoria_chosen is not None


def _dedicatoria_ready(draft: Draft) -> bool:
    if draft.meta.dedicatoria_chosen is False:
        return True
    dedicatoria = draft.meta.dedicatoria
    return dedicatoria is not None and bool(dedicatoria.text.strip())


DEFAULT_VALIDATORS: Dict[Stage, Callable[[Draft], bool]] = {
    Stage.CHARACTERS: _characters_ready,
    Stage.STORY: _story_ready,
    Stage.DESIGN: _design_ready,
    Stage.PREVIEW: _preview_ready,
    Stage.DEDICATORIA_CHOICE: _dedicatoria_choice_ready,
    Stage.DEDICATORIA: _dedicatoria_ready,
}


class StageProgressionStateMachine:
    """Linear wizard progression: characters -> ... -> export"""

    def __init__(self, config: Optional[WorkflowConfig] = None,
                 stage_state: Optional[StageState] = None):
        self.config = config or WorkflowConfig()
        self.state = stage_state or StageState()
        self.current_stage = self._first_incomplete_stage()

        self._stage_validators: Dict[Stage, Callable[[Draft], bool]] = dict(DEFAULT_VALIDATORS)
        self._stage_change_callbacks: List[Callable[[Stage, Stage], None]] = []

    def register_stage_validator(self, stage: Stage, validator: Callable[[Draft], bool]):
        """Replace the can-proceed predicate of a stage"""
        self._stage_validators[stage] = validator
        logger.debug(f"Registered validator for stage: {stage.value}")

    def add_stage_change_callback(self, callback: Callable[[Stage, Stage], None]):
        """Called with (previous, current) whenever the active stage changes"""
        self._stage_change_callbacks.append(callback)

    def _first_incomplete_stage(self) -> Stage:
        for stage in STAGE_ORDER:
            if not self.state.is_completed(stage):
                return stage
        return Stage.EXPORT

    def _index(self, stage: Stage) -> int:
        return STAGE_ORDER.index(stage)

    def can_proceed(self, draft: Draft, stage: Optional[Stage] = None) -> bool:
        stage = stage or self.current_stage
        if stage == Stage.EXPORT:
            return False
        validator = self._stage_validators.get(stage)
        return validator(draft) if validator else True

    def mark_completed(self, stage: Stage) -> None:
        """Complete a stage; its predecessor must already be complete"""
        index = self._index(stage)
        if index > 0:
            prerequisite = STAGE_ORDER[index - 1]
            if not self.state.is_completed(prerequisite):
                raise StageError(stage.value, f"prerequisite '{prerequisite.value}' is not complete")
        self.state.statuses[stage] = StageStatus.COMPLETED

    def advance(self, draft: Draft) -> bool:
        """Complete the current stage and move to the next one"""
        stage = self.current_stage
        if stage == Stage.EXPORT:
            logger.debug("Already at the export stage")
            return False
        if not self.can_proceed(draft, stage):
            logger.info(f"Cannot leave stage {stage.value} yet")
            return False

        self.mark_completed(stage)
        next_stage = STAGE_ORDER[self._index(stage) + 1]
        if self.state.get(next_stage) == StageStatus.NOT_STARTED:
            self.state.statuses[next_stage] = StageStatus.DRAFT
        self._move_to(next_stage)
        return True

    def retreat(self) -> bool:
        """Go back one stage; completion flags are left untouched"""
        index = self._index(self.current_stage)
        if index == 0:
            return False
        self._move_to(STAGE_ORDER[index - 1])
        return True

    def _move_to(self, stage: Stage) -> None:
        previous = self.current_stage
        self.current_stage = stage
        logger.info(f"Wizard stage: {previous.value} -> {stage.value}")
        for callback in self._stage_change_callbacks:
            try:
                callback(previous, stage)
            except Exception as e:
                logger.warning(f"Stage change callback failed: {e}")

    def assign_characters(self, count: int) -> None:
        """Track how many characters are assigned to the story"""
        if count < 0:
            raise ValueError(f"count cannot be negative, got {count}")

        self.state.characters_assigned = count
        if count == 0:
            self.state.statuses[Stage.CHARACTERS] = StageStatus.NOT_STARTED
        elif count < self.config.max_characters:
            self.state.statuses[Stage.CHARACTERS] = StageStatus.DRAFT
        else:
            self.state.statuses[Stage.CHARACTERS] = StageStatus.COMPLETED
            if self.state.get(Stage.STORY) == StageStatus.NOT_STARTED:
                self.state.statuses[Stage.STORY] = StageStatus.DRAFT

    def complete_export(self) -> None:
        self.mark_completed(Stage.EXPORT)
        logger.info("Export stage completed")

    def load(self, stage_state: StageState) -> None:
        """Adopt a persisted stage state and resume at its first incomplete stage"""
        self.state = stage_state
        self.current_stage = self._first_incomplete_stage()
        logger.debug(f"Stage state loaded, resuming at {self.current_stage.value}")

    def reset(self) -> None:
        self.load(StageState())

    def get_flow_summary(self) -> Dict[str, Any]:
        completed = [stage.value for stage in STAGE_ORDER if self.state.is_completed(stage)]
        return {
            "current_stage": self.current_stage.value,
            "progress_percentage": len(completed) / len(STAGE_ORDER) * 100,
            "completed_stages": completed,
            "characters_assigned": self.state.characters_assigned,
            "stages": {stage.value: self.state.get(stage).value for stage in STAGE_ORDER},
        }

    def export_state(self) -> Dict[str, Any]:
        """Export stage state for persistence"""
        return {
            "current_stage": self.current_stage.value,
            "wizard_state": self.state.to_dict(),
        }

    def import_state(self, state_data: Dict[str, Any]) -> None:
        """Import stage state from persistence"""
        try:
            self.state = StageState.from_dict(state_data.get("wizard_state"))
            current = state_data.get("current_stage")
            self.current_stage = Stage(current) if current else self._first_incomplete_stage()
            logger.info("Stage state imported successfully")
        except (ValueError, TypeError, AttributeError) as e:
            logger.error(f"Failed to import stage state: {e}")
            raise WorkflowError(f"State import failed: {e}") from e
