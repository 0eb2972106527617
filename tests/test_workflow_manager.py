"""
Tests for wizard stage progression.
"""

import pytest

from config_manager import WorkflowConfig
from data_models import (
    Character, Dedicatoria, DesignSettings, Draft, Meta, Page, Stage, StageState, StageStatus
)
from workflow_manager import StageError, StageProgressionStateMachine, WorkflowError

DRAFT_ID = "3f2b8c1e-4d5a-4b6c-8d7e-9f0a1b2c3d4e"


@pytest.fixture
def complete_draft():
    return Draft(
        id=DRAFT_ID,
        characters=[Character(
            id="c1", name="Luna", description={"es": "Una zorra valiente", "en": ""},
            thumbnail_url="https://cdn.example/luna.png"
        )],
        pages=[Page(id="p1", page_number=1, image_url="https://cdn.example/p1.png")],
        meta=Meta(
            title="Luna y el bosque", target_age="4-6", literary_style="rima",
            central_message="La amistad", dedicatoria=Dedicatoria(text="Para Ana"),
            dedicatoria_chosen=True
        ),
        design=DesignSettings(visual_style="acuarela", color_palette="pastel"),
    )


@pytest.fixture
def machine():
    return StageProgressionStateMachine()


class TestValidators:

    def test_empty_draft_cannot_leave_characters(self, machine):
        assert not machine.can_proceed(Draft(id=DRAFT_ID))

    def test_character_needs_thumbnail(self, machine, complete_draft):
        complete_draft.characters[0].thumbnail_url = None
        assert not machine.can_proceed(complete_draft, Stage.CHARACTERS)

    def test_story_fields(self, machine, complete_draft):
        assert machine.can_proceed(complete_draft, Stage.STORY)
        complete_draft.meta.central_message = ""
        assert not machine.can_proceed(complete_draft, Stage.STORY)

    def test_preview_needs_every_image(self, machine, complete_draft):
        complete_draft.pages.append(Page(id="p2", page_number=2))
        assert not machine.can_proceed(complete_draft, Stage.PREVIEW)

    def test_dedicatoria_declined_passes(self, machine, complete_draft):
        complete_draft.meta.dedicatoria = None
        complete_draft.meta.dedicatoria_chosen = False
        assert machine.can_proceed(complete_draft, Stage.DEDICATORIA)

    def test_dedicatoria_chosen_needs_text(self, machine, complete_draft):
        complete_draft.meta.dedicatoria = Dedicatoria(text="   ")
        assert not machine.can_proceed(complete_draft, Stage.DEDICATORIA)

    def test_export_never_proceeds(self, machine, complete_draft):
        assert not machine.can_proceed(complete_draft, Stage.EXPORT)

    def test_custom_validator(self, machine):
        machine.register_stage_validator(Stage.CHARACTERS, lambda draft: True)
        assert machine.can_proceed(Draft(id=DRAFT_ID))


class TestProgression:

    def test_walk_to_export(self, machine, complete_draft):
        changes = []
        machine.add_stage_change_callback(lambda prev, cur: changes.append(cur))

        while machine.advance(complete_draft):
            pass

        assert machine.current_stage == Stage.EXPORT
        assert len(changes) == 6
        assert machine.state.get(Stage.EXPORT) == StageStatus.DRAFT
        assert machine.state.is_completed(Stage.DEDICATORIA)

    def test_advance_blocked_by_validator(self, machine):
        assert not machine.advance(Draft(id=DRAFT_ID))
        assert machine.current_stage == Stage.CHARACTERS
        assert machine.state.get(Stage.CHARACTERS) == StageStatus.NOT_STARTED

    def test_retreat_keeps_completion(self, machine, complete_draft):
        machine.advance(complete_draft)
        assert machine.retreat()
        assert machine.current_stage == Stage.CHARACTERS
        assert machine.state.is_completed(Stage.CHARACTERS)
        assert not machine.retreat()

    def test_completion_needs_prerequisite(self, machine):
        with pytest.raises(StageError) as exc_info:
            machine.mark_completed(Stage.DESIGN)
        assert exc_info.value.stage_name == "design"

    def test_complete_export(self, machine, complete_draft):
        while machine.advance(complete_draft):
            pass
        machine.complete_export()
        assert machine.state.is_completed(Stage.EXPORT)

    def test_load_resumes_at_first_incomplete(self, machine):
        state = StageState()
        state.statuses[Stage.CHARACTERS] = StageStatus.COMPLETED
        state.statuses[Stage.STORY] = StageStatus.COMPLETED

        machine.load(state)

        assert machine.current_stage == Stage.DESIGN
        machine.reset()
        assert machine.current_stage == Stage.CHARACTERS


class TestCharacterAssignment:

    def test_assignment_levels(self, machine):
        machine.assign_characters(1)
        assert machine.state.get(Stage.CHARACTERS) == StageStatus.DRAFT

        machine.assign_characters(3)
        assert machine.state.is_completed(Stage.CHARACTERS)
        assert machine.state.get(Stage.STORY) == StageStatus.DRAFT

        machine.assign_characters(0)
        assert machine.state.get(Stage.CHARACTERS) == StageStatus.NOT_STARTED

    def test_limit_comes_from_config(self):
        machine = StageProgressionStateMachine(WorkflowConfig(max_characters=1))
        machine.assign_characters(1)
        assert machine.state.is_completed(Stage.CHARACTERS)

    def test_negative_count(self, machine):
        with pytest.raises(ValueError):
            machine.assign_characters(-1)


class TestStateExport:

    def test_round_trip(self, machine, complete_draft):
        machine.advance(complete_draft)
        machine.assign_characters(2)
        exported = machine.export_state()

        restored = StageProgressionStateMachine()
        restored.import_state(exported)

        assert restored.current_stage == Stage.STORY
        assert restored.state.characters_assigned == 2
        assert restored.get_flow_summary()["stages"] == machine.get_flow_summary()["stages"]

    def test_invalid_import(self, machine):
        with pytest.raises(WorkflowError):
            machine.import_state({"current_stage": "nowhere"})

    def test_flow_summary(self, machine, complete_draft):
        machine.advance(complete_draft)
        summary = machine.get_flow_summary()
        assert summary["current_stage"] == "story"
        assert summary["completed_stages"] == ["characters"]
