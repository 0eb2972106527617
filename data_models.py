"""
Data models for the Story Wizard sync engine.
"""

from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Dict, List, Optional, Any, Set


@dataclass
class Character:
    """A story character with its generated thumbnail"""
    id: str
    name: str = ""
    age: str = ""
    description: Dict[str, str] = field(default_factory=lambda: {"es": "", "en": ""})
    reference_urls: List[str] = field(default_factory=list)
    thumbnail_url: Optional[str] = None

    def has_description(self) -> bool:
        return any(text.strip() for text in self.description.values())

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Character":
        return cls(
            id=data["id"],
            name=data.get("name", ""),
            age=data.get("age", ""),
            description=dict(data.get("description") or {"es": "", "en": ""}),
            reference_urls=list(data.get("reference_urls", [])),
            thumbnail_url=data.get("thumbnail_url"),
        )


@dataclass
class Page:
    """A single story page and its illustration"""
    id: str
    page_number: int
    text: str = ""
    prompt: str = ""
    image_url: Optional[str] = None


@dataclass
class Dedicatoria:
    """Optional dedication block printed at the front of the book"""
    text: str = ""
    image_url: Optional[str] = None
    layout: str = "imagen-arriba"
    alignment: str = "centro"
    image_size: str = "mediana"


@dataclass
class Meta:
    """Story metadata edited through the wizard"""
    title: str = ""
    theme: str = ""
    target_age: str = ""
    literary_style: str = ""
    central_message: str = ""
    additional_details: str = ""
    status: str = "draft"
    dedicatoria: Optional[Dedicatoria] = None
    dedicatoria_chosen: Optional[bool] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Meta":
        values = dict(data)
        if values.get("dedicatoria") is not None:
            values["dedicatoria"] = Dedicatoria(**values["dedicatoria"])
        return cls(**values)


@dataclass
class DesignSettings:
    """Visual settings chosen in the design stage"""
    visual_style: str = ""
    color_palette: str = ""


@dataclass
class Draft:
    """Complete in-progress story being edited across the wizard stages"""
    id: str
    characters: List[Character] = field(default_factory=list)
    pages: List[Page] = field(default_factory=list)
    meta: Meta = field(default_factory=Meta)
    design: DesignSettings = field(default_factory=DesignSettings)

    def get_page(self, page_id: str) -> Optional[Page]:
        for page in self.pages:
            if page.id == page_id:
                return page
        return None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Draft":
        return cls(
            id=data["id"],
            characters=[Character.from_dict(c) for c in data.get("characters", [])],
            pages=[Page(**p) for p in data.get("pages", [])],
            meta=Meta.from_dict(data.get("meta", {})),
            design=DesignSettings(**data.get("design", {})),
        )


class StageStatus(Enum):
    """Completion status of a wizard stage"""
    NOT_STARTED = "no_iniciada"
    DRAFT = "borrador"
    COMPLETED = "completado"


class Stage(Enum):
    """Wizard stages in progression order"""
    CHARACTERS = "characters"
    STORY = "story"
    DESIGN = "design"
    PREVIEW = "preview"
    DEDICATORIA_CHOICE = "dedicatoria-choice"
    DEDICATORIA = "dedicatoria"
    EXPORT = "export"


STAGE_ORDER: List[Stage] = list(Stage)


@dataclass
class StageState:
    """Per-stage completion flags (the persisted wizard_state)"""
    statuses: Dict[Stage, StageStatus] = field(
        default_factory=lambda: {stage: StageStatus.NOT_STARTED for stage in Stage}
    )
    characters_assigned: int = 0

    def get(self, stage: Stage) -> StageStatus:
        return self.statuses.get(stage, StageStatus.NOT_STARTED)

    def is_completed(self, stage: Stage) -> bool:
        return self.get(stage) == StageStatus.COMPLETED

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {}
        for stage in STAGE_ORDER:
            result[stage.value] = self.get(stage).value
        result["characters"] = {
            "status": self.get(Stage.CHARACTERS).value,
            "assigned": self.characters_assigned,
        }
        return result

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "StageState":
        state = cls()
        if not data:
            return state
        for stage in STAGE_ORDER:
            raw = data.get(stage.value)
            if isinstance(raw, dict):
                state.characters_assigned = int(raw.get("assigned", 0))
                raw = raw.get("status")
            if raw:
                state.statuses[stage] = StageStatus(raw)
        return state


@dataclass
class PersistenceState:
    """Mutable persistence flags shared by the gate, scheduler and retry coordinator"""
    can_save: bool = True
    is_dirty: bool = False
    is_blocked: bool = False
    last_save_time: float = 0.0
    final_states: Set[str] = field(default_factory=lambda: {"completed", "exported"})
    paused_until: Optional[float] = None
    last_error: Optional[Exception] = None


class TaskState(Enum):
    """State of a single generation job"""
    PENDING = "pending"
    GENERATING = "generating"
    COMPLETED = "completed"
    ERROR = "error"


@dataclass
class BulkGenerationProgress:
    """Aggregate progress of a bulk generation pass"""
    total: int = 0
    completed: int = 0
    failed: int = 0
    in_progress: Set[str] = field(default_factory=set)

    @property
    def is_consistent(self) -> bool:
        return self.completed + self.failed + len(self.in_progress) <= self.total

    @property
    def progress_percentage(self) -> float:
        if self.total == 0:
            return 0.0
        return (self.completed / self.total) * 100


@dataclass
class BackupSnapshot:
    """Local copy of a draft taken when a remote write fails"""
    draft: Draft
    stage_state: StageState
    timestamp: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "draft": self.draft.to_dict(),
            "stage_state": self.stage_state.to_dict(),
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BackupSnapshot":
        return cls(
            draft=Draft.from_dict(data["draft"]),
            stage_state=StageState.from_dict(data.get("stage_state")),
            timestamp=float(data.get("timestamp", 0)),
        )


@dataclass
class ArtifactResult:
    """Reference to an artifact produced by the generation service"""
    artifact_url: str
    metadata: Dict[str, Any] = field(default_factory=dict)
