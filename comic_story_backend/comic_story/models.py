from datetime import datetime, timezone
from enum import Enum
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from typing import List, Optional


class InvalidGenerationRequest(ValueError):
    """Raised synchronously by intake; no job is created."""


class DuplicateJobError(RuntimeError):
    pass


class JobNotFoundError(LookupError):
    pass


class StorageError(RuntimeError):
    """Transport or protocol failure talking to the job store."""


class JobFinishedError(RuntimeError):
    """A guarded update found the job already completed or errored."""


class JobStatus(str, Enum):
    PENDING = "pending"
    GENERATING_STORY = "generating_story"
    GENERATING_IMAGES = "generating_images"
    COMPLETED = "completed"
    ERROR = "error"


TERMINAL_STATUSES = {JobStatus.COMPLETED, JobStatus.ERROR}
IN_PROGRESS_STATUSES = {JobStatus.PENDING, JobStatus.GENERATING_STORY, JobStatus.GENERATING_IMAGES}


class GenerationRequest(BaseModel):
    # topic is checked by intake so a missing topic is reported as InvalidGenerationRequest
    topic: str = ""
    genre: str = "adventure"
    panel_count: int = Field(
        4, ge=1, validation_alias=AliasChoices("panel_count", "panelCount", "panels")
    )
    style: str = "comic"
    created_by: Optional[str] = None


class Character(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    role: Optional[str] = None


def _text(value):
    """Flatten model output such as [{"speaker": ..., "line": ...}] into a string."""
    if value is None or isinstance(value, str):
        return value
    if isinstance(value, list):
        return "\n".join(t for t in (_text(item) for item in value) if t)
    if isinstance(value, dict):
        speaker = value.get("speaker") or value.get("character") or value.get("name")
        line = value.get("line") or value.get("text") or value.get("dialogue")
        if line is not None:
            return f"{speaker}: {_text(line)}" if speaker else _text(line)
        return ", ".join(f"{k}: {_text(v)}" for k, v in value.items())
    return str(value)


class Scene(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    panel_number: Optional[int] = Field(None, alias="panelNumber")
    setting: Optional[str] = None
    action: Optional[str] = None
    dialogue: Optional[str] = None
    characters: List[str] = Field(default_factory=list)
    mood: Optional[str] = None

    @field_validator("characters", mode="before")
    @classmethod
    def _none_is_empty(cls, v):
        if v is None:
            return []
        if isinstance(v, list):
            names = [(item.get("name") or _text(item)) if isinstance(item, dict) else _text(item) for item in v]
            return [n for n in names if n]
        return v

    @field_validator("setting", "action", "dialogue", "mood", mode="before")
    @classmethod
    def _as_text(cls, v):
        return _text(v)

    @field_validator("panel_number", mode="before")
    @classmethod
    def _loose_int(cls, v):
        # unusable numbers are renumbered by position in the story stage
        try:
            return int(v) if v is not None else None
        except (TypeError, ValueError):
            return None


class Story(BaseModel):
    title: Optional[str] = None
    summary: Optional[str] = None
    characters: List[Character] = Field(default_factory=list)
    scenes: List[Scene] = Field(default_factory=list)

    @field_validator("characters", "scenes", mode="before")
    @classmethod
    def _none_is_empty(cls, v):
        return [] if v is None else v


class PanelResult(BaseModel):
    panel_number: int
    file_name: Optional[str] = None
    image_path: Optional[str] = None
    # set instead of file_name/image_path when the panel failed
    error: Optional[str] = None
    dialogue: Optional[str] = None
    action: Optional[str] = None
    setting: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class ImageSet(BaseModel):
    folder: str
    panels: List[PanelResult] = Field(default_factory=list)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Job(BaseModel):
    job_id: str
    status: JobStatus = JobStatus.PENDING
    progress: int = 0
    current_step: str = "Starting..."
    story: Optional[Story] = None
    images: Optional[ImageSet] = None
    error: Optional[str] = None
    created_by: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    # stamped by every progress update; used to tell live jobs from orphans
    updated_at: datetime = Field(default_factory=utcnow)

    def to_record(self) -> dict:
        return self.model_dump(mode="json")


class StoryResult(BaseModel):
    """Outcome of the story stage; story is None on a soft failure."""
    story: Optional[Story] = None
    reason: Optional[str] = None


class ImageStageResult(BaseModel):
    """Outcome of the image stage; images is None on a batch-level failure."""
    images: Optional[ImageSet] = None
    reason: Optional[str] = None
