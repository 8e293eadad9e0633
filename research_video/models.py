import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from research_video import config


def _new_id() -> str:
    return uuid.uuid4().hex


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ProjectStatus(str, Enum):
    DRAFT = "draft"
    RESEARCHING = "researching"
    SCRIPTING = "scripting"
    GENERATING_TTS = "generating_tts"
    GENERATING_IMAGES = "generating_images"
    READY_FOR_EDIT = "ready_for_edit"
    COMPOSING = "composing"
    COMPLETED = "completed"
    FAILED = "failed"


class SynthesisStatus(str, Enum):
    PENDING = "pending"
    GENERATING = "generating"
    COMPLETED = "completed"
    FAILED = "failed"


class DimensionStatus(str, Enum):
    PENDING = "pending"
    RESEARCHING = "researching"
    COMPLETED = "completed"
    FAILED = "failed"


class VisualStyle(str, Enum):
    INFOGRAPHIC = "infographic"
    PHOTO = "photo"
    ILLUSTRATION = "illustration"
    DIAGRAM = "diagram"


class ReasoningEffort(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class Stage(str, Enum):
    DIMENSIONS = "dimensions"
    RESEARCH = "research"
    SCRIPT = "script"
    TTS = "tts"
    IMAGES = "images"
    COMPOSE = "compose"


class EventType(str, Enum):
    HEARTBEAT = "heartbeat"
    PROGRESS = "progress"
    CHUNK = "chunk"
    ERROR = "error"
    COMPLETE = "complete"


class ResearchDimension(CamelModel):
    id: str = Field(default_factory=_new_id)
    title: str = Field(..., description="维度名称")
    query: str = Field(..., description="深度研究查询")
    priority: int = 3
    status: DimensionStatus = DimensionStatus.PENDING
    result: Optional[str] = None
    error: Optional[str] = None


class SegmentImage(CamelModel):
    image_url: str
    duration_ratio: float = 1.0
    prompt: Optional[str] = None


class Project(CamelModel):
    id: str = Field(default_factory=_new_id)
    topic: str
    title: Optional[str] = None
    status: ProjectStatus = ProjectStatus.DRAFT
    research_dimensions: List[ResearchDimension] = Field(default_factory=list)
    research_results: Optional[str] = None
    full_script: Optional[str] = None
    speaker: str = config.TTS_DEFAULT_VOICE_ID
    speed: float = 1.0
    image_model: str = config.DEFAULT_IMAGE_MODEL
    aspect_ratio: str = "16:9"
    video_url: Optional[str] = None
    cover_url: Optional[str] = None
    duration: Optional[float] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    deleted_at: Optional[datetime] = None


class ScriptSegment(CamelModel):
    """One narration chunk as produced by the segmenter, before persistence."""

    order: int
    text: str
    chapter_title: Optional[str] = None
    key_points: List[str] = Field(default_factory=list)
    visual_style: VisualStyle = VisualStyle.INFOGRAPHIC
    emotion: Optional[str] = None
    estimated_duration: float = 0.0


class Segment(CamelModel):
    id: str = Field(default_factory=_new_id)
    project_id: str
    order: int
    text: str
    chapter_title: Optional[str] = None
    key_points: List[str] = Field(default_factory=list)
    visual_style: VisualStyle = VisualStyle.INFOGRAPHIC
    emotion: Optional[str] = None
    estimated_duration: float = 0.0

    audio_url: Optional[str] = None
    audio_duration: Optional[float] = None
    tts_status: SynthesisStatus = SynthesisStatus.PENDING
    tts_error: Optional[str] = None

    image_url: Optional[str] = None
    images: List[SegmentImage] = Field(default_factory=list)
    image_prompt: Optional[str] = None
    image_status: SynthesisStatus = SynthesisStatus.PENDING
    image_error: Optional[str] = None

    def has_audio(self) -> bool:
        return bool(self.audio_url) and bool(self.audio_duration)

    def has_image(self) -> bool:
        return bool(self.image_url) or len(self.images) > 0

    @classmethod
    def from_script(cls, project_id: str, draft: ScriptSegment) -> "Segment":
        return cls(project_id=project_id, **draft.model_dump(by_alias=False))


class ScriptDraft(CamelModel):
    title: str
    segments: List[ScriptSegment]

    @property
    def full_script(self) -> str:
        return "\n\n".join(s.text for s in self.segments)

    @property
    def estimated_duration(self) -> float:
        return sum(s.estimated_duration for s in self.segments)


class ProgressEvent(CamelModel):
    type: EventType
    stage: Optional[Stage] = None
    progress: Optional[int] = None
    index: Optional[int] = None
    total: Optional[int] = None
    message: Optional[str] = None
    data: Optional[Dict[str, Any]] = None


class CreateProjectRequest(CamelModel):
    topic: str
    speaker: Optional[str] = None
    speed: float = 1.0
    image_model: Optional[str] = None
    aspect_ratio: str = "16:9"
    document_content: Optional[str] = None


class CreateProjectResponse(CamelModel):
    project_id: str
    project: Project


class ProjectDetail(CamelModel):
    project: Project
    segments: List[Segment]


class DimensionsRequest(CamelModel):
    project_id: str
    topic: Optional[str] = None
    max_dimensions: int = Field(default=config.DEFAULT_MAX_DIMENSIONS, ge=1, le=8)


class ResearchRequest(CamelModel):
    project_id: str
    reasoning_effort: ReasoningEffort = ReasoningEffort.LOW


class ProjectStageRequest(CamelModel):
    project_id: str


class ImageBatchRequest(CamelModel):
    project_id: str
    style: Optional[str] = None
    multi_image: bool = False


class ComposeRequest(CamelModel):
    project_id: str
    transition: Optional[str] = None


class RegenerateTTSRequest(CamelModel):
    segment_id: str
    override_text: Optional[str] = None
    emotion: Optional[str] = None
    pitch: Optional[float] = None
    volume: Optional[float] = None


class RegenerateImageRequest(CamelModel):
    segment_id: str
    override_prompt: Optional[str] = None


class UpdateSegmentRequest(CamelModel):
    """Manual edit of one segment. Fields left out are not touched."""

    text: Optional[str] = None
    image_url: Optional[str] = None
    image_prompt: Optional[str] = None
    chapter_title: Optional[str] = None
    emotion: Optional[str] = None
