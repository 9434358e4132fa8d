"""Pydantic models for job queue data structures.

Job input and output payloads form a tagged union keyed by the job type:
INPUT_MODELS and OUTPUT_MODELS map every JobType to its schema, so enqueue
can validate input up front and the worker can dispatch on a closed set.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Type

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from ..errors import ValidationError


class JobStatus(str, Enum):
    """Job processing states.

    State transitions:
        queued → processing     (worker claims)
        processing → done       (processor succeeded)
        processing → failed     (processor raised, or stuck-job reclamation)
        failed → queued         (administrative retry only, never by the worker)
    """

    QUEUED = "queued"
    PROCESSING = "processing"
    DONE = "done"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.DONE, JobStatus.FAILED)


TERMINAL_STATUSES = (JobStatus.DONE, JobStatus.FAILED)


class JobType(str, Enum):
    INGEST_IMAGE = "ingest_image"
    INGEST_VIDEO = "ingest_video"
    INGEST_PDF = "ingest_pdf"
    AI_GENERATE_CARDS = "ai_generate_cards"


INGEST_TYPES = (JobType.INGEST_IMAGE, JobType.INGEST_VIDEO, JobType.INGEST_PDF)


# --- Inputs ---


class IngestFileInput(BaseModel):
    """Input for the three ingest_* job types."""

    storage_path: str = Field(..., min_length=1, description="Path inside the ingest bucket")
    mime_type: str = Field(..., min_length=1)
    ingest_file_id: Optional[int] = Field(default=None, description="ingest_files row")
    file_size: int = Field(default=0, ge=0)
    owner: Optional[str] = Field(default=None, description="Uploader; falls back to path prefix")
    metadata: Dict[str, Any] = Field(default_factory=dict)

    def resolve_owner(self, created_by: Optional[str] = None) -> str:
        if self.owner:
            return self.owner
        if created_by:
            return created_by
        return self.storage_path.split("/", 1)[0]


Strategy = Literal["mcq", "labeling", "hotspot"]
Difficulty = Literal["beginner", "intermediate", "advanced"]
BloomLevel = Literal["remember", "understand", "apply", "analyze", "evaluate", "create"]


class GenerateCardsInput(BaseModel):
    deck_id: int = Field(..., description="Deck that receives the generated cards")
    media_asset_ids: List[int] = Field(default_factory=list)
    strategy: Strategy = "mcq"
    difficulty: Difficulty = "intermediate"
    bloom_level: BloomLevel = "understand"
    context: Optional[str] = None
    learning_objective: Optional[str] = None


# --- AI results shared by outputs ---


class DetectedObject(BaseModel):
    name: str
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)


class ImageDescription(BaseModel):
    description: str
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    tags: List[str] = Field(default_factory=list)
    objects: List[DetectedObject] = Field(default_factory=list)


class KeyframeDescription(BaseModel):
    timestamp: float = Field(ge=0.0)
    description: str
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    objects: List[str] = Field(default_factory=list)


class PageSummary(BaseModel):
    page_number: int = Field(ge=1)
    summary: str
    key_points: List[str] = Field(default_factory=list)


class GeneratedCard(BaseModel):
    prompt: str
    answer: str
    options: List[str] = Field(default_factory=list)
    difficulty: str = "intermediate"
    bloom_level: str = "understand"
    tags: List[str] = Field(default_factory=list)


# --- Outputs ---


class Keyframe(BaseModel):
    timestamp: float
    image_path: str
    description: KeyframeDescription


class PdfPage(BaseModel):
    page_number: int
    image_path: str
    text_content: Optional[str] = None
    summary: Optional[str] = None


class ImageIngestOutput(BaseModel):
    media_asset_id: int
    card_id: int
    description: ImageDescription
    thumbnail_path: str
    metadata: Dict[str, Any] = Field(default_factory=dict)


class VideoIngestOutput(BaseModel):
    media_asset_id: int
    card_id: int
    keyframes: List[Keyframe] = Field(default_factory=list)
    captions_path: Optional[str] = None
    transcript_path: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class PdfIngestOutput(BaseModel):
    media_assets: List[int] = Field(default_factory=list)
    cards: List[int] = Field(default_factory=list)
    pages: List[PdfPage] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class GenerateCardsOutput(BaseModel):
    generated_count: int = Field(ge=0)
    created_cards: List[int] = Field(default_factory=list)
    strategy: str
    difficulty: str


INPUT_MODELS: Dict[JobType, Type[BaseModel]] = {
    JobType.INGEST_IMAGE: IngestFileInput,
    JobType.INGEST_VIDEO: IngestFileInput,
    JobType.INGEST_PDF: IngestFileInput,
    JobType.AI_GENERATE_CARDS: GenerateCardsInput,
}

OUTPUT_MODELS: Dict[JobType, Type[BaseModel]] = {
    JobType.INGEST_IMAGE: ImageIngestOutput,
    JobType.INGEST_VIDEO: VideoIngestOutput,
    JobType.INGEST_PDF: PdfIngestOutput,
    JobType.AI_GENERATE_CARDS: GenerateCardsOutput,
}


def parse_job_type(value: Any) -> JobType:
    """Coerce a raw type string to JobType.

    Raises:
        ValidationError: If the value is not one of the closed set
    """
    try:
        return JobType(value)
    except ValueError:
        raise ValidationError(
            f"Unknown job type: {value}",
            details={"allowed": [t.value for t in JobType]},
        )


def parse_job_input(job_type: JobType, raw: Any) -> BaseModel:
    """Validate a raw input payload against the schema for its job type.

    Raises:
        ValidationError: If the payload does not match
    """
    model = INPUT_MODELS[job_type]
    if isinstance(raw, model):
        return raw
    try:
        return model.model_validate(raw or {})
    except PydanticValidationError as e:
        raise ValidationError(
            f"Invalid input for {job_type.value}",
            details={"errors": e.errors(include_url=False, include_context=False)},
        )


# --- Job record ---


class Job(BaseModel):
    """One row of the job table.

    `type` is kept as the raw stored string: rows written by other producers
    may carry a type outside JobType, which the worker fails rather than
    crashing on.
    """

    id: int
    type: str
    status: JobStatus
    input: Dict[str, Any] = Field(default_factory=dict)
    output: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    created_by: Optional[str] = None

    @property
    def job_type(self) -> Optional[JobType]:
        try:
            return JobType(self.type)
        except ValueError:
            return None

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")


class JobOutcome(BaseModel):
    """Per-job entry reported by the worker."""

    id: int
    type: str
    status: JobStatus
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None

    model_config = ConfigDict(use_enum_values=True)


class RunResult(BaseModel):
    """Result of one worker invocation (or one driver iteration)."""

    processed: int = Field(default=0, ge=0, le=1)
    jobs: List[JobOutcome] = Field(default_factory=list)
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)


class StateTransition(BaseModel):
    """Audit log entry for job state changes."""

    id: Optional[int] = None
    job_id: int
    from_state: Optional[str] = None
    to_state: str
    timestamp: datetime
    error_snippet: Optional[str] = None
