"""Job specifications, per-job state and generation configuration."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import List, NamedTuple, Optional, Tuple, Union
import uuid

from PIL import Image
from pydantic import BaseModel, validator

from .errors import GenerationError


class AspectRatio(str, Enum):
    SQUARE = "1:1"
    PORTRAIT_3_4 = "3:4"
    LANDSCAPE_4_3 = "4:3"
    WIDESCREEN = "16:9"
    VERTICAL = "9:16"
    PORTRAIT_2_3 = "2:3"
    LANDSCAPE_3_2 = "3:2"
    LANDSCAPE_5_4 = "5:4"


class Resolution(str, Enum):
    R1K = "1K"
    R2K = "2K"
    R4K = "4K"


class ModelTier(str, Enum):
    STANDARD = "standard"
    PRO = "pro"


class JobKind(str, Enum):
    IMAGE = "image"
    EDIT = "edit"
    VIDEO = "video"


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = {JobStatus.COMPLETED, JobStatus.FAILED}


class GenerationConfig(BaseModel):
    # tier is declared first so the resolution validator can see it
    tier: ModelTier = ModelTier.STANDARD
    aspect_ratio: AspectRatio = AspectRatio.PORTRAIT_3_4
    resolution: Resolution = Resolution.R1K

    @validator("resolution")
    def gate_resolution_by_tier(cls, v: Resolution, values) -> Resolution:  # noqa: B902
        # Only the pro tier honours an explicit image size.
        if values.get("tier") != ModelTier.PRO:
            return Resolution.R1K
        return v


@dataclass
class VideoArtifact:
    data: bytes
    mime_type: str = "video/mp4"
    source_uri: Optional[str] = None


Artifact = Union[Image.Image, VideoArtifact]


@dataclass(frozen=True)
class JobSpec:
    """
    Immutable description of one generation request.

    Construction fails with ValueError when the prompt is blank, so an
    invalid job never reaches a queue.
    """

    prompt_text: str
    reference_images: Tuple[Image.Image, ...] = ()
    target_image: Optional[Image.Image] = None
    config: GenerationConfig = field(default_factory=GenerationConfig)
    kind: JobKind = JobKind.IMAGE
    remove_background: bool = False
    label: Optional[str] = None
    mode: str = "BATCH"
    id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def __post_init__(self) -> None:
        text = (self.prompt_text or "").strip()
        if not text:
            raise ValueError("prompt text must not be empty")
        object.__setattr__(self, "prompt_text", text)
        object.__setattr__(self, "reference_images", tuple(self.reference_images))
        if self.kind in (JobKind.EDIT, JobKind.VIDEO) and self.source_image is None:
            raise ValueError(f"{self.kind.value} jobs need a source image")

    @property
    def source_image(self) -> Optional[Image.Image]:
        """Image that edit/video jobs start from."""
        if self.target_image is not None:
            return self.target_image
        return self.reference_images[0] if self.reference_images else None

    @classmethod
    def from_lines(cls, text: str, **kwargs) -> List["JobSpec"]:
        """One job per non-blank line, labelled img_1..img_n."""
        lines = [line.strip() for line in text.splitlines()]
        lines = [line for line in lines if line]
        return [cls(prompt_text=line, label=f"img_{i + 1}", **kwargs) for i, line in enumerate(lines)]


@dataclass
class JobState:
    job_id: str
    prompt: str
    label: Optional[str] = None
    status: JobStatus = JobStatus.PENDING
    attempt: int = 0
    result_artifact: Optional[Artifact] = None
    last_error: Optional[GenerationError] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self) -> dict:
        return {
            "id": self.job_id,
            "prompt": self.prompt,
            "label": self.label,
            "status": self.status.value,
            "attempt": self.attempt,
            "hasArtifact": self.result_artifact is not None,
            "error": str(self.last_error) if self.last_error else None,
            "errorCode": self.last_error.code if self.last_error else None,
        }


class Progress(NamedTuple):
    completed: int
    total: int
