from __future__ import annotations

import base64
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

DEFAULT_IMAGE_MODEL = "gemini-2.5-flash-image-preview"
DEFAULT_IMAGEN_MODEL = "imagen-4.0-generate-001"
DEFAULT_VIDEO_MODEL = "veo-3.0-generate-001"


class Mode(str, Enum):
    GENERATE = "generate"
    EDIT = "edit"
    COMPOSE = "compose"


class ErrorKind(str, Enum):
    VALIDATION = "validation"
    RATE_LIMITED = "rate_limited"
    SERVICE_ERROR = "service_error"
    SERVICE_DEGRADED = "service_degraded"
    BAD_REQUEST = "bad_request"
    EMPTY_RESULT = "empty_result"
    NETWORK = "network"
    UPSTREAM = "upstream"


@dataclass(frozen=True)
class ImagePayload:
    data: bytes
    mime_type: str
    name: str = "image"

    @property
    def size(self) -> int:
        return len(self.data)

    def to_base64(self) -> str:
        return base64.b64encode(self.data).decode("ascii")

    def to_data_url(self) -> str:
        return f"data:{self.mime_type};base64,{self.to_base64()}"

    def to_part(self) -> dict[str, Any]:
        return {"inlineData": {"mimeType": self.mime_type, "data": self.to_base64()}}

    def to_json(self) -> dict[str, str]:
        return {"imageBytes": self.to_base64(), "mimeType": self.mime_type}


@dataclass(frozen=True)
class GenerationRequest:
    """A single upstream call: prompt text followed by zero or more images.

    ``instruction`` is the user's own wording before any prompt enhancement;
    degraded retries rebuild their prompt from it.
    """

    prompt: str
    images: tuple[ImagePayload, ...] = ()
    mode: Mode = Mode.EDIT
    model: str = DEFAULT_IMAGE_MODEL
    instruction: Optional[str] = None
    generation_config: dict[str, Any] = field(default_factory=dict)

    @property
    def base_instruction(self) -> str:
        return self.instruction if self.instruction is not None else self.prompt

    def parts(self) -> list[dict[str, Any]]:
        return [{"text": self.prompt}] + [img.to_part() for img in self.images]


@dataclass(frozen=True)
class VideoRequest:
    prompt: str
    model: str = DEFAULT_VIDEO_MODEL
    image: Optional[ImagePayload] = None
    aspect_ratio: Optional[str] = "16:9"
    negative_prompt: Optional[str] = None


@dataclass(frozen=True)
class JobStatus:
    done: bool
    uri: Optional[str] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class DownloadedAsset:
    data: bytes
    mime_type: str = "video/mp4"
