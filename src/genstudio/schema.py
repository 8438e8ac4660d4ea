from __future__ import annotations

from pathlib import Path
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


class PromptBody(BaseModel):
    prompt: str = ""
    model: Optional[str] = None


class OperationBody(BaseModel):
    name: str = ""


class DownloadBody(BaseModel):
    uri: str = ""


class ImageBody(BaseModel):
    imageBytes: str
    mimeType: str


class ImageResponse(BaseModel):
    image: ImageBody
    text: list[str] = Field(default_factory=list)


class VideoStartResponse(BaseModel):
    name: str


class VideoRef(BaseModel):
    uri: str


class GeneratedVideo(BaseModel):
    video: VideoRef


class OperationResult(BaseModel):
    generatedVideos: list[GeneratedVideo] = Field(default_factory=list)


class OperationResponse(BaseModel):
    name: str
    done: bool
    response: Optional[OperationResult] = None
    error: Optional[str] = None


RequestMode = Literal["generate", "edit", "compose", "video"]


class VideoOptions(BaseModel):
    model_config = ConfigDict(extra="forbid")
    aspect_ratio: Optional[str] = "16:9"
    negative_prompt: Optional[str] = None


class RequestFile(BaseModel):
    """A generation described in YAML, run with ``studio run``."""

    model_config = ConfigDict(extra="forbid")
    mode: RequestMode
    prompt: str = Field(min_length=1)
    images: list[Path] = Field(default_factory=list)
    current: Optional[Path] = None
    model: Optional[str] = None
    output: Optional[Path] = None
    iterative: bool = False
    video: VideoOptions = VideoOptions()

    @model_validator(mode="after")
    def _check_images(self):
        count = len(self.images) + (1 if self.current else 0)
        if self.mode in ("edit", "compose") and count == 0:
            raise ValueError(f"mode '{self.mode}' needs at least one image")
        if self.mode == "generate" and count:
            raise ValueError("mode 'generate' does not take images")
        if self.mode == "video" and count > 1:
            raise ValueError("mode 'video' takes at most one image")
        return self

    def all_images(self) -> list[Path]:
        return list(self.images) + ([self.current] if self.current else [])
