from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Optional

from .types import DownloadedAsset, GenerationRequest, ImagePayload, JobStatus, VideoRequest


class GenerativeProvider(ABC):
    """Upstream generative API. Failures are raised as ``ProviderError``."""

    @property
    @abstractmethod
    def provider_id(self) -> str: ...

    @abstractmethod
    def generate_content(self, request: GenerationRequest) -> list[dict[str, Any]]:
        """Send prompt and images, return the response parts of the first candidate."""
        raise NotImplementedError

    @abstractmethod
    def generate_images(self, prompt: str, model: Optional[str] = None) -> Optional[ImagePayload]:
        raise NotImplementedError

    @abstractmethod
    def start_video(self, request: VideoRequest) -> str:
        """Submit a video job and return its opaque operation handle."""
        raise NotImplementedError

    @abstractmethod
    def get_operation(self, name: str) -> JobStatus:
        raise NotImplementedError

    @abstractmethod
    def download(self, uri: str) -> DownloadedAsset:
        raise NotImplementedError

    def close(self) -> None:
        pass
