from __future__ import annotations

import hashlib
import io
import textwrap
from typing import TYPE_CHECKING, Any, Optional

from PIL import Image, ImageDraw

from ..provider import GenerativeProvider
from ..types import DownloadedAsset, GenerationRequest, ImagePayload, JobStatus, Mode, VideoRequest

if TYPE_CHECKING:
    from ..config import PlaceholderProviderConfig


MODE_COLORS = {
    Mode.GENERATE: (240, 240, 240),
    Mode.EDIT: (200, 220, 255),
    Mode.COMPOSE: (220, 255, 220),
}

OPERATION_PREFIX = "operations/placeholder-"
URI_PREFIX = "placeholder://"


def _short_hash(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()[:16]


def render_label_image(lines: list[str], size: tuple[int, int], color: tuple[int, int, int]) -> Image.Image:
    img = Image.new("RGB", size, color)
    d = ImageDraw.Draw(img)
    margin = min(size) // 16
    d.rectangle(
        [margin, margin, size[0] - margin, size[1] - margin],
        outline=(0, 0, 0),
        width=4,
    )
    d.text((margin + 16, margin + 16), "\n".join(lines), fill=(0, 0, 0))
    return img


class PlaceholderProvider(GenerativeProvider):
    """Offline provider that draws labelled images instead of calling an API."""

    def __init__(self, config: "PlaceholderProviderConfig | None" = None):
        self._config = config
        self._polls: dict[str, int] = {}
        self._prompts: dict[str, str] = {}

    @property
    def provider_id(self) -> str:
        return "placeholder"

    @property
    def image_size(self) -> int:
        return self._config.image_size if self._config else 1024

    @property
    def polls_until_done(self) -> int:
        return self._config.polls_until_done if self._config else 0

    def _render(self, prompt: str, mode: Mode, model: str, base: Optional[ImagePayload] = None) -> ImagePayload:
        size = (self.image_size, self.image_size)
        if base is not None:
            try:
                with Image.open(io.BytesIO(base.data)) as src:
                    size = src.size
            except OSError:
                pass
        lines = [f"Mode: {mode.value}", f"Model: {model}"] + textwrap.wrap(prompt, 60)[:8]
        img = render_label_image(lines, size, MODE_COLORS.get(mode, (230, 230, 230)))
        buf = io.BytesIO()
        img.save(buf, format="PNG")
        return ImagePayload(buf.getvalue(), "image/png", name=f"{_short_hash(prompt)}.png")

    def generate_content(self, request: GenerationRequest) -> list[dict[str, Any]]:
        base = request.images[-1] if request.images else None
        image = self._render(request.prompt, request.mode, request.model, base)
        return [
            {"text": f"Placeholder for: {request.base_instruction[:80]}"},
            image.to_part(),
        ]

    def generate_images(self, prompt: str, model: Optional[str] = None) -> Optional[ImagePayload]:
        return self._render(prompt, Mode.GENERATE, model or "placeholder")

    def start_video(self, request: VideoRequest) -> str:
        name = OPERATION_PREFIX + _short_hash(f"{request.model}:{request.prompt}:{request.aspect_ratio}")
        self._polls[name] = 0
        self._prompts[name] = request.prompt
        return name

    def get_operation(self, name: str) -> JobStatus:
        if not name.startswith(OPERATION_PREFIX):
            return JobStatus(done=True, error=f"Unknown operation: {name}")
        polls = self._polls.get(name, 0) + 1
        self._polls[name] = polls
        if polls <= self.polls_until_done:
            return JobStatus(done=False)
        return JobStatus(done=True, uri=URI_PREFIX + name[len(OPERATION_PREFIX):])

    def download(self, uri: str) -> DownloadedAsset:
        key = uri[len(URI_PREFIX):] if uri.startswith(URI_PREFIX) else _short_hash(uri)
        prompt = self._prompts.get(OPERATION_PREFIX + key, key)
        frames = [
            render_label_image([f"Frame {i + 1}/4", *textwrap.wrap(prompt, 40)[:4]], (320, 180), color)
            for i, color in enumerate([(240, 200, 200), (200, 240, 200), (200, 200, 240), (240, 240, 200)])
        ]
        buf = io.BytesIO()
        frames[0].save(buf, format="GIF", save_all=True, append_images=frames[1:], duration=250, loop=0)
        return DownloadedAsset(buf.getvalue(), "image/gif")
