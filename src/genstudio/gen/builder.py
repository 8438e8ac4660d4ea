from __future__ import annotations

import base64
import binascii
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable, Optional, Sequence

from ..upload import load_image_file
from .errors import ImageValidationError
from .types import DEFAULT_IMAGE_MODEL, GenerationRequest, ImagePayload, Mode

_BASE64_RE = re.compile(r"^[A-Za-z0-9+/]*={0,2}$")
_DATA_URL_RE = re.compile(r"^data:([^;,]+)?(;base64)?,", re.IGNORECASE)


def parse_data_url(url: str) -> tuple[Optional[str], str]:
    """Split a ``data:`` URL into (mime type, base64 body)."""
    m = _DATA_URL_RE.match(url)
    if not m:
        return None, url
    return m.group(1), url[m.end():]


def clean_base64(text: str) -> str:
    """Strip any data URL header and whitespace and check the alphabet.

    Raises:
        ImageValidationError: if the remaining text is not valid base64.
    """
    cleaned = text.split(",", 1)[1] if "," in text else text
    cleaned = re.sub(r"\s", "", cleaned)
    if not cleaned or not _BASE64_RE.match(cleaned):
        raise ImageValidationError("Invalid base64 image data format")
    return cleaned


def estimated_decoded_size(b64: str) -> int:
    return len(b64) * 3 // 4


def decode_base64_image(text: str, mime_type: Optional[str] = None, name: str = "image.png") -> ImagePayload:
    header_mime, _ = parse_data_url(text)
    cleaned = clean_base64(text)
    try:
        data = base64.b64decode(cleaned, validate=True)
    except (binascii.Error, ValueError) as e:
        raise ImageValidationError(f"Invalid base64 image data: {e}") from e
    return ImagePayload(data=data, mime_type=mime_type or header_mime or "image/png", name=name)


@dataclass(frozen=True)
class ImageSource:
    """An image supplied either as raw file bytes or as base64 text."""

    payload: Optional[ImagePayload] = None
    base64_data: Optional[str] = None
    mime_type: Optional[str] = None
    name: str = "image.png"

    def __post_init__(self) -> None:
        if (self.payload is None) == (self.base64_data is None):
            raise ValueError("ImageSource needs exactly one of payload or base64_data")

    @classmethod
    def from_payload(cls, payload: ImagePayload) -> "ImageSource":
        return cls(payload=payload, name=payload.name)

    @classmethod
    def from_file(cls, path: Path) -> "ImageSource":
        return cls.from_payload(load_image_file(path))

    @classmethod
    def from_base64(cls, data: str, mime_type: Optional[str] = None, name: str = "generated-image.png") -> "ImageSource":
        header_mime, _ = parse_data_url(data)
        return cls(base64_data=data, mime_type=mime_type or header_mime or "image/png", name=name)

    @property
    def is_base64(self) -> bool:
        return self.base64_data is not None

    def to_payload(self) -> ImagePayload:
        if self.payload is not None:
            return self.payload
        assert self.base64_data is not None
        return decode_base64_image(self.base64_data, self.mime_type, self.name)


def order_images(
    new_images: Iterable[ImageSource],
    current: Optional[ImageSource] = None,
) -> list[ImageSource]:
    ordered = list(new_images)
    if current is not None:
        ordered.append(current)
    return ordered


def build_request(
    prompt: str,
    new_images: Sequence[ImageSource] = (),
    current: Optional[ImageSource] = None,
    mode: Optional[Mode] = None,
    model: str = DEFAULT_IMAGE_MODEL,
    instruction: Optional[str] = None,
    generation_config: Optional[dict[str, Any]] = None,
) -> GenerationRequest:
    images = tuple(src.to_payload() for src in order_images(new_images, current))
    if mode is None:
        if not images:
            mode = Mode.GENERATE
        elif len(images) == 1:
            mode = Mode.EDIT
        else:
            mode = Mode.COMPOSE
    return GenerationRequest(
        prompt=prompt,
        images=images,
        mode=mode,
        model=model,
        instruction=instruction,
        generation_config=dict(generation_config or {}),
    )


FormFile = tuple[str, tuple[str, bytes, str]]


def build_form(
    prompt: str,
    new_images: Sequence[ImageSource] = (),
    current: Optional[ImageSource] = None,
    fields: Optional[dict[str, str]] = None,
) -> tuple[dict[str, str], list[FormFile]]:
    """Assemble the multipart payload: prompt first, then images in order.

    Base64 sources are turned back into binary file parts so the image is not
    sent as text. Only when that fails does the base64 go out as form fields.
    """
    data: dict[str, str] = {"prompt": prompt}
    if fields:
        data.update({k: v for k, v in fields.items() if v})
    files: list[FormFile] = []

    for src in order_images(new_images, current):
        if src.is_base64:
            try:
                payload = src.to_payload()
            except ImageValidationError:
                assert src.base64_data is not None
                data["imageBase64"] = src.base64_data
                data["imageMimeType"] = src.mime_type or "image/png"
                continue
        else:
            assert src.payload is not None
            payload = src.payload
        files.append(("imageFiles", (payload.name, payload.data, payload.mime_type)))

    return data, files
