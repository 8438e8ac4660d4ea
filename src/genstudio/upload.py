from __future__ import annotations

import io
import logging
import mimetypes
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from PIL import Image, UnidentifiedImageError

from .gen.config import UploadConfig
from .gen.errors import ImageValidationError
from .gen.events import EventSink, default_sink
from .gen.types import ImagePayload

logger = logging.getLogger(__name__)

SUPPORTED_MIME_TYPES = (
    "image/jpeg",
    "image/jpg",
    "image/png",
    "image/webp",
    "image/gif",
)
MIN_IMAGE_BYTES = 1024
MAX_IMAGE_BYTES = 20 * 1024 * 1024
MAX_DIMENSION = 2048
COMPRESSED_MIME_TYPE = "image/jpeg"

_MB = 1024 * 1024


def _mb(size: int) -> str:
    return f"{size / _MB:.2f}MB"


def validate_image(
    data: bytes,
    mime_type: str,
    min_bytes: int = MIN_IMAGE_BYTES,
    max_bytes: int = MAX_IMAGE_BYTES,
) -> None:
    """Check MIME type and size of an image before it goes anywhere.

    Raises:
        ImageValidationError: on an unsupported type or out-of-range size.
    """
    if mime_type not in SUPPORTED_MIME_TYPES:
        raise ImageValidationError(
            f"Unsupported format: {mime_type or 'unknown'}. Supported: JPEG, PNG, WebP, GIF"
        )
    size = len(data)
    if size > max_bytes:
        raise ImageValidationError(
            f"File too large: {_mb(size)}. Maximum: {max_bytes // _MB}MB"
        )
    if size < min_bytes:
        raise ImageValidationError("File too small or corrupted")


def should_compress(size: int, threshold_mb: float = 5.0) -> bool:
    return size > threshold_mb * _MB


@dataclass(frozen=True)
class CompressedImage:
    payload: ImagePayload
    original_size: int
    compressed_size: int
    width: int
    height: int

    @property
    def compression_ratio(self) -> float:
        if self.compressed_size == 0:
            return 0.0
        return self.original_size / self.compressed_size


def compress_image(
    payload: ImagePayload,
    max_dimension: int = MAX_DIMENSION,
    quality: int = 80,
) -> CompressedImage:
    """Downscale so neither side exceeds ``max_dimension`` and re-encode as JPEG."""
    try:
        with Image.open(io.BytesIO(payload.data)) as img:
            img.load()
            if img.mode in ("RGBA", "LA", "P"):
                img = img.convert("RGBA")
                background = Image.new("RGB", img.size, (255, 255, 255))
                background.paste(img, mask=img.split()[-1])
                img = background
            elif img.mode != "RGB":
                img = img.convert("RGB")

            img.thumbnail((max_dimension, max_dimension), Image.Resampling.LANCZOS)
            buf = io.BytesIO()
            img.save(buf, format="JPEG", quality=quality, optimize=True)
            width, height = img.size
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError) as e:
        raise ImageValidationError(f"Failed to compress image: {e}") from e

    data = buf.getvalue()
    stem = Path(payload.name).stem or "image"
    return CompressedImage(
        payload=ImagePayload(data=data, mime_type=COMPRESSED_MIME_TYPE, name=f"{stem}.jpg"),
        original_size=payload.size,
        compressed_size=len(data),
        width=width,
        height=height,
    )


def load_image_file(path: Path) -> ImagePayload:
    mime_type, _ = mimetypes.guess_type(path.name)
    return ImagePayload(
        data=path.read_bytes(),
        mime_type=mime_type or "application/octet-stream",
        name=path.name,
    )


@dataclass
class UploadedImage:
    payload: ImagePayload
    preview: Optional[Path]
    was_compressed: bool = False
    compression_ratio: Optional[float] = None

    def release(self) -> None:
        if self.preview is None:
            return
        try:
            self.preview.unlink()
        except FileNotFoundError:
            pass
        self.preview = None

    def __enter__(self) -> "UploadedImage":
        return self

    def __exit__(self, *exc) -> None:
        self.release()


class ImageUploadService:
    def __init__(
        self,
        config: Optional[UploadConfig] = None,
        preview_dir: Optional[Path] = None,
        events: Optional[EventSink] = None,
    ):
        self.config = config or UploadConfig()
        self.preview_dir = preview_dir
        self.events = events or default_sink()

    def process(self, payload: ImagePayload) -> UploadedImage:
        """Validate, optionally compress, and write a preview for an upload.

        The returned preview file belongs to the caller, who must call
        ``release()`` once it is superseded.
        """
        self.events.emit(
            "upload_received", name=payload.name, mime_type=payload.mime_type, size=_mb(payload.size)
        )
        validate_image(payload.data, payload.mime_type)

        final = payload
        was_compressed = False
        ratio: Optional[float] = None
        if should_compress(payload.size, self.config.compress_threshold_mb):
            try:
                compressed = compress_image(
                    payload,
                    max_dimension=self.config.max_dimension,
                    quality=self.config.jpeg_quality,
                )
            except ImageValidationError as e:
                logger.warning("Compression failed, keeping original: %s", e)
                self.events.emit("upload_compression_failed", level="warning", error=str(e))
            else:
                final = compressed.payload
                was_compressed = True
                ratio = compressed.compression_ratio
                self.events.emit(
                    "upload_compressed",
                    original_size=_mb(compressed.original_size),
                    compressed_size=_mb(compressed.compressed_size),
                    ratio=f"{ratio:.2f}x",
                    dimensions=f"{compressed.width}x{compressed.height}",
                )

        preview = self._write_preview(final)
        return UploadedImage(
            payload=final,
            preview=preview,
            was_compressed=was_compressed,
            compression_ratio=ratio,
        )

    def process_file(self, path: Path) -> UploadedImage:
        return self.process(load_image_file(path))

    def _write_preview(self, payload: ImagePayload) -> Path:
        suffix = mimetypes.guess_extension(payload.mime_type) or ".img"
        if self.preview_dir is not None:
            self.preview_dir.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(
            prefix="preview-",
            suffix=suffix,
            dir=str(self.preview_dir) if self.preview_dir else None,
        )
        try:
            os.write(fd, payload.data)
        finally:
            os.close(fd)
        return Path(tmp_path)
