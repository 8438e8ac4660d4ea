from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional

from starlette.datastructures import UploadFile
from starlette.requests import Request

from ..gen.builder import clean_base64, decode_base64_image, estimated_decoded_size
from ..gen.errors import ImageValidationError, StudioError
from ..gen.types import ErrorKind, ImagePayload
from ..upload import MAX_IMAGE_BYTES, validate_image

MAX_SIMPLE_EDIT_BYTES = 10 * 1024 * 1024


class FormError(StudioError):
    kind = ErrorKind.VALIDATION


@dataclass
class EditForm:
    prompt: str
    images: list[ImagePayload] = field(default_factory=list)
    instruction: Optional[str] = None
    fields: dict[str, str] = field(default_factory=dict)


def require_multipart(request: Request, allow_urlencoded: bool = False) -> None:
    content_type = request.headers.get("content-type", "")
    if allow_urlencoded and "application/x-www-form-urlencoded" in content_type:
        return
    if "multipart/form-data" not in content_type:
        raise FormError("Expected multipart/form-data")


def _text(value: Any) -> str:
    return value if isinstance(value, str) else ""


async def _read_upload(upload: UploadFile, max_bytes: int) -> ImagePayload:
    data = await upload.read()
    mime_type = upload.content_type or ""
    try:
        validate_image(data, mime_type, min_bytes=1, max_bytes=max_bytes)
    except ImageValidationError as e:
        raise ImageValidationError(f"{upload.filename or 'image'}: {e}") from e
    return ImagePayload(data=data, mime_type=mime_type, name=upload.filename or "image")


def _read_base64(text: str, mime_type: Optional[str], max_bytes: int) -> ImagePayload:
    cleaned = clean_base64(text)
    if estimated_decoded_size(cleaned) > max_bytes:
        raise ImageValidationError("Image too large for processing. Please use a smaller image.")
    payload = decode_base64_image(cleaned, mime_type or "image/png", name="generated-image")
    validate_image(payload.data, payload.mime_type, min_bytes=1, max_bytes=max_bytes)
    return payload


async def read_edit_form(
    request: Request,
    max_bytes: int = MAX_IMAGE_BYTES,
    first_only: bool = False,
    extra_fields: tuple[str, ...] = (),
    allow_urlencoded: bool = False,
) -> EditForm:
    """Parse the multipart edit payload.

    Images come from repeated ``imageFiles`` parts, then the single
    ``imageFile`` part when no ``imageFiles`` were sent, then the
    ``imageBase64``/``imageMimeType`` fields.

    Raises:
        FormError: wrong content type or missing prompt.
        ImageValidationError: an image is of the wrong type or size.
    """
    require_multipart(request, allow_urlencoded)
    form = await request.form()
    prompt = _text(form.get("prompt")).strip()
    if not prompt:
        raise FormError("Missing prompt")

    uploads = [f for f in form.getlist("imageFiles") if isinstance(f, UploadFile)]
    if not uploads:
        single = form.get("imageFile")
        if isinstance(single, UploadFile):
            uploads = [single]
    if first_only:
        uploads = uploads[:1]

    images = [await _read_upload(u, max_bytes) for u in uploads]

    b64 = _text(form.get("imageBase64"))
    if b64 and not (first_only and images):
        images.append(_read_base64(b64, _text(form.get("imageMimeType")) or None, max_bytes))

    instruction = _text(form.get("instruction")).strip() or None
    fields = {name: _text(form.get(name)).strip() for name in extra_fields}
    return EditForm(prompt=prompt, images=images, instruction=instruction, fields=fields)
