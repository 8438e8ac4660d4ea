from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Request

from ...gen.errors import GenerationError
from ...gen.types import ErrorKind
from ...schema import ImageBody, ImageResponse, PromptBody
from ..deps import call_provider, get_provider, model_defaults
from ..forms import FormError

router = APIRouter(prefix="/api/imagen", tags=["imagen"])


@router.post("/generate")
async def generate(body: PromptBody, request: Request) -> dict[str, Any]:
    """Single Imagen call; no retries."""
    prompt = body.prompt.strip()
    if not prompt:
        raise FormError("Missing prompt")
    provider = get_provider(request)
    image = await call_provider(
        provider.generate_images, prompt, body.model or model_defaults(request).imagen_model
    )
    if image is None:
        raise GenerationError(ErrorKind.EMPTY_RESULT)
    return ImageResponse(image=ImageBody(**image.to_json())).model_dump(exclude_defaults=True)
