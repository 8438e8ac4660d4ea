"""
Gemini image routes: text-to-image, edit/compose with retries, and a
single-attempt simplified edit used as the client's fallback.
"""
from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Request
from starlette.concurrency import run_in_threadpool

from ...gen.errors import GenerationError
from ...gen.orchestrator import RetryPolicy
from ...gen.types import ErrorKind, GenerationRequest, Mode
from ...schema import PromptBody
from ..deps import image_response, model_defaults, orchestrator_for
from ..forms import MAX_SIMPLE_EDIT_BYTES, FormError, read_edit_form

router = APIRouter(prefix="/api/gemini", tags=["gemini"])

EDIT_GENERATION_CONFIG = {
    "temperature": 0.4,
    "topK": 32,
    "topP": 1,
    "maxOutputTokens": 8192,
}

SIMPLE_GENERATION_CONFIG = {
    "temperature": 0.1,
    "topK": 16,
    "topP": 0.8,
    "maxOutputTokens": 4096,
}

SIMPLE_BAD_REQUEST = "Invalid image or prompt. Please check your inputs."


@router.post("/generate")
async def generate(body: PromptBody, request: Request) -> dict[str, Any]:
    """Generate an image from a prompt alone."""
    prompt = body.prompt.strip()
    if not prompt:
        raise FormError("Missing prompt")
    gen_request = GenerationRequest(
        prompt=prompt,
        mode=Mode.GENERATE,
        model=body.model or model_defaults(request).image_model,
    )
    result = await run_in_threadpool(orchestrator_for(request).submit, gen_request)
    return image_response(result)


@router.post("/edit")
async def edit(request: Request) -> dict[str, Any]:
    """
    Edit one image, or compose several, through the retrying orchestrator.

    Images are sent upstream in the order received: new images first, the
    existing image last.
    """
    form = await read_edit_form(request)
    if not form.images:
        raise FormError("No images provided for editing")

    gen_request = GenerationRequest(
        prompt=form.prompt,
        images=tuple(form.images),
        mode=Mode.EDIT if len(form.images) == 1 else Mode.COMPOSE,
        model=model_defaults(request).image_model,
        instruction=form.instruction,
        generation_config=EDIT_GENERATION_CONFIG,
    )
    result = await run_in_threadpool(orchestrator_for(request).submit, gen_request)
    return image_response(result)


@router.post("/edit-simple")
async def edit_simple(request: Request) -> dict[str, Any]:
    """Single attempt, first image only, conservative sampling."""
    form = await read_edit_form(request, max_bytes=MAX_SIMPLE_EDIT_BYTES, first_only=True)
    if not form.images:
        raise FormError("No image file provided")

    gen_request = GenerationRequest(
        prompt=f"Please edit this image: {form.prompt}",
        images=(form.images[0],),
        mode=Mode.EDIT,
        model=model_defaults(request).image_model,
        instruction=form.instruction or form.prompt,
        generation_config=SIMPLE_GENERATION_CONFIG,
    )
    policy = RetryPolicy(max_attempts=1)
    result = await run_in_threadpool(orchestrator_for(request, policy).submit, gen_request)
    error = result.error
    if error is not None and error.kind is ErrorKind.SERVICE_DEGRADED:
        raise GenerationError(ErrorKind.SERVICE_ERROR, status_code=error.status_code, detail=error.detail)
    if error is not None and error.kind is ErrorKind.BAD_REQUEST:
        raise GenerationError(
            ErrorKind.BAD_REQUEST, SIMPLE_BAD_REQUEST, status_code=error.status_code, detail=error.detail
        )
    return image_response(result)
