"""
Veo video routes: start a long-running job, query it, fetch the result.
"""
from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Request
from fastapi.responses import Response

from ...gen.types import VideoRequest
from ...schema import (
    DownloadBody,
    GeneratedVideo,
    OperationBody,
    OperationResponse,
    OperationResult,
    VideoRef,
    VideoStartResponse,
)
from ..deps import call_provider, get_events, get_provider, model_defaults
from ..forms import FormError, read_edit_form

router = APIRouter(prefix="/api/veo", tags=["veo"])


@router.post("/generate")
async def generate(request: Request) -> dict[str, Any]:
    """Start a video job and return its operation name."""
    form = await read_edit_form(
        request,
        first_only=True,
        extra_fields=("model", "negativePrompt", "aspectRatio"),
        allow_urlencoded=True,
    )
    video_request = VideoRequest(
        prompt=form.prompt,
        model=form.fields["model"] or model_defaults(request).video_model,
        image=form.images[0] if form.images else None,
        aspect_ratio=form.fields["aspectRatio"] or None,
        negative_prompt=form.fields["negativePrompt"] or None,
    )
    name = await call_provider(get_provider(request).start_video, video_request)
    get_events(request).emit("video_started", name=name, model=video_request.model)
    return VideoStartResponse(name=name).model_dump()


@router.post("/operation")
async def operation(body: OperationBody, request: Request) -> dict[str, Any]:
    if not body.name:
        raise FormError("Missing operation name")
    status = await call_provider(get_provider(request).get_operation, body.name)
    result = None
    if status.uri:
        result = OperationResult(generatedVideos=[GeneratedVideo(video=VideoRef(uri=status.uri))])
    response = OperationResponse(name=body.name, done=status.done, response=result, error=status.error)
    return response.model_dump(exclude_none=True)


@router.post("/download")
async def download(body: DownloadBody, request: Request) -> Response:
    if not body.uri:
        raise FormError("Missing uri")
    asset = await call_provider(get_provider(request).download, body.uri)
    return Response(content=asset.data, media_type=asset.mime_type)
