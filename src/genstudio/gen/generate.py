from __future__ import annotations

import logging
import mimetypes
import time
from contextlib import ExitStack
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional, Sequence

from ..io import load_request_file
from ..upload import ImageUploadService, UploadedImage
from ..video.poller import CancelToken, JobPoller, JobState, PollOutcome
from .builder import ImageSource, build_request
from .config import StudioConfig
from .errors import GenerationError, ProviderError
from .events import EventSink, default_sink
from .orchestrator import GenerationOrchestrator, GenerationResult, RetryPolicy, RetryState
from .prompting import enhance_prompt
from .provider import GenerativeProvider
from .types import (
    DEFAULT_IMAGE_MODEL,
    DEFAULT_VIDEO_MODEL,
    ErrorKind,
    ImagePayload,
    Mode,
    VideoRequest,
)

logger = logging.getLogger(__name__)

_EXTENSIONS = {
    "image/png": ".png",
    "image/jpeg": ".jpg",
    "image/webp": ".webp",
    "image/gif": ".gif",
    "video/mp4": ".mp4",
}


def extension_for(mime_type: str) -> str:
    return _EXTENSIONS.get(mime_type) or mimetypes.guess_extension(mime_type) or ".bin"


def save_bytes(data: bytes, out_path: Path) -> Path:
    out_path.parent.mkdir(parents=True, exist_ok=True)
    out_path.write_bytes(data)
    return out_path


def save_image(payload: ImagePayload, out_path: Path) -> Path:
    """Write an image; a path without a suffix gets one from the MIME type."""
    if not out_path.suffix:
        out_path = out_path.with_suffix(extension_for(payload.mime_type))
    return save_bytes(payload.data, out_path)


@dataclass
class ImageJobResult:
    result: GenerationResult
    output: Optional[Path] = None
    uploads: list[UploadedImage] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.result.ok


@dataclass
class VideoJobResult:
    handle: str
    outcome: PollOutcome
    output: Optional[Path] = None

    @property
    def ok(self) -> bool:
        return self.outcome.ok


def _image_model(config: StudioConfig, model: Optional[str]) -> str:
    if model:
        return model
    if config.providers.gemini is not None:
        return config.providers.gemini.image_model
    return DEFAULT_IMAGE_MODEL


def _generate_with_imagen(
    provider: GenerativeProvider, prompt: str, model: str, events: EventSink
) -> GenerationResult:
    retry = RetryState(attempt=1)
    events.emit("imagen_request", model=model, prompt_chars=len(prompt))
    try:
        image = provider.generate_images(prompt, model)
    except ProviderError as e:
        retry.last_error = GenerationError.from_provider(e)
        return GenerationResult(error=retry.last_error, retry=retry)
    if image is None:
        return GenerationResult(error=GenerationError(ErrorKind.EMPTY_RESULT), retry=retry)
    return GenerationResult(image=image, retry=retry)


def run_image_job(
    provider: GenerativeProvider,
    config: StudioConfig,
    prompt: str,
    images: Sequence[Path] = (),
    current: Optional[Path] = None,
    mode: Optional[Mode] = None,
    model: Optional[str] = None,
    iterative: bool = False,
    output: Optional[Path] = None,
    events: Optional[EventSink] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> ImageJobResult:
    """Generate, edit or compose in-process, without the HTTP proxy.

    New images go through the upload pipeline first. A single-image edit
    wraps the prompt in the edit template; compose and generate send it as
    given. Imagen models take a single direct call with no retries.

    Raises:
        ImageValidationError: if an input image is rejected.
    """
    events = events or default_sink()
    model_id = _image_model(config, model)
    uploader = ImageUploadService(config.upload, events=events)

    with ExitStack() as stack:
        uploads = [stack.enter_context(uploader.process_file(p)) for p in images]
        current_upload = stack.enter_context(uploader.process_file(current)) if current else None

        new_sources = [ImageSource.from_payload(u.payload) for u in uploads]
        current_source = ImageSource.from_payload(current_upload.payload) if current_upload else None
        count = len(new_sources) + (1 if current_source else 0)

        if count == 0 and "imagen" in model_id:
            result = _generate_with_imagen(provider, prompt, model_id, events)
        else:
            text = prompt
            if count == 1 and mode in (None, Mode.EDIT):
                text = enhance_prompt(
                    prompt, iterative=iterative, uploaded=current_source is None
                ).resolved_text
            request = build_request(
                text,
                new_sources,
                current_source,
                mode=mode,
                model=model_id,
                instruction=prompt,
            )
            orchestrator = GenerationOrchestrator(
                provider, RetryPolicy.from_config(config.retry), events=events, sleep=sleep
            )
            result = orchestrator.submit(request)

        all_uploads = uploads + ([current_upload] if current_upload else [])

    saved = None
    if result.ok and output is not None:
        assert result.image is not None
        saved = save_image(result.image, output)
        events.emit("image_saved", path=str(saved), size=result.image.size)
    return ImageJobResult(result=result, output=saved, uploads=all_uploads)


def run_video_job(
    provider: GenerativeProvider,
    config: StudioConfig,
    prompt: str,
    image: Optional[Path] = None,
    model: Optional[str] = None,
    aspect_ratio: Optional[str] = "16:9",
    negative_prompt: Optional[str] = None,
    output: Optional[Path] = None,
    events: Optional[EventSink] = None,
    token: Optional[CancelToken] = None,
) -> VideoJobResult:
    """Start a video job, poll it to completion, and save the result.

    Raises:
        GenerationError: if the job could not be started.
    """
    events = events or default_sink()
    if model is None:
        model = config.providers.gemini.video_model if config.providers.gemini else DEFAULT_VIDEO_MODEL

    first_frame = None
    if image is not None:
        with ImageUploadService(config.upload, events=events).process_file(image) as upload:
            first_frame = upload.payload

    request = VideoRequest(
        prompt=prompt,
        model=model,
        image=first_frame,
        aspect_ratio=aspect_ratio,
        negative_prompt=negative_prompt,
    )
    try:
        handle = provider.start_video(request)
    except ProviderError as e:
        raise GenerationError.from_provider(e) from e
    events.emit("video_started", name=handle, model=model)

    poller = JobPoller.from_config(provider.get_operation, provider.download, config.poll, events)
    outcome = poller.run(handle, token)

    saved = None
    if outcome.state is JobState.COMPLETED and outcome.asset is not None and output is not None:
        if not output.suffix:
            output = output.with_suffix(extension_for(outcome.asset.mime_type))
        saved = save_bytes(outcome.asset.data, output)
        events.emit("video_saved", path=str(saved), size=len(outcome.asset.data))
    elif outcome.state is JobState.COMPLETED and outcome.asset is None:
        logger.warning("Video job %s finished without a result", handle)
    return VideoJobResult(handle=handle, outcome=outcome, output=saved)


def run_request_file(
    path: Path,
    provider: GenerativeProvider,
    config: StudioConfig,
    events: Optional[EventSink] = None,
    sleep: Callable[[float], None] = time.sleep,
    token: Optional[CancelToken] = None,
) -> ImageJobResult | VideoJobResult:
    req = load_request_file(path)
    output = req.output or path.parent / f"{path.stem}_output"

    if req.mode == "video":
        images = req.all_images()
        return run_video_job(
            provider,
            config,
            req.prompt,
            image=images[0] if images else None,
            model=req.model,
            aspect_ratio=req.video.aspect_ratio,
            negative_prompt=req.video.negative_prompt,
            output=output,
            events=events,
            token=token,
        )

    return run_image_job(
        provider,
        config,
        req.prompt,
        images=req.images,
        current=req.current,
        mode=Mode(req.mode),
        model=req.model,
        iterative=req.iterative,
        output=output,
        events=events,
        sleep=sleep,
    )
