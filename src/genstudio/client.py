from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Optional, Sequence

import httpx

from .gen.builder import ImageSource, build_form, decode_base64_image
from .gen.config import ClientConfig, PollConfig
from .gen.errors import GenerationError, ImageValidationError, ProviderError, classify_status
from .gen.events import EventSink, default_sink
from .gen.orchestrator import GenerationResult, RetryState
from .gen.prompting import enhance_prompt
from .gen.providers.gemini import parse_operation
from .gen.types import DEFAULT_VIDEO_MODEL, DownloadedAsset, ErrorKind, ImagePayload, JobStatus
from .upload import load_image_file
from .video.poller import JobPoller

logger = logging.getLogger(__name__)

EDIT_ROUTE = "/api/gemini/edit"
SIMPLE_EDIT_ROUTE = "/api/gemini/edit-simple"
GENERATE_ROUTE = "/api/gemini/generate"
IMAGEN_ROUTE = "/api/imagen/generate"
VIDEO_ROUTE = "/api/veo/generate"
OPERATION_ROUTE = "/api/veo/operation"
DOWNLOAD_ROUTE = "/api/veo/download"


def _error_from_response(response: httpx.Response) -> GenerationError:
    try:
        body = response.json()
        message = body.get("error") if isinstance(body, dict) else None
    except ValueError:
        message = response.text or None
    message = message or response.reason_phrase or "Unknown error"
    return GenerationError(classify_status(response.status_code), message, status_code=response.status_code)


def _json_object(response: httpx.Response) -> dict[str, Any]:
    """Decode a JSON object body.

    Raises:
        ValueError: the body is not JSON or not an object.
    """
    body = response.json()
    if not isinstance(body, dict):
        raise ValueError("response is not a JSON object")
    return body


def _image_from_body(body: Any) -> Optional[ImagePayload]:
    image = body.get("image") if isinstance(body, dict) else None
    if not isinstance(image, dict) or not image.get("imageBytes"):
        return None
    return decode_base64_image(image["imageBytes"], image.get("mimeType") or "image/png", name="generated")


def with_fallback(result: GenerationResult, fallback: Optional[ImagePayload]) -> GenerationResult:
    """Show a canned image in place of a failed result, keeping the error for display."""
    if result.ok or fallback is None:
        return result
    return GenerationResult(
        image=fallback,
        error=result.error,
        texts=result.texts,
        retry=result.retry,
        used_fallback=True,
    )


class StudioClient:
    """Talks to the studio proxy the way the browser front end does."""

    def __init__(
        self,
        base_url: str = "http://127.0.0.1:8000",
        http: Optional[httpx.Client] = None,
        events: Optional[EventSink] = None,
        timeout: float = 300.0,
        request_delay: float = 0.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._http = http or httpx.Client(base_url=base_url, timeout=timeout)
        self.events = events or default_sink()
        self.request_delay = request_delay
        self._sleep = sleep

    @classmethod
    def from_config(cls, config: ClientConfig, events: Optional[EventSink] = None) -> "StudioClient":
        return cls(
            base_url=config.base_url,
            events=events,
            timeout=config.timeout_sec,
            request_delay=config.request_delay_sec,
        )

    def close(self) -> None:
        self._http.close()

    def __enter__(self) -> "StudioClient":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def _post(self, route: str, **kwargs: Any) -> httpx.Response:
        try:
            return self._http.post(route, **kwargs)
        except httpx.HTTPError as e:
            raise ProviderError(f"Network error: {e}") from e

    def _image_result(self, response: httpx.Response, attempts: int) -> GenerationResult:
        retry = RetryState(attempt=attempts)
        if response.is_error:
            error = _error_from_response(response)
            retry.last_error = error
            return GenerationResult(error=error, retry=retry)
        try:
            image = _image_from_body(response.json())
        except (ValueError, ImageValidationError) as e:
            error = GenerationError(ErrorKind.EMPTY_RESULT, detail=str(e), status_code=response.status_code)
            return GenerationResult(error=error, retry=retry)
        if image is None:
            return GenerationResult(error=GenerationError(ErrorKind.EMPTY_RESULT), retry=retry)
        return GenerationResult(image=image, retry=retry)

    def _send_edit(self, data: dict[str, str], files: list) -> GenerationResult:
        if self.request_delay > 0:
            self._sleep(self.request_delay)

        self.events.emit("client_request", route=EDIT_ROUTE, images=len(files))
        try:
            response = self._post(EDIT_ROUTE, data=data, files=files)
        except ProviderError as e:
            return GenerationResult(error=GenerationError.from_provider(e), retry=RetryState(attempt=1))
        self.events.emit("client_response", route=EDIT_ROUTE, status=response.status_code)

        if response.status_code == 500:
            self.events.emit("client_fallback", route=SIMPLE_EDIT_ROUTE)
            try:
                response = self._post(SIMPLE_EDIT_ROUTE, data=data, files=files)
            except ProviderError as e:
                return GenerationResult(error=GenerationError.from_provider(e), retry=RetryState(attempt=2))
            self.events.emit("client_response", route=SIMPLE_EDIT_ROUTE, status=response.status_code)
            return self._image_result(response, attempts=2)
        return self._image_result(response, attempts=1)

    def edit(
        self,
        instruction: str,
        image: Optional[ImageSource] = None,
        current: Optional[ImageSource] = None,
        iterative: bool = False,
    ) -> GenerationResult:
        """Edit one image. Falls back to the simplified route when the full one returns 500."""
        if image is None and current is None:
            error = GenerationError(ErrorKind.VALIDATION, "Please upload an image before generating")
            return GenerationResult(error=error)

        prompt = enhance_prompt(instruction, iterative=iterative, uploaded=image is not None).resolved_text
        new_images = [image] if image is not None else []
        data, files = build_form(prompt, new_images, current if image is None else None, {"instruction": instruction})
        return self._send_edit(data, files)

    def compose(
        self,
        prompt: str,
        new_images: Sequence[ImageSource],
        current: Optional[ImageSource] = None,
    ) -> GenerationResult:
        if not new_images and current is None:
            error = GenerationError(ErrorKind.VALIDATION, "No images provided for composing")
            return GenerationResult(error=error)
        data, files = build_form(prompt, new_images, current, {"instruction": prompt})
        return self._send_edit(data, files)

    def generate(self, prompt: str, model: Optional[str] = None) -> GenerationResult:
        route = IMAGEN_ROUTE if model and "imagen" in model else GENERATE_ROUTE
        body: dict[str, Any] = {"prompt": prompt}
        if model:
            body["model"] = model
        try:
            response = self._post(route, json=body)
        except ProviderError as e:
            return GenerationResult(error=GenerationError.from_provider(e), retry=RetryState(attempt=1))
        return self._image_result(response, attempts=1)

    def start_video(
        self,
        prompt: str,
        model: str = DEFAULT_VIDEO_MODEL,
        image: Optional[ImageSource] = None,
        aspect_ratio: Optional[str] = "16:9",
        negative_prompt: Optional[str] = None,
    ) -> str:
        """Submit a video job and return its operation name.

        Raises:
            GenerationError: if the proxy rejects the job or returns no name.
        """
        fields = {"model": model, "aspectRatio": aspect_ratio or "", "negativePrompt": negative_prompt or ""}
        data, files = build_form(prompt, [image] if image else [], None, fields)
        try:
            response = self._post(VIDEO_ROUTE, data=data, files=files or None)
        except ProviderError as e:
            raise GenerationError.from_provider(e) from e
        if response.is_error:
            raise _error_from_response(response)
        try:
            name = _json_object(response).get("name")
        except ValueError as e:
            raise GenerationError(
                ErrorKind.UPSTREAM, f"Invalid video job response: {e}", status_code=response.status_code
            ) from e
        if not name or not isinstance(name, str):
            raise GenerationError(ErrorKind.EMPTY_RESULT, "No operation name returned")
        self.events.emit("video_started", name=name)
        return name

    def operation_status(self, name: str) -> JobStatus:
        response = self._post(OPERATION_ROUTE, json={"name": name})
        if response.is_error:
            raise ProviderError(_error_from_response(response).message, response.status_code)
        try:
            return parse_operation(response.json())
        except ValueError as e:
            raise ProviderError(f"Invalid operation response: {e}", response.status_code) from e

    def download(self, uri: str) -> DownloadedAsset:
        response = self._post(DOWNLOAD_ROUTE, json={"uri": uri})
        if response.is_error:
            raise ProviderError(_error_from_response(response).message, response.status_code)
        mime = response.headers.get("content-type", "video/mp4").split(";")[0].strip()
        return DownloadedAsset(response.content, mime or "video/mp4")

    def poller(self, config: Optional[PollConfig] = None) -> JobPoller:
        return JobPoller.from_config(self.operation_status, self.download, config or PollConfig(), self.events)


@dataclass
class StudioSession:
    """Tracks the uploaded image and the latest generated one for iterative edits."""

    client: StudioClient
    fallback: Optional[ImagePayload] = None
    uploaded: Optional[ImagePayload] = None
    generated: Optional[ImagePayload] = None
    history: list[GenerationResult] = field(default_factory=list)

    @classmethod
    def from_config(cls, client: StudioClient, config: ClientConfig) -> "StudioSession":
        fallback = None
        if config.fallback_image is not None:
            fallback = load_image_file(Path(config.fallback_image))
        return cls(client=client, fallback=fallback)

    def upload(self, payload: ImagePayload) -> None:
        self.uploaded = payload
        self.generated = None

    def current_source(self) -> tuple[Optional[ImageSource], bool]:
        """Next edit's base image: generated beats uploaded. Second item is True when iterative."""
        if self.generated is not None:
            return ImageSource.from_base64(self.generated.to_base64(), self.generated.mime_type), True
        if self.uploaded is not None:
            return ImageSource.from_payload(self.uploaded), False
        return None, False

    def edit(self, instruction: str) -> GenerationResult:
        source, iterative = self.current_source()
        if source is None:
            result = GenerationResult(
                error=GenerationError(ErrorKind.VALIDATION, "Please upload an image before generating")
            )
        elif iterative:
            result = self.client.edit(instruction, current=source, iterative=True)
        else:
            result = self.client.edit(instruction, image=source)
        return self._record(result)

    def compose(self, prompt: str, new_images: Sequence[ImagePayload]) -> GenerationResult:
        source, _ = self.current_source()
        result = self.client.compose(prompt, [ImageSource.from_payload(p) for p in new_images], source)
        return self._record(result)

    def _record(self, result: GenerationResult) -> GenerationResult:
        if result.ok:
            self.generated = result.image
        elif result.error is not None:
            logger.warning("Generation failed: %s", result.error)
        result = with_fallback(result, self.fallback)
        self.history.append(result)
        return result
