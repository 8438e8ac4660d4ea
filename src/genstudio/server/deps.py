from __future__ import annotations

from typing import Any, Callable, Optional, TypeVar

from starlette.concurrency import run_in_threadpool
from starlette.requests import Request

from ..gen.config import GeminiProviderConfig, StudioConfig
from ..gen.errors import GenerationError, ProviderError
from ..gen.events import EventSink
from ..gen.orchestrator import GenerationOrchestrator, GenerationResult, RetryPolicy
from ..gen.provider import GenerativeProvider
from ..gen.types import ErrorKind
from ..schema import ImageBody, ImageResponse

T = TypeVar("T")


def get_config(request: Request) -> StudioConfig:
    return request.app.state.config


def get_provider(request: Request) -> GenerativeProvider:
    return request.app.state.provider


def get_events(request: Request) -> EventSink:
    return request.app.state.events


def model_defaults(request: Request) -> GeminiProviderConfig:
    return get_config(request).providers.gemini or GeminiProviderConfig()


def orchestrator_for(request: Request, policy: Optional[RetryPolicy] = None) -> GenerationOrchestrator:
    """One orchestrator per incoming request, so its state tracks that action only."""
    config = get_config(request)
    return GenerationOrchestrator(
        get_provider(request),
        policy=policy or RetryPolicy.from_config(config.retry),
        events=get_events(request),
        sleep=request.app.state.sleep,
    )


async def call_provider(fn: Callable[..., T], *args: Any) -> T:
    """Run a blocking provider call off the event loop, translating its errors."""
    try:
        return await run_in_threadpool(fn, *args)
    except ProviderError as e:
        raise GenerationError.from_provider(e) from e


def image_response(result: GenerationResult) -> dict[str, Any]:
    if result.error is not None or result.image is None:
        raise result.error or GenerationError(ErrorKind.EMPTY_RESULT)
    response = ImageResponse(image=ImageBody(**result.image.to_json()), text=result.texts)
    return response.model_dump(exclude_defaults=True)
