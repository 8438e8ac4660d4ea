from __future__ import annotations

import base64
import logging
import threading
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Callable, Optional

from .config import RetryConfig
from .errors import GenerationError, OrchestratorBusyError, ProviderError
from .events import EventSink, default_sink
from .provider import GenerativeProvider
from .types import ErrorKind, GenerationRequest, ImagePayload

logger = logging.getLogger(__name__)

SIMPLIFY_TEMPLATE = "Edit this image based on the following request: {text}"
TRUNCATE_TEMPLATE = "Modify this image: {text}"


class OrchestratorState(str, Enum):
    IDLE = "idle"
    SUBMITTING = "submitting"
    RETRYING = "retrying"
    DONE = "done"
    FAILED = "failed"


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    backoff_base: float = 1.0
    degrade_delay: float = 2.0
    simplify_chars: int = 300
    truncate_chars: int = 100
    retry_empty_result: bool = False

    @classmethod
    def from_config(cls, cfg: RetryConfig) -> "RetryPolicy":
        return cls(
            max_attempts=cfg.max_attempts,
            backoff_base=cfg.backoff_base_sec,
            degrade_delay=cfg.degrade_delay_sec,
            simplify_chars=cfg.simplify_chars,
            truncate_chars=cfg.truncate_chars,
            retry_empty_result=cfg.retry_empty_result,
        )

    def backoff_delay(self, attempt: int) -> float:
        """Delay after the ``attempt``-th rate-limited call (1-based)."""
        return self.backoff_base * (2 ** (attempt - 1))


@dataclass
class RetryState:
    attempt: int = 0
    last_error: Optional[GenerationError] = None
    variants: list[GenerationRequest] = field(default_factory=list)


@dataclass
class GenerationResult:
    image: Optional[ImagePayload] = None
    error: Optional[GenerationError] = None
    texts: list[str] = field(default_factory=list)
    retry: RetryState = field(default_factory=RetryState)
    used_fallback: bool = False

    @property
    def ok(self) -> bool:
        return self.image is not None and self.error is None

    @property
    def attempts(self) -> int:
        return self.retry.attempt


def degrade_request(
    original: GenerationRequest,
    previous: GenerationRequest,
    next_attempt: int,
    policy: RetryPolicy,
) -> GenerationRequest:
    """Build the reduced request for a retry after a server error.

    Attempt 2 wraps the instruction in a simpler prompt and keeps only the
    first image; later attempts also cap the instruction at ``truncate_chars``.
    The instruction is cut only at those caps. Requests without images have
    no template to simplify, so they resend the instruction under the same
    caps.
    """
    limit = policy.simplify_chars if next_attempt <= 2 else policy.truncate_chars
    text = original.base_instruction[:limit].rstrip()
    if original.images:
        template = SIMPLIFY_TEMPLATE if next_attempt <= 2 else TRUNCATE_TEMPLATE
        text = template.format(text=text)
    return replace(previous, prompt=text, images=original.images[:1])


def extract_image(parts: list[dict[str, Any]]) -> tuple[Optional[ImagePayload], list[str]]:
    """Return the first inline image among response parts plus any text parts seen before it.

    Inline data that is not valid base64 is skipped, so a reply holding only
    such data counts as empty.
    """
    texts: list[str] = []
    for part in parts:
        inline = part.get("inlineData") or part.get("inline_data")
        if inline and inline.get("data"):
            mime = inline.get("mimeType") or inline.get("mime_type") or "image/png"
            try:
                data = base64.b64decode(inline["data"], validate=True)
            except (ValueError, TypeError):
                logger.warning("Skipping undecodable inline image data (%s)", mime)
                continue
            return ImagePayload(data, mime, name="generated"), texts
        if part.get("text"):
            texts.append(part["text"])
    return None, texts


class GenerationOrchestrator:
    """Runs one generation call with rate-limit backoff and server-error degradation."""

    def __init__(
        self,
        provider: GenerativeProvider,
        policy: Optional[RetryPolicy] = None,
        events: Optional[EventSink] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.provider = provider
        self.policy = policy or RetryPolicy()
        self.events = events or default_sink()
        self._sleep = sleep
        self._state = OrchestratorState.IDLE
        self._lock = threading.Lock()

    @property
    def state(self) -> OrchestratorState:
        return self._state

    @property
    def busy(self) -> bool:
        return self._state in (OrchestratorState.SUBMITTING, OrchestratorState.RETRYING)

    def submit(self, request: GenerationRequest) -> GenerationResult:
        with self._lock:
            if self.busy:
                raise OrchestratorBusyError("A generation request is already in flight")
            self._state = OrchestratorState.SUBMITTING

        try:
            return self._run(request)
        except BaseException:
            self._state = OrchestratorState.FAILED
            raise

    def _run(self, request: GenerationRequest) -> GenerationResult:
        policy = self.policy
        retry = RetryState()
        current = request
        texts: list[str] = []

        while retry.attempt < policy.max_attempts:
            retry.attempt += 1
            retry.variants.append(current)
            attempts_left = retry.attempt < policy.max_attempts
            self.events.emit(
                "generation_attempt",
                attempt=retry.attempt,
                mode=current.mode.value,
                model=current.model,
                images=len(current.images),
                prompt_chars=len(current.prompt),
            )

            try:
                parts = self.provider.generate_content(current)
            except ProviderError as e:
                error = GenerationError.from_provider(e)
                retry.last_error = error
                self.events.emit(
                    "generation_attempt_failed",
                    attempt=retry.attempt,
                    status=e.status_code,
                    kind=error.kind.value,
                    error=str(e),
                )

                if error.kind is ErrorKind.BAD_REQUEST:
                    return self._fail(error, retry, texts)
                if not attempts_left:
                    break
                if error.kind is ErrorKind.RATE_LIMITED:
                    delay = policy.backoff_delay(retry.attempt)
                    self._retrying("rate_limited", delay)
                    continue
                if error.kind is ErrorKind.SERVICE_ERROR:
                    current = degrade_request(request, current, retry.attempt + 1, policy)
                    self._retrying("degraded", policy.degrade_delay)
                    continue
                break

            image, seen = extract_image(parts)
            texts.extend(seen)
            if image is not None:
                self._state = OrchestratorState.DONE
                self.events.emit(
                    "generation_succeeded",
                    attempt=retry.attempt,
                    mime_type=image.mime_type,
                    size=image.size,
                )
                return GenerationResult(image=image, texts=texts, retry=retry)

            error = GenerationError(ErrorKind.EMPTY_RESULT, status_code=200)
            retry.last_error = error
            self.events.emit("generation_empty_result", level="warning", attempt=retry.attempt, texts=len(seen))
            if policy.retry_empty_result and attempts_left:
                self._retrying("empty_result", 0.0)
                continue
            return self._fail(error, retry, texts)

        last = retry.last_error
        assert last is not None
        if last.kind is ErrorKind.SERVICE_ERROR:
            last = GenerationError(
                ErrorKind.SERVICE_DEGRADED,
                status_code=last.status_code,
                detail=last.detail,
            )
        return self._fail(last, retry, texts)

    def _retrying(self, reason: str, delay: float) -> None:
        self._state = OrchestratorState.RETRYING
        self.events.emit("generation_retry", reason=reason, delay_sec=delay)
        if delay > 0:
            self._sleep(delay)

    def _fail(self, error: GenerationError, retry: RetryState, texts: list[str]) -> GenerationResult:
        self._state = OrchestratorState.FAILED
        retry.last_error = error
        self.events.emit(
            "generation_failed",
            level="warning",
            kind=error.kind.value,
            attempts=retry.attempt,
            error=str(error),
        )
        return GenerationResult(error=error, texts=texts, retry=retry)
