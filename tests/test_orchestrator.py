from __future__ import annotations

from typing import Any

import pytest

from fakes import RESULT_IMAGE, ScriptedProvider, noise_payload

from genstudio.gen.errors import OrchestratorBusyError, USER_MESSAGES
from genstudio.gen.events import RecordingEventSink
from genstudio.gen.orchestrator import (
    GenerationOrchestrator,
    OrchestratorState,
    RetryPolicy,
    degrade_request,
    extract_image,
)
from genstudio.gen.prompting import enhance_prompt
from genstudio.gen.types import ErrorKind, GenerationRequest, Mode

INSTRUCTION = "make the sky purple and add two small clouds"


def _edit_request(images: int = 2) -> GenerationRequest:
    return GenerationRequest(
        prompt=enhance_prompt(INSTRUCTION, uploaded=True).resolved_text,
        images=tuple(noise_payload(f"{i}.png") for i in range(images)),
        mode=Mode.EDIT if images == 1 else Mode.COMPOSE,
        instruction=INSTRUCTION,
    )


def _orchestrator(provider: ScriptedProvider, policy: RetryPolicy | None = None):
    sleeps: list[float] = []
    events = RecordingEventSink()
    orch = GenerationOrchestrator(provider, policy or RetryPolicy(), events=events, sleep=sleeps.append)
    return orch, sleeps, events


class TestSuccess:
    def test_first_attempt(self) -> None:
        provider = ScriptedProvider()
        orch, sleeps, events = _orchestrator(provider)

        result = orch.submit(_edit_request())

        assert result.ok
        assert result.image is not None and result.image.data == RESULT_IMAGE.data
        assert result.texts == ["here you go"]
        assert result.attempts == 1
        assert orch.state is OrchestratorState.DONE
        assert sleeps == []
        assert events.names() == ["generation_attempt", "generation_succeeded"]


class TestServerErrors:
    def test_degrades_then_succeeds(self) -> None:
        provider = ScriptedProvider([500, 500, "ok"])
        orch, sleeps, events = _orchestrator(provider)
        original = _edit_request(images=2)

        result = orch.submit(original)

        assert result.ok
        assert result.attempts == 3
        assert len(provider.requests) == 3
        assert sleeps == [2.0, 2.0]

        prompts = [r.prompt for r in provider.requests]
        assert prompts[0] == original.prompt
        assert prompts[1] == f"Edit this image based on the following request: {INSTRUCTION}"
        assert prompts[2] == f"Modify this image: {INSTRUCTION}"

        for sent in provider.requests[1:]:
            assert set(sent.images) <= set(original.images)
            assert sent.images == original.images[:1]
        assert [e.fields["reason"] for e in events.of("generation_retry")] == ["degraded", "degraded"]

    def test_exhausted_budget_is_degraded_failure(self) -> None:
        provider = ScriptedProvider([500, 500, 500])
        orch, sleeps, _ = _orchestrator(provider)

        result = orch.submit(_edit_request())

        assert not result.ok
        assert result.attempts == 3
        assert result.error is not None
        assert result.error.kind is ErrorKind.SERVICE_DEGRADED
        assert str(result.error) == USER_MESSAGES[ErrorKind.SERVICE_DEGRADED]
        assert result.error.http_status == 500
        assert orch.state is OrchestratorState.FAILED
        assert sleeps == [2.0, 2.0]

    def test_generate_mode_resends_whole_prompt(self) -> None:
        provider = ScriptedProvider([500, 500, "ok"])
        orch, _, _ = _orchestrator(provider)
        request = GenerationRequest(prompt="a red fox", mode=Mode.GENERATE)

        result = orch.submit(request)

        assert result.ok
        assert [r.prompt for r in provider.requests] == ["a red fox"] * 3
        assert all(r.images == () for r in provider.requests)


class TestClientErrors:
    def test_bad_request_fails_immediately(self) -> None:
        provider = ScriptedProvider([400])
        orch, sleeps, _ = _orchestrator(provider)

        result = orch.submit(_edit_request())

        assert result.attempts == 1
        assert len(provider.requests) == 1
        assert result.error is not None
        assert result.error.kind is ErrorKind.BAD_REQUEST
        assert str(result.error) == "Invalid request. Please check your image format and prompt."
        assert result.error.http_status == 400
        assert sleeps == []

    def test_unknown_status_is_upstream(self) -> None:
        provider = ScriptedProvider([503])
        orch, _, _ = _orchestrator(provider)

        result = orch.submit(_edit_request())

        assert result.attempts == 1
        assert result.error is not None
        assert result.error.kind is ErrorKind.UPSTREAM
        assert result.error.http_status == 503

    def test_network_failure(self) -> None:
        provider = ScriptedProvider([None])
        orch, _, _ = _orchestrator(provider)

        result = orch.submit(_edit_request())

        assert result.attempts == 1
        assert result.error is not None
        assert result.error.kind is ErrorKind.NETWORK
        assert result.error.status_code is None


class TestRateLimits:
    def test_backoff_then_identical_retry(self) -> None:
        provider = ScriptedProvider([429, 429, "ok"])
        orch, sleeps, _ = _orchestrator(provider, RetryPolicy(backoff_base=1.0))
        original = _edit_request()

        result = orch.submit(original)

        assert result.ok
        assert sleeps == [1.0, 2.0]
        assert all(r == original for r in provider.requests)

    def test_rate_limit_exhausted(self) -> None:
        provider = ScriptedProvider([429, 429, 429])
        orch, sleeps, _ = _orchestrator(provider, RetryPolicy(backoff_base=0.5))

        result = orch.submit(_edit_request())

        assert result.error is not None
        assert result.error.kind is ErrorKind.RATE_LIMITED
        assert result.error.http_status == 429
        assert sleeps == [0.5, 1.0]

    def test_backoff_delay_doubles(self) -> None:
        policy = RetryPolicy(backoff_base=2.0)
        assert [policy.backoff_delay(n) for n in (1, 2, 3)] == [2.0, 4.0, 8.0]


class TestEmptyResult:
    def test_terminal_by_default(self) -> None:
        provider = ScriptedProvider(["empty", "ok"])
        orch, _, events = _orchestrator(provider)

        result = orch.submit(_edit_request())

        assert result.attempts == 1
        assert result.error is not None
        assert result.error.kind is ErrorKind.EMPTY_RESULT
        assert str(result.error) == "No image generated"
        assert result.texts == ["I cannot draw that"]
        assert "generation_empty_result" in events.names()

    def test_retried_when_enabled(self) -> None:
        provider = ScriptedProvider(["empty", "ok"])
        orch, sleeps, _ = _orchestrator(provider, RetryPolicy(retry_empty_result=True))

        result = orch.submit(_edit_request())

        assert result.ok
        assert result.attempts == 2
        assert sleeps == []


class TestBusy:
    def test_second_submit_while_in_flight_is_rejected(self) -> None:
        captured: list[BaseException] = []

        class ReentrantProvider(ScriptedProvider):
            orchestrator: GenerationOrchestrator

            def generate_content(self, request: GenerationRequest) -> list[dict[str, Any]]:
                assert self.orchestrator.busy
                try:
                    self.orchestrator.submit(request)
                except OrchestratorBusyError as e:
                    captured.append(e)
                return super().generate_content(request)

        provider = ReentrantProvider()
        orch, _, _ = _orchestrator(provider)
        provider.orchestrator = orch

        result = orch.submit(_edit_request())

        assert result.ok
        assert len(captured) == 1
        assert len(provider.requests) == 1
        assert not orch.busy

    def test_can_resubmit_after_failure(self) -> None:
        provider = ScriptedProvider([400])
        orch, _, _ = _orchestrator(provider)
        assert not orch.submit(_edit_request()).ok
        assert orch.submit(_edit_request()).ok


class TestDegradeRequest:
    def test_short_instruction_kept_whole(self) -> None:
        original = GenerationRequest(
            prompt="put the cat on the sofa",
            images=(noise_payload("a.png"), noise_payload("b.png")),
            mode=Mode.COMPOSE,
        )
        policy = RetryPolicy()

        second = degrade_request(original, original, 2, policy)
        third = degrade_request(original, second, 3, policy)

        assert second.prompt == "Edit this image based on the following request: put the cat on the sofa"
        assert third.prompt == "Modify this image: put the cat on the sofa"
        assert second.images == third.images == original.images[:1]

    def test_truncates_long_instruction(self) -> None:
        long_text = "word " * 200
        original = GenerationRequest(prompt=long_text * 2, images=(noise_payload(),), instruction=long_text)
        policy = RetryPolicy(simplify_chars=300, truncate_chars=100)

        second = degrade_request(original, original, 2, policy)
        third = degrade_request(original, second, 3, policy)

        assert len(second.prompt) <= len("Edit this image based on the following request: ") + 300
        assert len(third.prompt) <= len("Modify this image: ") + 100
        assert len(third.prompt) < len(second.prompt)


def test_extract_image_collects_text() -> None:
    parts = [{"text": "a"}, {"text": "b"}, RESULT_IMAGE.to_part(), {"text": "after"}]
    image, texts = extract_image(parts)
    assert image is not None and image.data == RESULT_IMAGE.data
    assert texts == ["a", "b"]


def test_extract_image_none() -> None:
    assert extract_image([{"text": "nothing"}]) == (None, ["nothing"])


def test_extract_image_skips_undecodable_data() -> None:
    parts = [{"inlineData": {"mimeType": "image/png", "data": "@@@not-base64"}}, RESULT_IMAGE.to_part()]
    image, _ = extract_image(parts)
    assert image is not None and image.data == RESULT_IMAGE.data
    assert extract_image(parts[:1]) == (None, [])


@pytest.mark.parametrize("status,kind", [(400, ErrorKind.BAD_REQUEST), (429, ErrorKind.RATE_LIMITED), (502, ErrorKind.UPSTREAM)])
def test_classified_failure_events(status: int, kind: ErrorKind) -> None:
    provider = ScriptedProvider([status] * 3)
    orch, _, events = _orchestrator(provider)
    orch.submit(_edit_request())
    failed = events.of("generation_failed")
    assert len(failed) == 1
    assert failed[0].fields["kind"] == kind.value
