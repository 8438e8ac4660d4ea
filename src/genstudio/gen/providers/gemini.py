from __future__ import annotations

import base64
import logging
import os
from typing import TYPE_CHECKING, Any, Optional

import httpx

from ..errors import ProviderError
from ..provider import GenerativeProvider
from ..types import DownloadedAsset, GenerationRequest, ImagePayload, JobStatus, VideoRequest

if TYPE_CHECKING:
    from ..config import GeminiProviderConfig

logger = logging.getLogger(__name__)

DEFAULT_GENERATION_CONFIG = {
    "temperature": 0.4,
    "topK": 32,
    "topP": 1,
    "maxOutputTokens": 8192,
}


def _error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text or f"HTTP {response.status_code}"
    error_obj = payload.get("error") if isinstance(payload, dict) else None
    if isinstance(error_obj, dict) and error_obj.get("message"):
        return str(error_obj["message"])
    if isinstance(error_obj, str):
        return error_obj
    return f"HTTP {response.status_code}"


def _object(value: Any, what: str) -> dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ValueError(f"{what} is not a JSON object")
    return value


def parse_operation(payload: Any) -> JobStatus:
    """Read a long-running operation, accepting both REST and SDK response shapes.

    Raises:
        ValueError: the payload does not have the shape of an operation.
    """
    if not isinstance(payload, dict):
        raise ValueError("operation is not a JSON object")
    if not payload.get("done"):
        return JobStatus(done=False)

    error = payload.get("error")
    if error:
        message = error.get("message") if isinstance(error, dict) else str(error)
        return JobStatus(done=True, error=message or "Video generation failed")

    response = _object(payload.get("response"), "response")
    samples = (
        _object(response.get("generateVideoResponse"), "generateVideoResponse").get("generatedSamples")
        or response.get("generatedVideos")
        or []
    )
    if not isinstance(samples, list):
        raise ValueError("generated videos are not a list")
    uri = None
    if samples:
        video = _object(_object(samples[0], "generated video").get("video"), "video")
        uri = video.get("uri")
        if uri is not None and not isinstance(uri, str):
            raise ValueError("video uri is not a string")
    return JobStatus(done=True, uri=uri)


class GeminiProvider(GenerativeProvider):
    """Google Generative Language REST API (Gemini image, Imagen, Veo)."""

    def __init__(
        self,
        config: "GeminiProviderConfig",
        api_key: Optional[str] = None,
        client: Optional[httpx.Client] = None,
    ):
        self._config = config
        key = api_key if api_key is not None else os.getenv(config.api_key_env)
        if not key:
            raise ProviderError(f"{config.api_key_env} environment variable is not set.")
        self._client = client or httpx.Client(
            base_url=config.base_url,
            timeout=config.timeout_sec,
            headers={"x-goog-api-key": key},
        )
        if client is not None:
            self._client.headers["x-goog-api-key"] = key

    @property
    def provider_id(self) -> str:
        return "gemini"

    @property
    def config(self) -> "GeminiProviderConfig":
        return self._config

    def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        try:
            response = self._client.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            logger.warning("Transport error calling %s: %s", url, e)
            raise ProviderError(f"Network error: {e}") from e
        if response.status_code >= 400:
            raise ProviderError(_error_message(response), status_code=response.status_code)
        return response

    def _post_json(self, url: str, body: dict[str, Any]) -> dict[str, Any]:
        response = self._request("POST", url, json=body)
        try:
            payload = response.json()
        except ValueError as e:
            raise ProviderError(f"Invalid JSON from provider: {e}", status_code=response.status_code) from e
        if not isinstance(payload, dict):
            raise ProviderError("Provider response is not a JSON object", status_code=response.status_code)
        return payload

    def generate_content(self, request: GenerationRequest) -> list[dict[str, Any]]:
        model = request.model or self._config.image_model
        body = {
            "contents": [{"parts": request.parts()}],
            "generationConfig": request.generation_config or DEFAULT_GENERATION_CONFIG,
        }
        payload = self._post_json(f"models/{model}:generateContent", body)
        candidates = payload.get("candidates") or []
        if not candidates:
            return []
        return ((candidates[0].get("content") or {}).get("parts")) or []

    def generate_images(self, prompt: str, model: Optional[str] = None) -> Optional[ImagePayload]:
        model = model or self._config.imagen_model
        body = {"instances": [{"prompt": prompt}], "parameters": {"sampleCount": 1}}
        payload = self._post_json(f"models/{model}:predict", body)
        for prediction in payload.get("predictions") or []:
            data = prediction.get("bytesBase64Encoded")
            if data:
                return ImagePayload(
                    base64.b64decode(data),
                    prediction.get("mimeType") or "image/png",
                    name="imagen",
                )
        return None

    def start_video(self, request: VideoRequest) -> str:
        model = request.model or self._config.video_model
        instance: dict[str, Any] = {"prompt": request.prompt}
        if request.image is not None:
            instance["image"] = {
                "bytesBase64Encoded": request.image.to_base64(),
                "mimeType": request.image.mime_type,
            }
        parameters: dict[str, Any] = {}
        if request.aspect_ratio:
            parameters["aspectRatio"] = request.aspect_ratio
        if request.negative_prompt:
            parameters["negativePrompt"] = request.negative_prompt

        payload = self._post_json(
            f"models/{model}:predictLongRunning",
            {"instances": [instance], "parameters": parameters},
        )
        name = payload.get("name")
        if not name:
            raise ProviderError("Provider returned no operation name", status_code=200)
        return name

    def get_operation(self, name: str) -> JobStatus:
        response = self._request("GET", name)
        try:
            return parse_operation(response.json())
        except ValueError as e:
            raise ProviderError(f"Invalid operation payload: {e}", status_code=response.status_code) from e

    def download(self, uri: str) -> DownloadedAsset:
        response = self._request("GET", uri, follow_redirects=True)
        mime = response.headers.get("content-type", "video/mp4").split(";")[0].strip()
        return DownloadedAsset(response.content, mime or "video/mp4")

    def close(self) -> None:
        self._client.close()
