"""
Generation client contract and the REST adapter used in production.

The orchestrator only depends on `GenerationClient`; provider details live
in `GeminiRestClient` and are mapped onto the failure taxonomy here.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
import base64
import logging
import time
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from PIL import Image
import requests

from . import config
from .errors import (
    AuthorizationRequired,
    ContentPolicyBlock,
    MalformedResponse,
    TransientServiceError,
)
from .models import GenerationConfig, ModelTier, VideoArtifact
from .preprocessing import EncodedImage, ImageInput, decode_image, encode_image
from .prompts import build_professional_prompt

logger = logging.getLogger(__name__)

POLICY_FINISH_REASONS = {"SAFETY", "PROHIBITED_CONTENT", "BLOCKLIST", "SPII", "IMAGE_SAFETY"}
TRANSIENT_STATUS_CODES = {408, 429, 500, 502, 503, 504}
BILLING_NOT_FOUND = "Requested entity was not found"


class GenerationClient(ABC):
    """One request in, one artifact out, or a GenerationError."""

    @abstractmethod
    def generate_image(
        self,
        prompt: str,
        config: GenerationConfig,
        reference_images: Sequence[ImageInput] = (),
        target_image: Optional[ImageInput] = None,
        timeout: Optional[float] = None,
    ) -> Image.Image:
        ...

    @abstractmethod
    def edit_image(self, image: ImageInput, prompt: str, timeout: Optional[float] = None) -> Image.Image:
        ...

    @abstractmethod
    def generate_video(
        self, source_image: ImageInput, prompt: str, timeout: Optional[float] = None
    ) -> VideoArtifact:
        ...


def _image_payload(image: ImageInput) -> Tuple[str, str]:
    """(mime type, base64 data); pre-encoded references keep their compressed bytes."""
    if isinstance(image, EncodedImage):
        return image.mime_type, base64.b64encode(image.data).decode("ascii")
    return "image/png", base64.b64encode(encode_image(image, fmt="PNG")).decode("ascii")


def _inline_part(image: ImageInput) -> Dict[str, Any]:
    mime_type, data = _image_payload(image)
    return {"inlineData": {"mimeType": mime_type, "data": data}}


def _error_message(resp: requests.Response) -> str:
    try:
        return str(resp.json().get("error", {}).get("message") or resp.text)
    except ValueError:
        return resp.text


def _raise_for_status(resp: requests.Response) -> None:
    if resp.ok:
        return
    message = _error_message(resp)
    status = resp.status_code
    if status in (401, 403):
        raise AuthorizationRequired(f"HTTP {status}: {message}")
    if status == 404 and BILLING_NOT_FOUND in message:
        raise AuthorizationRequired(message)
    if status in TRANSIENT_STATUS_CODES:
        raise TransientServiceError(f"HTTP {status}: {message}")
    raise MalformedResponse(f"HTTP {status}: {message}")


def _extract_image(payload: Dict[str, Any]) -> Image.Image:
    feedback = payload.get("promptFeedback") or {}
    if feedback.get("blockReason"):
        raise ContentPolicyBlock(f"Prompt blocked: {feedback['blockReason']}")

    candidates = payload.get("candidates") or []
    candidate = candidates[0] if candidates else {}
    finish_reason = candidate.get("finishReason")
    if finish_reason in POLICY_FINISH_REASONS:
        raise ContentPolicyBlock("Safety Block: Content may violate safety guidelines.")
    if finish_reason and finish_reason != "STOP":
        raise MalformedResponse(f"Generation Stopped: {finish_reason}")

    for part in (candidate.get("content") or {}).get("parts") or []:
        inline = part.get("inlineData") or part.get("inline_data")
        if inline and inline.get("data"):
            try:
                return decode_image(base64.b64decode(inline["data"]))
            except (ValueError, TypeError) as exc:
                raise MalformedResponse("Response image could not be decoded") from exc
    raise MalformedResponse("Empty response from AI engine.")


class GeminiRestClient(GenerationClient):
    """`requests`-based adapter for the Gemini image and Veo video endpoints."""

    def __init__(
        self,
        settings: Optional[config.Settings] = None,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.settings = settings or config.get_settings()
        self.session = session or requests.Session()
        self._sleep = sleep
        self._clock = clock

    def _headers(self) -> Dict[str, str]:
        if not self.settings.gemini_api_key:
            raise AuthorizationRequired("No API key selected; set GEMINI_API_KEY.")
        return {"x-goog-api-key": self.settings.gemini_api_key, "Content-Type": "application/json"}

    def _url(self, path: str) -> str:
        return f"{self.settings.gemini_base_url.rstrip('/')}/{path.lstrip('/')}"

    def _timeout(self, timeout: Optional[float]) -> float:
        return timeout if timeout is not None else self.settings.request_timeout_seconds

    def _post(self, path: str, body: Dict[str, Any], timeout: Optional[float]) -> Dict[str, Any]:
        headers = self._headers()
        try:
            resp = self.session.post(self._url(path), json=body, headers=headers, timeout=self._timeout(timeout))
        except (requests.Timeout, requests.ConnectionError) as exc:
            raise TransientServiceError(f"{type(exc).__name__}: {exc}") from exc
        _raise_for_status(resp)
        try:
            return resp.json()
        except ValueError as exc:
            raise MalformedResponse("Response was not JSON") from exc

    def _get(self, url: str, timeout: Optional[float]) -> requests.Response:
        headers = self._headers()
        try:
            resp = self.session.get(url, headers=headers, timeout=self._timeout(timeout))
        except (requests.Timeout, requests.ConnectionError) as exc:
            raise TransientServiceError(f"{type(exc).__name__}: {exc}") from exc
        _raise_for_status(resp)
        return resp

    def _model_for(self, tier: ModelTier) -> str:
        return self.settings.image_model_pro if tier == ModelTier.PRO else self.settings.image_model_standard

    def generate_image(
        self,
        prompt: str,
        config: GenerationConfig,
        reference_images: Sequence[ImageInput] = (),
        target_image: Optional[ImageInput] = None,
        timeout: Optional[float] = None,
    ) -> Image.Image:
        parts: List[Dict[str, Any]] = [_inline_part(img) for img in reference_images]
        if target_image is not None:
            parts.append(_inline_part(target_image))
        parts.append({"text": build_professional_prompt(prompt, config.tier, bool(reference_images))})

        image_config: Dict[str, Any] = {"aspectRatio": config.aspect_ratio.value}
        if config.tier == ModelTier.PRO:
            image_config["imageSize"] = config.resolution.value

        model = self._model_for(config.tier)
        logger.debug("generate_image model=%s refs=%d target=%s", model, len(reference_images), target_image is not None)
        payload = self._post(
            f"models/{model}:generateContent",
            {"contents": [{"parts": parts}], "generationConfig": {"imageConfig": image_config}},
            timeout,
        )
        return _extract_image(payload)

    def edit_image(self, image: ImageInput, prompt: str, timeout: Optional[float] = None) -> Image.Image:
        payload = self._post(
            f"models/{self.settings.image_model_standard}:generateContent",
            {"contents": [{"parts": [_inline_part(image), {"text": prompt}]}]},
            timeout,
        )
        return _extract_image(payload)

    def generate_video(
        self, source_image: ImageInput, prompt: str, timeout: Optional[float] = None
    ) -> VideoArtifact:
        mime_type, image_b64 = _image_payload(source_image)
        operation = self._post(
            f"models/{self.settings.video_model}:predictLongRunning",
            {
                "instances": [
                    {"prompt": prompt, "image": {"bytesBase64Encoded": image_b64, "mimeType": mime_type}}
                ],
                "parameters": {"sampleCount": 1, "resolution": "720p", "aspectRatio": "16:9"},
            },
            timeout,
        )
        operation = self._poll_operation(operation, timeout)
        uri = self._video_uri(operation)
        resp = self._get(uri, timeout)
        return VideoArtifact(data=resp.content, mime_type=resp.headers.get("Content-Type", "video/mp4"), source_uri=uri)

    def _poll_operation(self, operation: Dict[str, Any], timeout: Optional[float]) -> Dict[str, Any]:
        name = operation.get("name")
        if not name:
            raise MalformedResponse("Video operation has no name")
        deadline = self._clock() + self.settings.video_max_wait_seconds
        while not operation.get("done"):
            if self._clock() >= deadline:
                raise TransientServiceError(
                    f"Video operation {name} not done after {self.settings.video_max_wait_seconds:.0f}s"
                )
            self._sleep(self.settings.video_poll_interval_seconds)
            try:
                operation = self._get(self._url(name), timeout).json()
            except ValueError as exc:
                raise MalformedResponse("Operation status was not JSON") from exc
        return operation

    @staticmethod
    def _video_uri(operation: Dict[str, Any]) -> str:
        error = operation.get("error")
        if error:
            message = str(error.get("message") or "Video Generation failed.")
            if BILLING_NOT_FOUND in message:
                raise AuthorizationRequired(message)
            raise TransientServiceError(message)
        response = (operation.get("response") or {}).get("generateVideoResponse") or {}
        if response.get("raiMediaFilteredReasons"):
            raise ContentPolicyBlock("; ".join(response["raiMediaFilteredReasons"]))
        samples = response.get("generatedSamples") or []
        uri = ((samples[0] if samples else {}).get("video") or {}).get("uri")
        if not uri:
            raise MalformedResponse("Video operation finished without a video")
        return uri


