import base64
from io import BytesIO

from PIL import Image
import pytest
import requests

from conftest import solid
from genbatch_service.client import GeminiRestClient
from genbatch_service.config import Settings
from genbatch_service.errors import (
    AuthorizationRequired,
    ContentPolicyBlock,
    MalformedResponse,
    TransientServiceError,
)
from genbatch_service.models import GenerationConfig, JobSpec
from genbatch_service.pipeline import prepare_inputs
from genbatch_service.preprocessing import encode_image


class StubResponse:
    def __init__(self, status_code=200, payload=None, content=b"", headers=None):
        self.status_code = status_code
        self._payload = payload
        self.content = content
        self.headers = headers or {}
        self.text = str(payload)

    @property
    def ok(self):
        return self.status_code < 400

    def json(self):
        if self._payload is None:
            raise ValueError("no json")
        return self._payload


class StubSession:
    def __init__(self, posts=(), gets=()):
        self.posts = list(posts)
        self.gets = list(gets)
        self.post_calls = []
        self.get_calls = []

    def post(self, url, json=None, headers=None, timeout=None):
        self.post_calls.append({"url": url, "json": json, "headers": headers, "timeout": timeout})
        outcome = self.posts.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    def get(self, url, headers=None, timeout=None):
        self.get_calls.append(url)
        return self.gets.pop(0)


def image_payload(finish_reason="STOP"):
    data = base64.b64encode(encode_image(solid((1, 2, 3, 255)), fmt="PNG")).decode()
    return {
        "candidates": [
            {"finishReason": finish_reason, "content": {"parts": [{"text": "ok"}, {"inlineData": {"mimeType": "image/png", "data": data}}]}}
        ]
    }


def make_client(session, **overrides):
    values = dict(gemini_api_key="k", video_poll_interval_seconds=0, video_max_wait_seconds=10)
    values.update(overrides)
    return GeminiRestClient(Settings(**values), session=session, sleep=lambda s: None)


def test_generate_image_builds_request_and_decodes():
    session = StubSession(posts=[StubResponse(payload=image_payload())])
    client = make_client(session)
    config = GenerationConfig(tier="pro", aspect_ratio="16:9", resolution="2K")

    image = client.generate_image("a cat", config, [solid()], target_image=solid(), timeout=9)

    assert image.getpixel((0, 0)) == (1, 2, 3, 255)
    call = session.post_calls[0]
    assert call["url"].endswith("models/gemini-3-pro-image-preview:generateContent")
    assert call["headers"]["x-goog-api-key"] == "k"
    assert call["timeout"] == 9
    parts = call["json"]["contents"][0]["parts"]
    assert len(parts) == 3
    assert "[SCENE DESCRIPTION]: a cat" in parts[-1]["text"]
    assert call["json"]["generationConfig"]["imageConfig"] == {"aspectRatio": "16:9", "imageSize": "2K"}


def test_standard_tier_sends_no_image_size():
    session = StubSession(posts=[StubResponse(payload=image_payload())])
    make_client(session).generate_image("x", GenerationConfig(), [])
    call = session.post_calls[0]
    assert "imageSize" not in call["json"]["generationConfig"]["imageConfig"]
    assert call["json"]["contents"][0]["parts"] == [{"text": "x"}]


@pytest.mark.parametrize(
    "response,error",
    [
        (StubResponse(payload=image_payload("SAFETY")), ContentPolicyBlock),
        (StubResponse(payload={"promptFeedback": {"blockReason": "OTHER"}}), ContentPolicyBlock),
        (StubResponse(payload=image_payload("MAX_TOKENS")), MalformedResponse),
        (StubResponse(payload={"candidates": [{"finishReason": "STOP", "content": {"parts": []}}]}), MalformedResponse),
        (StubResponse(status_code=429, payload={"error": {"message": "quota"}}), TransientServiceError),
        (StubResponse(status_code=503, payload={"error": {"message": "overloaded"}}), TransientServiceError),
        (StubResponse(status_code=403, payload={"error": {"message": "denied"}}), AuthorizationRequired),
        (
            StubResponse(status_code=404, payload={"error": {"message": "Requested entity was not found."}}),
            AuthorizationRequired,
        ),
        (requests.Timeout("slow"), TransientServiceError),
        (requests.ConnectionError("reset"), TransientServiceError),
    ],
)
def test_failure_mapping(response, error):
    session = StubSession(posts=[response])
    with pytest.raises(error):
        make_client(session).generate_image("x", GenerationConfig(), [])


def test_missing_key_fails_before_network():
    session = StubSession()
    with pytest.raises(AuthorizationRequired):
        make_client(session, gemini_api_key=None).generate_image("x", GenerationConfig(), [])
    assert session.post_calls == []


def test_video_polls_until_done_and_downloads():
    done = {
        "name": "operations/1",
        "done": True,
        "response": {"generateVideoResponse": {"generatedSamples": [{"video": {"uri": "https://files/v1"}}]}},
    }
    session = StubSession(
        posts=[StubResponse(payload={"name": "operations/1"})],
        gets=[
            StubResponse(payload={"name": "operations/1", "done": False}),
            StubResponse(payload=done),
            StubResponse(content=b"mp4", headers={"Content-Type": "video/mp4"}),
        ],
    )
    video = make_client(session).generate_video(solid(), "pan")
    assert video.data == b"mp4"
    assert video.source_uri == "https://files/v1"
    assert session.get_calls[-1] == "https://files/v1"
    assert len(session.get_calls) == 3


def test_video_poll_is_capped():
    ticks = iter(range(0, 1000, 5))
    session = StubSession(
        posts=[StubResponse(payload={"name": "operations/2"})],
        gets=[StubResponse(payload={"name": "operations/2", "done": False})] * 10,
    )
    client = GeminiRestClient(
        Settings(gemini_api_key="k", video_poll_interval_seconds=5, video_max_wait_seconds=20),
        session=session,
        sleep=lambda s: None,
        clock=lambda: next(ticks),
    )
    with pytest.raises(TransientServiceError):
        client.generate_video(solid(), "pan")


def test_video_billing_error_is_authorization():
    session = StubSession(
        posts=[
            StubResponse(
                payload={"name": "operations/3", "done": True, "error": {"message": "Requested entity was not found."}}
            )
        ]
    )
    with pytest.raises(AuthorizationRequired):
        make_client(session).generate_video(solid(), "pan")


def test_prepared_reference_uploads_its_jpeg_bytes(rng):
    noise = Image.fromarray(rng.integers(0, 256, (1200, 1200, 3), dtype="uint8"), "RGB")
    inputs = prepare_inputs(JobSpec(prompt_text="hero", reference_images=[noise]))
    session = StubSession(posts=[StubResponse(payload=image_payload())])

    make_client(session).generate_image("hero", GenerationConfig(), inputs.reference_images)

    inline = session.post_calls[0]["json"]["contents"][0]["parts"][0]["inlineData"]
    raw = base64.b64decode(inline["data"])
    assert inline["mimeType"] == "image/jpeg"
    assert raw == inputs.reference_images[0].data
    assert Image.open(BytesIO(raw)).size == (800, 800)
    assert len(raw) < len(encode_image(inputs.reference_images[0].image, fmt="PNG"))


def test_plain_image_uploads_as_png():
    session = StubSession(posts=[StubResponse(payload=image_payload())])
    make_client(session).edit_image(solid(), "brighter")
    inline = session.post_calls[0]["json"]["contents"][0]["parts"][0]["inlineData"]
    assert inline["mimeType"] == "image/png"
