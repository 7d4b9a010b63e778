from __future__ import annotations

import threading
from typing import List, Optional

import numpy as np
from PIL import Image
import pytest

from genbatch_service.client import GenerationClient
from genbatch_service.models import VideoArtifact


def solid(color=(10, 20, 30, 255), size=(4, 3)) -> Image.Image:
    return Image.new("RGBA", size, color)


class FakeClient(GenerationClient):
    """Replays a script of outcomes; an Exception entry is raised, anything else returned."""

    def __init__(self, outcomes: Optional[List] = None):
        self.outcomes = list(outcomes or [])
        self.calls = []
        # images exactly as handed to the client, one entry per call
        self.received = []
        self._counter = 0
        self._lock = threading.Lock()

    def _next(self, call):
        with self._lock:
            self.calls.append(call)
            self._counter += 1
            outcome = self.outcomes.pop(0) if self.outcomes else None
            counter = self._counter
        if isinstance(outcome, BaseException):
            raise outcome
        if outcome is None:
            # a distinct image per successful call
            return solid((counter % 256, 0, 0, 255))
        return outcome

    def generate_image(self, prompt, config, reference_images=(), target_image=None, timeout=None):
        self.received.append((tuple(reference_images), target_image))
        return self._next(("image", prompt, len(reference_images), target_image is not None, timeout))

    def edit_image(self, image, prompt, timeout=None):
        self.received.append(image)
        return self._next(("edit", prompt))

    def generate_video(self, source_image, prompt, timeout=None):
        self.received.append(source_image)
        result = self._next(("video", prompt))
        if isinstance(result, Image.Image):
            return VideoArtifact(data=b"mp4-bytes")
        return result


class RecordingSleep:
    def __init__(self):
        self.calls: List[float] = []

    def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)

    @property
    def total(self) -> float:
        return sum(self.calls)


@pytest.fixture
def fake_client():
    return FakeClient()


@pytest.fixture
def sleeper():
    return RecordingSleep()


@pytest.fixture
def rng():
    return np.random.default_rng(1234)
