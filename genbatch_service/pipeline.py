"""
Single-job generation pipeline.

`execute_job` is one attempt as seen by the orchestrator:
inputs -> GenerationClient -> optional background removal -> artifact.
Retries, pacing and status bookkeeping live in `orchestrator`.
"""

from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Optional, Tuple

from PIL import Image

from .client import GenerationClient
from .errors import MalformedResponse
from .models import Artifact, JobKind, JobSpec
from .postprocessing import DEFAULT_TOLERANCE, remove_background_by_luminance
from .preprocessing import REFERENCE_PRESETS, ImageInput, prepare_reference

logger = logging.getLogger(__name__)


@dataclass
class PreparedInputs:
    reference_images: Tuple[ImageInput, ...]
    target_image: Optional[ImageInput]


def prepare_inputs(spec: JobSpec, preprocess: bool = True) -> PreparedInputs:
    """
    Shrink/re-encode reference and target images with the job mode's preset.

    Edit and video sources, and modes without a preset, go out untouched.
    """
    mode = spec.mode.upper()
    if not preprocess or spec.kind in (JobKind.EDIT, JobKind.VIDEO) or mode not in REFERENCE_PRESETS:
        return PreparedInputs(spec.reference_images, spec.target_image)

    cache = {}

    def _prepare(img: Image.Image) -> ImageInput:
        # the scene-lock target is usually the first reference; encode it once
        key = id(img)
        if key not in cache:
            cache[key] = prepare_reference(img, mode)
        return cache[key]

    references = tuple(_prepare(img) for img in spec.reference_images)
    target = _prepare(spec.target_image) if spec.target_image is not None else None
    return PreparedInputs(references, target)


def execute_job(
    spec: JobSpec,
    client: GenerationClient,
    inputs: Optional[PreparedInputs] = None,
    timeout: Optional[float] = None,
    tolerance: float = DEFAULT_TOLERANCE,
) -> Artifact:
    """
    Run one attempt for `spec`.

    Raises:
        GenerationError (or anything the client raises): left for the
        orchestrator to classify.
    """
    inputs = inputs or PreparedInputs(spec.reference_images, spec.target_image)

    if spec.kind == JobKind.VIDEO:
        source = inputs.target_image or (inputs.reference_images[0] if inputs.reference_images else None)
        return client.generate_video(source, spec.prompt_text, timeout=timeout)

    if spec.kind == JobKind.EDIT:
        source = inputs.target_image or inputs.reference_images[0]
        image = client.edit_image(source, spec.prompt_text, timeout=timeout)
    else:
        image = client.generate_image(
            spec.prompt_text,
            spec.config,
            inputs.reference_images,
            inputs.target_image,
            timeout=timeout,
        )

    if image is None:
        raise MalformedResponse("Client returned no image")
    if spec.remove_background:
        logger.debug("job %s: removing background (tolerance=%.1f)", spec.id, tolerance)
        image = remove_background_by_luminance(image, tolerance)
    return image
