"""
FastAPI layer exposing the batch generation pipeline.

Endpoints:
 - GET /health
 - POST /batches
 - GET /batches/{batch_id}
 - GET /batches/{batch_id}/jobs/{job_id}
 - GET /batches/{batch_id}/jobs/{job_id}/artifact
 - POST /batches/{batch_id}/cancel
 - DELETE /batches/{batch_id}
 - GET /batches/{batch_id}/archive
 - GET /history, DELETE /history/{artifact_id}, DELETE /history
"""

from __future__ import annotations

import base64
import binascii
import logging
import threading
from typing import Callable, Dict, List, Optional

from fastapi import Depends, FastAPI, HTTPException, Response
from PIL import Image
from pydantic import BaseModel, HttpUrl
import requests

from . import config
from .archive import build_zip
from .client import GeminiRestClient, GenerationClient
from .models import AspectRatio, GenerationConfig, JobKind, JobSpec, ModelTier, Resolution
from .orchestrator import BatchHandle, BatchPolicy, require_api_key, submit_batch
from .preprocessing import decode_image
from .prompts import PromptOptions, build_batch_specs
from .storage import PersistenceSink, get_history_store, serialize_artifact

settings = config.get_settings()
logging.basicConfig(level=getattr(logging, settings.log_level.upper(), logging.INFO))
logger = logging.getLogger(__name__)

app = FastAPI(title="Batch Media Generation Service", version="0.1.0")

DEFAULT_VIDEO_PROMPT = "Cinematic shot, subtle motion"

_BATCHES: Dict[str, BatchHandle] = {}
_BATCHES_LOCK = threading.Lock()


class SubmitBatchRequest(BaseModel):
    prompts: Optional[List[str]] = None
    text: Optional[str] = None  # one prompt per line
    kind: JobKind = JobKind.IMAGE
    mode: str = "BATCH"
    tier: ModelTier = ModelTier.STANDARD
    aspectRatio: AspectRatio = AspectRatio.PORTRAIT_3_4
    resolution: Resolution = Resolution.R1K
    lighting: Optional[str] = None
    backgroundType: str = "none"
    studioColor: Optional[str] = None
    backgroundValue: str = ""
    transparent: bool = False
    preserveBackground: bool = False
    styleStrength: int = 85
    maintainIdentity: bool = True
    referenceImageUrls: List[HttpUrl] = []
    referenceImages: List[str] = []  # base64 or data URLs
    maxAttempts: Optional[int] = None
    baseDelay: Optional[float] = None
    interJobCooldown: Optional[float] = None


class SubmitBatchResponse(BaseModel):
    batchId: str
    jobIds: List[str]


def get_client() -> GenerationClient:
    return GeminiRestClient(settings)


def get_sink() -> Optional[PersistenceSink]:
    try:
        return get_history_store(settings)
    except Exception as exc:  # noqa: BLE001
        logger.exception("History store unavailable: %s", exc)
        return None


def get_precondition() -> Optional[Callable[[List[JobSpec]], None]]:
    return require_api_key(settings)


def _download_image(url: str) -> bytes:
    resp = requests.get(url, timeout=(5, settings.request_timeout_seconds))
    resp.raise_for_status()
    return resp.content


def _decode_inline(value: str) -> Image.Image:
    raw = value.split(",", 1)[1] if value.startswith("data:") else value
    try:
        return decode_image(base64.b64decode(raw, validate=True))
    except (binascii.Error, ValueError) as exc:
        raise ValueError("Reference image is not valid base64 image data") from exc


def _load_references(body: SubmitBatchRequest) -> List[Image.Image]:
    images: List[Image.Image] = []
    for url in body.referenceImageUrls:
        try:
            images.append(decode_image(_download_image(str(url))))
        except Exception as exc:  # noqa: BLE001
            logger.exception("Failed to download reference image: %s", exc)
            raise HTTPException(status_code=400, detail="Could not download reference image") from exc
    for value in body.referenceImages:
        try:
            images.append(_decode_inline(value))
        except ValueError as ve:
            raise HTTPException(status_code=400, detail=str(ve)) from ve
    return images


def _prompt_lines(body: SubmitBatchRequest) -> List[str]:
    lines = list(body.prompts or [])
    if body.text:
        lines.extend(body.text.splitlines())
    return [line.strip() for line in lines if line and line.strip()]


def _build_specs(body: SubmitBatchRequest, references: List[Image.Image]) -> List[JobSpec]:
    lines = _prompt_lines(body)
    gen_config = GenerationConfig(tier=body.tier, aspect_ratio=body.aspectRatio, resolution=body.resolution)

    if body.kind == JobKind.VIDEO:
        if not references:
            raise ValueError("video batches need at least one source image")
        prompt = lines[0] if lines else DEFAULT_VIDEO_PROMPT
        return [
            JobSpec(prompt_text=prompt, target_image=img, kind=JobKind.VIDEO, mode="VIDEO", label=f"video_{i + 1}")
            for i, img in enumerate(references)
        ]

    if body.kind == JobKind.EDIT:
        if not references:
            raise ValueError("edit batches need a source image")
        return [
            JobSpec(prompt_text=line, target_image=references[0], kind=JobKind.EDIT, mode="EDIT", label=f"edit_{i + 1}")
            for i, line in enumerate(lines)
        ]

    options = PromptOptions(
        lighting=body.lighting,
        background_type=body.backgroundType,
        studio_color=body.studioColor,
        background_value=body.backgroundValue,
        transparent=body.transparent,
        preserve_background=body.preserveBackground,
        style_strength=body.styleStrength,
        maintain_identity=body.maintainIdentity,
    )
    return build_batch_specs(lines, gen_config, options, references, mode=body.mode.upper())


def _register_batch(handle: BatchHandle) -> None:
    """Track a new batch, evicting the oldest finished ones past the retention cap."""
    with _BATCHES_LOCK:
        _BATCHES[handle.batch_id] = handle
        excess = len(_BATCHES) - settings.max_retained_batches
        if excess <= 0:
            return
        finished = [batch_id for batch_id, h in _BATCHES.items() if h.done and h is not handle]
        evicted = finished[:excess]
        for batch_id in evicted:
            del _BATCHES[batch_id]
    if evicted:
        logger.info("Evicted %d finished batch(es)", len(evicted))


def _get_batch(batch_id: str) -> BatchHandle:
    with _BATCHES_LOCK:
        handle = _BATCHES.get(batch_id)
    if handle is None:
        raise HTTPException(status_code=404, detail="Unknown batch")
    return handle


@app.get("/health")
def health():
    return {"status": "ok"}


@app.post("/batches", response_model=SubmitBatchResponse)
def create_batch(
    body: SubmitBatchRequest,
    client: GenerationClient = Depends(get_client),
    sink: Optional[PersistenceSink] = Depends(get_sink),
    precondition=Depends(get_precondition),
):
    references = _load_references(body)
    try:
        specs = _build_specs(body, references)
        policy = BatchPolicy.from_settings(
            settings,
            max_attempts=body.maxAttempts,
            base_delay=body.baseDelay,
            inter_job_cooldown=body.interJobCooldown,
        )
    except ValueError as ve:
        raise HTTPException(status_code=400, detail=str(ve)) from ve
    if not specs:
        raise HTTPException(status_code=400, detail="No prompts supplied")

    handle = submit_batch(specs, client, policy=policy, sink=sink, precondition=precondition)
    _register_batch(handle)
    logger.info("Submitted batch %s with %d job(s)", handle.batch_id, len(specs))
    return SubmitBatchResponse(batchId=handle.batch_id, jobIds=handle.job_ids)


@app.get("/batches/{batch_id}")
def get_batch(batch_id: str):
    handle = _get_batch(batch_id)
    progress = handle.progress()
    return {
        "batchId": batch_id,
        "done": handle.done,
        "progress": {"completed": progress.completed, "total": progress.total},
        "jobs": [state.to_dict() for state in handle.states()],
    }


@app.get("/batches/{batch_id}/jobs/{job_id}")
def get_job(batch_id: str, job_id: str):
    handle = _get_batch(batch_id)
    try:
        return handle.status_of(job_id).to_dict()
    except KeyError as exc:
        raise HTTPException(status_code=404, detail="Unknown job") from exc


@app.get("/batches/{batch_id}/jobs/{job_id}/artifact")
def get_job_artifact(batch_id: str, job_id: str):
    handle = _get_batch(batch_id)
    try:
        state = handle.status_of(job_id)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail="Unknown job") from exc
    if state.result_artifact is None:
        raise HTTPException(status_code=404, detail=f"Job is {state.status.value}")
    payload, mime_type = serialize_artifact(state.result_artifact)
    return Response(content=payload, media_type=mime_type)


@app.post("/batches/{batch_id}/cancel")
def cancel_batch(batch_id: str):
    handle = _get_batch(batch_id)
    handle.cancel()
    return {"batchId": batch_id, "cancelled": True}


@app.get("/batches/{batch_id}/archive")
def download_archive(batch_id: str):
    handle = _get_batch(batch_id)
    try:
        content = build_zip(handle.states())
    except ValueError as ve:
        raise HTTPException(status_code=404, detail=str(ve)) from ve
    return Response(
        content=content,
        media_type="application/zip",
        headers={"Content-Disposition": f'attachment; filename="batch-{batch_id}.zip"'},
    )


def _require_sink(sink: Optional[PersistenceSink]) -> PersistenceSink:
    if sink is None:
        raise HTTPException(status_code=503, detail="History store unavailable")
    return sink


@app.get("/history")
def list_history(sink: Optional[PersistenceSink] = Depends(get_sink)):
    records = _require_sink(sink).list_all()
    return [record.metadata() for record in records]


@app.delete("/history/{artifact_id}")
def delete_history_item(artifact_id: str, sink: Optional[PersistenceSink] = Depends(get_sink)):
    _require_sink(sink).delete(artifact_id)
    return {"deleted": artifact_id}


@app.delete("/history")
def clear_history(sink: Optional[PersistenceSink] = Depends(get_sink)):
    _require_sink(sink).clear_all()
    return {"cleared": True}


@app.delete("/batches/{batch_id}")
def discard_batch(batch_id: str):
    handle = _get_batch(batch_id)
    if not handle.done:
        raise HTTPException(status_code=409, detail="Batch is still running; cancel it first")
    with _BATCHES_LOCK:
        _BATCHES.pop(batch_id, None)
    return {"discarded": batch_id}
