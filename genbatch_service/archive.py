"""Zip packaging of completed batch artifacts."""

from __future__ import annotations

from io import BytesIO
import re
from typing import Iterable
import zipfile

from .models import JobState, JobStatus, VideoArtifact
from .storage import serialize_artifact

ARCHIVE_FOLDER = "generated-images"
MAX_NAME_LENGTH = 50


def safe_filename(text: str, index: int, extension: str = "png") -> str:
    clean = re.sub(r"[^a-z0-9]", "_", text or "", flags=re.IGNORECASE)[:MAX_NAME_LENGTH]
    return f"{clean or f'image_{index + 1}'}.{extension}"


def build_zip(states: Iterable[JobState]) -> bytes:
    """
    Pack every completed artifact into `generated-images/`.

    Names come from the job label, falling back to the prompt. Raises
    ValueError when nothing has completed.
    """
    buf = BytesIO()
    count = 0
    used = set()
    with zipfile.ZipFile(buf, "w", compression=zipfile.ZIP_DEFLATED) as zf:
        for index, state in enumerate(states):
            if state.status != JobStatus.COMPLETED or state.result_artifact is None:
                continue
            payload, _ = serialize_artifact(state.result_artifact)
            extension = "mp4" if isinstance(state.result_artifact, VideoArtifact) else "png"
            name = safe_filename(state.label or state.prompt, index, extension)
            # zip members with the same name shadow each other on extraction
            stem, dot, ext = name.rpartition(".")
            suffix = 2
            while name in used:
                name = f"{stem}_{suffix}{dot}{ext}"
                suffix += 1
            used.add(name)
            zf.writestr(f"{ARCHIVE_FOLDER}/{name}", payload)
            count += 1

    if count == 0:
        raise ValueError("No completed images to download.")
    return buf.getvalue()
