"""
History persistence for completed artifacts.

The orchestrator treats a sink as fire-and-forget: `save` failures are
logged by the caller and never change a job's status.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
import json
import logging
from pathlib import Path
import threading
import time
from typing import Callable, Dict, List, Optional, Tuple
from urllib.parse import urljoin

import boto3
from botocore.client import Config as BotoConfig

from . import config
from .models import Artifact, VideoArtifact
from .preprocessing import encode_image

logger = logging.getLogger(__name__)

EXTENSIONS = {"image/png": "png", "image/jpeg": "jpg", "video/mp4": "mp4"}


@dataclass
class StoredArtifact:
    id: str
    prompt: str
    mime_type: str
    timestamp: float
    label: Optional[str] = None
    mode: str = "BATCH"
    kind: str = "image"
    payload: bytes = field(default=b"", repr=False)

    @property
    def extension(self) -> str:
        return EXTENSIONS.get(self.mime_type, "bin")

    def metadata(self) -> Dict:
        data = asdict(self)
        data.pop("payload")
        return data


def serialize_artifact(artifact: Artifact) -> Tuple[bytes, str]:
    """Return (payload, mime_type) for an image or video artifact."""
    if isinstance(artifact, VideoArtifact):
        return artifact.data, artifact.mime_type
    return encode_image(artifact, fmt="PNG"), "image/png"


def _build_record(artifact: Artifact, metadata: Dict, timestamp: float) -> StoredArtifact:
    payload, mime_type = serialize_artifact(artifact)
    return StoredArtifact(
        id=str(metadata["id"]),
        prompt=str(metadata.get("prompt", "")),
        label=metadata.get("label"),
        mode=str(metadata.get("mode", "BATCH")),
        kind=str(metadata.get("kind", "image")),
        mime_type=mime_type,
        timestamp=timestamp,
        payload=payload,
    )


class PersistenceSink(ABC):
    @abstractmethod
    def save(self, artifact: Artifact, metadata: Dict) -> None:
        ...

    @abstractmethod
    def list_all(self) -> List[StoredArtifact]:
        """Saved artifacts, newest first."""

    @abstractmethod
    def delete(self, artifact_id: str) -> None:
        ...

    @abstractmethod
    def clear_all(self) -> None:
        ...


class LocalHistoryStore(PersistenceSink):
    """Payload files plus an `index.json` in a single directory."""

    INDEX_NAME = "index.json"

    def __init__(self, root: Path, clock: Callable[[], float] = time.time):
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)
        self._clock = clock
        self._lock = threading.Lock()

    @property
    def index_path(self) -> Path:
        return self.root / self.INDEX_NAME

    def _read_index(self) -> List[Dict]:
        if not self.index_path.exists():
            return []
        content = self.index_path.read_text()
        return json.loads(content) if content.strip() else []

    def _write_index(self, entries: List[Dict]) -> None:
        tmp = self.index_path.with_suffix(".tmp")
        tmp.write_text(json.dumps(entries, indent=2))
        tmp.replace(self.index_path)

    def _payload_path(self, entry: Dict) -> Path:
        return self.root / f"{entry['id']}.{EXTENSIONS.get(entry['mime_type'], 'bin')}"

    def save(self, artifact: Artifact, metadata: Dict) -> None:
        record = _build_record(artifact, metadata, self._clock())
        with self._lock:
            entries = [e for e in self._read_index() if e["id"] != record.id]
            meta = record.metadata()
            self._payload_path(meta).write_bytes(record.payload)
            entries.append(meta)
            self._write_index(entries)
        logger.debug("history: saved %s (%d bytes)", record.id, len(record.payload))

    def list_all(self) -> List[StoredArtifact]:
        with self._lock:
            entries = self._read_index()
        records = []
        for entry in sorted(entries, key=lambda e: e["timestamp"], reverse=True):
            path = self._payload_path(entry)
            if not path.exists():
                logger.warning("history: payload missing for %s", entry["id"])
                continue
            records.append(StoredArtifact(payload=path.read_bytes(), **entry))
        return records

    def delete(self, artifact_id: str) -> None:
        with self._lock:
            entries = self._read_index()
            keep = []
            for entry in entries:
                if entry["id"] == artifact_id:
                    self._payload_path(entry).unlink(missing_ok=True)
                else:
                    keep.append(entry)
            self._write_index(keep)

    def clear_all(self) -> None:
        with self._lock:
            for entry in self._read_index():
                self._payload_path(entry).unlink(missing_ok=True)
            self._write_index([])


def _get_s3_client(settings: config.Settings):
    required = [
        settings.r2_endpoint,
        settings.r2_access_key_id,
        settings.r2_secret_access_key,
        settings.r2_bucket_name,
    ]
    if any(v is None for v in required):
        raise RuntimeError("R2 configuration is incomplete; check env vars.")
    session = boto3.session.Session()
    return session.client(
        service_name="s3",
        aws_access_key_id=settings.r2_access_key_id,
        aws_secret_access_key=settings.r2_secret_access_key,
        endpoint_url=settings.r2_endpoint,
        config=BotoConfig(signature_version="s3v4"),
    )


class R2HistoryStore(PersistenceSink):
    """S3-compatible bucket: `<prefix><id>.json` metadata next to the payload object."""

    def __init__(self, settings: Optional[config.Settings] = None, client=None, clock: Callable[[], float] = time.time):
        self.settings = settings or config.get_settings()
        self.client = client or _get_s3_client(self.settings)
        self.bucket = self.settings.r2_bucket_name
        self.prefix = self.settings.r2_prefix
        self._clock = clock

    def _meta_key(self, artifact_id: str) -> str:
        return f"{self.prefix}{artifact_id}.json"

    def _payload_key(self, artifact_id: str, mime_type: str) -> str:
        return f"{self.prefix}{artifact_id}.{EXTENSIONS.get(mime_type, 'bin')}"

    def _iter_keys(self):
        paginator = self.client.get_paginator("list_objects_v2")
        for page in paginator.paginate(Bucket=self.bucket, Prefix=self.prefix):
            for obj in page.get("Contents", []):
                yield obj["Key"]

    def _read_meta(self, key: str) -> Dict:
        body = self.client.get_object(Bucket=self.bucket, Key=key)["Body"].read()
        return json.loads(body)

    def save(self, artifact: Artifact, metadata: Dict) -> None:
        record = _build_record(artifact, metadata, self._clock())
        self.client.put_object(
            Bucket=self.bucket,
            Key=self._payload_key(record.id, record.mime_type),
            Body=record.payload,
            ContentType=record.mime_type,
        )
        self.client.put_object(
            Bucket=self.bucket,
            Key=self._meta_key(record.id),
            Body=json.dumps(record.metadata()).encode("utf-8"),
            ContentType="application/json",
        )

    def list_all(self) -> List[StoredArtifact]:
        metas = [self._read_meta(key) for key in self._iter_keys() if key.endswith(".json")]
        records = []
        for meta in sorted(metas, key=lambda m: m["timestamp"], reverse=True):
            key = self._payload_key(meta["id"], meta["mime_type"])
            payload = self.client.get_object(Bucket=self.bucket, Key=key)["Body"].read()
            records.append(StoredArtifact(payload=payload, **meta))
        return records

    def delete(self, artifact_id: str) -> None:
        meta_key = self._meta_key(artifact_id)
        try:
            meta = self._read_meta(meta_key)
        except self.client.exceptions.NoSuchKey:
            return
        self.client.delete_object(Bucket=self.bucket, Key=self._payload_key(artifact_id, meta["mime_type"]))
        self.client.delete_object(Bucket=self.bucket, Key=meta_key)

    def clear_all(self) -> None:
        keys = list(self._iter_keys())
        for start in range(0, len(keys), 1000):
            chunk = keys[start : start + 1000]
            self.client.delete_objects(
                Bucket=self.bucket, Delete={"Objects": [{"Key": k} for k in chunk], "Quiet": True}
            )

    def public_url(self, artifact_id: str, mime_type: str = "image/png") -> str:
        key = self._payload_key(artifact_id, mime_type)
        if self.settings.r2_public_base_url:
            return urljoin(self.settings.r2_public_base_url.rstrip("/") + "/", key)
        return self.client.generate_presigned_url(
            "get_object",
            Params={"Bucket": self.bucket, "Key": key},
            ExpiresIn=3600,
        )


def get_history_store(settings: Optional[config.Settings] = None) -> PersistenceSink:
    settings = settings or config.get_settings()
    if settings.history_backend == "r2":
        return R2HistoryStore(settings)
    return LocalHistoryStore(settings.history_dir)
