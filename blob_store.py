"""
Blob store adapters for raw uploads, derived artifacts and snapshots.
"""
import logging
import os
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, Optional, Tuple

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from config import APIConfig
from errors import NotFound, StoreUnavailable

logger = logging.getLogger(__name__)


def normalize_key(key: str) -> str:
    candidate = key.replace("\\", "/").strip("/")
    if not candidate:
        raise ValueError("Blob key cannot be empty.")
    for segment in candidate.split("/"):
        if segment in {"", ".", ".."}:
            raise ValueError(f"Invalid key segment '{segment}'.")
    return candidate


class BlobStore(ABC):
    """Key-addressed binary storage returning durable URLs."""

    @abstractmethod
    def put(self, key: str, data: bytes, content_type: str = "application/octet-stream") -> str:
        """Store bytes under key and return the public URL."""

    @abstractmethod
    def get(self, key: str) -> bytes:
        """Return the bytes stored under key, raising NotFound if absent."""

    @abstractmethod
    def delete(self, key: str) -> None:
        """Remove key, raising NotFound if absent."""

    @abstractmethod
    def url_for(self, key: str) -> str:
        pass

    def exists(self, key: str) -> bool:
        try:
            self.get(key)
        except NotFound:
            return False
        return True


class InMemoryBlobStore(BlobStore):
    """Process-local blob store, used for tests and single-worker deployments."""

    def __init__(self, public_url: str = "memory://blobs"):
        self.public_url = public_url.rstrip("/")
        self._objects: Dict[str, Tuple[bytes, str]] = {}
        self._lock = threading.Lock()

    def put(self, key: str, data: bytes, content_type: str = "application/octet-stream") -> str:
        key = normalize_key(key)
        with self._lock:
            self._objects[key] = (bytes(data), content_type)
        return self.url_for(key)

    def get(self, key: str) -> bytes:
        key = normalize_key(key)
        with self._lock:
            if key not in self._objects:
                raise NotFound(f"Blob '{key}' not found")
            return self._objects[key][0]

    def delete(self, key: str) -> None:
        key = normalize_key(key)
        with self._lock:
            if self._objects.pop(key, None) is None:
                raise NotFound(f"Blob '{key}' not found")

    def url_for(self, key: str) -> str:
        return f"{self.public_url}/{normalize_key(key)}"

    def content_type(self, key: str) -> Optional[str]:
        with self._lock:
            entry = self._objects.get(normalize_key(key))
        return entry[1] if entry else None

    def __len__(self) -> int:
        with self._lock:
            return len(self._objects)


class LocalBlobStore(BlobStore):
    """Blob store backed by a directory that is served under a public URL prefix."""

    def __init__(self, base_dir: str, public_url: str = "/uploads"):
        self.base_dir = Path(base_dir)
        self.public_url = public_url.rstrip("/")
        self.base_dir.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        return self.base_dir / normalize_key(key)

    def put(self, key: str, data: bytes, content_type: str = "application/octet-stream") -> str:
        path = self._path(key)
        tmp_path = path.with_name(f".{path.name}.tmp")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path.write_bytes(data)
            # Readers never see a half-written file
            os.replace(tmp_path, path)
        except OSError as e:
            raise StoreUnavailable(f"Could not write blob '{key}': {e}") from e
        return self.url_for(key)

    def get(self, key: str) -> bytes:
        path = self._path(key)
        try:
            return path.read_bytes()
        except FileNotFoundError:
            raise NotFound(f"Blob '{key}' not found")
        except OSError as e:
            raise StoreUnavailable(f"Could not read blob '{key}': {e}") from e

    def delete(self, key: str) -> None:
        path = self._path(key)
        try:
            path.unlink()
        except FileNotFoundError:
            raise NotFound(f"Blob '{key}' not found")
        except OSError as e:
            raise StoreUnavailable(f"Could not delete blob '{key}': {e}") from e

    def url_for(self, key: str) -> str:
        return f"{self.public_url}/{normalize_key(key)}"


class S3BlobStore(BlobStore):
    """Blob store backed by an S3-compatible bucket (AWS, MinIO, Spaces)."""

    def __init__(self, bucket: str, client=None, endpoint_url: str = "", region: str = "us-east-1",
                 public_url: str = ""):
        self.bucket = bucket
        self.endpoint_url = endpoint_url or None
        if client is None:
            session = boto3.session.Session()
            client = session.client(
                "s3",
                endpoint_url=self.endpoint_url,
                config=Config(region_name=region, retries={"max_attempts": 3, "mode": "standard"}),
            )
        self.client = client
        if public_url:
            self.public_url = public_url.rstrip("/")
        elif self.endpoint_url:
            self.public_url = f"{self.endpoint_url.rstrip('/')}/{bucket}"
        else:
            self.public_url = f"https://{bucket}.s3.{region}.amazonaws.com"

    @staticmethod
    def _is_missing(error: ClientError) -> bool:
        code = error.response.get("Error", {}).get("Code", "")
        return code in {"404", "NoSuchKey", "NotFound"}

    def put(self, key: str, data: bytes, content_type: str = "application/octet-stream") -> str:
        key = normalize_key(key)
        try:
            self.client.put_object(Bucket=self.bucket, Key=key, Body=data, ContentType=content_type)
        except (BotoCoreError, ClientError) as e:
            raise StoreUnavailable(f"Could not write blob '{key}': {e}") from e
        return self.url_for(key)

    def get(self, key: str) -> bytes:
        key = normalize_key(key)
        try:
            response = self.client.get_object(Bucket=self.bucket, Key=key)
            return response["Body"].read()
        except ClientError as e:
            if self._is_missing(e):
                raise NotFound(f"Blob '{key}' not found")
            raise StoreUnavailable(f"Could not read blob '{key}': {e}") from e
        except BotoCoreError as e:
            raise StoreUnavailable(f"Could not read blob '{key}': {e}") from e

    def delete(self, key: str) -> None:
        # delete_object succeeds on missing keys, so check first
        key = normalize_key(key)
        try:
            self.client.head_object(Bucket=self.bucket, Key=key)
            self.client.delete_object(Bucket=self.bucket, Key=key)
        except ClientError as e:
            if self._is_missing(e):
                raise NotFound(f"Blob '{key}' not found")
            raise StoreUnavailable(f"Could not delete blob '{key}': {e}") from e
        except BotoCoreError as e:
            raise StoreUnavailable(f"Could not delete blob '{key}': {e}") from e

    def url_for(self, key: str) -> str:
        return f"{self.public_url}/{normalize_key(key)}"


def create_blob_store(cfg: APIConfig) -> BlobStore:
    """Build the blob store selected by BLOB_BACKEND."""
    if cfg.blob_backend == "memory":
        return InMemoryBlobStore()
    if cfg.blob_backend == "local":
        logger.info(f"Using local blob store at {cfg.blob_local_dir}")
        return LocalBlobStore(cfg.blob_local_dir, cfg.blob_public_url)
    if cfg.blob_backend == "s3":
        logger.info(f"Using S3 blob store bucket={cfg.s3_bucket}")
        return S3BlobStore(cfg.s3_bucket, endpoint_url=cfg.s3_endpoint_url, region=cfg.s3_region)
    raise ValueError(f"Unknown blob backend '{cfg.blob_backend}'")
