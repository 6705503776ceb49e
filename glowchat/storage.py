"""
Upload storage: presigned S3 writes, a local-disk fallback, and an in-memory
signer for tests.
"""

from __future__ import annotations

import os
import re
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Protocol

import boto3
from botocore.config import Config


def sanitize_filename(filename: str) -> str:
    return re.sub(r"\s+", "_", filename)


def make_upload_key(filename: str, now_ms: Optional[int] = None) -> str:
    stamp = now_ms if now_ms is not None else int(time.time() * 1000)
    return f"uploads/{stamp}-{sanitize_filename(filename)}"


class PresignClient(Protocol):
    """Defines the operations the API needs from object storage."""

    def presign_put(self, key: str, content_type: str, expires_in: int = 900) -> str:
        ...

    def public_url(self, key: str) -> str:
        ...


@dataclass
class InMemoryPresignClient:
    """Test double for presigned uploads."""

    base_url: str = "https://example.test/storage"

    def presign_put(self, key: str, content_type: str, expires_in: int = 900) -> str:
        return f"{self.base_url}/{key}?op=put&content_type={content_type}&expires={expires_in}"

    def public_url(self, key: str) -> str:
        return f"{self.base_url}/{key}"


@dataclass
class S3PresignClient:
    """
    S3 (or S3-compatible, e.g. MinIO) client issuing presigned PUT URLs.
    """

    bucket: str
    region: str
    endpoint: Optional[str] = None
    access_key_id: Optional[str] = None
    secret_access_key: Optional[str] = None

    def __post_init__(self):
        config = Config(signature_version="s3v4")
        self._client = boto3.client(
            "s3",
            endpoint_url=self.endpoint or None,
            region_name=self.region,
            aws_access_key_id=self.access_key_id,
            aws_secret_access_key=self.secret_access_key,
            config=config,
        )

    def presign_put(self, key: str, content_type: str, expires_in: int = 900) -> str:
        # Clients must send the same Content-Type and ACL headers on the PUT.
        return self._client.generate_presigned_url(
            ClientMethod="put_object",
            Params={
                "Bucket": self.bucket,
                "Key": key,
                "ContentType": content_type,
                "ACL": "public-read",
            },
            ExpiresIn=expires_in,
        )

    def public_url(self, key: str) -> str:
        return f"https://{self.bucket}.s3.{self.region}.amazonaws.com/{key}"


class LocalUploadStore:
    """Stores files uploaded directly to the server when S3 is not configured."""

    def __init__(self, upload_dir: str):
        self.root = Path(upload_dir).resolve()
        os.makedirs(self.root, exist_ok=True)

    def save(self, filename: str, data: bytes, now_ms: Optional[int] = None) -> str:
        stamp = now_ms if now_ms is not None else int(time.time() * 1000)
        name = f"{stamp}-{sanitize_filename(os.path.basename(filename))}"
        with open(self.root / name, "wb") as f:
            f.write(data)
        return name

    def discard(self, name: str) -> None:
        path = self.resolve(name)
        if path is not None:
            path.unlink()

    def resolve(self, name: str) -> Optional[Path]:
        """Return the path for a stored file, or None if it is missing or outside the upload dir."""
        candidate = (self.root / name).resolve()
        if candidate.parent != self.root or not candidate.is_file():
            return None
        return candidate
