"""
Object storage for listing images.

Files live under STORAGE_ROOT/<bucket>/<path> and are served from
PUBLIC_STORAGE_URL/<bucket>/<path>.
"""
import logging
import os
from pathlib import Path
from typing import Optional

from errors import ConflictError, RemoteError, ValidationError

logger = logging.getLogger(__name__)

STORAGE_ROOT = os.getenv("STORAGE_ROOT", "./storage")
PUBLIC_STORAGE_URL = os.getenv("PUBLIC_STORAGE_URL", "http://localhost:8000/storage")


class ObjectStorage:
    def __init__(self, root: Optional[str] = None, public_url: Optional[str] = None):
        self.root = Path(root or STORAGE_ROOT).resolve()
        self.public_url = (public_url or PUBLIC_STORAGE_URL).rstrip("/")

    def _resolve(self, bucket: str, path: str) -> Path:
        p = (self.root / bucket / path).resolve()
        try:
            p.relative_to(self.root / bucket)
        except ValueError:
            raise ValidationError(f"Invalid storage path: {path}")
        return p

    def upload(self, bucket: str, path: str, data: bytes, upsert: bool = False) -> str:
        target = self._resolve(bucket, path)
        if target.exists() and not upsert:
            raise ConflictError(f"{bucket}/{path} already exists")
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)
        except OSError as e:
            logger.error("Upload to %s/%s failed: %s", bucket, path, e)
            raise RemoteError("Failed to upload image") from e
        return f"{bucket}/{path}"

    def get_public_url(self, bucket: str, path: str) -> str:
        return f"{self.public_url}/{bucket}/{path}"

    def remove(self, bucket: str, path: str) -> None:
        target = self._resolve(bucket, path)
        try:
            target.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning("Could not remove %s/%s: %s", bucket, path, e)
