"""Local filesystem buckets standing in for object storage.

Layout: <root>/<bucket>/<object path>. Uploads land in the ingest bucket;
thumbnails, keyframes and page renders are written to the derived bucket.
"""

import logging
import shutil
import uuid
from pathlib import Path
from typing import Dict, List, Optional

from .errors import ProcessingError
from .models import StorageConfig

logger = logging.getLogger(__name__)


class LocalStorage:
    def __init__(self, config: Optional[StorageConfig] = None):
        self.config = config or StorageConfig()
        self.root = Path(self.config.root)

    @property
    def buckets(self) -> List[str]:
        return list(self.config.buckets)

    def bucket_path(self, bucket: str) -> Path:
        return self.root / bucket

    def ensure_buckets(self) -> None:
        for bucket in self.buckets:
            self.bucket_path(bucket).mkdir(parents=True, exist_ok=True)

    def bucket_status(self) -> Dict[str, bool]:
        """bucket -> whether its root directory exists."""
        return {bucket: self.bucket_path(bucket).is_dir() for bucket in self.buckets}

    def resolve(self, bucket: str, object_path: str) -> Path:
        """Map an object path into its bucket, refusing paths that escape it."""
        base = self.bucket_path(bucket).resolve()
        target = (base / object_path).resolve()
        if base != target and base not in target.parents:
            raise ProcessingError(f"Object path escapes bucket '{bucket}': {object_path}")
        return target

    def require(self, bucket: str, object_path: str) -> Path:
        path = self.resolve(bucket, object_path)
        if not path.is_file():
            raise ProcessingError(f"Object not found in bucket '{bucket}': {object_path}")
        return path

    def write(self, bucket: str, object_path: str, data: bytes) -> str:
        path = self.resolve(bucket, object_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
        return object_path

    def store_derived(self, prefix: str, suffix: str, data: bytes) -> str:
        """Write a derived asset under a unique name; returns its object path."""
        object_path = f"{prefix}/{uuid.uuid4().hex[:12]}{suffix}"
        self.write("derived", object_path, data)
        logger.debug("Stored derived asset %s", object_path)
        return object_path

    def copy_derived(self, source: Path, prefix: str) -> str:
        object_path = f"{prefix}/{uuid.uuid4().hex[:12]}{source.suffix}"
        target = self.resolve("derived", object_path)
        target.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(source, target)
        return object_path
