"""Artifact storage for rendered videos.

Two interchangeable stores implement the same contract:

    put(key, data, content_type, metadata) -> url
    get(key)      -> ArtifactInfo (size, content type, metadata, url)
    copy(src, dst) -> url
    delete(key)
    list(prefix)  -> list[ArtifactInfo]

GCSArtifactStore:
    Google Cloud Storage bucket. The SDK is blocking, so every call runs in
    a thread (``asyncio.to_thread``). URLs are public object URLs:
    https://storage.googleapis.com/{bucket}/{key}

LocalArtifactStore:
    Files under LOCAL_STORAGE_ROOT, served by the API at
    {PUBLIC_BASE_URL}/api/files/{key}. Used in development and tests.

Every failure surfaces as ``StorageError`` so the download stage retries it.

Key Layout:
    generated/{org_id}/{video_id}/video.mp4
    generated/{org_id}/{video_id}/thumbnail.jpg
"""

import asyncio
import json
import mimetypes
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

from google.api_core import exceptions as gcs_exceptions
from google.cloud import storage

from framebrew.exceptions import StorageError
from framebrew.utils.logging import get_logger

log = get_logger(__name__)

GCS_PUBLIC_URL = "https://storage.googleapis.com"


def video_key(org_id: str, video_id: str) -> str:
    return f"generated/{org_id}/{video_id}/video.mp4"


def thumbnail_key(org_id: str, video_id: str) -> str:
    return f"generated/{org_id}/{video_id}/thumbnail.jpg"


@dataclass
class ArtifactInfo:
    key: str
    url: str
    size: int | None = None
    content_type: str | None = None
    metadata: dict[str, str] = field(default_factory=dict)


class ArtifactStore(Protocol):
    async def put(
        self,
        key: str,
        data: bytes,
        content_type: str = "video/mp4",
        metadata: dict[str, str] | None = None,
    ) -> str: ...

    async def get(self, key: str) -> ArtifactInfo: ...

    async def copy(self, src: str, dst: str) -> str: ...

    async def delete(self, key: str) -> None: ...

    async def list(self, prefix: str) -> list[ArtifactInfo]: ...

    def url_for(self, key: str) -> str: ...


class GCSArtifactStore:
    """Google Cloud Storage artifact store.

    Args:
        bucket_name: Target bucket.
        client: Optional pre-built ``storage.Client`` (tests inject a mock).
    """

    def __init__(self, bucket_name: str, client: storage.Client | None = None) -> None:
        self.bucket_name = bucket_name
        self.client = client or storage.Client()
        self.bucket = self.client.bucket(bucket_name)

    def url_for(self, key: str) -> str:
        return f"{GCS_PUBLIC_URL}/{self.bucket_name}/{key}"

    async def put(
        self,
        key: str,
        data: bytes,
        content_type: str = "video/mp4",
        metadata: dict[str, str] | None = None,
    ) -> str:
        def _upload() -> None:
            blob = self.bucket.blob(key)
            if metadata:
                blob.metadata = metadata
            blob.upload_from_string(data, content_type=content_type)

        try:
            await asyncio.to_thread(_upload)
        except gcs_exceptions.GoogleAPIError as e:
            raise StorageError(f"GCS upload failed for {key}: {e}", key=key) from e

        log.info("gcs_artifact_uploaded", bucket=self.bucket_name, key=key, size_bytes=len(data))
        return self.url_for(key)

    async def get(self, key: str) -> ArtifactInfo:
        def _stat() -> storage.Blob | None:
            return self.bucket.get_blob(key)

        try:
            blob = await asyncio.to_thread(_stat)
        except gcs_exceptions.GoogleAPIError as e:
            raise StorageError(f"GCS metadata read failed for {key}: {e}", key=key) from e
        if blob is None:
            raise FileNotFoundError(f"Artifact not found: {key}")

        return ArtifactInfo(
            key=key,
            url=self.url_for(key),
            size=blob.size,
            content_type=blob.content_type,
            metadata=dict(blob.metadata or {}),
        )

    async def copy(self, src: str, dst: str) -> str:
        def _copy() -> None:
            self.bucket.copy_blob(self.bucket.blob(src), self.bucket, dst)

        try:
            await asyncio.to_thread(_copy)
        except gcs_exceptions.GoogleAPIError as e:
            raise StorageError(f"GCS copy failed {src} → {dst}: {e}", key=src) from e
        return self.url_for(dst)

    async def delete(self, key: str) -> None:
        try:
            await asyncio.to_thread(self.bucket.blob(key).delete)
        except gcs_exceptions.NotFound:
            log.info("gcs_artifact_already_deleted", key=key)
        except gcs_exceptions.GoogleAPIError as e:
            raise StorageError(f"GCS delete failed for {key}: {e}", key=key) from e

    async def list(self, prefix: str) -> list[ArtifactInfo]:
        def _list() -> list[storage.Blob]:
            return list(self.client.list_blobs(self.bucket_name, prefix=prefix))

        try:
            blobs = await asyncio.to_thread(_list)
        except gcs_exceptions.GoogleAPIError as e:
            raise StorageError(f"GCS list failed for {prefix}: {e}", key=prefix) from e

        return [
            ArtifactInfo(
                key=blob.name,
                url=self.url_for(blob.name),
                size=blob.size,
                content_type=blob.content_type,
                metadata=dict(blob.metadata or {}),
            )
            for blob in blobs
        ]


META_SUFFIX = ".meta.json"


class LocalArtifactStore:
    """Filesystem artifact store.

    Metadata is kept next to each object in ``{name}.meta.json``.
    """

    def __init__(self, root: str | Path, public_base_url: str) -> None:
        self.root = Path(root)
        self.public_base_url = public_base_url.rstrip("/")

    def url_for(self, key: str) -> str:
        return f"{self.public_base_url}/api/files/{key}"

    def _path(self, key: str) -> Path:
        path = (self.root / key).resolve()
        if not path.is_relative_to(self.root.resolve()):
            raise ValueError(f"Artifact key escapes storage root: {key}")
        return path

    @staticmethod
    def _meta_path(path: Path) -> Path:
        return path.with_name(path.name + META_SUFFIX)

    async def put(
        self,
        key: str,
        data: bytes,
        content_type: str = "video/mp4",
        metadata: dict[str, str] | None = None,
    ) -> str:
        path = self._path(key)
        meta = {"content_type": content_type, "metadata": metadata or {}}

        def _write() -> None:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)
            self._meta_path(path).write_text(json.dumps(meta))

        try:
            await asyncio.to_thread(_write)
        except OSError as e:
            raise StorageError(f"Local write failed for {key}: {e}", key=key) from e

        log.info("local_artifact_written", key=key, size_bytes=len(data))
        return self.url_for(key)

    def _info(self, key: str, path: Path) -> ArtifactInfo:
        meta_path = self._meta_path(path)
        meta: dict[str, Any] = {}
        if meta_path.exists():
            meta = json.loads(meta_path.read_text())
        return ArtifactInfo(
            key=key,
            url=self.url_for(key),
            size=path.stat().st_size,
            content_type=meta.get("content_type") or mimetypes.guess_type(path.name)[0],
            metadata=meta.get("metadata", {}),
        )

    async def get(self, key: str) -> ArtifactInfo:
        path = self._path(key)
        if not path.is_file():
            raise FileNotFoundError(f"Artifact not found: {key}")
        return await asyncio.to_thread(self._info, key, path)

    def open_path(self, key: str) -> Path:
        """Filesystem path for serving ``key``; raises FileNotFoundError if absent.

        Metadata sidecars are never served.
        """
        path = self._path(key)
        if path.name.endswith(META_SUFFIX) or not path.is_file():
            raise FileNotFoundError(f"Artifact not found: {key}")
        return path

    async def copy(self, src: str, dst: str) -> str:
        src_path = self._path(src)
        dst_path = self._path(dst)

        def _copy() -> None:
            dst_path.parent.mkdir(parents=True, exist_ok=True)
            dst_path.write_bytes(src_path.read_bytes())
            if self._meta_path(src_path).exists():
                self._meta_path(dst_path).write_text(self._meta_path(src_path).read_text())

        try:
            await asyncio.to_thread(_copy)
        except FileNotFoundError:
            raise
        except OSError as e:
            raise StorageError(f"Local copy failed {src} → {dst}: {e}", key=src) from e
        return self.url_for(dst)

    async def delete(self, key: str) -> None:
        path = self._path(key)
        path.unlink(missing_ok=True)
        self._meta_path(path).unlink(missing_ok=True)

    async def list(self, prefix: str) -> list[ArtifactInfo]:
        root = self.root.resolve()

        def _scan() -> list[ArtifactInfo]:
            if not root.exists():
                return []
            results = []
            for path in sorted(root.rglob("*")):
                if not path.is_file() or path.name.endswith(META_SUFFIX):
                    continue
                key = path.relative_to(root).as_posix()
                if key.startswith(prefix):
                    results.append(self._info(key, path))
            return results

        return await asyncio.to_thread(_scan)
