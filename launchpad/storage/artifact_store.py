"""ArtifactStore: prefix-addressed object storage for build outputs.

S3ArtifactStore binds it to S3 (or any S3-compatible endpoint). boto3 is
blocking, so every call runs in a worker thread via asyncio.to_thread.

Key layout: __outputs/{project_uri}/{relative file path}
"""

from __future__ import annotations

import asyncio
import mimetypes
from abc import ABC, abstractmethod
from pathlib import Path

import boto3
import structlog
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from launchpad.core.exceptions import ArtifactStoreError

logger = structlog.get_logger(__name__)

OUTPUTS_ROOT = "__outputs"
DEFAULT_CONTENT_TYPE = "application/octet-stream"
# DeleteObjects accepts at most 1000 keys per request
DELETE_BATCH_SIZE = 1000


def output_prefix(project_uri: str) -> str:
    """Prefix under which every file of a project's build output lives."""
    return f"{OUTPUTS_ROOT}/{project_uri}/"


def output_key(project_uri: str, relative_path: str) -> str:
    return output_prefix(project_uri) + relative_path.replace("\\", "/").lstrip("/")


def guess_content_type(path: str | Path) -> str:
    """Content type from the file extension, octet-stream when unknown."""
    content_type, _encoding = mimetypes.guess_type(str(path))
    return content_type or DEFAULT_CONTENT_TYPE


class ArtifactStore(ABC):
    @abstractmethod
    async def put(self, key: str, body: bytes, content_type: str = DEFAULT_CONTENT_TYPE) -> None: ...

    @abstractmethod
    async def list_prefix(self, prefix: str) -> list[str]: ...

    @abstractmethod
    async def copy_prefix(self, source_prefix: str, target_prefix: str) -> int: ...

    @abstractmethod
    async def delete_prefix(self, prefix: str) -> int: ...

    async def put_file(self, key: str, path: str | Path) -> None:
        """Upload a local file with a content type inferred from its extension."""
        body = await asyncio.to_thread(Path(path).read_bytes)
        await self.put(key, body, guess_content_type(path))

    async def close(self) -> None:
        return None


class S3ArtifactStore(ArtifactStore):
    """S3 binding.

    Usage:
        store = S3ArtifactStore(bucket="deployment-app-build", region="eu-north-1")
        await store.put_file("__outputs/demo123/index.html", "/app/output/dist/index.html")

    Transient failures are retried by botocore ("standard" retry mode). Anything
    left over is raised as ArtifactStoreError.
    """

    def __init__(
        self,
        bucket: str,
        region: str = "us-east-1",
        endpoint_url: str | None = None,
        max_attempts: int = 5,
    ) -> None:
        self._bucket = bucket
        self._region = region
        self._endpoint_url = endpoint_url
        self._config = Config(retries={"max_attempts": max_attempts, "mode": "standard"})
        self._client = None

    @property
    def bucket(self) -> str:
        return self._bucket

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def put(self, key: str, body: bytes, content_type: str = DEFAULT_CONTENT_TYPE) -> None:
        await self._run(self._put_object, key, body, content_type)
        logger.debug("artifact_put", key=key, content_type=content_type, size=len(body))

    async def list_prefix(self, prefix: str) -> list[str]:
        return await self._run(self._list_keys, prefix)

    async def copy_prefix(self, source_prefix: str, target_prefix: str) -> int:
        """Move every object under source_prefix to target_prefix.

        Copies every listed object, then deletes the sources in batches. Not
        atomic: a build writing under either prefix at the same time can interleave.
        """
        moved = await self._run(self._copy_prefix, source_prefix, target_prefix)
        logger.info("artifact_prefix_copied", source=source_prefix, target=target_prefix, count=moved)
        return moved

    async def delete_prefix(self, prefix: str) -> int:
        deleted = await self._run(self._delete_prefix, prefix)
        logger.info("artifact_prefix_deleted", prefix=prefix, count=deleted)
        return deleted

    async def close(self) -> None:
        if self._client is not None:
            await asyncio.to_thread(self._client.close)
            self._client = None

    # ------------------------------------------------------------------
    # Private helpers (run inside asyncio.to_thread)
    # ------------------------------------------------------------------

    async def _run(self, fn, *args):
        try:
            return await asyncio.to_thread(fn, *args)
        except (BotoCoreError, ClientError) as exc:
            raise ArtifactStoreError(f"{fn.__name__.lstrip('_')} failed on bucket {self._bucket}: {exc}") from exc

    def _s3(self):
        if self._client is None:
            self._client = boto3.client(
                "s3",
                region_name=self._region,
                endpoint_url=self._endpoint_url,
                config=self._config,
            )
        return self._client

    def _put_object(self, key: str, body: bytes, content_type: str) -> None:
        self._s3().put_object(
            Bucket=self._bucket,
            Key=key,
            Body=body,
            ContentType=content_type,
        )

    def _pages(self, prefix: str):
        """Yield the key list of each ListObjectsV2 page under prefix."""
        s3 = self._s3()
        kwargs = {"Bucket": self._bucket, "Prefix": prefix}
        while True:
            resp = s3.list_objects_v2(**kwargs)
            yield [obj["Key"] for obj in resp.get("Contents", [])]
            if not resp.get("IsTruncated"):
                return
            kwargs["ContinuationToken"] = resp["NextContinuationToken"]

    def _list_keys(self, prefix: str) -> list[str]:
        keys: list[str] = []
        for page in self._pages(prefix):
            keys.extend(page)
        return keys

    def _delete_keys(self, keys: list[str]) -> None:
        s3 = self._s3()
        for start in range(0, len(keys), DELETE_BATCH_SIZE):
            batch = keys[start:start + DELETE_BATCH_SIZE]
            s3.delete_objects(
                Bucket=self._bucket,
                Delete={"Objects": [{"Key": key} for key in batch]},
            )

    def _copy_prefix(self, source_prefix: str, target_prefix: str) -> int:
        s3 = self._s3()
        # Snapshot the listing first so deletes do not disturb pagination
        keys = self._list_keys(source_prefix)
        for key in keys:
            s3.copy_object(
                Bucket=self._bucket,
                CopySource={"Bucket": self._bucket, "Key": key},
                Key=target_prefix + key[len(source_prefix):],
            )
        self._delete_keys(keys)
        return len(keys)

    def _delete_prefix(self, prefix: str) -> int:
        keys = self._list_keys(prefix)
        self._delete_keys(keys)
        return len(keys)
