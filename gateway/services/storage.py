"""S3 object storage for recordings (boto3, blocking calls pushed to a thread)."""
import asyncio
import logging
from pathlib import Path
from typing import Any, Protocol

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from ..errors import StorageError

logger = logging.getLogger(__name__)


class ObjectStore(Protocol):
    async def download(self, key: str, dest: Path) -> None: ...

    async def upload(self, src: Path, key: str, content_type: str = "audio/mpeg") -> None: ...

    def public_url(self, key: str) -> str: ...


def playback_key(recording_id: str) -> str:
    """Same recording, same key: re-converting overwrites rather than duplicates."""
    return f"playback/{recording_id}.mp3"


class S3ObjectStore:
    def __init__(
        self,
        bucket: str,
        region: str = "us-east-1",
        *,
        endpoint: str | None = None,
        public_base_url: str | None = None,
        client: Any = None,
    ):
        self._bucket = bucket
        self._region = region
        self._public_base_url = public_base_url.rstrip("/") if public_base_url else None
        if client is None:
            kwargs: dict[str, Any] = {}
            if endpoint:
                kwargs["endpoint_url"] = endpoint
            client = boto3.client(
                "s3",
                region_name=region,
                config=Config(signature_version="s3v4", retries={"max_attempts": 3}),
                **kwargs,
            )
        self._client = client

    def _require_bucket(self) -> None:
        if not self._bucket:
            raise StorageError("AWS_S3_BUCKET is not configured")

    async def download(self, key: str, dest: Path) -> None:
        self._require_bucket()
        try:
            await asyncio.to_thread(self._client.download_file, self._bucket, key, str(dest))
        except (BotoCoreError, ClientError) as e:
            raise StorageError(f"Download of {key} failed: {e}") from e
        logger.info("Downloaded s3://%s/%s -> %s", self._bucket, key, dest)

    async def upload(self, src: Path, key: str, content_type: str = "audio/mpeg") -> None:
        self._require_bucket()
        try:
            await asyncio.to_thread(
                self._client.upload_file,
                str(src),
                self._bucket,
                key,
                ExtraArgs={"ContentType": content_type},
            )
        except (BotoCoreError, ClientError) as e:
            raise StorageError(f"Upload of {key} failed: {e}") from e
        logger.info("Uploaded %s -> s3://%s/%s", src, self._bucket, key)

    def public_url(self, key: str) -> str:
        if self._public_base_url:
            return f"{self._public_base_url}/{key}"
        return f"https://{self._bucket}.s3.{self._region}.amazonaws.com/{key}"
