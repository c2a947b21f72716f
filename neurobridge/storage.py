"""Object storage backends.

Keys are relative (``materials/{set_id}/{file_id}``); the category picks the
bucket. Local storage lays files out under ``static/uploads`` the same way
uploads have always been served; S3 is used when ``STORAGE_BACKEND=s3``.
"""
from __future__ import annotations

import logging
import os
import shutil
from pathlib import Path
from typing import BinaryIO, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from .background import run_sync
from .errors import InvariantError, TransientError
from .settings.config import settings

logger = logging.getLogger(__name__)

CATEGORY_MATERIAL = "material"
CHUNK_SIZE = 1024 * 1024


def _check_key(key: str) -> str:
    key = (key or "").strip().lstrip("/")
    if not key or ".." in key.split("/"):
        raise InvariantError(f"invalid storage key {key!r}")
    return key


class LocalBucket:
    def __init__(self, root: Path | str, public_base_url: str = "/static/uploads"):
        self.root = Path(root)
        self.public_base_url = public_base_url.rstrip("/")

    def _abs(self, key: str) -> Path:
        return self.root / _check_key(key)

    async def upload_file(self, category: str, key: str, stream: BinaryIO,
                          content_type: Optional[str] = None) -> int:
        dest = self._abs(key)
        await run_sync(dest.parent.mkdir, parents=True, exist_ok=True)
        tmp = dest.with_name(dest.name + ".part")
        written = 0
        out = await run_sync(open, tmp, "wb")
        try:
            # chunked so a cancelled request stops between reads
            while True:
                chunk = await run_sync(stream.read, CHUNK_SIZE)
                if not chunk:
                    break
                await run_sync(out.write, chunk)
                written += len(chunk)
        except BaseException:
            out.close()
            tmp.unlink(missing_ok=True)
            raise
        out.close()
        await run_sync(os.replace, tmp, dest)
        return written

    async def delete_file(self, category: str, key: str) -> None:
        await run_sync(self._abs(key).unlink, missing_ok=True)

    async def delete_prefix(self, category: str, prefix: str) -> None:
        target = self._abs(prefix)
        if target.is_dir():
            await run_sync(shutil.rmtree, target, ignore_errors=True)

    async def exists(self, category: str, key: str) -> bool:
        return self._abs(key).is_file()

    def get_public_url(self, category: str, key: str) -> str:
        return f"{self.public_base_url}/{_check_key(key)}"


class S3Bucket:
    def __init__(self, buckets: dict[str, str], region: str):
        self.buckets = buckets
        self.region = region
        self._client = None

    def _get_client(self):
        if self._client is None:
            self._client = boto3.client("s3", region_name=self.region)
        return self._client

    def _bucket(self, category: str) -> str:
        name = self.buckets.get(category)
        if not name:
            raise InvariantError(f"no bucket configured for category {category!r}")
        return name

    async def upload_file(self, category: str, key: str, stream: BinaryIO,
                          content_type: Optional[str] = None) -> int:
        bucket = self._bucket(category)
        extra = {"ContentType": content_type} if content_type else None
        try:
            await run_sync(self._get_client().upload_fileobj, stream, bucket, _check_key(key), ExtraArgs=extra)
        except (BotoCoreError, ClientError) as e:
            raise TransientError(f"s3 upload failed for {key}", cause=str(e)) from e
        logger.info("S3 upload success: %s/%s", bucket, key)
        try:
            return int(stream.tell())
        except (AttributeError, OSError, ValueError):
            return 0

    async def delete_file(self, category: str, key: str) -> None:
        try:
            await run_sync(self._get_client().delete_object, Bucket=self._bucket(category), Key=_check_key(key))
        except (BotoCoreError, ClientError) as e:
            raise TransientError(f"s3 delete failed for {key}", cause=str(e)) from e

    async def delete_prefix(self, category: str, prefix: str) -> None:
        bucket = self._bucket(category)
        prefix = _check_key(prefix)

        def _delete_all():
            client = self._get_client()
            paginator = client.get_paginator("list_objects_v2")
            for page in paginator.paginate(Bucket=bucket, Prefix=prefix):
                objs = [{"Key": o["Key"]} for o in page.get("Contents", [])]
                if objs:
                    client.delete_objects(Bucket=bucket, Delete={"Objects": objs, "Quiet": True})

        try:
            await run_sync(_delete_all)
        except (BotoCoreError, ClientError) as e:
            raise TransientError(f"s3 delete failed for prefix {prefix}", cause=str(e)) from e

    async def exists(self, category: str, key: str) -> bool:
        try:
            await run_sync(self._get_client().head_object, Bucket=self._bucket(category), Key=_check_key(key))
            return True
        except ClientError:
            return False

    def get_public_url(self, category: str, key: str) -> str:
        return f"https://{self._bucket(category)}.s3.{self.region}.amazonaws.com/{_check_key(key)}"


_bucket = None


def get_bucket():
    global _bucket
    if _bucket is None:
        if settings.STORAGE_BACKEND == "s3":
            _bucket = S3Bucket({CATEGORY_MATERIAL: settings.S3_MATERIAL_BUCKET or ""}, settings.AWS_REGION)
        else:
            _bucket = LocalBucket(settings.STORAGE_LOCAL_ROOT, settings.STORAGE_PUBLIC_BASE_URL)
    return _bucket


def set_bucket(bucket) -> None:
    global _bucket
    _bucket = bucket
