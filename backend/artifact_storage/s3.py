# artifact_storage/s3.py — Blobs in an S3 bucket
# Key layout: storage/<org>/<project>/<location>/<filename>
# boto3 is blocking, so every call runs in a worker thread.

import os
import asyncio
import logging
import posixpath
from typing import Dict, List, Optional

import boto3
from botocore.exceptions import ClientError

from errors import DataFormatError, NotFoundError, capture_error
from identifiers import leaf_id
from artifact_storage.base import ArtifactStrategy, validate_blob_meta

logger = logging.getLogger("mbee.artifacts.s3")

ROOT_PREFIX = "storage"
_MISSING_CODES = {"404", "NoSuchKey", "NotFound"}


def _is_missing(error: ClientError) -> bool:
    return str(error.response.get("Error", {}).get("Code")) in _MISSING_CODES


class S3Strategy(ArtifactStrategy):
    name = "s3"

    def __init__(self, client=None, bucket: Optional[str] = None):
        self.bucket = bucket or os.getenv("S3_BUCKET", "mbee-artifacts")
        self.client = client or boto3.client(
            "s3",
            region_name=os.getenv("S3_REGION", "us-east-1"),
            endpoint_url=os.getenv("S3_ENDPOINT_URL") or None,
        )

    def _prefix(self, org: str, project: Optional[str] = None) -> str:
        parts = [ROOT_PREFIX, leaf_id(org)]
        if project is not None:
            parts.append(leaf_id(project))
        return "/".join(parts) + "/"

    def blob_key(self, org: str, project: str, location: str, filename: str) -> str:
        prefix = self._prefix(org, project)
        key = posixpath.normpath(f"{prefix}{location}/{filename}")
        if not key.startswith(prefix):
            raise DataFormatError("Artifact blob key escapes the project prefix.", "warn")
        return key

    def _list_keys(self, prefix: str) -> List[str]:
        keys = []
        paginator = self.client.get_paginator("list_objects_v2")
        for page in paginator.paginate(Bucket=self.bucket, Prefix=prefix):
            keys.extend(obj["Key"] for obj in page.get("Contents", []))
        return keys

    def _exists(self, key: str) -> bool:
        try:
            self.client.head_object(Bucket=self.bucket, Key=key)
            return True
        except ClientError as e:
            if _is_missing(e):
                return False
            raise capture_error(e)

    async def list_blobs(self, org: str, project: str) -> List[Dict[str, str]]:
        try:
            keys = await asyncio.to_thread(self._list_keys, self._prefix(org, project))
        except ClientError as e:
            raise capture_error(e)

        blobs = []
        for key in keys:
            # drop storage/<org>/<project>
            parts = key.split("/")[3:]
            blobs.append({"location": "/".join(parts[:-1]), "filename": parts[-1]})
        return blobs

    async def get_blob(self, org: str, project: str, location: str, filename: str) -> bytes:
        validate_blob_meta(location, filename)
        key = self.blob_key(org, project, location, filename)
        try:
            obj = await asyncio.to_thread(self.client.get_object, Bucket=self.bucket, Key=key)
        except ClientError as e:
            if _is_missing(e):
                raise NotFoundError("Artifact blob not found.", "warn")
            raise capture_error(e)
        return await asyncio.to_thread(obj["Body"].read)

    async def post_blob(self, org: str, project: str, location: str, filename: str, data: bytes) -> None:
        validate_blob_meta(location, filename)
        key = self.blob_key(org, project, location, filename)
        if await asyncio.to_thread(self._exists, key):
            raise DataFormatError("Artifact blob already exists.", "warn")
        await self.put_blob(org, project, location, filename, data)

    async def put_blob(self, org: str, project: str, location: str, filename: str, data: bytes) -> None:
        validate_blob_meta(location, filename)
        key = self.blob_key(org, project, location, filename)
        logger.info("Uploading blob -> s3://%s/%s", self.bucket, key)
        try:
            await asyncio.to_thread(self.client.put_object, Bucket=self.bucket, Key=key, Body=data)
        except ClientError as e:
            raise capture_error(e)

    async def delete_blob(self, org: str, project: str, location: str, filename: str) -> None:
        validate_blob_meta(location, filename)
        key = self.blob_key(org, project, location, filename)
        if not await asyncio.to_thread(self._exists, key):
            raise NotFoundError("Artifact blob not found.", "warn")
        try:
            await asyncio.to_thread(self.client.delete_object, Bucket=self.bucket, Key=key)
        except ClientError as e:
            raise capture_error(e)

    async def clear(self, org: str, project: Optional[str] = None) -> None:
        try:
            keys = await asyncio.to_thread(self._list_keys, self._prefix(org, project))
            # delete_objects takes at most 1000 keys per call
            for i in range(0, len(keys), 1000):
                batch = [{"Key": key} for key in keys[i:i + 1000]]
                await asyncio.to_thread(
                    self.client.delete_objects, Bucket=self.bucket, Delete={"Objects": batch}
                )
        except ClientError as e:
            raise capture_error(e)
        logger.info("Cleared %d blob(s) under s3://%s/%s", len(keys), self.bucket, self._prefix(org, project))
