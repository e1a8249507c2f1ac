from typing import List, Optional

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import ClientError

from ..config import Settings

_MISSING_CODES = {"404", "NoSuchKey", "NotFound"}


def clip_search_prefix(source_key: str) -> str:
    """
    Prefix under which the processor writes clips for ``source_key``.

    A key ending in "/" is already a folder. Otherwise the last path segment
    (the uploaded filename) is dropped, so ``u/p/f/video.mp4`` searches ``u/p/f/``.
    """
    normalized = source_key.lstrip("/")
    if source_key.endswith("/"):
        return normalized if normalized.endswith("/") else f"{normalized}/"
    parent = [part for part in normalized.split("/") if part][:-1]
    return f"{'/'.join(parent)}/" if parent else ""


def is_clip_key(key: str) -> bool:
    return "clip" in key.lower()


class ObjectStore:
    """Thin boto3 wrapper for the S3 compatible bucket holding uploads and clips."""

    def __init__(self, client, bucket: str, presign_client=None):
        self.client = client
        self.bucket = bucket
        self.presign_client = presign_client or client

    @classmethod
    def from_settings(cls, settings: Settings) -> "ObjectStore":
        session = boto3.session.Session(
            aws_access_key_id=settings.BUCKET_ACCESS_KEY,
            aws_secret_access_key=settings.BUCKET_ACCESS_SECRET,
            region_name=settings.BUCKET_REGION,
        )
        client = session.client(
            "s3",
            endpoint_url=settings.BUCKET_ENDPOINT,
            config=BotoConfig(
                s3={"addressing_style": "virtual"},
                signature_version="s3v4",
            ),
        )
        return cls(client, settings.BUCKET_NAME)

    def exists(self, bucket: str, key: str) -> bool:
        try:
            self.client.head_object(Bucket=bucket, Key=key)
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") in _MISSING_CODES:
                return False
            raise
        return True

    def list_by_prefix(self, prefix: str, bucket: Optional[str] = None) -> List[str]:
        """All keys under ``prefix``; pagination is followed transparently."""
        paginator = self.client.get_paginator("list_objects_v2")
        keys = []
        for page in paginator.paginate(Bucket=bucket or self.bucket, Prefix=prefix):
            for item in page.get("Contents", []):
                if item.get("Key"):
                    keys.append(item["Key"])
        return keys

    def list_clip_keys(self, source_key: str) -> List[str]:
        """Clip-like keys next to ``source_key``, the source object itself excluded."""
        return [
            key
            for key in self.list_by_prefix(clip_search_prefix(source_key))
            if key != source_key and is_clip_key(key)
        ]

    def presign(self, bucket: str, key: str, ttl: int) -> str:
        return self.presign_client.generate_presigned_url(
            ClientMethod="get_object",
            Params={"Bucket": bucket, "Key": key},
            ExpiresIn=ttl,
            HttpMethod="GET",
        )

    def presign_upload(self, bucket: str, key: str, ttl: int) -> str:
        # ContentType is left unsigned so clients may send or omit the header.
        return self.presign_client.generate_presigned_url(
            ClientMethod="put_object",
            Params={"Bucket": bucket, "Key": key},
            ExpiresIn=ttl,
            HttpMethod="PUT",
        )
