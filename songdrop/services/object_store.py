from __future__ import annotations

import logging
import mimetypes
import os
from datetime import timedelta
from typing import Optional

import boto3
from botocore.client import Config
from botocore.exceptions import BotoCoreError, ClientError

logger = logging.getLogger(__name__)


def _required(name: str) -> str:
    v = os.getenv(name, "").strip()
    if not v:
        raise RuntimeError(f"{name} is not set")
    return v


def _s3_client():
    key = _required("S3_ACCESS_KEY_ID")
    secret = _required("S3_SECRET_ACCESS_KEY")
    endpoint = os.getenv("S3_ENDPOINT", "").strip() or None

    session = boto3.session.Session()
    return session.client(
        "s3",
        region_name=os.getenv("S3_REGION", "us-east-1"),
        endpoint_url=endpoint,
        aws_access_key_id=key,
        aws_secret_access_key=secret,
        config=Config(signature_version="s3v4"),
    )


class ObjectStore:
    """
    S3-compatible durable storage for finished artifacts.

    Methods are blocking (boto3); async callers push them onto the thread pool.
    Failures are logged and reported as False / None rather than raised.
    """

    def __init__(self, bucket: str, client=None):
        if not bucket:
            raise ValueError("bucket is required")
        self.bucket = bucket
        self._client = client

    @classmethod
    def from_env(cls) -> "ObjectStore":
        return cls(bucket=_required("S3_BUCKET_NAME"))

    @property
    def client(self):
        if self._client is None:
            self._client = _s3_client()
        return self._client

    def exists(self, path: str) -> bool:
        if not path:
            logger.error("Storage path is empty")
            return False
        try:
            self.client.head_object(Bucket=self.bucket, Key=path)
            return True
        except ClientError as e:
            code = str(e.response.get("Error", {}).get("Code", ""))
            if code not in ("404", "NoSuchKey", "NotFound"):
                logger.error("Existence check failed for s3://%s/%s: %s", self.bucket, path, e)
            return False
        except BotoCoreError as e:
            logger.error("Existence check failed for s3://%s/%s: %s", self.bucket, path, e)
            return False

    def upload(self, local_path: str, path: str) -> Optional[str]:
        """Upload a local file and return the storage path, or None on failure."""
        if not os.path.isfile(local_path):
            logger.error("Local file not found for upload: %s", local_path)
            return None

        content_type, _ = mimetypes.guess_type(local_path)
        content_type = content_type or "application/octet-stream"

        try:
            self.client.upload_file(
                local_path,
                self.bucket,
                path,
                ExtraArgs={"ContentType": content_type},
            )
        except (BotoCoreError, ClientError) as e:
            logger.error("Upload of %s to s3://%s/%s failed: %s", local_path, self.bucket, path, e)
            return None

        logger.info("Uploaded %s -> s3://%s/%s", local_path, self.bucket, path)
        return path

    def signed_url(self, path: str, ttl: timedelta) -> Optional[str]:
        try:
            url = self.client.generate_presigned_url(
                "get_object",
                Params={"Bucket": self.bucket, "Key": path},
                ExpiresIn=int(ttl.total_seconds()),
            )
        except (BotoCoreError, ClientError) as e:
            logger.error("Could not sign download URL for s3://%s/%s: %s", self.bucket, path, e)
            return None

        logger.info("Signed download URL generated for %s, expires in %s", path, ttl)
        return url

    def delete(self, path: str) -> bool:
        try:
            self.client.delete_object(Bucket=self.bucket, Key=path)
        except (BotoCoreError, ClientError) as e:
            logger.error("Delete of s3://%s/%s failed: %s", self.bucket, path, e)
            return False
        return True
