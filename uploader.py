#!/usr/bin/env python3
"""
Artifact uploader for Cloudflare R2 (S3-compatible).

Requires CF_ACCOUNT_ID, R2_ACCESS_KEY_ID and R2_SECRET_ACCESS_KEY.
Every storage error, including "entity too large", raises UploadError:
a program is never persisted without a public URL.
"""

import os

import boto3
from boto3.exceptions import S3UploadFailedError
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from errors import UploadError

CONTENT_TYPES = {
    ".mp3": "audio/mpeg",
    ".m4a": "audio/mp4",
    ".wav": "audio/wav",
    ".json": "application/json",
    ".txt": "text/plain",
}

ENTITY_TOO_LARGE = "EntityTooLarge"


def content_type_for(path):
    ext = os.path.splitext(str(path))[1].lower()
    return CONTENT_TYPES.get(ext, "application/octet-stream")


def _get_r2_client(account_id, access_key, secret_key, connect_timeout=10, read_timeout=120):
    """Return a boto3 S3 client pointed at the account's R2 endpoint."""
    if not all([account_id, access_key, secret_key]):
        raise UploadError("R2 credentials not configured (CF_ACCOUNT_ID, R2_ACCESS_KEY_ID, R2_SECRET_ACCESS_KEY)")

    return boto3.client(
        "s3",
        endpoint_url=f"https://{account_id}.r2.cloudflarestorage.com",
        aws_access_key_id=access_key,
        aws_secret_access_key=secret_key,
        region_name="auto",
        config=Config(
            connect_timeout=connect_timeout,
            read_timeout=read_timeout,
            retries={"max_attempts": 1, "mode": "standard"},
        ),
    )


def _too_large(file_path, context):
    size_mb = os.path.getsize(file_path) / 1024 / 1024
    return UploadError(f"Artifact too large for storage ({size_mb:.1f} MB)", context=context)


class R2Uploader:
    def __init__(self, bucket, url_prefix="", account_id="", access_key="", secret_key="",
                 read_timeout=120, client=None):
        self.bucket = bucket
        self.url_prefix = (url_prefix or "").rstrip("/")
        self.account_id = account_id
        self._client = client
        self._credentials = (account_id, access_key, secret_key)
        self.read_timeout = read_timeout

    @property
    def client(self):
        if self._client is None:
            self._client = _get_r2_client(*self._credentials, read_timeout=self.read_timeout)
        return self._client

    def public_url(self, object_key, bucket=None):
        if self.url_prefix:
            return f"{self.url_prefix}/{object_key}"
        return f"https://{self.account_id}.r2.cloudflarestorage.com/{bucket or self.bucket}/{object_key}"

    def upload(self, object_key, file_path, content_type=None, bucket=None):
        """Upload one file and return its public URL."""
        bucket = bucket or self.bucket
        content_type = content_type or content_type_for(file_path)
        context = {"bucket": bucket, "key": object_key}

        if not os.path.exists(file_path):
            raise UploadError(f"Upload source missing: {file_path}", context=context)

        try:
            self.client.upload_file(
                str(file_path),
                bucket,
                object_key,
                ExtraArgs={"ContentType": content_type},
            )
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code", "Unknown")
            context["code"] = code
            if code == ENTITY_TOO_LARGE:
                raise _too_large(file_path, context) from e
            raise UploadError(f"R2 upload failed for {object_key}: {code}", context=context) from e
        except S3UploadFailedError as e:
            # upload_file re-raises the service ClientError with its code in the text
            if ENTITY_TOO_LARGE in str(e):
                context["code"] = ENTITY_TOO_LARGE
                raise _too_large(file_path, context) from e
            raise UploadError(f"R2 upload failed for {object_key}: {e}", context=context) from e
        except BotoCoreError as e:
            raise UploadError(f"R2 upload failed for {object_key}: {e}", context=context) from e

        print(f"   ☁️  Uploaded {object_key} ({content_type})")
        return self.public_url(object_key, bucket)
