"""
Durable blob storage for generated media.
"local" (default) writes below MEDIA_DIR and serves through the /media mount;
"s3" uploads to an S3-compatible bucket.
"""

import os
import re
import shutil
import logging
import mimetypes

import boto3
from botocore.exceptions import BotoCoreError, ClientError

import config


class StorageError(Exception):
    """Raised when an object cannot be written or removed."""


def safe_filename(value: str) -> str:
    return re.sub(r"[^a-zA-Z0-9._-]+", "-", value or "file")


def _clean_key(key: str) -> str:
    key = re.sub(r"/{2,}", "/", (key or "").strip().lstrip("/"))
    if not key or ".." in key.split("/"):
        raise StorageError(f"Invalid object key: {key!r}")
    return key


class LocalStorage:
    """Stores objects on the local filesystem."""

    def __init__(self, root: str = None, public_base_url: str = None):
        self.root = os.path.abspath(root or config.MEDIA_DIR)
        self.public_base_url = (public_base_url or config.STORAGE_PUBLIC_BASE_URL).rstrip("/")
        os.makedirs(self.root, exist_ok=True)

    def upload(self, key: str, data: bytes, content_type: str = None) -> str:
        key = _clean_key(key)
        path = os.path.join(self.root, key)
        try:
            os.makedirs(os.path.dirname(path), exist_ok=True)
            with open(path, "wb") as f:
                f.write(data)
        except OSError as e:
            raise StorageError(f"Could not write {key}: {e}")
        return self.public_url(key)

    def public_url(self, key: str) -> str:
        return f"{self.public_base_url}/{_clean_key(key)}"

    def remove_prefix(self, prefix: str) -> int:
        path = os.path.join(self.root, _clean_key(prefix))
        if not os.path.isdir(path):
            return 0
        removed = sum(len(files) for _, _, files in os.walk(path))
        shutil.rmtree(path, ignore_errors=True)
        return removed


class S3Storage:
    """Stores objects in an S3-compatible bucket (AWS S3, R2, MinIO)."""

    def __init__(self, bucket: str = None, region: str = None, endpoint: str = None, public_base_url: str = None):
        self.bucket = bucket or config.S3_BUCKET
        if not self.bucket:
            raise StorageError("S3_BUCKET is required when STORAGE_BACKEND=s3")
        self.region = region or config.S3_REGION
        self.endpoint = endpoint or config.S3_ENDPOINT
        self.public_base_url = (public_base_url or config.S3_PUBLIC_BASE_URL).rstrip("/")
        client_kwargs = {}
        if self.region:
            client_kwargs["region_name"] = self.region
        if self.endpoint:
            client_kwargs["endpoint_url"] = self.endpoint
        self.client = boto3.client("s3", **client_kwargs)

    def upload(self, key: str, data: bytes, content_type: str = None) -> str:
        key = _clean_key(key)
        content_type = content_type or mimetypes.guess_type(key)[0] or "application/octet-stream"
        try:
            self.client.put_object(Bucket=self.bucket, Key=key, Body=data, ContentType=content_type)
        except (BotoCoreError, ClientError) as e:
            raise StorageError(f"Could not upload {key}: {e}")
        return self.public_url(key)

    def public_url(self, key: str) -> str:
        key = _clean_key(key)
        if self.public_base_url:
            return f"{self.public_base_url}/{key}"
        if self.region:
            return f"https://{self.bucket}.s3.{self.region}.amazonaws.com/{key}"
        if self.endpoint:
            return f"{self.endpoint.rstrip('/')}/{self.bucket}/{key}"
        raise StorageError("Unable to construct a public URL; set S3_PUBLIC_BASE_URL or S3_REGION/S3_ENDPOINT")

    def remove_prefix(self, prefix: str) -> int:
        prefix = _clean_key(prefix).rstrip("/") + "/"
        removed = 0
        try:
            paginator = self.client.get_paginator("list_objects_v2")
            for page in paginator.paginate(Bucket=self.bucket, Prefix=prefix):
                keys = [{"Key": obj["Key"]} for obj in page.get("Contents") or []]
                if keys:
                    self.client.delete_objects(Bucket=self.bucket, Delete={"Objects": keys})
                    removed += len(keys)
        except (BotoCoreError, ClientError) as e:
            raise StorageError(f"Could not remove {prefix}: {e}")
        return removed


def get_storage():
    backend = config.STORAGE_BACKEND
    if backend == "s3":
        return S3Storage()
    if backend != "local":
        logging.warning(f"Unknown STORAGE_BACKEND '{backend}', using local storage.")
    return LocalStorage()


def job_prefix(job_id: str) -> str:
    return f"jobs/{job_id}"


def scene_audio_key(job_id: str, scene_index: int) -> str:
    return f"{job_prefix(job_id)}/tts/scene-{scene_index:02d}.mp3"


def scene_image_key(job_id: str, scene_index: int, topic: str) -> str:
    return f"{job_prefix(job_id)}/scene-{scene_index:02d}-{safe_filename(topic)[:48]}.png"
