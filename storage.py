"""Product and offer images in an S3-compatible bucket (Cloudflare R2)."""
import os
import time
from functools import lru_cache
from typing import Optional

import boto3
import structlog
from botocore.exceptions import BotoCoreError, ClientError
from fastapi import UploadFile
from starlette.concurrency import run_in_threadpool

from errors import ValidationError

logger = structlog.get_logger(__name__)

R2_ENDPOINT = os.getenv("R2_ENDPOINT")
R2_ACCESS_KEY_ID = os.getenv("R2_ACCESS_KEY_ID")
R2_SECRET_ACCESS_KEY = os.getenv("R2_SECRET_ACCESS_KEY")
R2_BUCKET = os.getenv("R2_BUCKET", "babyshop")
MAX_IMAGE_BYTES = int(os.getenv("MAX_IMAGE_BYTES", 5 * 1024 * 1024))


class StorageError(Exception):
    pass


@lru_cache(maxsize=1)
def get_client():
    return boto3.client(
        "s3",
        endpoint_url=R2_ENDPOINT,
        aws_access_key_id=R2_ACCESS_KEY_ID,
        aws_secret_access_key=R2_SECRET_ACCESS_KEY,
        region_name="auto",
    )


def _extension(filename: Optional[str]) -> str:
    return os.path.splitext(filename or "")[1].lower()


async def upload_image(file: UploadFile, prefix: str) -> str:
    """Store an uploaded image and return its object key."""
    if not (file.content_type or "").startswith("image/"):
        raise ValidationError("Only image files allowed")
    body = await file.read()
    if len(body) > MAX_IMAGE_BYTES:
        raise ValidationError(f"Image exceeds {MAX_IMAGE_BYTES} bytes")

    key = f"{prefix}-{int(time.time() * 1000)}{_extension(file.filename)}"
    try:
        await run_in_threadpool(
            get_client().put_object, Bucket=R2_BUCKET, Key=key, Body=body, ContentType=file.content_type
        )
    except (BotoCoreError, ClientError) as exc:
        raise StorageError(f"Failed to upload {key}") from exc
    logger.info("image_uploaded", key=key, size=len(body))
    return key


def delete_image(key: Optional[str]) -> None:
    if not key:
        return
    try:
        get_client().delete_object(Bucket=R2_BUCKET, Key=key)
    except (BotoCoreError, ClientError) as exc:
        logger.warning("image_delete_failed", key=key, error=str(exc))
