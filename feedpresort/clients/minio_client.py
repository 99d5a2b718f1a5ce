"""
MinIO (S3-compatible) client for media storage.

Media rows either carry an absolute URL (embeds, CDN) or an object key in
the media bucket. For object keys we hand out pre-signed URLs so clients
stream media straight from MinIO without going through the API.
"""
import logging
from typing import Optional

import boto3
from botocore.client import Config

from feedpresort.config import settings

logger = logging.getLogger(__name__)

_s3 = None


def init_minio() -> None:
    """Create the S3 client and ensure the media bucket exists."""
    global _s3
    _s3 = boto3.client(
        "s3",
        endpoint_url=f"http://{settings.minio_endpoint}",
        aws_access_key_id=settings.minio_access_key,
        aws_secret_access_key=settings.minio_secret_key,
        config=Config(signature_version="s3v4"),
        region_name="us-east-1",
    )

    existing = [b["Name"] for b in _s3.list_buckets().get("Buckets", [])]
    if settings.minio_bucket not in existing:
        _s3.create_bucket(Bucket=settings.minio_bucket)
        logger.info("Created MinIO bucket '%s'", settings.minio_bucket)
    else:
        logger.info("MinIO bucket '%s' already exists", settings.minio_bucket)


def get_s3():
    if _s3 is None:
        raise RuntimeError("MinIO client not initialised — call init_minio() at startup")
    return _s3


def get_presigned_url(media_key: str, expires_in: Optional[int] = None) -> Optional[str]:
    """Generate a temporary pre-signed URL; None when signing fails."""
    if not media_key:
        return None
    try:
        return get_s3().generate_presigned_url(
            "get_object",
            Params={"Bucket": settings.minio_bucket, "Key": media_key},
            ExpiresIn=expires_in or settings.minio_url_expiry,
        )
    except Exception as exc:
        logger.warning("Failed to generate presigned URL for %s: %s", media_key, exc)
        return None


def resolve_media_url(url: Optional[str], storage_key: Optional[str]) -> Optional[str]:
    """Stored absolute URL wins; otherwise sign the object key."""
    if url:
        return url
    if storage_key:
        return get_presigned_url(storage_key)
    return None
