from datetime import timedelta
from io import BytesIO
import logging
import os
import uuid

from minio import Minio
from minio.error import S3Error
from urllib3.exceptions import HTTPError as TransportError

from errors import CollaboratorError

logger = logging.getLogger(__name__)

MINIO_ENDPOINT = os.getenv("MINIO_ENDPOINT", "localhost:9000")
MINIO_ACCESS_KEY = os.getenv("MINIO_ACCESS_KEY", "minioadmin")
MINIO_SECRET_KEY = os.getenv("MINIO_SECRET_KEY", "minioadmin")
MINIO_BUCKET = os.getenv("MINIO_BUCKET", "engagements")
PRESIGNED_URL_HOURS = int(os.getenv("PRESIGNED_URL_HOURS", "24"))

# S3 rejections plus an unreachable or dropped MinIO endpoint
STORAGE_ERRORS = (S3Error, TransportError, OSError)

minio_client = Minio(
    MINIO_ENDPOINT,
    access_key=MINIO_ACCESS_KEY,
    secret_key=MINIO_SECRET_KEY,
    secure=False
)


def object_name_for(engagement_id: str, filename: str) -> str:
    ext = os.path.splitext(filename or "")[1]
    return f"engagements/{engagement_id}/documents/{uuid.uuid4()}{ext}"


def split_locator(locator: str):
    """'s3://bucket/a/b.pdf' -> ('bucket', 'a/b.pdf')"""
    bucket_name, _, object_name = locator[len("s3://"):].partition("/")
    return bucket_name, object_name


def ensure_bucket(bucket_name: str):
    if not minio_client.bucket_exists(bucket_name):
        minio_client.make_bucket(bucket_name)
        logger.info("Created bucket: %s", bucket_name)


def upload_file(object_name: str, file_data: bytes, content_type: str = "application/octet-stream",
                bucket_name: str = MINIO_BUCKET) -> str:
    """Store the bytes and return the opaque locator kept on the Document."""
    try:
        ensure_bucket(bucket_name)
        minio_client.put_object(
            bucket_name,
            object_name,
            BytesIO(file_data),
            length=len(file_data),
            content_type=content_type
        )
    except STORAGE_ERRORS as e:
        logger.warning("Error uploading file %s: %s", object_name, e)
        raise CollaboratorError("Could not store document") from e
    return f"s3://{bucket_name}/{object_name}"


def delete_file(locator: str):
    """Remove a stored object. Failures are logged, never raised."""
    if not locator.startswith("s3://"):
        return
    bucket_name, object_name = split_locator(locator)
    try:
        minio_client.remove_object(bucket_name, object_name)
    except STORAGE_ERRORS as e:
        logger.warning("Error deleting file %s: %s", locator, e)


def resolve_download_url(locator: str, expires: timedelta = timedelta(hours=PRESIGNED_URL_HOURS)) -> str:
    """Turn a stored locator into a time-limited download URL."""
    if not locator.startswith("s3://"):
        # Legacy documents were saved with a direct URL
        return locator
    bucket_name, object_name = split_locator(locator)
    try:
        url = minio_client.presigned_get_object(bucket_name, object_name, expires=expires)
    except STORAGE_ERRORS as e:
        logger.warning("Error generating presigned URL for %s: %s", locator, e)
        raise CollaboratorError("Could not resolve document download URL") from e
    if "minio:9000" in url:
        url = url.replace("minio:9000", "localhost:9000")
    return url
