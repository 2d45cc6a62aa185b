"""
Object storage gateway backed by an S3-compatible service.

This module provides:
- The multipart upload lifecycle (create, presign part, complete, abort)
- Server-side copy from the temporary upload key to the permanent key
- Object download/upload for the rendition worker
- Presigned GET URLs for ready renditions

The boto3 client is built by the process entry point and injected, so nothing
here connects on import or on first use.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

import boto3
from boto3.exceptions import S3UploadFailedError
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError
from omegaconf import DictConfig

from .errors import StorageError

logger = logging.getLogger(__name__)


def build_s3_client(storage_config: DictConfig):
    """
    Create a boto3 S3 client from the ``storage`` config section.

    Path-style addressing is required by most self-hosted S3 implementations
    (MinIO, Ceph), hence ``force_path_style``.
    """
    addressing = "path" if storage_config.force_path_style else "auto"
    return boto3.client(
        "s3",
        endpoint_url=storage_config.endpoint or None,
        region_name=storage_config.region,
        aws_access_key_id=storage_config.access_key or None,
        aws_secret_access_key=storage_config.secret_key or None,
        config=Config(signature_version="s3v4", s3={"addressing_style": addressing}),
    )


class StorageGateway:
    """
    Thin wrapper around one bucket of an S3-compatible store.

    Every botocore failure is re-raised as StorageError with the operation
    and key in the message; callers decide whether to surface or dead-letter it.
    """

    def __init__(self, client: Any, bucket: str, presign_ttl: int = 600) -> None:
        self.client = client
        self.bucket = bucket
        self.presign_ttl = presign_ttl

    def _fail(self, operation: str, key: str, exc: Exception) -> StorageError:
        logger.error(f"S3 {operation} failed for s3://{self.bucket}/{key}: {exc}")
        return StorageError(f"{operation} failed for {key}: {exc}")

    def create_multipart_upload(self, key: str, mime: str) -> str:
        try:
            response = self.client.create_multipart_upload(Bucket=self.bucket, Key=key, ContentType=mime)
        except (ClientError, BotoCoreError) as exc:
            raise self._fail("create_multipart_upload", key, exc) from exc
        upload_id = response.get("UploadId")
        if not upload_id:
            raise StorageError(f"create_multipart_upload returned no UploadId for {key}")
        logger.info(f"Created multipart upload {upload_id} for s3://{self.bucket}/{key}")
        return upload_id

    def presign_part_url(self, key: str, upload_id: str, part_number: int) -> str:
        try:
            return self.client.generate_presigned_url(
                "upload_part",
                Params={
                    "Bucket": self.bucket,
                    "Key": key,
                    "UploadId": upload_id,
                    "PartNumber": part_number,
                },
                ExpiresIn=self.presign_ttl,
            )
        except (ClientError, BotoCoreError) as exc:
            raise self._fail("presign upload_part", key, exc) from exc

    def complete_multipart_upload(self, key: str, upload_id: str, parts: Iterable[Dict[str, Any]]) -> str:
        """
        Commit a multipart upload.

        Args:
            parts: ``{"PartNumber": int, "ETag": str}`` mappings. They are sent
                sorted by part number; S3 rejects an incomplete or mismatched set.

        Returns:
            The committed object key
        """
        ordered: List[Dict[str, Any]] = sorted(parts, key=lambda part: part["PartNumber"])
        try:
            response = self.client.complete_multipart_upload(
                Bucket=self.bucket,
                Key=key,
                UploadId=upload_id,
                MultipartUpload={"Parts": ordered},
            )
        except (ClientError, BotoCoreError) as exc:
            raise self._fail("complete_multipart_upload", key, exc) from exc
        if not response.get("Key") and not response.get("Location"):
            raise StorageError(f"complete_multipart_upload returned no object for {key}")
        return response.get("Key") or key

    def abort_multipart_upload(self, key: str, upload_id: str) -> None:
        try:
            self.client.abort_multipart_upload(Bucket=self.bucket, Key=key, UploadId=upload_id)
        except (ClientError, BotoCoreError) as exc:
            raise self._fail("abort_multipart_upload", key, exc) from exc

    def copy_object(self, source_key: str, dest_key: str) -> None:
        try:
            response = self.client.copy_object(
                Bucket=self.bucket,
                CopySource={"Bucket": self.bucket, "Key": source_key},
                Key=dest_key,
            )
        except (ClientError, BotoCoreError) as exc:
            raise self._fail("copy_object", source_key, exc) from exc
        if not response.get("CopyObjectResult"):
            raise StorageError(f"Failed to copy object from {source_key} to {dest_key}")

    def download_file(self, key: str, destination: Path) -> Path:
        destination.parent.mkdir(parents=True, exist_ok=True)
        try:
            self.client.download_file(self.bucket, key, str(destination))
        except (ClientError, BotoCoreError) as exc:
            raise self._fail("download", key, exc) from exc
        return destination

    def upload_file(self, source: Path, key: str, content_type: str) -> None:
        try:
            self.client.upload_file(
                str(source),
                self.bucket,
                key,
                ExtraArgs={"ContentType": content_type},
            )
        except (ClientError, BotoCoreError, S3UploadFailedError) as exc:
            raise self._fail("upload", key, exc) from exc

    def presign_get_url(self, key: str, ttl: Optional[int] = None) -> str:
        try:
            return self.client.generate_presigned_url(
                "get_object",
                Params={"Bucket": self.bucket, "Key": key},
                ExpiresIn=ttl or self.presign_ttl,
            )
        except (ClientError, BotoCoreError) as exc:
            raise self._fail("presign get_object", key, exc) from exc
