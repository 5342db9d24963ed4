"""
S3 Document Storage — Organization-Isolated

Uploaded documents are written once at submission and read by the worker
for every attempt (including retries), so task payloads only ever carry
ids, never bytes.

Key layout:
    s3://<BUCKET>/tenants/<organization_id>/documents/<analysis_id><ext>

The prefix is built server-side from the organization id and analysis id;
the client filename only contributes its extension.

Encryption:
  - SSE-KMS when a key ARN is configured, SSE-S3 (AES256) otherwise.
"""

from __future__ import annotations

import logging
import mimetypes
from dataclasses import dataclass
from uuid import UUID

import aioboto3
from botocore.exceptions import ClientError

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class StorageConfig:
    bucket:      str
    region:      str = "us-east-1"
    kms_key_arn: str = ""

    @classmethod
    def from_settings(cls, settings) -> "StorageConfig":
        return cls(
            bucket=settings.s3_bucket,
            region=settings.aws_region,
            kms_key_arn=settings.s3_default_kms_key_arn,
        )


@dataclass(frozen=True)
class StoredDocument:
    """Returned by put_document."""
    organization_id: UUID
    key:             str          # full S3 key including prefix
    bucket:          str
    size_bytes:      int
    content_type:    str
    etag:            str


def document_key(organization_id: UUID, analysis_id: UUID, filename: str) -> str:
    """
    Build an organization-scoped S3 key.
    Pattern: tenants/<organization_id>/documents/<analysis_id><ext>
    """
    ext = ""
    base = filename.replace("\\", "/").rsplit("/", 1)[-1]
    if "." in base:
        ext = "." + base.rsplit(".", 1)[-1].lower()
    return f"tenants/{organization_id}/documents/{analysis_id}{ext}"


# ---------------------------------------------------------------------------
# S3 Service
# ---------------------------------------------------------------------------

class DocumentStorage:
    """
    Async S3 operations for analysis documents.

    Organization scoping is enforced by the key builder: get/delete take
    the organization id and rebuild the prefix, and refuse keys outside it.
    """

    def __init__(self, config: StorageConfig) -> None:
        self._cfg = config
        self._session = aioboto3.Session()

    def _client(self):
        """Return a scoped async S3 client context manager."""
        return self._session.client("s3", region_name=self._cfg.region)

    def _sse_params(self) -> dict:
        if self._cfg.kms_key_arn:
            return {"ServerSideEncryption": "aws:kms", "SSEKMSKeyId": self._cfg.kms_key_arn}
        return {"ServerSideEncryption": "AES256"}

    @staticmethod
    def _check_scope(organization_id: UUID, key: str) -> None:
        if not key.startswith(f"tenants/{organization_id}/"):
            raise PermissionError(f"Key outside organization prefix: {key}")

    async def put_document(
        self,
        organization_id: UUID,
        analysis_id:     UUID,
        filename:        str,
        body:            bytes,
    ) -> StoredDocument:
        key = document_key(organization_id, analysis_id, filename)
        ct  = mimetypes.guess_type(filename)[0] or "application/octet-stream"

        async with self._client() as s3:
            resp = await s3.put_object(
                Bucket=self._cfg.bucket,
                Key=key,
                Body=body,
                ContentType=ct,
                Metadata={
                    "organization_id": str(organization_id),
                    "analysis_id":     str(analysis_id),
                },
                **self._sse_params(),
            )

        logger.info(
            "S3 upload ok | org=%s analysis=%s key=%s size=%d",
            organization_id, analysis_id, key, len(body),
        )
        return StoredDocument(
            organization_id=organization_id,
            key=key,
            bucket=self._cfg.bucket,
            size_bytes=len(body),
            content_type=ct,
            etag=resp.get("ETag", "").strip('"'),
        )

    async def get_document(self, organization_id: UUID, key: str) -> bytes:
        self._check_scope(organization_id, key)
        async with self._client() as s3:
            try:
                resp = await s3.get_object(Bucket=self._cfg.bucket, Key=key)
                return await resp["Body"].read()
            except ClientError as exc:
                code = exc.response["Error"]["Code"]
                if code in ("NoSuchKey", "404"):
                    raise FileNotFoundError(f"Object not found: {key}") from exc
                raise

    async def delete_document(self, organization_id: UUID, key: str) -> None:
        self._check_scope(organization_id, key)
        async with self._client() as s3:
            await s3.delete_object(Bucket=self._cfg.bucket, Key=key)
        logger.warning("S3 delete | org=%s key=%s", organization_id, key)
