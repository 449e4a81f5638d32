"""
Creator Studio — storage/s3.py
─────────────────────────────────────────────────────────────────
AWS S3 media storage

What it does:
  1. Provider hands back a temporary URL → download it
  2. Upload the bytes to our bucket
  3. Return the permanent public URL → saved as the job's result_ref

Flow:
  coordinator.finalize() → storage.persist_result(job, temp_url)
                         → permanent_url → jobs.result_ref

.env:
  AWS_ACCESS_KEY_ID=your_access_key
  AWS_SECRET_ACCESS_KEY=your_secret_key
  AWS_S3_BUCKET=creatorstudio-media
  AWS_REGION=us-east-1
  AWS_CDN_URL=              # Optional: CloudFront URL
─────────────────────────────────────────────────────────────────
"""

import asyncio
import functools
import logging
from datetime import datetime, timezone
from typing import Optional, Tuple

import boto3
import httpx
from botocore.exceptions import BotoCoreError, ClientError, NoCredentialsError

from creatorstudio.core.config import cfg

logger = logging.getLogger("creatorstudio.s3")

# Folder structure inside the bucket:
#   generated/<owner>/image/2026/01/<job_id>.png
#   generated/<owner>/video/2026/01/<job_id>.mp4
S3_PREFIX = "generated"

EXTENSIONS = {
    "image/png":       "png",
    "image/jpeg":      "jpg",
    "image/webp":      "webp",
    "image/gif":       "gif",
    "video/mp4":       "mp4",
    "video/webm":      "webm",
    "video/quicktime": "mov",
}


# ─────────────────────────────────────────────
# Exceptions
# ─────────────────────────────────────────────
class StorageError(Exception):
    """Base storage exception."""

class UploadError(StorageError):
    """Upload failed."""

class DownloadError(StorageError):
    """Could not fetch the artifact from the provider URL."""

class StorageNotConfiguredError(StorageError):
    """AWS credentials missing in .env"""


def extension_for(content_type: str, default: str = "bin") -> str:
    return EXTENSIONS.get(content_type.split(";")[0].strip().lower(), default)


# ─────────────────────────────────────────────
# S3Storage
# ─────────────────────────────────────────────
class S3Storage:
    """
    upload(bytes, path) → URL, plus the download-then-upload helper
    used when a job completes. boto3 is blocking, so calls run in
    the default executor.
    """

    def __init__(
        self,
        bucket:        str = None,
        region:        str = None,
        access_key:    str = None,
        secret_key:    str = None,
        cdn_url:       str = None,
        client=None,
        http_client:   Optional[httpx.AsyncClient] = None,
        timeout:       float = 60.0,
    ):
        self.bucket      = bucket or cfg.AWS_S3_BUCKET
        self.region      = region or cfg.AWS_REGION
        self.access_key  = access_key if access_key is not None else cfg.AWS_ACCESS_KEY_ID
        self.secret_key  = secret_key if secret_key is not None else cfg.AWS_SECRET_ACCESS_KEY
        self.cdn_url     = (cdn_url if cdn_url is not None else cfg.AWS_CDN_URL).rstrip("/")
        self.timeout     = timeout
        self._client     = client
        self._http       = http_client

    # ─── Client ───────────────────────────────

    def _get_client(self):
        """
        Lazily create the boto3 client.
        Raises StorageNotConfiguredError if credentials are missing.
        """
        if self._client is not None:
            return self._client
        if not self.access_key or not self.secret_key:
            raise StorageNotConfiguredError(
                "AWS credentials missing! "
                "Set AWS_ACCESS_KEY_ID and AWS_SECRET_ACCESS_KEY in .env"
            )
        self._client = boto3.client(
            "s3",
            region_name           = self.region,
            aws_access_key_id     = self.access_key,
            aws_secret_access_key = self.secret_key,
        )
        return self._client

    # ─── Keys / URLs ──────────────────────────

    def make_key(self, owner: str, kind: str, job_id: str, extension: str,
                 now: Optional[datetime] = None) -> str:
        """
        Example:
            generated/user_42/image/2026/01/3f2c....png
        """
        now = now or datetime.now(timezone.utc)
        ext = extension.lstrip(".")
        return f"{S3_PREFIX}/{owner}/{kind}/{now:%Y}/{now:%m}/{job_id}.{ext}"

    def public_url(self, key: str) -> str:
        if self.cdn_url:
            return f"{self.cdn_url}/{key}"
        return f"https://{self.bucket}.s3.{self.region}.amazonaws.com/{key}"

    # ─── Core ─────────────────────────────────

    def _put_object(self, data: bytes, key: str, content_type: str) -> str:
        client = self._get_client()
        try:
            client.put_object(
                Bucket       = self.bucket,
                Key          = key,
                Body         = data,
                ContentType  = content_type,
                # Generated media never changes
                CacheControl = "public, max-age=31536000, immutable",
                Metadata     = {"source": "creatorstudio-generation"},
            )
        except NoCredentialsError:
            raise StorageNotConfiguredError("Invalid AWS credentials")
        except ClientError as e:
            error_code = e.response["Error"]["Code"]
            raise UploadError(f"S3 upload failed [{error_code}]: {e}")
        except BotoCoreError as e:
            raise UploadError(f"S3 upload failed: {e}")

        logger.info(f"✓ Uploaded to S3: {key} ({len(data)} bytes)")
        return self.public_url(key)

    async def upload(self, data: bytes, path: str, content_type: str = "application/octet-stream") -> str:
        """Upload raw bytes under `path`. Returns the permanent URL."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(
            None, functools.partial(self._put_object, data, path, content_type)
        )

    async def download(self, url: str) -> Tuple[bytes, str]:
        """
        Fetch a provider's temporary URL.
        Returns (bytes, content_type).
        """
        try:
            if self._http is not None:
                resp = await self._http.get(url, follow_redirects=True)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    resp = await client.get(url, follow_redirects=True)
        except httpx.HTTPError as e:
            raise DownloadError(f"Failed to download {url}: {e}")

        if resp.status_code != 200:
            raise DownloadError(f"Failed to download {url} (status {resp.status_code})")

        content_type = resp.headers.get("content-type", "application/octet-stream").split(";")[0]
        return resp.content, content_type

    async def persist_result(self, job, source_url: str) -> str:
        """
        Copy a job's artifact into the bucket.
        Keyed by job id, so repeating it overwrites the same object.
        """
        logger.info(f"Persisting {job.kind.value} for job {job.id}...")
        data, content_type = await self.download(source_url)

        default_ext = "mp4" if job.kind.value == "video" else "png"
        key = self.make_key(job.owner, job.kind.value, job.id, extension_for(content_type, default_ext))

        url = await self.upload(data, key, content_type)
        logger.info(f"✅ Job {job.id} stored: {url}")
        return url

    # ─── Health ───────────────────────────────

    def check_connection(self) -> dict:
        """
        Returns:
            {"ok": True, "bucket": ..., "region": ...}
            or {"ok": False, "error": "..."}
        """
        try:
            self._get_client().head_bucket(Bucket=self.bucket)
        except StorageNotConfiguredError as e:
            return {"ok": False, "error": str(e)}
        except ClientError as e:
            error_code = e.response["Error"]["Code"]
            if error_code == "404":
                return {"ok": False, "error": f"Bucket '{self.bucket}' does not exist"}
            if error_code == "403":
                return {"ok": False, "error": "Access denied — check IAM permissions"}
            return {"ok": False, "error": str(e)}
        except BotoCoreError as e:
            return {"ok": False, "error": str(e)}

        return {
            "ok":     True,
            "bucket": self.bucket,
            "region": self.region,
            "cdn":    self.cdn_url or "none (using S3 direct URL)",
        }
