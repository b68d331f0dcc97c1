"""
S3-compatible object storage (presigned URLs only; bytes never pass through the API)
"""
import logging
import boto3
from botocore.config import Config

from common.settings import settings

logger = logging.getLogger(__name__)

class ObjectStorage:
    def __init__(self, bucket: str = None, client=None):
        self.bucket = bucket or settings.storage_bucket
        self._client = client

    def get_s3_client(self):
        if self._client is None:
            self._client = boto3.client(
                "s3",
                endpoint_url=settings.storage_endpoint_url or None,
                region_name=settings.storage_region,
                aws_access_key_id=settings.storage_access_key_id or None,
                aws_secret_access_key=settings.storage_secret_access_key or None,
                config=Config(signature_version="s3v4", s3={"addressing_style": "virtual"}),
            )
        return self._client

    @staticmethod
    def _normalize_key(key: str) -> str:
        return key.lstrip("/") if key else key

    def presign_upload(self, key: str, content_type: str, ttl: int = None) -> str:
        return self.get_s3_client().generate_presigned_url(
            ClientMethod="put_object",
            Params={"Bucket": self.bucket, "Key": self._normalize_key(key), "ContentType": content_type},
            ExpiresIn=ttl or settings.upload_url_ttl_seconds,
        )

    def presign_download(self, key: str, ttl: int = None) -> str:
        return self.get_s3_client().generate_presigned_url(
            ClientMethod="get_object",
            Params={"Bucket": self.bucket, "Key": self._normalize_key(key)},
            ExpiresIn=ttl or settings.download_url_ttl_seconds,
        )

    def delete(self, key: str) -> None:
        self.get_s3_client().delete_object(Bucket=self.bucket, Key=self._normalize_key(key))
        logger.info(f"Deleted object {key} from {self.bucket}")
