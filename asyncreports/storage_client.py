import logging
from datetime import datetime, timedelta, timezone
from typing import Optional, Tuple

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from asyncreports.errors import TransientIOError
from asyncreports.settings import WorkerSettings

logger = logging.getLogger(__name__)


class StorageClient:
    """
    Abstraction for S3/MinIO/LocalStack storage operations.
    Writes report artifacts and signs time-limited download URLs for them.
    """

    def __init__(self, settings: WorkerSettings, s3_client=None):
        self.endpoint_url = settings.storage_endpoint_url
        self.bucket_name = settings.storage_bucket_name
        self.region = settings.storage_region

        if s3_client is None:
            s3_client = boto3.client(
                's3',
                endpoint_url=self.endpoint_url,
                aws_access_key_id=settings.storage_access_key,
                aws_secret_access_key=settings.storage_secret_key,
                region_name=self.region,
                use_ssl=settings.storage_use_ssl,
                config=Config(
                    signature_version='s3v4',
                    retries={'max_attempts': 3, 'mode': 'standard'},
                    # A single attempt must not outlive the per-job deadline
                    connect_timeout=settings.job_timeout_seconds,
                    read_timeout=settings.job_timeout_seconds,
                    # LocalStack/MinIO need path-style addressing
                    s3={'addressing_style': 'path'} if self.endpoint_url else None,
                )
            )
        self.s3_client = s3_client

    def put(self, s3_key: str, data: bytes, content_type: str = 'text/csv',
            content_encoding: Optional[str] = None) -> None:
        """
        Upload bytes to the report bucket.

        Raises:
            TransientIOError: on any S3 failure
        """
        extra = {'ContentEncoding': content_encoding} if content_encoding else {}
        logger.info(f"Uploading {len(data)} bytes to s3://{self.bucket_name}/{s3_key}")
        try:
            self.s3_client.put_object(
                Bucket=self.bucket_name,
                Key=s3_key,
                Body=data,
                ContentType=content_type,
                **extra
            )
        except (ClientError, BotoCoreError) as e:
            logger.error(f"S3 upload error for {s3_key}: {e}")
            raise TransientIOError(f"failed to upload s3://{self.bucket_name}/{s3_key}: {e}") from e

        logger.info(f"Successfully uploaded to s3://{self.bucket_name}/{s3_key}")

    def presign_get(self, s3_key: str, ttl_seconds: int) -> Tuple[str, datetime]:
        """
        Sign a GET URL for s3_key valid for ttl_seconds.

        Returns:
            (url, expires_at) where expires_at is measured from the signing time
        """
        signed_at = datetime.now(timezone.utc)
        try:
            url = self.s3_client.generate_presigned_url(
                'get_object',
                Params={'Bucket': self.bucket_name, 'Key': s3_key},
                ExpiresIn=ttl_seconds,
            )
        except (ClientError, BotoCoreError) as e:
            logger.error(f"S3 presign error for {s3_key}: {e}")
            raise TransientIOError(f"failed to sign url for {s3_key}: {e}") from e
        return url, signed_at + timedelta(seconds=ttl_seconds)

    def is_healthy(self) -> bool:
        try:
            self.s3_client.head_bucket(Bucket=self.bucket_name)
            return True
        except (ClientError, BotoCoreError) as e:
            logger.warning(f"Storage bucket {self.bucket_name} unreachable: {e}")
            return False
