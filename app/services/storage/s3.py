import logging
from typing import Dict

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from .base import BaseStorage
from app.core.config import Settings
from app.core.exceptions import TransportError

logger = logging.getLogger(__name__)


class S3Storage(BaseStorage):
    def __init__(self, settings: Settings, s3_client=None):
        self.bucket = settings.S3_BUCKET_NAME
        self.s3_client = s3_client or boto3.client(
            's3',
            aws_access_key_id=settings.S3_ACCESS_KEY or None,
            aws_secret_access_key=settings.S3_SECRET_KEY or None,
            endpoint_url=settings.S3_ENDPOINT_URL or None,
            region_name=settings.S3_REGION_NAME
        )

    def put_object(self, key: str, body: bytes, content_type: str, metadata: Dict[str, str]) -> str:
        try:
            self.s3_client.put_object(
                Bucket=self.bucket,
                Key=key,
                Body=body,
                ContentType=content_type,
                Metadata=metadata,
            )
        except (BotoCoreError, ClientError) as e:
            raise TransportError(f"S3 upload failed: {e}") from e
        logger.info(f"Stored s3://{self.bucket}/{key} ({len(body)} bytes)")
        return key

    def delete_object(self, key: str) -> None:
        try:
            self.s3_client.delete_object(Bucket=self.bucket, Key=key)
        except (BotoCoreError, ClientError) as e:
            raise TransportError(f"S3 delete failed: {e}") from e
