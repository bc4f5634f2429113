import logging
from dataclasses import dataclass
from typing import Callable, Iterator, Optional

import boto3
from botocore.exceptions import ClientError

logger = logging.getLogger(__name__)

CHUNK_SIZE = 128 * 1024


@dataclass
class StoredObject:
    size: int
    chunks: Iterator[bytes]
    close: Callable[[], None]


class S3Storage:
    def __init__(self, access_key=None, secret_key=None, region=None, endpoint_url=None):
        self.s3 = boto3.client(
            "s3",
            aws_access_key_id=access_key or None,
            aws_secret_access_key=secret_key or None,
            region_name=region or None,
            endpoint_url=endpoint_url or None,
        )

    def get_object(self, bucket: str, key: str) -> Optional[StoredObject]:
        """Streaming handle for an object, or None when it does not exist."""
        try:
            s3_response = self.s3.get_object(Bucket=bucket, Key=key)
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code", "")
            if code in ("NoSuchKey", "404", "NotFound"):
                logger.warning(f"key not found {key}")
                return None
            raise

        body = s3_response["Body"]
        return StoredObject(
            size=int(s3_response.get("ContentLength") or 0),
            chunks=body.iter_chunks(chunk_size=CHUNK_SIZE),
            close=body.close,
        )
