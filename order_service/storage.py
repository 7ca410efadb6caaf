from datetime import datetime, timedelta, timezone
import logging
import re
import uuid

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from . import config
from .errors import InternalError, ValidationError

logger = logging.getLogger(__name__)

ALLOWED_CONTENT_TYPES = frozenset({"image/jpeg", "image/png", "image/webp", "image/heic"})


def proof_prefix(mitra_id: str, order_id: str) -> str:
    return f"proofs/{mitra_id}/{order_id}/"


def safe_filename(filename: str) -> str:
    # Drop any directory part the client sent, then keep a conservative charset
    name = filename.replace("\\", "/").rsplit("/", 1)[-1]
    name = re.sub(r"[^A-Za-z0-9._-]", "_", name).strip("._")
    return name[:100] or "photo"


def build_proof_key(mitra_id: str, order_id: str, filename: str) -> str:
    return f"{proof_prefix(mitra_id, order_id)}{uuid.uuid4().hex}-{safe_filename(filename)}"


class ProofStorage:
    """Issues pre-signed PUT URLs for proof photos. Bytes never pass through this service."""

    def __init__(self, client, bucket: str, expires_in: int = config.UPLOAD_URL_TTL_SECONDS):
        self.client = client
        self.bucket = bucket
        self.expires_in = expires_in

    @classmethod
    def from_config(cls) -> "ProofStorage":
        client = boto3.client(
            "s3",
            endpoint_url=config.STORAGE_ENDPOINT_URL or None,
            region_name=config.STORAGE_REGION,
            aws_access_key_id=config.STORAGE_ACCESS_KEY_ID,
            aws_secret_access_key=config.STORAGE_SECRET_ACCESS_KEY,
            config=BotoConfig(signature_version="s3v4", s3={"addressing_style": "path"}),
        )
        logger.info(f"Proof storage configured for bucket '{config.STORAGE_BUCKET}'")
        return cls(client, config.STORAGE_BUCKET)

    def create_upload_url(self, key: str, content_type: str) -> dict:
        if content_type not in ALLOWED_CONTENT_TYPES:
            raise ValidationError(
                f"Unsupported content type {content_type}",
                code="UNSUPPORTED_CONTENT_TYPE",
                details={"allowed": sorted(ALLOWED_CONTENT_TYPES)},
            )
        try:
            url = self.client.generate_presigned_url(
                "put_object",
                Params={"Bucket": self.bucket, "Key": key, "ContentType": content_type},
                ExpiresIn=self.expires_in,
            )
        except (BotoCoreError, ClientError) as e:
            logger.error(f"Failed to sign upload URL for {key}: {e}")
            raise InternalError("Could not create upload URL") from e
        expires_at = datetime.now(timezone.utc) + timedelta(seconds=self.expires_in)
        logger.info(f"Issued upload URL for {key} (expires in {self.expires_in}s)")
        return {
            "upload_url": url,
            "key": key,
            "content_type": content_type,
            "expires_in": self.expires_in,
            "expires_at": expires_at,
        }
