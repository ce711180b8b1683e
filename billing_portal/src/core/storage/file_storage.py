import os
import time
import aiofiles
import aioboto3
import structlog
from typing import Optional
from pydantic import BaseModel

from ..config.settings import Settings, get_settings

logger = structlog.get_logger(__name__)


class StoredFile(BaseModel):
    key: str
    url: str


def generate_insurance_card_key(patient_id: str, side: str, extension: str) -> str:
    timestamp_ms = int(time.time() * 1000)
    return f"insurance-cards/{patient_id}/{side}-{timestamp_ms}.{extension}"


def get_file_extension(filename: Optional[str]) -> str:
    if not filename or "." not in filename:
        return "jpg"
    return filename.rsplit(".", 1)[-1].lower() or "jpg"


class FileStorage:
    """
    Stores uploaded bytes under a key. Uses S3-compatible object storage when
    bucket and credentials are configured, local disk otherwise.
    """

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        logger.info("FileStorage initialized", backend="s3" if self.settings.s3_configured else "local")

    async def save(self, buffer: bytes, key: str, content_type: str) -> StoredFile:
        if self.settings.s3_configured:
            return await self._save_s3(buffer, key, content_type)
        return await self._save_local(buffer, key)

    async def _save_local(self, buffer: bytes, key: str) -> StoredFile:
        upload_dir = self.settings.LOCAL_UPLOAD_DIR
        os.makedirs(upload_dir, exist_ok=True)

        # Flatten the key so it cannot escape the upload directory.
        filename = key.replace("/", "_").replace("\\", "_")
        file_path = os.path.join(upload_dir, filename)
        async with aiofiles.open(file_path, 'wb') as out_file:
            await out_file.write(buffer)

        url = f"{self.settings.LOCAL_UPLOAD_URL_PREFIX.rstrip('/')}/{filename}"
        logger.info("File stored locally", key=key, path=file_path, size=len(buffer))
        return StoredFile(key=key, url=url)

    async def _save_s3(self, buffer: bytes, key: str, content_type: str) -> StoredFile:
        s = self.settings
        session = aioboto3.Session()
        async with session.client(
            's3',
            region_name=s.S3_REGION,
            aws_access_key_id=s.S3_ACCESS_KEY,
            aws_secret_access_key=s.S3_SECRET_KEY,
            endpoint_url=s.S3_ENDPOINT_URL,
        ) as s3:
            await s3.put_object(
                Bucket=s.S3_BUCKET,
                Key=key,
                Body=buffer,
                ContentType=content_type or 'application/octet-stream',
            )

        if s.S3_ENDPOINT_URL:
            url = f"{s.S3_ENDPOINT_URL.rstrip('/')}/{s.S3_BUCKET}/{key}"
        else:
            url = f"https://{s.S3_BUCKET}.s3.{s.S3_REGION}.amazonaws.com/{key}"
        logger.info("File stored in object storage", key=key, bucket=s.S3_BUCKET, size=len(buffer))
        return StoredFile(key=key, url=url)
