"""Media pipelines for voice notes and buyer cover photos.

Voice notes: provider media info -> download -> transcode to MP3 (ffmpeg) ->
upload to object storage -> mark the VoiceNote ``completed``. Any step that
cannot proceed marks it ``failed``; the storyteller never hears about it.

Cover photos: download -> compress to JPEG (Pillow) -> upload -> set the
trial's custom cover -> thank the buyer. Each failing stage sends the buyer a
short apology instead.
"""

import asyncio
import hashlib
import io
import os
import tempfile
from typing import Callable, ContextManager, Optional
from uuid import UUID

import boto3
import ffmpeg
from botocore.client import BaseClient
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError
from PIL import Image, UnidentifiedImageError
from sqlalchemy.orm import Session

from kahani.config import Settings, settings as default_settings
from kahani.database import session_scope
from kahani.logging_config import get_logger
from kahani.models import Trial, VoiceNote
from kahani.services.localization import MessageKey, NameParams, render
from kahani.services.result import ErrorCode, Result
from kahani.services.whatsapp_service import WhatsAppGateway

logger = get_logger("media_service")

SessionScope = Callable[[], ContextManager[Session]]

MP3_MIME = "audio/mpeg"
JPEG_MIME = "image/jpeg"
COVER_MAX_DIMENSION = 1600
COVER_JPEG_QUALITY = 85

AUDIO_SUFFIXES = {
    "audio/ogg": ".ogg",
    "audio/mpeg": ".mp3",
    "audio/mp4": ".m4a",
    "audio/aac": ".aac",
    "audio/amr": ".amr",
}


def get_s3_client(config: Settings = default_settings) -> BaseClient:
    """S3 client for the configured S3-compatible endpoint (Cloudflare R2 in production)."""
    endpoint = config.storage_endpoint_url.rstrip("/") if config.storage_endpoint_url else None
    return boto3.client(
        "s3",
        region_name=config.storage_region or None,
        aws_access_key_id=config.storage_access_key_id or None,
        aws_secret_access_key=config.storage_secret_access_key or None,
        endpoint_url=endpoint,
        config=Config(signature_version="s3v4", retries={"max_attempts": 3, "mode": "standard"}),
    )


class ObjectStorage:
    def __init__(self, config: Settings = default_settings, client: Optional[BaseClient] = None):
        self.config = config
        self._client = client

    @property
    def is_configured(self) -> bool:
        if self._client is not None:
            return True
        c = self.config
        return bool(c.storage_endpoint_url and c.storage_access_key_id and c.storage_secret_access_key)

    @property
    def client(self) -> BaseClient:
        if self._client is None:
            self._client = get_s3_client(self.config)
        return self._client

    def upload(self, bucket: str, key: str, data: bytes, content_type: str, public_base: Optional[str]) -> str:
        """Store ``data`` and return its public URL."""
        self.client.put_object(Bucket=bucket, Key=key, Body=data, ContentType=content_type)
        if public_base:
            return f"{public_base.rstrip('/')}/{key}"
        return f"{self.config.storage_endpoint_url.rstrip('/')}/{bucket}/{key}"


def transcode_to_mp3(data: bytes, mime_type: Optional[str] = None) -> bytes:
    """Transcode provider audio (usually OGG/Opus) to mono 64 kbps MP3."""
    suffix = AUDIO_SUFFIXES.get((mime_type or "").split(";")[0].strip(), ".ogg")
    with tempfile.TemporaryDirectory() as workdir:
        source = os.path.join(workdir, f"source{suffix}")
        target = os.path.join(workdir, "voice.mp3")
        with open(source, "wb") as f:
            f.write(data)
        (
            ffmpeg
            .input(source)
            .output(target, ac=1, audio_bitrate="64k", format="mp3", loglevel="error")
            .overwrite_output()
            .run(capture_stdout=True, capture_stderr=True)
        )
        with open(target, "rb") as f:
            return f.read()


def compress_cover_image(data: bytes, max_dimension: int = COVER_MAX_DIMENSION) -> bytes:
    """Re-encode as JPEG, bounded to ``max_dimension`` on the longer side."""
    image = Image.open(io.BytesIO(data))
    image.load()
    if image.mode not in ("RGB", "L"):
        image = image.convert("RGB")
    image.thumbnail((max_dimension, max_dimension))
    out = io.BytesIO()
    image.save(out, format="JPEG", quality=COVER_JPEG_QUALITY, optimize=True)
    return out.getvalue()


class VoiceNotePipeline:
    def __init__(
        self,
        gateway: WhatsAppGateway,
        storage: Optional[ObjectStorage] = None,
        scope: SessionScope = session_scope,
        transcode: Callable[[bytes, Optional[str]], bytes] = transcode_to_mp3,
    ):
        self.gateway = gateway
        self.storage = storage or ObjectStorage(gateway.config)
        self._scope = scope
        self._transcode = transcode

    async def __call__(self, trial_id: UUID, question_index: int) -> Result[str]:
        """Process one voice note. Every outcome other than success leaves it ``failed``."""
        try:
            return await self._process(trial_id, question_index)
        except Exception as e:
            logger.error(
                "Unexpected error processing voice note",
                extra={"context": {"trial_id": str(trial_id), "question_index": question_index}},
                exc_info=True,
            )
            return self._fail(trial_id, question_index, f"unexpected error: {e}", ErrorCode.UNKNOWN)

    async def _process(self, trial_id: UUID, question_index: int) -> Result[str]:
        ctx = {"trial_id": str(trial_id), "question_index": question_index}
        with self._scope() as db:
            note = self._load(db, trial_id, question_index)
            if note is None:
                logger.error("Voice note not found for processing", extra={"context": ctx})
                return Result.failure("voice note not found", ErrorCode.TRIAL_NOT_FOUND)
            media_id, mime_type = note.media_id, note.mime_type

        info = await self.gateway.get_media_info(media_id)
        if info is None:
            return self._fail(trial_id, question_index, "media info unavailable", ErrorCode.MEDIA_INFO_FAILED)

        raw = await self.gateway.download_media(info.url)
        if raw is None:
            return self._fail(trial_id, question_index, "download failed", ErrorCode.DOWNLOAD_FAILED)

        try:
            audio = await asyncio.to_thread(self._transcode, raw, info.mime_type or mime_type)
        except (ffmpeg.Error, OSError) as e:
            stderr = getattr(e, "stderr", None)
            detail = stderr.decode("utf-8", errors="ignore")[:200] if stderr else str(e)
            return self._fail(trial_id, question_index, f"transcode failed: {detail}", ErrorCode.TRANSCODE_FAILED)

        if not self.storage.is_configured:
            return self._fail(trial_id, question_index, "object storage not configured", ErrorCode.NOT_CONFIGURED)

        key = f"{trial_id}/{question_index}_{media_id}.mp3"
        try:
            url = await asyncio.to_thread(
                self.storage.upload,
                self.gateway.config.voice_notes_bucket,
                key,
                audio,
                MP3_MIME,
                self.gateway.config.voice_notes_public_url,
            )
        except (BotoCoreError, ClientError) as e:
            return self._fail(trial_id, question_index, f"upload failed: {e}", ErrorCode.UPLOAD_FAILED)

        with self._scope() as db:
            note = self._load(db, trial_id, question_index)
            note.media_url = url
            note.local_file_path = key
            note.mime_type = MP3_MIME
            note.media_sha256 = hashlib.sha256(audio).hexdigest()
            note.size_bytes = len(audio)
            note.download_status = "completed"
            db.commit()

        logger.info("Voice note processed", extra={"context": {**ctx, "url": url, "size_bytes": len(audio)}})
        return Result.success(url)

    @staticmethod
    def _load(db: Session, trial_id: UUID, question_index: int) -> Optional[VoiceNote]:
        return (
            db.query(VoiceNote)
            .filter(VoiceNote.free_trial_id == trial_id, VoiceNote.question_index == question_index)
            .first()
        )

    def _fail(self, trial_id: UUID, question_index: int, error: str, code: ErrorCode) -> Result[str]:
        logger.error(
            "Voice note processing failed",
            extra={"context": {"trial_id": str(trial_id), "question_index": question_index, "error": error}},
        )
        with self._scope() as db:
            note = self._load(db, trial_id, question_index)
            if note is not None:
                note.download_status = "failed"
                db.commit()
        return Result.failure(error, code)


class CoverImagePipeline:
    def __init__(
        self,
        gateway: WhatsAppGateway,
        storage: Optional[ObjectStorage] = None,
        scope: SessionScope = session_scope,
    ):
        self.gateway = gateway
        self.storage = storage or ObjectStorage(gateway.config)
        self._scope = scope

    async def __call__(self, trial_id: UUID, media_id: str, reply_to: str) -> Result[str]:
        ctx = {"trial_id": str(trial_id), "media_id": media_id}

        info = await self.gateway.get_media_info(media_id)
        raw = await self.gateway.download_media(info.url) if info is not None else None
        if raw is None:
            await self._apologize(reply_to, MessageKey.COVER_IMAGE_DOWNLOAD_FAILED)
            return Result.failure("cover image download failed", ErrorCode.DOWNLOAD_FAILED)

        try:
            image = await asyncio.to_thread(compress_cover_image, raw)
        except (UnidentifiedImageError, OSError, ValueError) as e:
            logger.error(f"Cover image compression failed: {e}", extra={"context": ctx})
            await self._apologize(reply_to, MessageKey.COVER_IMAGE_PROCESSING_FAILED)
            return Result.failure(str(e), ErrorCode.TRANSCODE_FAILED)

        if not self.storage.is_configured:
            logger.error("Object storage not configured, cannot save cover image", extra={"context": ctx})
            await self._apologize(reply_to, MessageKey.COVER_IMAGE_SAVE_FAILED)
            return Result.failure("object storage not configured", ErrorCode.NOT_CONFIGURED)

        key = f"{trial_id}/cover_{media_id}.jpg"
        try:
            url = await asyncio.to_thread(
                self.storage.upload,
                self.gateway.config.cover_images_bucket,
                key,
                image,
                JPEG_MIME,
                self.gateway.config.cover_images_public_url,
            )
        except (BotoCoreError, ClientError) as e:
            logger.error(f"Cover image upload failed: {e}", extra={"context": ctx})
            await self._apologize(reply_to, MessageKey.COVER_IMAGE_SAVE_FAILED)
            return Result.failure(str(e), ErrorCode.UPLOAD_FAILED)

        with self._scope() as db:
            trial = db.get(Trial, trial_id)
            if trial is None:
                await self._apologize(reply_to, MessageKey.COVER_IMAGE_SAVE_FAILED)
                return Result.failure("trial not found", ErrorCode.TRIAL_NOT_FOUND)
            trial.custom_cover_image_url = url
            storyteller_name = trial.storyteller_name
            db.commit()

        logger.info("Cover image saved", extra={"context": {**ctx, "url": url}})
        await self.gateway.send_text(
            reply_to, render(MessageKey.COVER_IMAGE_SAVED, "en", NameParams(storyteller_name)), order_id=str(trial_id)
        )
        return Result.success(url)

    async def _apologize(self, reply_to: str, key: MessageKey) -> None:
        await self.gateway.send_text(reply_to, render(key, "en"))
