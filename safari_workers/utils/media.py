"""
Media handlers for the pipeline: rehost, label and convert source media

Uses:
- Source CDN (via RetryingApiClient) for image downloads
- OpenRouter vision model for labeling
- ffmpeg for HLS -> MP4 video conversion
- Cloudinary for hosting

Each handler turns one WorkItem into an artifact payload. Handlers raise
on failure; the item processor records the error on the work item.
"""

import asyncio
import base64
import logging
import os
import subprocess
import tempfile
import time
from io import BytesIO
from typing import Any, Callable, Dict, Optional, Tuple

import cloudinary
import cloudinary.uploader
from PIL import Image, UnidentifiedImageError

from ..config import settings
from .dedup_key import is_url, media_public_id
from .errors import ItemFailure, RetriesExhaustedError
from .http_client import ApiRequest, RetryingApiClient, _header
from .models import ImageContext, WorkItem
from .openrouter import ImageLabeler

logger = logging.getLogger(__name__)


def source_url(source_key: str, cdn_base: str = settings.SOURCE_CDN_BASE) -> str:
    """Absolute download URL for a source key (URLs pass through unchanged)"""
    if is_url(source_key):
        return source_key
    return f"{cdn_base.rstrip('/')}/{source_key.lstrip('/')}"


def image_dimensions(image_bytes: bytes) -> Tuple[int, int]:
    """(width, height) of an image; raises ItemFailure for non-images"""
    try:
        with Image.open(BytesIO(image_bytes)) as img:
            return img.width, img.height
    except (UnidentifiedImageError, OSError) as e:
        raise ItemFailure(f"Downloaded file is not a readable image: {e}") from e


class MediaStorage:
    """Cloudinary upload wrapper"""

    def __init__(self, cloudinary_url: Optional[str] = None, folder: str = settings.CLOUDINARY_FOLDER,
                 timeout_seconds: float = settings.UPLOAD_TIMEOUT_SECONDS):
        self.cloudinary_url = cloudinary_url or settings.CLOUDINARY_URL
        if self.cloudinary_url:
            cloudinary.config(cloudinary_url=self.cloudinary_url)
        self.folder = folder
        self.timeout_seconds = timeout_seconds

    def public_id(self, dedup_key: str) -> str:
        return media_public_id(dedup_key, self.folder)

    def upload(self, data: Any, dedup_key: str, resource_type: str = 'image') -> Dict[str, Any]:
        """
        Upload bytes or a file path. The public ID comes from the dedup key,
        so a repeated upload of the same source reuses the stored asset.
        """
        if not self.cloudinary_url:
            raise ItemFailure("CLOUDINARY_URL is not configured")

        result = cloudinary.uploader.upload(
            data,
            public_id=self.public_id(dedup_key),
            resource_type=resource_type,
            overwrite=False,
            timeout=self.timeout_seconds,
        )
        url = result.get("secure_url")
        if not url:
            raise ItemFailure(f"Cloudinary upload returned no URL for {dedup_key}")

        return {
            "url": url,
            "width": result.get("width"),
            "height": result.get("height"),
        }


class ImageHandler:
    """Download, label and rehost one source image"""

    media_type = 'image'

    def __init__(self, api: RetryingApiClient, labeler: ImageLabeler, storage: MediaStorage,
                 cdn_base: str = settings.SOURCE_CDN_BASE):
        self.api = api
        self.labeler = labeler
        self.storage = storage
        self.cdn_base = cdn_base

    async def process(self, item: WorkItem, dedup_key: str) -> Dict[str, Any]:
        url = source_url(item.source_key, self.cdn_base)
        response = await self.api.call(ApiRequest(url=url, method='GET', expect='bytes'))
        image_bytes = response.data
        if not image_bytes:
            raise ItemFailure(f"Empty download: {url}")

        content_type = _header(response.headers, 'Content-Type') or 'image/jpeg'
        width, height = image_dimensions(image_bytes)
        logger.info(f"Downloaded {item.source_key}: {len(image_bytes)} bytes, {width}x{height}")

        context = ImageContext.from_work_item(item)
        enrichment = await self.labeler.label(
            base64.b64encode(image_bytes).decode('ascii'),
            context,
            content_type=content_type,
        )

        uploaded = await asyncio.to_thread(self.storage.upload, image_bytes, dedup_key, 'image')

        return {
            "media_type": self.media_type,
            "url": uploaded["url"],
            "width": width,
            "height": height,
            "enrichment": {
                **enrichment,
                "sourceProperty": context.property_name,
                "sourceSegmentType": context.segment_type,
                "sourceSegmentTitle": context.segment_title or context.property_name,
                "sourceDayIndex": context.day_index,
                "country": context.country,
                "contextVersion": context.version,
            },
        }


class VideoConverter:
    """ffmpeg HLS -> MP4 remux with a hard timeout per attempt"""

    def __init__(
        self,
        ffmpeg_path: str = settings.FFMPEG_PATH,
        timeout_seconds: float = settings.FFMPEG_TIMEOUT_SECONDS,
        max_retries: int = settings.MAX_RETRIES,
        base_delay_ms: int = settings.BASE_DELAY_MS,
        sleep: Callable[[float], Any] = time.sleep,
        run: Callable[..., Any] = subprocess.run,
    ):
        self.ffmpeg_path = ffmpeg_path
        self.timeout_seconds = timeout_seconds
        self.max_retries = max_retries
        self.base_delay_ms = base_delay_ms
        self._sleep = sleep
        self._run = run

    def command(self, source: str, output_path: str) -> list:
        return [
            self.ffmpeg_path, '-y', '-i', source,
            '-c', 'copy', '-bsf:a', 'aac_adtstoasc',
            output_path,
        ]

    def convert(self, source: str, output_path: str) -> str:
        """
        Timeouts are retried with linear backoff, the same as network
        errors. A non-zero ffmpeg exit is a terminal item failure.
        """
        cmd = self.command(source, output_path)
        last_error = None

        for attempt in range(1, self.max_retries + 1):
            try:
                self._run(cmd, check=True, capture_output=True, timeout=self.timeout_seconds)
                return output_path
            except subprocess.TimeoutExpired as e:
                last_error = e
                logger.warning(f"ffmpeg timed out after {self.timeout_seconds}s on {source} "
                               f"(attempt {attempt}/{self.max_retries})")
                if attempt < self.max_retries:
                    self._sleep(self.base_delay_ms * attempt / 1000)
            except subprocess.CalledProcessError as e:
                stderr = (e.stderr or b'')
                if isinstance(stderr, bytes):
                    stderr = stderr.decode('utf-8', errors='replace')
                raise ItemFailure(f"FFmpeg failed (exit {e.returncode}): {stderr[-500:]}") from e
            except FileNotFoundError as e:
                raise ItemFailure(f"FFmpeg not found at {self.ffmpeg_path}") from e

        raise RetriesExhaustedError(self.max_retries, last_error)


class VideoHandler:
    """Convert an HLS stream to MP4 and rehost it"""

    media_type = 'video'

    def __init__(self, converter: VideoConverter, storage: MediaStorage,
                 cdn_base: str = settings.SOURCE_CDN_BASE):
        self.converter = converter
        self.storage = storage
        self.cdn_base = cdn_base

    async def process(self, item: WorkItem, dedup_key: str) -> Dict[str, Any]:
        source = source_url(item.source_key, self.cdn_base)

        with tempfile.TemporaryDirectory() as tmp_dir:
            output_path = os.path.join(tmp_dir, 'video.mp4')
            await asyncio.to_thread(self.converter.convert, source, output_path)
            uploaded = await asyncio.to_thread(self.storage.upload, output_path, dedup_key, 'video')

        return {
            "media_type": self.media_type,
            "url": uploaded["url"],
            "width": uploaded.get("width"),
            "height": uploaded.get("height"),
            "enrichment": {"videoContext": item.video_context or 'hero'},
        }
