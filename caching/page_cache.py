"""
Page artifact cache.

Memoizes the two expensive per-page artifacts: OCR text per (book, page) and
synthesized audio per (book, page, voice persona). A miss calls the
generation backend once, persists the result and reports ``cached=False``;
every later request is served from the store with ``cached=True``.

Concurrent misses for the same key inside this process are collapsed with a
keyed lock and a re-check. Across processes the last upsert wins.
"""

import base64
import binascii
import json
import re
import sqlite3
import time
from typing import Any, Optional, Tuple, Union

from audio.codec import estimate_duration_seconds, parse_format_descriptor, wrap_as_playable_audio
from audio.personas import VoicePersona, resolve_persona
from caching.key_lock import KeyedLock
from generation.backend import GenerationBackend
from generation.retry_handler import RetryHandler
from storage.blob_store import LocalBlobStore
from storage.database import Database
from storage.models import ExtractedText, PageAudioResult, PageTextResult
from utils.errors import NotFoundError, RateLimitedError, UpstreamGenerationError, ValidationFailure
from utils.logger import setup_logger
import config

logger = setup_logger(__name__)

_DATA_URI = re.compile(r"^data:(.+?);base64,(.+)$", re.DOTALL)
_UNSAFE_FILENAME_CHARS = re.compile(r"[^a-z0-9_-]+")


def normalize_extracted_text(raw_text: Any) -> ExtractedText:
    """Turn a stored extraction into a fixed {header, body, footer} record.

    Stored values may be a JSON string or an already-decoded dict. A string
    that is not JSON becomes the body. Non-string fields become empty.
    """
    if not raw_text:
        return ExtractedText()

    parsed = raw_text
    if isinstance(raw_text, str):
        try:
            parsed = json.loads(raw_text)
        except json.JSONDecodeError as e:
            logger.warning(f"Failed to parse cached extracted_text JSON, returning fallback: {e}")
            return ExtractedText(body=raw_text)

    if not isinstance(parsed, dict):
        return ExtractedText()

    return ExtractedText(**{
        field: parsed.get(field) if isinstance(parsed.get(field), str) else ""
        for field in ("header", "body", "footer")
    })


def serialize_extraction(extracted: Union[dict, str, None]) -> Optional[str]:
    """Storage form of a backend extraction: JSON for dicts, raw strings as-is."""
    if extracted is None or isinstance(extracted, str):
        return extracted
    return json.dumps(extracted, ensure_ascii=False)


def decode_image_payload(image_data: Union[bytes, str], mime_type: Optional[str] = None) -> Tuple[bytes, str]:
    """Accept raw bytes, base64 text or a base64 data URI.

    Returns:
        (image bytes, image MIME type)

    Raises:
        ValidationFailure: If the payload is empty, undecodable or not an image
    """
    if not image_data:
        raise ValidationFailure("Image data is required")

    resolved_mime = mime_type
    if isinstance(image_data, str):
        encoded = image_data
        if image_data.startswith("data:"):
            match = _DATA_URI.match(image_data)
            if not match:
                raise ValidationFailure("Invalid image data format. Expected base64 data URI.")
            resolved_mime = match.group(1)
            encoded = match.group(2)
        try:
            image_bytes = base64.b64decode(re.sub(r"\s", "", encoded), validate=True)
        except (binascii.Error, ValueError) as e:
            raise ValidationFailure(f"Invalid base64 image data: {e}") from e
    else:
        image_bytes = bytes(image_data)

    resolved_mime = resolved_mime or "image/png"
    if not resolved_mime.startswith("image/"):
        raise ValidationFailure(f"Invalid MIME type: {resolved_mime}. Expected image type.")

    return image_bytes, resolved_mime


def truncate_for_speech(text: str, limit: int = config.MAX_TEXT_LENGTH) -> str:
    return text[:limit] + "..." if len(text) > limit else text


def audio_file_name(page_number: int, persona: VoicePersona) -> str:
    voice = _UNSAFE_FILENAME_CHARS.sub("-", persona.cache_key.lower()).strip("-") or "voice"
    return f"page_{page_number}_{voice}.wav"


def _elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)


class PageArtifactCache:
    """Get-or-create cache for page text and page audio."""

    def __init__(
        self,
        db: Database,
        blob_store: LocalBlobStore,
        backend: GenerationBackend,
        retry_handler: Optional[RetryHandler] = None,
        locks: Optional[KeyedLock] = None,
        bucket: str = config.MEDIA_BUCKET
    ):
        self.db = db
        self.blob_store = blob_store
        self.backend = backend
        self.retry_handler = retry_handler or RetryHandler()
        self.locks = locks or KeyedLock()
        self.bucket = bucket

    @staticmethod
    def _validate_page_key(book_id: str, page_number: int) -> None:
        if not book_id:
            raise ValidationFailure("bookId is required")
        if not isinstance(page_number, int) or isinstance(page_number, bool) or page_number < 1:
            raise ValidationFailure(f"Invalid page number: {page_number!r}")

    def _require_book(self, book_id: str) -> None:
        if not self.db.get_book(book_id):
            raise NotFoundError("Book not found")

    async def _call_backend(self, operation: str, func, *args) -> Any:
        """Run a generation call with rate-limit backoff, normalizing failures."""
        try:
            return await self.retry_handler.execute_with_retry(func, *args)
        except (RateLimitedError, UpstreamGenerationError):
            raise
        except Exception as e:
            raise UpstreamGenerationError(f"{operation} failed: {e}") from e

    async def get_or_extract_page_text(
        self,
        book_id: str,
        page_number: int,
        image_data: Union[bytes, str],
        mime_type: Optional[str] = None,
        requester_id: Optional[str] = None
    ) -> PageTextResult:
        """Return the page's extracted text, running OCR only on a miss."""
        start = time.monotonic()
        self._validate_page_key(book_id, page_number)

        async with self.locks.hold(("text", book_id, page_number)):
            existing = self.db.get_page_text_by_book_and_number(book_id, page_number)
            if existing:
                logger.info(f"Page text cache HIT - book {book_id}, page {page_number}, user {requester_id}")
                return PageTextResult(
                    cached=True,
                    text=normalize_extracted_text(existing.extracted_text),
                    page=existing.page,
                    processing_time_ms=_elapsed_ms(start),
                )

            logger.info(f"Page text cache MISS - extracting book {book_id}, page {page_number}, user {requester_id}")
            image_bytes, resolved_mime = decode_image_payload(image_data, mime_type)
            self._require_book(book_id)

            page = self.db.get_or_create_page(book_id, page_number, config.PLACEHOLDER_IMAGE_URL)
            extracted = await self._call_backend(
                "Text extraction", self.backend.extract_text, image_bytes, resolved_mime
            )

            try:
                self.db.save_page_text(
                    page.id,
                    extracted_text=serialize_extraction(extracted),
                    extraction_confidence=config.DEFAULT_EXTRACTION_CONFIDENCE,
                    processing_duration_ms=_elapsed_ms(start),
                    extraction_metadata={"mimeType": resolved_mime, "imageBytes": len(image_bytes)},
                )
            except sqlite3.Error:
                logger.error(f"Text extracted but not cached - book {book_id}, page {page_number}")
                raise

        logger.info(f"Page text extracted and cached - book {book_id}, page {page_number}")
        return PageTextResult(
            cached=False,
            text=normalize_extracted_text(extracted),
            page=page,
            processing_time_ms=_elapsed_ms(start),
        )

    async def get_or_generate_page_audio(
        self,
        book_id: str,
        page_number: int,
        text: str,
        voice_persona: Union[VoicePersona, str, None] = None,
        requester_id: Optional[str] = None
    ) -> PageAudioResult:
        """Return the page's audio for a voice, synthesizing only on a miss."""
        start = time.monotonic()
        self._validate_page_key(book_id, page_number)
        if not text or not isinstance(text, str):
            raise ValidationFailure("text is required")

        persona = resolve_persona(voice_persona)

        async with self.locks.hold(("audio", book_id, page_number, persona.cache_key)):
            existing = self.db.get_page_audio_by_book_and_number(book_id, page_number, persona.cache_key)
            if existing and existing.audio_url:
                logger.info(
                    f"Page audio cache HIT - book {book_id}, page {page_number}, "
                    f"voice {persona.cache_key}, user {requester_id}"
                )
                return PageAudioResult(
                    cached=True,
                    audio_url=existing.audio_url,
                    duration_seconds=existing.audio_duration_seconds,
                    page=existing.page,
                    processing_time_ms=_elapsed_ms(start),
                )

            logger.info(
                f"Page audio cache MISS - generating book {book_id}, page {page_number}, "
                f"voice {persona.cache_key}, user {requester_id}"
            )
            self._require_book(book_id)
            page = self.db.get_or_create_page(book_id, page_number, config.PLACEHOLDER_IMAGE_URL)
            audio = await self._call_backend(
                "Speech synthesis",
                self.backend.synthesize,
                truncate_for_speech(text),
                persona.base_voice,
                persona.style_prompt(),
            )

            wav_bytes = wrap_as_playable_audio(audio.data, audio.mime_type)
            reported_format = parse_format_descriptor(audio.mime_type) if audio.mime_type else None
            duration = estimate_duration_seconds(len(audio.data), reported_format)

            path = f"audio/{requester_id or 'anonymous'}/{book_id}/{audio_file_name(page_number, persona)}"
            audio_url = await self.blob_store.put(self.bucket, path, wav_bytes, "audio/wav")

            try:
                self.db.save_page_audio(
                    page.id,
                    voice_persona=persona.cache_key,
                    audio_url=audio_url,
                    audio_duration_seconds=duration,
                    audio_size_bytes=len(wav_bytes),
                    processing_duration_ms=_elapsed_ms(start),
                    audio_format="wav",
                    voice_settings=persona.voice_settings(),
                    generation_metadata={"sourceMimeType": audio.mime_type},
                    persona_id=persona.id,
                )
            except sqlite3.Error:
                logger.error(
                    f"Audio generated but not cached - book {book_id}, page {page_number}, voice {persona.cache_key}"
                )
                raise

        logger.info(f"Page audio generated and cached - book {book_id}, page {page_number}, url {audio_url}")
        return PageAudioResult(
            cached=False,
            audio_url=audio_url,
            duration_seconds=duration,
            page=page,
            processing_time_ms=_elapsed_ms(start),
        )
