"""
Gemini REST client.

Implements the generation backend over the public Generative Language API:
page OCR and speech synthesis via ``generateContent``, and document chat via
the Files API (upload, status, delete) plus file-grounded ``generateContent``.
"""

import base64
import json
from typing import Any, Dict, List, Optional, Union

import httpx

from chat.history import build_prompt
from generation.backend import GenerationBackend, GroundedAnswer, SynthesizedAudio, UploadedDocument
from generation import prompts
from storage.models import TokenUsage
from utils.errors import DocumentUploadError, RateLimitedError, UpstreamGenerationError
from utils.logger import setup_logger
import config

logger = setup_logger(__name__)

PDF_MIME_TYPE = "application/pdf"


def parse_ocr_response(full_text: str) -> Union[Dict[str, Any], str]:
    """Parse the model's JSON page transcription.

    Falls back to the whole text as body when the model did not return JSON.
    """
    try:
        parsed = json.loads(full_text)
    except (json.JSONDecodeError, TypeError):
        logger.warning("Failed to parse JSON response, using fallback")
        return {"header": "", "body": full_text or "Text extraction failed", "footer": ""}
    return parsed


def _is_rate_limited(response: httpx.Response) -> bool:
    if response.status_code == 429:
        return True
    return "RESOURCE_EXHAUSTED" in response.text


class GeminiClient(GenerationBackend):
    """Async Gemini client built on httpx."""

    def __init__(
        self,
        api_key: Optional[str] = config.GEMINI_API_KEY,
        base_url: str = config.GEMINI_BASE_URL,
        upload_url: str = config.GEMINI_UPLOAD_URL,
        http_client: Optional[httpx.AsyncClient] = None
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.upload_url = upload_url
        self.http = http_client or httpx.AsyncClient(timeout=config.HTTP_TIMEOUT_SECONDS)

    async def aclose(self) -> None:
        await self.http.aclose()

    def _headers(self) -> Dict[str, str]:
        if not self.api_key:
            raise UpstreamGenerationError("GEMINI_API_KEY is not configured")
        return {"x-goog-api-key": self.api_key}

    async def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        """Send a request, translating transport and HTTP errors."""
        headers = {**self._headers(), **kwargs.pop("headers", {})}
        try:
            response = await self.http.request(method, url, headers=headers, **kwargs)
        except httpx.HTTPError as e:
            raise UpstreamGenerationError(f"Gemini request failed: {e}") from e

        if response.status_code >= 400:
            if _is_rate_limited(response):
                raise RateLimitedError(f"Gemini rate limit (429): {response.text[:200]}")
            raise UpstreamGenerationError(
                f"Gemini returned {response.status_code}: {response.text[:200]}"
            )
        return response

    async def _generate_content(self, model: str, body: Dict[str, Any]) -> Dict[str, Any]:
        response = await self._request(
            "POST", f"{self.base_url}/models/{model}:generateContent", json=body
        )
        return response.json()

    @staticmethod
    def _first_part(payload: Dict[str, Any]) -> Dict[str, Any]:
        candidates = payload.get("candidates") or []
        if not candidates:
            raise UpstreamGenerationError("Gemini returned no candidates")
        parts = (candidates[0].get("content") or {}).get("parts") or []
        if not parts:
            raise UpstreamGenerationError("Gemini returned an empty candidate")
        return parts[0]

    @staticmethod
    def _text_of(payload: Dict[str, Any]) -> str:
        candidates = payload.get("candidates") or []
        if not candidates:
            return ""
        parts = (candidates[0].get("content") or {}).get("parts") or []
        return "".join(part.get("text", "") for part in parts)

    # ==================== OCR ====================

    async def extract_text(self, image_bytes: bytes, mime_type: str) -> Union[Dict[str, Any], str]:
        logger.info(f"Processing image with Gemini - size: {len(image_bytes)} bytes, mimeType: {mime_type}")

        body = {
            "systemInstruction": {"parts": [{"text": prompts.page_ocr_prompt()}]},
            "contents": [{
                "role": "user",
                "parts": [{
                    "inlineData": {
                        "mimeType": mime_type,
                        "data": base64.b64encode(image_bytes).decode("ascii"),
                    }
                }],
            }],
            "generationConfig": {
                "temperature": 0,
                "responseMimeType": "application/json",
            },
        }
        payload = await self._generate_content(config.IMAGE_TO_TEXT_MODEL, body)
        return parse_ocr_response(self._text_of(payload))

    # ==================== Speech ====================

    async def synthesize(self, text: str, voice_name: str, style_prompt: Optional[str] = None) -> SynthesizedAudio:
        spoken = f"{style_prompt}\n\n{text}" if style_prompt else text
        body = {
            "contents": [{"parts": [{"text": spoken}]}],
            "generationConfig": {
                "responseModalities": ["AUDIO"],
                "speechConfig": {
                    "voiceConfig": {"prebuiltVoiceConfig": {"voiceName": voice_name}}
                },
            },
        }
        payload = await self._generate_content(config.TEXT_TO_AUDIO_MODEL, body)

        inline = self._first_part(payload).get("inlineData") or {}
        if not inline.get("data"):
            raise UpstreamGenerationError("No audio data in response")

        return SynthesizedAudio(
            data=base64.b64decode(inline["data"]),
            mime_type=inline.get("mimeType") or "",
        )

    # ==================== Files API ====================

    async def upload_document(self, url: str, display_name: str) -> UploadedDocument:
        if not url:
            raise DocumentUploadError("PDF URL is required")
        if not display_name:
            raise DocumentUploadError("Display name is required")

        logger.info(f"Uploading PDF to Gemini File API - URL: {url}, Name: {display_name}")

        try:
            source = await self.http.get(url, follow_redirects=True)
            source.raise_for_status()
        except httpx.HTTPError as e:
            raise DocumentUploadError(f"Failed to fetch PDF: {e}") from e

        pdf_bytes = source.content
        try:
            start = await self._request(
                "POST",
                self.upload_url,
                headers={
                    "X-Goog-Upload-Protocol": "resumable",
                    "X-Goog-Upload-Command": "start",
                    "X-Goog-Upload-Header-Content-Length": str(len(pdf_bytes)),
                    "X-Goog-Upload-Header-Content-Type": PDF_MIME_TYPE,
                },
                json={"file": {"display_name": display_name}},
            )
            session_url = start.headers.get("x-goog-upload-url")
            if not session_url:
                raise DocumentUploadError("Upload session URL missing from response")

            finished = await self._request(
                "POST",
                session_url,
                headers={
                    "X-Goog-Upload-Offset": "0",
                    "X-Goog-Upload-Command": "upload, finalize",
                },
                content=pdf_bytes,
            )
        except RateLimitedError:
            raise
        except UpstreamGenerationError as e:
            if isinstance(e, DocumentUploadError):
                raise
            raise DocumentUploadError(f"Failed to upload PDF: {e.message}") from e

        document = self._document_from(finished.json().get("file") or {})
        logger.info(f"PDF uploaded successfully - File URI: {document.uri}, Name: {document.name}")
        return document

    async def get_document(self, name: str) -> UploadedDocument:
        response = await self._request("GET", f"{self.base_url}/{name}")
        return self._document_from(response.json())

    async def delete_document(self, name: str) -> None:
        logger.info(f"Deleting file - File: {name}")
        await self._request("DELETE", f"{self.base_url}/{name}")

    @staticmethod
    def _document_from(data: Dict[str, Any]) -> UploadedDocument:
        if not data.get("uri") or not data.get("name"):
            raise DocumentUploadError("Gemini returned an incomplete file reference")
        size = data.get("sizeBytes")
        return UploadedDocument(
            uri=data["uri"],
            name=data["name"],
            mime_type=data.get("mimeType"),
            size_bytes=int(size) if size is not None else None,
            state=data.get("state") or "PROCESSING",
        )

    # ==================== Document chat ====================

    async def generate_grounded(
        self,
        file_uri: str,
        user_message: str,
        history: List[Dict[str, str]],
        system_instruction: Optional[str] = None
    ) -> GroundedAnswer:
        logger.info(f"Generating content with file - URI: {file_uri}")

        contents = build_prompt(user_message, history).contents
        contents[-1]["parts"].insert(0, {"fileData": {"fileUri": file_uri, "mimeType": PDF_MIME_TYPE}})

        body: Dict[str, Any] = {"contents": contents}
        if system_instruction:
            body["systemInstruction"] = {"parts": [{"text": system_instruction}]}

        payload = await self._generate_content(config.DOCUMENT_CHAT_MODEL, body)

        usage = payload.get("usageMetadata") or {}
        tokens_used = TokenUsage(
            prompt=usage.get("promptTokenCount", 0),
            candidates=usage.get("candidatesTokenCount", 0),
            cached=usage.get("cachedContentTokenCount", 0),
            total=usage.get("totalTokenCount", 0),
        )
        text = self._text_of(payload)
        if not text:
            raise UpstreamGenerationError("Gemini returned an empty answer")

        logger.info(f"Content generated successfully - Tokens: {tokens_used.total} ({tokens_used.cached} cached)")
        return GroundedAnswer(text=text, tokens_used=tokens_used)
