import abc
from typing import Any, Dict, List, Optional, Union
from pydantic import BaseModel

from storage.models import TokenUsage


class SynthesizedAudio(BaseModel):
    data: bytes                 # raw PCM payload
    mime_type: str              # e.g. "audio/L16;codec=pcm;rate=24000"


class UploadedDocument(BaseModel):
    uri: str
    name: str
    mime_type: Optional[str] = None
    size_bytes: Optional[int] = None
    state: str = "PROCESSING"   # "PROCESSING" | "ACTIVE" | "FAILED"


class GroundedAnswer(BaseModel):
    text: str
    tokens_used: TokenUsage


class GenerationBackend(abc.ABC):
    """Opaque OCR / speech / document-chat capability."""

    @abc.abstractmethod
    async def extract_text(self, image_bytes: bytes, mime_type: str) -> Union[Dict[str, Any], str]:
        """Return structured {header, body, footer} text, or the raw string on parse failure"""
        pass

    @abc.abstractmethod
    async def synthesize(self, text: str, voice_name: str, style_prompt: Optional[str] = None) -> SynthesizedAudio:
        """Return raw audio bytes plus their format descriptor"""
        pass

    @abc.abstractmethod
    async def upload_document(self, url: str, display_name: str) -> UploadedDocument:
        """Fetch the document at url and upload it, return its reference"""
        pass

    @abc.abstractmethod
    async def get_document(self, name: str) -> UploadedDocument:
        """Current processing state of an uploaded document"""
        pass

    @abc.abstractmethod
    async def generate_grounded(
        self,
        file_uri: str,
        user_message: str,
        history: List[Dict[str, str]],
        system_instruction: Optional[str] = None
    ) -> GroundedAnswer:
        """Answer user_message grounded in the uploaded document"""
        pass

    @abc.abstractmethod
    async def delete_document(self, name: str) -> None:
        """Delete an uploaded document"""
        pass
