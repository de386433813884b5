"""Pydantic models for stored rows and operation results."""
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field


# ==================== Stored rows ====================

class Book(BaseModel):
    """A registered document."""
    id: str
    user_id: str
    title: str
    author: Optional[str] = None
    pdf_url: Optional[str] = None
    total_pages: Optional[int] = None
    thumbnail_url: Optional[str] = None
    status: str = "pending"
    created_at: datetime
    updated_at: datetime


class Page(BaseModel):
    """One page of one book, unique per (book_id, page_number)."""
    id: str
    book_id: str
    page_number: int
    image_url: str
    created_at: datetime


class ExtractedText(BaseModel):
    """Structured OCR output for a page."""
    header: str = ""
    body: str = ""
    footer: str = ""


class PageText(BaseModel):
    """Extracted text artifact, at most one per page."""
    id: str
    page_id: str
    extracted_text: Optional[str] = None  # JSON text or raw string as stored
    extraction_confidence: Optional[float] = None
    extraction_metadata: Dict[str, Any] = Field(default_factory=dict)
    processing_duration_ms: Optional[int] = None
    created_at: datetime
    page: Optional[Page] = None


class PageAudio(BaseModel):
    """Synthesized audio artifact, one per (page, voice persona)."""
    id: str
    page_id: str
    voice_persona: str
    persona_id: Optional[str] = None
    audio_url: Optional[str] = None
    audio_duration_seconds: Optional[float] = None
    audio_format: str = "wav"
    audio_size_bytes: Optional[int] = None
    voice_settings: Dict[str, Any] = Field(default_factory=dict)
    generation_metadata: Dict[str, Any] = Field(default_factory=dict)
    processing_duration_ms: Optional[int] = None
    created_at: datetime
    page: Optional[Page] = None


class SessionState(str, Enum):
    """Binding state of a conversation's external document reference."""
    UNBOUND = "unbound"
    BOUND = "bound"
    EXPIRED = "expired"


class Conversation(BaseModel):
    """Chat session for one (user, book) pair."""
    id: str
    user_id: str
    book_id: str
    title: str
    conversation_type: str = "general"
    gemini_file_uri: Optional[str] = None
    gemini_file_name: Optional[str] = None
    cache_expires_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime
    book_title: Optional[str] = None

    def session_state(self, now: datetime) -> SessionState:
        """Derive the binding state at ``now``."""
        if not self.gemini_file_uri:
            return SessionState.UNBOUND
        if self.cache_expires_at is None or self.cache_expires_at <= now:
            return SessionState.EXPIRED
        return SessionState.BOUND


class Message(BaseModel):
    """A single chat turn. Immutable once stored."""
    id: str
    conversation_id: str
    role: str  # user | assistant
    content: str
    tokens_used: int = 0
    cost: float = 0.0
    message_metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime

    def as_turn(self) -> Dict[str, str]:
        """Role/content pair as consumed by the history curator."""
        return {"role": self.role, "content": self.content}


# ==================== Operation results ====================

class PageTextResult(BaseModel):
    cached: bool
    text: ExtractedText
    page: Optional[Page] = None
    processing_time_ms: int = 0


class PageAudioResult(BaseModel):
    cached: bool
    audio_url: str
    duration_seconds: Optional[float] = None
    page: Optional[Page] = None
    processing_time_ms: int = 0


class MessageView(BaseModel):
    id: str
    role: str
    content: str
    created_at: datetime


class ConversationStatus(BaseModel):
    id: str
    has_active_cache: bool
    cache_expires_at: Optional[datetime] = None
    messages: List[MessageView] = Field(default_factory=list)


class TokenUsage(BaseModel):
    cached: int = 0
    prompt: int = 0
    candidates: int = 0
    total: int = 0


class ChatReply(BaseModel):
    message: str
    message_id: str
    tokens_used: TokenUsage


class DocumentBinding(BaseModel):
    """Result of binding an uploaded document to a conversation."""
    conversation_id: str
    file_uri: str
    file_name: str
    expires_at: datetime


class CacheStatus(BaseModel):
    """Expiry report for a bound document. Retention cannot be extended."""
    conversation_id: str
    expires_at: datetime
    is_expired: bool
    message: str
