"""SQLite artifact store for books, page artifacts and conversations."""
import sqlite3
import json
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, List, Dict, Any
from contextlib import contextmanager

from utils.logger import setup_logger
from storage.models import Book, Page, PageText, PageAudio, Conversation, Message
import config

logger = setup_logger(__name__)

CONVERSATION_UPDATABLE = {
    "title", "conversation_type", "gemini_file_uri", "gemini_file_name", "cache_expires_at"
}


def utc_now() -> datetime:
    """Timezone-aware current time used for every stored timestamp."""
    return datetime.now(timezone.utc)


def _safe_json_load(data: Any) -> Dict[str, Any]:
    """Decode a JSON column, returning an empty dict on bad data."""
    if not data:
        return {}
    if isinstance(data, dict):
        return data
    try:
        return json.loads(data)
    except (json.JSONDecodeError, TypeError):
        logger.warning(f"Failed to decode JSON column: {data!r}")
        return {}


class Database:
    """Manages SQLite operations for the artifact store."""

    def __init__(self, db_path: Path = config.DB_PATH):
        """Initialize database connection.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = Path(db_path)
        self._initialize_schema()

    def _initialize_schema(self):
        """Create tables if they don't exist."""
        schema_path = Path(__file__).parent / "schema.sql"
        with open(schema_path, 'r') as f:
            schema_sql = f.read()

        with self._get_connection() as conn:
            conn.executescript(schema_sql)
            conn.commit()

        logger.info(f"Database initialized at {self.db_path}")

    @contextmanager
    def _get_connection(self):
        """Context manager for database connections."""
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        try:
            yield conn
        finally:
            conn.close()

    # ==================== Books ====================

    def create_book(
        self,
        user_id: str,
        title: str,
        author: Optional[str] = None,
        pdf_url: Optional[str] = None,
        total_pages: Optional[int] = None
    ) -> Book:
        """Insert a new book owned by ``user_id``."""
        book_id = str(uuid.uuid4())
        now = utc_now().isoformat()

        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT INTO books (id, user_id, title, author, pdf_url, total_pages, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (book_id, user_id, title, author, pdf_url, total_pages, now, now)
            )
            conn.commit()

        logger.info(f"Inserted book: {title} (ID: {book_id})")
        return self.get_book(book_id)

    def get_book(self, book_id: str) -> Optional[Book]:
        with self._get_connection() as conn:
            row = conn.execute("SELECT * FROM books WHERE id = ?", (book_id,)).fetchone()
        return Book(**dict(row)) if row else None

    def add_book_to_library(self, user_id: str, book_id: str) -> None:
        """Add a book to a user's library. Re-adding is a no-op."""
        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT OR IGNORE INTO user_books (id, user_id, book_id, created_at)
                VALUES (?, ?, ?, ?)
                """,
                (str(uuid.uuid4()), user_id, book_id, utc_now().isoformat())
            )
            conn.commit()

    def user_has_book_access(self, user_id: str, book_id: str) -> bool:
        """True when the user owns the book or has it in their library."""
        with self._get_connection() as conn:
            owner = conn.execute(
                "SELECT user_id FROM books WHERE id = ?", (book_id,)
            ).fetchone()
            if owner and owner["user_id"] == user_id:
                return True

            count = conn.execute(
                "SELECT COUNT(*) FROM user_books WHERE user_id = ? AND book_id = ?",
                (user_id, book_id)
            ).fetchone()[0]

        return count > 0

    # ==================== Pages ====================

    def get_page(self, book_id: str, page_number: int) -> Optional[Page]:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM pages WHERE book_id = ? AND page_number = ?",
                (book_id, page_number)
            ).fetchone()
        return Page(**dict(row)) if row else None

    def get_or_create_page(
        self,
        book_id: str,
        page_number: int,
        image_url: Optional[str] = None
    ) -> Page:
        """Return the page row for (book, number), creating it if absent.

        Args:
            book_id: Book UUID
            page_number: 1-based page number
            image_url: Image location, placeholder sentinel when unknown

        Returns:
            Existing or newly created Page
        """
        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT OR IGNORE INTO pages (id, book_id, page_number, image_url, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (str(uuid.uuid4()), book_id, page_number,
                 image_url or config.PLACEHOLDER_IMAGE_URL, utc_now().isoformat())
            )
            conn.commit()

        return self.get_page(book_id, page_number)

    # ==================== Page text ====================

    def get_page_text_by_book_and_number(self, book_id: str, page_number: int) -> Optional[PageText]:
        """Cached extraction for a page, joined with its page row."""
        with self._get_connection() as conn:
            row = conn.execute(
                """
                SELECT pt.*, p.id AS page_id_, p.book_id AS page_book_id,
                       p.page_number AS page_page_number, p.image_url AS page_image_url,
                       p.created_at AS page_created_at
                FROM page_text pt
                JOIN pages p ON pt.page_id = p.id
                WHERE p.book_id = ? AND p.page_number = ?
                """,
                (book_id, page_number)
            ).fetchone()

        if not row:
            return None

        return PageText(
            id=row["id"],
            page_id=row["page_id_"],
            extracted_text=row["extracted_text"],
            extraction_confidence=row["extraction_confidence"],
            extraction_metadata=_safe_json_load(row["extraction_metadata"]),
            processing_duration_ms=row["processing_duration_ms"],
            created_at=row["created_at"],
            page=Page(
                id=row["page_id_"],
                book_id=row["page_book_id"],
                page_number=row["page_page_number"],
                image_url=row["page_image_url"],
                created_at=row["page_created_at"],
            ),
        )

    def save_page_text(
        self,
        page_id: str,
        extracted_text: Optional[str],
        extraction_confidence: float,
        processing_duration_ms: int,
        extraction_metadata: Optional[Dict[str, Any]] = None
    ) -> None:
        """Upsert the extraction for a page (one row per page)."""
        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT INTO page_text
                    (id, page_id, extracted_text, extraction_confidence,
                     extraction_metadata, processing_duration_ms, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(page_id) DO UPDATE SET
                    extracted_text = excluded.extracted_text,
                    extraction_confidence = excluded.extraction_confidence,
                    extraction_metadata = excluded.extraction_metadata,
                    processing_duration_ms = excluded.processing_duration_ms
                """,
                (str(uuid.uuid4()), page_id, extracted_text, extraction_confidence,
                 json.dumps(extraction_metadata or {}), processing_duration_ms,
                 utc_now().isoformat())
            )
            conn.commit()

    # ==================== Page audio ====================

    def get_page_audio_by_book_and_number(
        self,
        book_id: str,
        page_number: int,
        voice_persona: str
    ) -> Optional[PageAudio]:
        """Cached audio for (book, page, voice), joined with its page row."""
        with self._get_connection() as conn:
            row = conn.execute(
                """
                SELECT pa.*, p.id AS page_id_, p.book_id AS page_book_id,
                       p.page_number AS page_page_number, p.image_url AS page_image_url,
                       p.created_at AS page_created_at
                FROM page_audio pa
                JOIN pages p ON pa.page_id = p.id
                WHERE p.book_id = ? AND p.page_number = ? AND pa.voice_persona = ?
                """,
                (book_id, page_number, voice_persona)
            ).fetchone()

        if not row:
            return None

        return PageAudio(
            id=row["id"],
            page_id=row["page_id_"],
            voice_persona=row["voice_persona"],
            persona_id=row["persona_id"],
            audio_url=row["audio_url"],
            audio_duration_seconds=row["audio_duration_seconds"],
            audio_format=row["audio_format"],
            audio_size_bytes=row["audio_size_bytes"],
            voice_settings=_safe_json_load(row["voice_settings"]),
            generation_metadata=_safe_json_load(row["generation_metadata"]),
            processing_duration_ms=row["processing_duration_ms"],
            created_at=row["created_at"],
            page=Page(
                id=row["page_id_"],
                book_id=row["page_book_id"],
                page_number=row["page_page_number"],
                image_url=row["page_image_url"],
                created_at=row["page_created_at"],
            ),
        )

    def save_page_audio(
        self,
        page_id: str,
        voice_persona: str,
        audio_url: str,
        audio_duration_seconds: float,
        audio_size_bytes: int,
        processing_duration_ms: int,
        audio_format: str = "wav",
        voice_settings: Optional[Dict[str, Any]] = None,
        generation_metadata: Optional[Dict[str, Any]] = None,
        persona_id: Optional[str] = None
    ) -> None:
        """Upsert the audio artifact keyed by (page, voice persona)."""
        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT INTO page_audio
                    (id, page_id, voice_persona, persona_id, audio_url, audio_duration_seconds,
                     audio_format, audio_size_bytes, voice_settings, generation_metadata,
                     processing_duration_ms, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(page_id, voice_persona) DO UPDATE SET
                    persona_id = excluded.persona_id,
                    audio_url = excluded.audio_url,
                    audio_duration_seconds = excluded.audio_duration_seconds,
                    audio_format = excluded.audio_format,
                    audio_size_bytes = excluded.audio_size_bytes,
                    voice_settings = excluded.voice_settings,
                    generation_metadata = excluded.generation_metadata,
                    processing_duration_ms = excluded.processing_duration_ms
                """,
                (str(uuid.uuid4()), page_id, voice_persona, persona_id, audio_url,
                 audio_duration_seconds, audio_format, audio_size_bytes,
                 json.dumps(voice_settings or {}), json.dumps(generation_metadata or {}),
                 processing_duration_ms, utc_now().isoformat())
            )
            conn.commit()

    # ==================== Conversations ====================

    def create_conversation(
        self,
        user_id: str,
        book_id: str,
        title: str,
        conversation_type: str = "general"
    ) -> Conversation:
        conversation_id = str(uuid.uuid4())
        now = utc_now().isoformat()

        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT INTO conversations
                    (id, user_id, book_id, title, conversation_type, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (conversation_id, user_id, book_id, title, conversation_type, now, now)
            )
            conn.commit()

        logger.info(f"Created conversation {conversation_id} for user {user_id}, book {book_id}")
        return self.get_conversation(conversation_id)

    def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM conversations WHERE id = ?", (conversation_id,)
            ).fetchone()
        return Conversation(**dict(row)) if row else None

    def get_conversation_by_book(self, user_id: str, book_id: str) -> Optional[Conversation]:
        """The live conversation for a (user, book) pair, if any."""
        with self._get_connection() as conn:
            row = conn.execute(
                """
                SELECT * FROM conversations
                WHERE user_id = ? AND book_id = ?
                ORDER BY updated_at DESC LIMIT 1
                """,
                (user_id, book_id)
            ).fetchone()
        return Conversation(**dict(row)) if row else None

    def update_conversation(self, conversation_id: str, **fields: Any) -> Conversation:
        """Update conversation columns.

        Args:
            conversation_id: Conversation UUID
            **fields: Columns to set; datetimes are stored as ISO strings

        Returns:
            The updated Conversation
        """
        unknown = set(fields) - CONVERSATION_UPDATABLE
        if unknown:
            raise ValueError(f"Cannot update conversation columns: {sorted(unknown)}")

        values = {
            key: value.isoformat() if isinstance(value, datetime) else value
            for key, value in fields.items()
        }
        values["updated_at"] = utc_now().isoformat()
        assignments = ", ".join(f"{key} = ?" for key in values)

        with self._get_connection() as conn:
            conn.execute(
                f"UPDATE conversations SET {assignments} WHERE id = ?",
                (*values.values(), conversation_id)
            )
            conn.commit()

        return self.get_conversation(conversation_id)

    def list_user_conversations(self, user_id: str) -> List[Conversation]:
        """All conversations of a user, most recently updated first."""
        with self._get_connection() as conn:
            rows = conn.execute(
                """
                SELECT c.*, b.title AS book_title
                FROM conversations c
                JOIN books b ON c.book_id = b.id
                WHERE c.user_id = ?
                ORDER BY c.updated_at DESC
                """,
                (user_id,)
            ).fetchall()
        return [Conversation(**dict(row)) for row in rows]

    # ==================== Messages ====================

    def create_message(
        self,
        conversation_id: str,
        role: str,
        content: str,
        tokens_used: int = 0,
        cost: float = 0.0,
        message_metadata: Optional[Dict[str, Any]] = None
    ) -> Message:
        """Append a message to a conversation."""
        message_id = str(uuid.uuid4())
        now = utc_now().isoformat()

        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT INTO messages
                    (id, conversation_id, role, content, tokens_used, cost, message_metadata, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (message_id, conversation_id, role, content, tokens_used, cost,
                 json.dumps(message_metadata or {}), now)
            )
            conn.execute(
                "UPDATE conversations SET updated_at = ? WHERE id = ?",
                (now, conversation_id)
            )
            conn.commit()

        return Message(
            id=message_id,
            conversation_id=conversation_id,
            role=role,
            content=content,
            tokens_used=tokens_used,
            cost=cost,
            message_metadata=message_metadata or {},
            created_at=now,
        )

    def get_conversation_messages(self, conversation_id: str) -> List[Message]:
        """Messages in creation order."""
        with self._get_connection() as conn:
            rows = conn.execute(
                """
                SELECT * FROM messages
                WHERE conversation_id = ?
                ORDER BY created_at ASC, rowid ASC
                """,
                (conversation_id,)
            ).fetchall()

        messages = []
        for row in rows:
            data = dict(row)
            data["message_metadata"] = _safe_json_load(data["message_metadata"])
            messages.append(Message(**data))
        return messages
