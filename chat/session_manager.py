"""
Conversation session manager.

One conversation per (user, book). A conversation is UNBOUND until the book's
PDF is uploaded to the generation backend, then BOUND until the backend's
fixed retention window runs out. Rebinding is the only way back to BOUND;
retention cannot be extended.
"""

from datetime import datetime, timedelta
from typing import Callable, List, Optional

from caching.key_lock import KeyedLock
from chat.cost import calculate_message_cost
from chat.history import sanitize_content, trim_history, validate_history, estimate_tokens
from generation.backend import GenerationBackend
from generation.poller import DocumentPoller
from generation import prompts
from storage.database import Database, utc_now
from storage.models import (
    Book,
    CacheStatus,
    ChatReply,
    Conversation,
    ConversationStatus,
    DocumentBinding,
    MessageView,
    SessionState,
)
from utils.errors import (
    AccessDeniedError,
    ContextLimitExceededError,
    DocumentUploadError,
    NotFoundError,
    SessionExpiredError,
    ValidationFailure,
)
from utils.logger import setup_logger
import config

logger = setup_logger(__name__)

NOT_EXTENDABLE_MESSAGE = "File expires automatically after 48 hours from upload. Cannot be extended."
EXPIRED_MESSAGE = "File has expired. Please upload the book again."


class ConversationSessionManager:
    """Binds books to backend documents and runs grounded chat over them."""

    def __init__(
        self,
        db: Database,
        backend: GenerationBackend,
        poller: Optional[DocumentPoller] = None,
        clock: Callable[[], datetime] = utc_now,
        locks: Optional[KeyedLock] = None,
        retention: timedelta = timedelta(hours=config.FILE_RETENTION_HOURS)
    ):
        self.db = db
        self.backend = backend
        self.poller = poller or DocumentPoller(backend)
        self.clock = clock
        self.locks = locks or KeyedLock()
        self.retention = retention

    # ==================== Lookups ====================

    def _require_book(self, user_id: str, book_id: str) -> Book:
        book = self.db.get_book(book_id)
        if not book:
            raise NotFoundError("Book not found")
        if not self.db.user_has_book_access(user_id, book_id):
            raise AccessDeniedError("Access denied to this book")
        return book

    def _require_conversation(self, user_id: str, conversation_id: str) -> Conversation:
        conversation = self.db.get_conversation(conversation_id)
        if not conversation:
            raise NotFoundError("Conversation not found")
        if conversation.user_id != user_id:
            raise AccessDeniedError("Access denied to this conversation")
        return conversation

    def _ensure_conversation(self, user_id: str, book: Book) -> Conversation:
        conversation = self.db.get_conversation_by_book(user_id, book.id)
        if conversation:
            return conversation
        return self.db.create_conversation(
            user_id=user_id,
            book_id=book.id,
            title=f'Chat about "{book.title}"',
            conversation_type="general",
        )

    def _status(self, conversation: Conversation) -> ConversationStatus:
        messages = self.db.get_conversation_messages(conversation.id)
        return ConversationStatus(
            id=conversation.id,
            has_active_cache=conversation.session_state(self.clock()) == SessionState.BOUND,
            cache_expires_at=conversation.cache_expires_at,
            messages=[
                MessageView(id=m.id, role=m.role, content=m.content, created_at=m.created_at)
                for m in messages
            ],
        )

    # ==================== Operations ====================

    async def get_or_create_conversation(self, user_id: str, book_id: str) -> ConversationStatus:
        """Return the (user, book) conversation with its full history."""
        book = self._require_book(user_id, book_id)
        async with self.locks.hold(("conversation", user_id, book_id)):
            conversation = self._ensure_conversation(user_id, book)
        return self._status(conversation)

    async def upload_book(
        self,
        user_id: str,
        book_id: str,
        document_url: Optional[str] = None,
        title: Optional[str] = None
    ) -> DocumentBinding:
        """Upload the book's PDF and bind it to the conversation.

        Args:
            user_id: Requesting user
            book_id: Book to bind
            document_url: Public PDF location, defaults to the book's pdf_url
            title: Display name, defaults to the book title

        Returns:
            The new binding with its absolute expiry

        Raises:
            DocumentUploadError: If the backend rejects, fails or times out
        """
        book = self._require_book(user_id, book_id)
        document_url = document_url or book.pdf_url
        title = title or book.title
        if not document_url:
            raise ValidationFailure("pdfUrl is required")

        requested_at = self.clock()
        async with self.locks.hold(("conversation", user_id, book_id)):
            conversation = self._ensure_conversation(user_id, book)

        async with self.locks.hold(("binding", user_id, book_id)):
            # A caller that held the lock first may have bound it while we waited
            current = self.db.get_conversation(conversation.id)
            if (
                current.session_state(self.clock()) == SessionState.BOUND
                and current.cache_expires_at - self.retention >= requested_at
            ):
                logger.info(f"Conversation {current.id} already bound to {current.gemini_file_name}")
                return DocumentBinding(
                    conversation_id=current.id,
                    file_uri=current.gemini_file_uri,
                    file_name=current.gemini_file_name,
                    expires_at=current.cache_expires_at,
                )

            document = await self.backend.upload_document(document_url, title)
            result = await self.poller.poll_until_ready(document.name)
            if result.status != "ready":
                logger.error(f"Book upload not ready - book {book_id}, status {result.status}: {result.error}")
                raise DocumentUploadError(result.error or f"File processing {result.status}")

            expires_at = self.clock() + self.retention
            self.db.update_conversation(
                conversation.id,
                gemini_file_uri=document.uri,
                gemini_file_name=document.name,
                cache_expires_at=expires_at,
            )

            previous = current.gemini_file_name
            if previous and previous != document.name:
                try:
                    await self.backend.delete_document(previous)
                except Exception as e:
                    logger.warning(f"Failed to delete replaced file {previous}: {e}")

        logger.info(f"Book bound to conversation {conversation.id} - file {document.name}, expires {expires_at}")
        return DocumentBinding(
            conversation_id=conversation.id,
            file_uri=document.uri,
            file_name=document.name,
            expires_at=expires_at,
        )

    async def send_message(self, user_id: str, conversation_id: str, message: str) -> ChatReply:
        """Answer a message grounded in the bound book and store both turns."""
        if not message or not isinstance(message, str) or not message.strip():
            raise ValidationFailure("Message is required")
        if len(message) > config.MAX_MESSAGE_LENGTH:
            raise ValidationFailure(f"Message too long (max {config.MAX_MESSAGE_LENGTH} characters)")

        conversation = self._require_conversation(user_id, conversation_id)

        state = conversation.session_state(self.clock())
        if state == SessionState.EXPIRED:
            raise SessionExpiredError("Conversation cache has expired. Please restart the conversation.")
        if state == SessionState.UNBOUND:
            raise SessionExpiredError("Conversation file not initialized. Please upload the book first.")

        history = [m.as_turn() for m in self.db.get_conversation_messages(conversation.id)]
        validation = validate_history(history)
        if not validation.is_valid:
            if validation.too_long:
                raise ContextLimitExceededError("Conversation too long. Please start a new session.")
            raise ValidationFailure(validation.error)

        recent = [
            {"role": turn["role"], "content": sanitize_content(turn["content"])}
            for turn in trim_history(history)
        ]

        answer = await self.backend.generate_grounded(
            conversation.gemini_file_uri,
            message,
            recent,
            prompts.document_chat_system_instruction(),
        )
        reply_text = answer.text[:config.MAX_MESSAGE_LENGTH]

        self.db.create_message(
            conversation.id,
            role="user",
            content=message,
            tokens_used=answer.tokens_used.prompt,
            cost=0.0,
            message_metadata={"estimatedTokens": estimate_tokens(message)},
        )
        reply = self.db.create_message(
            conversation.id,
            role="assistant",
            content=reply_text,
            tokens_used=answer.tokens_used.candidates,
            cost=calculate_message_cost(answer.tokens_used),
            message_metadata={
                "estimatedTokens": estimate_tokens(reply_text),
                "tokensUsed": answer.tokens_used.model_dump(),
            },
        )

        logger.info(
            f"Message exchanged in conversation {conversation.id} - "
            f"{len(recent)} history turns, {answer.tokens_used.total} tokens"
        )
        return ChatReply(message=reply_text, message_id=reply.id, tokens_used=answer.tokens_used)

    async def check_expiry(self, user_id: str, conversation_id: str) -> CacheStatus:
        """Report the binding's expiry. Nothing is extended."""
        conversation = self._require_conversation(user_id, conversation_id)
        if not conversation.gemini_file_uri or conversation.cache_expires_at is None:
            raise ValidationFailure("Conversation file not initialized")

        is_expired = conversation.session_state(self.clock()) == SessionState.EXPIRED
        return CacheStatus(
            conversation_id=conversation.id,
            expires_at=conversation.cache_expires_at,
            is_expired=is_expired,
            message=EXPIRED_MESSAGE if is_expired else NOT_EXTENDABLE_MESSAGE,
        )

    # Retention is fixed by the backend; "extending" only reports status.
    extend_cache = check_expiry

    async def delete_cache(self, user_id: str, conversation_id: str) -> Conversation:
        """Drop the remote document (best effort) and unbind the conversation."""
        conversation = self._require_conversation(user_id, conversation_id)

        if conversation.gemini_file_name:
            try:
                await self.backend.delete_document(conversation.gemini_file_name)
            except Exception as e:
                logger.warning(f"Failed to delete file {conversation.gemini_file_name}: {e}")

        updated = self.db.update_conversation(
            conversation.id,
            gemini_file_uri=None,
            gemini_file_name=None,
            cache_expires_at=None,
        )
        logger.info(f"Conversation {conversation.id} unbound")
        return updated

    async def list_conversations(self, user_id: str) -> List[Conversation]:
        return self.db.list_user_conversations(user_id)
