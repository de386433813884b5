"""Test the sqlite artifact store."""
import asyncio
from datetime import datetime, timezone

import pytest

from storage.database import Database


def test_schema_is_idempotent(tmp_path):
    """Opening the same file twice keeps existing rows."""
    path = tmp_path / "reader.db"
    book = Database(path).create_book("u1", "Title")
    assert Database(path).get_book(book.id).title == "Title"


def test_book_access(db, book):
    """Owners and library members have access, others do not."""
    assert db.user_has_book_access("owner-1", book.id) is True
    assert db.user_has_book_access("reader-2", book.id) is False

    db.add_book_to_library("reader-2", book.id)
    db.add_book_to_library("reader-2", book.id)
    assert db.user_has_book_access("reader-2", book.id) is True


def test_get_or_create_page_is_unique(db, book):
    """One page row per (book, number), with a placeholder image."""
    first = db.get_or_create_page(book.id, 5)
    second = db.get_or_create_page(book.id, 5, "http://images.test/5.png")
    assert first.id == second.id
    assert first.image_url == "placeholder"


def test_page_text_upsert(db, book):
    """Saving text twice for a page keeps one row with the latest value."""
    page = db.get_or_create_page(book.id, 1)
    db.save_page_text(page.id, '{"body": "v1"}', 0.95, 10)
    db.save_page_text(page.id, '{"body": "v2"}', 0.95, 12, {"mimeType": "image/png"})

    stored = db.get_page_text_by_book_and_number(book.id, 1)
    assert stored.extracted_text == '{"body": "v2"}'
    assert stored.extraction_metadata == {"mimeType": "image/png"}
    assert stored.page.page_number == 1
    assert db.get_page_text_by_book_and_number(book.id, 2) is None


def test_page_audio_keyed_by_voice(db, book):
    """Audio rows are unique per (page, voice persona)."""
    page = db.get_or_create_page(book.id, 1)
    db.save_page_audio(page.id, "Zephyr", "http://a/1.wav", 1.5, 100, 20, voice_settings={"voiceName": "Zephyr"})
    db.save_page_audio(page.id, "Puck", "http://a/2.wav", 2.0, 200, 30)
    db.save_page_audio(page.id, "Zephyr", "http://a/3.wav", 1.75, 150, 25)

    zephyr = db.get_page_audio_by_book_and_number(book.id, 1, "Zephyr")
    assert zephyr.audio_url == "http://a/3.wav"
    assert zephyr.audio_duration_seconds == 1.75
    assert db.get_page_audio_by_book_and_number(book.id, 1, "Puck").audio_url == "http://a/2.wav"
    assert db.get_page_audio_by_book_and_number(book.id, 1, "Kore") is None


def test_update_conversation(db, book):
    """Binding fields round-trip and unknown columns are refused."""
    conversation = db.create_conversation("owner-1", book.id, "Chat")
    expires = datetime(2025, 3, 1, 8, 30, tzinfo=timezone.utc)

    updated = db.update_conversation(
        conversation.id, gemini_file_uri="uri", gemini_file_name="files/1", cache_expires_at=expires
    )
    assert updated.cache_expires_at == expires
    assert updated.gemini_file_name == "files/1"

    with pytest.raises(ValueError):
        db.update_conversation(conversation.id, user_id="someone-else")


def test_messages_in_creation_order(db, book):
    """Messages come back in insertion order with their metadata."""
    conversation = db.create_conversation("owner-1", book.id, "Chat")
    db.create_message(conversation.id, "user", "first", message_metadata={"estimatedTokens": 2})
    db.create_message(conversation.id, "assistant", "second", tokens_used=5, cost=0.01)

    messages = db.get_conversation_messages(conversation.id)
    assert [m.content for m in messages] == ["first", "second"]
    assert messages[0].message_metadata == {"estimatedTokens": 2}
    assert messages[1].cost == pytest.approx(0.01)


def test_list_user_conversations_has_book_title(db, book):
    """Listings join the book title."""
    db.create_conversation("owner-1", book.id, "Chat")
    listed = db.list_user_conversations("owner-1")
    assert [c.book_title for c in listed] == ["The Long Road"]


def test_blob_store_put_and_delete(blob_store, tmp_path):
    """Blobs are written under their bucket and served by URL."""
    url = asyncio.run(blob_store.put("media", "audio/u/b/page_1.wav", b"RIFF", "audio/wav"))
    assert url == "http://media.test/media/audio/u/b/page_1.wav"
    stored = tmp_path / "blobs" / "media" / "audio" / "u" / "b" / "page_1.wav"
    assert stored.read_bytes() == b"RIFF"

    asyncio.run(blob_store.delete("media", "audio/u/b/page_1.wav"))
    assert not stored.exists()

    with pytest.raises(ValueError):
        asyncio.run(blob_store.put("media", "../escape.wav", b"x", "audio/wav"))
