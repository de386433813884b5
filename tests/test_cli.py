"""Test the command line interface end to end with a fake backend."""
import re

import pytest
from click.testing import CliRunner
from rich.console import Console

import main
from storage.blob_store import LocalBlobStore
from storage.database import Database


@pytest.fixture
def cli_env(tmp_path, monkeypatch, backend):
    db_path = tmp_path / "cli.db"
    monkeypatch.setattr(main, "console", Console(width=300))
    monkeypatch.setattr(main, "GeminiClient", lambda: backend)
    monkeypatch.setattr(main, "Database", lambda: Database(db_path))
    monkeypatch.setattr(
        main, "LocalBlobStore", lambda: LocalBlobStore(root=tmp_path / "blobs", public_base_url="http://media.test")
    )
    return backend


def _invoke(*args):
    return CliRunner().invoke(main.cli, list(args))


def _add_book(pdf_url="https://books.test/road.pdf"):
    result = _invoke("add-book", "--user-id", "u1", "--title", "The Long Road", "--pdf-url", pdf_url)
    assert result.exit_code == 0, result.output
    return re.search(r"Book ID: (\S+)", result.output).group(1)


def test_init_db(cli_env):
    """init-db creates the schema."""
    result = _invoke("init-db")
    assert result.exit_code == 0
    assert "Database ready" in result.output


def test_page_text_and_audio(cli_env, tmp_path):
    """Page text is extracted once, then page audio reads the cached body."""
    book_id = _add_book()
    image = tmp_path / "page.png"
    image.write_bytes(b"\x89PNG fake")

    first = _invoke("page-text", "--user-id", "u1", "--book-id", book_id, "--page", "1", "--image", str(image))
    assert first.exit_code == 0, first.output
    assert "extracted" in first.output
    assert "It was a dark night." in first.output

    second = _invoke("page-text", "--user-id", "u1", "--book-id", book_id, "--page", "1", "--image", str(image))
    assert "cached" in second.output
    assert len(cli_env.calls["extract_text"]) == 1

    audio = _invoke("page-audio", "--user-id", "u1", "--book-id", book_id, "--page", "1")
    assert audio.exit_code == 0, audio.output
    assert "page_1_zephyr.wav" in audio.output
    assert cli_env.calls["synthesize"][0][0] == "It was a dark night."


def test_page_audio_without_text(cli_env):
    """Audio for a page with no text and no --text is refused."""
    book_id = _add_book()
    result = _invoke("page-audio", "--user-id", "u1", "--book-id", book_id, "--page", "2")
    assert result.exit_code == 1
    assert "VALIDATION_FAILED" in result.output


def test_chat_flow(cli_env):
    """Open, upload, ask, inspect and end a conversation."""
    book_id = _add_book()

    opened = _invoke("chat-open", "--user-id", "u1", "--book-id", book_id)
    assert opened.exit_code == 0, opened.output
    conversation_id = re.search(r"Conversation ID: (\S+)", opened.output).group(1)
    assert "Active document: no" in opened.output

    uploaded = _invoke("chat-upload", "--user-id", "u1", "--book-id", book_id)
    assert uploaded.exit_code == 0, uploaded.output
    assert "files/doc-1" in uploaded.output

    sent = _invoke("chat-send", "--user-id", "u1", "--conversation-id", conversation_id, "What happens?")
    assert sent.exit_code == 0, sent.output
    assert "The book is about a journey." in sent.output

    status = _invoke("chat-status", "--user-id", "u1", "--conversation-id", conversation_id)
    assert "Cannot be extended" in status.output

    listed = _invoke("conversations", "--user-id", "u1")
    assert "The Long Road" in listed.output

    ended = _invoke("chat-end", "--user-id", "u1", "--conversation-id", conversation_id)
    assert ended.exit_code == 0
    assert cli_env.calls["delete_document"] == [("files/doc-1",)]

    expired = _invoke("chat-send", "--user-id", "u1", "--conversation-id", conversation_id, "Again?")
    assert expired.exit_code == 1
    assert "CACHE_EXPIRED" in expired.output


def test_access_denied_exit_code(cli_env):
    """Errors map to a message and exit status 1."""
    book_id = _add_book()
    result = _invoke("chat-open", "--user-id", "someone-else", "--book-id", book_id)
    assert result.exit_code == 1
    assert "ACCESS_DENIED" in result.output
