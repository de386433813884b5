"""Main CLI entry point for the reading backend."""
import asyncio
import functools
import sys
from pathlib import Path

import click
from rich.console import Console
from rich.table import Table

from caching.page_cache import PageArtifactCache, normalize_extracted_text
from chat.session_manager import ConversationSessionManager
from generation.gemini_client import GeminiClient
from storage.blob_store import LocalBlobStore
from storage.database import Database
from utils.errors import ReaderError, ValidationFailure
from utils.logger import setup_logger
import config

logger = setup_logger(__name__)
console = Console()


def run_async(coro_factory):
    """Run an async command body with a fresh Gemini client and report errors."""
    @functools.wraps(coro_factory)
    def wrapper(*args, **kwargs):
        async def runner():
            backend = GeminiClient()
            try:
                return await coro_factory(backend, *args, **kwargs)
            finally:
                await backend.aclose()

        try:
            return asyncio.run(runner())
        except ReaderError as e:
            logger.debug(f"{coro_factory.__name__} failed: {e.to_dict()}")
            console.print(f"[red]Error ({e.code}): {e.message}[/red]")
            sys.exit(1)
    return wrapper


def _page_cache(backend) -> PageArtifactCache:
    return PageArtifactCache(Database(), LocalBlobStore(), backend)


def _sessions(backend) -> ConversationSessionManager:
    return ConversationSessionManager(Database(), backend)


def _print_messages(messages):
    for message in messages:
        colour = "cyan" if message.role == "user" else "green"
        console.print(f"[{colour}]{message.role}[/{colour}]: {message.content}")


@click.group()
def cli():
    """Reading backend - page text, page audio and book chat"""
    pass


@cli.command("init-db")
def init_db():
    """Create the database schema."""
    Database()
    console.print(f"[green]✓ Database ready at {config.DB_PATH}[/green]")


@cli.command("add-book")
@click.option('--user-id', required=True, help='Owner user id')
@click.option('--title', required=True, help='Book title')
@click.option('--author', default=None, help='Book author')
@click.option('--pdf-url', default=None, help='Public URL of the book PDF')
@click.option('--pages', 'total_pages', type=int, default=None, help='Total page count')
@click.option('--share-with', multiple=True, help='Add the book to these users\' libraries')
def add_book(user_id, title, author, pdf_url, total_pages, share_with):
    """Register a book."""
    db = Database()
    book = db.create_book(user_id, title, author=author, pdf_url=pdf_url, total_pages=total_pages)
    for other_user in share_with:
        db.add_book_to_library(other_user, book.id)

    console.print(f"\n[green]✓ Book registered[/green]")
    console.print(f"Book ID: [cyan]{book.id}[/cyan]")
    console.print(f"Title: [cyan]{book.title}[/cyan]")


@cli.command("page-text")
@click.option('--user-id', required=True, help='Requesting user id')
@click.option('--book-id', required=True, help='Book UUID')
@click.option('--page', 'page_number', required=True, type=int, help='1-based page number')
@click.option('--image', type=click.Path(exists=True, dir_okay=False), required=True, help='Page image file')
@click.option('--mime-type', default=None, help='Image MIME type (default image/png)')
@run_async
async def page_text(backend, user_id, book_id, page_number, image, mime_type):
    """Get (or extract) the text of a page."""
    image_bytes = Path(image).read_bytes()
    result = await _page_cache(backend).get_or_extract_page_text(
        book_id, page_number, image_bytes, mime_type, requester_id=user_id
    )

    status = "[yellow]cached[/yellow]" if result.cached else "[green]extracted[/green]"
    console.print(f"\nPage {page_number} ({status}, {result.processing_time_ms} ms)\n")
    if result.text.header:
        console.print(f"[bold]{result.text.header}[/bold]\n")
    console.print(result.text.body)
    if result.text.footer:
        console.print(f"\n[dim]{result.text.footer}[/dim]")


@cli.command("page-audio")
@click.option('--user-id', required=True, help='Requesting user id')
@click.option('--book-id', required=True, help='Book UUID')
@click.option('--page', 'page_number', required=True, type=int, help='1-based page number')
@click.option('--text', default=None, help='Text to read (defaults to the cached page body)')
@click.option('--voice', default=config.DEFAULT_VOICE, show_default=True, help='Voice or persona name')
@run_async
async def page_audio(backend, user_id, book_id, page_number, text, voice):
    """Get (or generate) the audio of a page."""
    if text is None:
        cached_text = Database().get_page_text_by_book_and_number(book_id, page_number)
        if not cached_text:
            raise ValidationFailure("No --text given and page text has not been extracted yet")
        text = normalize_extracted_text(cached_text.extracted_text).body

    result = await _page_cache(backend).get_or_generate_page_audio(
        book_id, page_number, text, voice, requester_id=user_id
    )

    status = "[yellow]cached[/yellow]" if result.cached else "[green]generated[/green]"
    console.print(f"\nPage {page_number} audio ({status}, {result.processing_time_ms} ms)")
    console.print(f"URL: [cyan]{result.audio_url}[/cyan]")
    console.print(f"Duration: {result.duration_seconds}s")


@cli.command("chat-open")
@click.option('--user-id', required=True, help='Requesting user id')
@click.option('--book-id', required=True, help='Book UUID')
@run_async
async def chat_open(backend, user_id, book_id):
    """Open (or resume) the conversation about a book."""
    status = await _sessions(backend).get_or_create_conversation(user_id, book_id)

    console.print(f"\nConversation ID: [cyan]{status.id}[/cyan]")
    console.print(f"Active document: {'yes' if status.has_active_cache else 'no'}")
    if status.cache_expires_at:
        console.print(f"Expires at: {status.cache_expires_at.isoformat()}")
    _print_messages(status.messages)


@cli.command("chat-upload")
@click.option('--user-id', required=True, help='Requesting user id')
@click.option('--book-id', required=True, help='Book UUID')
@click.option('--pdf-url', default=None, help='PDF URL (defaults to the book\'s pdf_url)')
@click.option('--title', default=None, help='Display name (defaults to the book title)')
@run_async
async def chat_upload(backend, user_id, book_id, pdf_url, title):
    """Upload the book PDF and bind it to the conversation."""
    with console.status("Uploading book and waiting for processing..."):
        binding = await _sessions(backend).upload_book(user_id, book_id, pdf_url, title)

    console.print(f"\n[green]✓ Book ready for chat[/green]")
    console.print(f"Conversation ID: [cyan]{binding.conversation_id}[/cyan]")
    console.print(f"File: {binding.file_name}")
    console.print(f"Expires at: {binding.expires_at.isoformat()}")


@cli.command("chat-send")
@click.option('--user-id', required=True, help='Requesting user id')
@click.option('--conversation-id', required=True, help='Conversation UUID')
@click.argument('message')
@run_async
async def chat_send(backend, user_id, conversation_id, message):
    """Ask a question about the bound book."""
    reply = await _sessions(backend).send_message(user_id, conversation_id, message)

    console.print(f"\n{reply.message}\n")
    tokens = reply.tokens_used
    console.print(
        f"[dim]Tokens: {tokens.total:,} (prompt {tokens.prompt:,}, "
        f"output {tokens.candidates:,}, cached {tokens.cached:,})[/dim]"
    )


@cli.command("chat-status")
@click.option('--user-id', required=True, help='Requesting user id')
@click.option('--conversation-id', required=True, help='Conversation UUID')
@run_async
async def chat_status(backend, user_id, conversation_id):
    """Show when the bound document expires."""
    status = await _sessions(backend).check_expiry(user_id, conversation_id)

    colour = "red" if status.is_expired else "green"
    console.print(f"\nExpires at: [{colour}]{status.expires_at.isoformat()}[/{colour}]")
    console.print(status.message)


@cli.command("chat-end")
@click.option('--user-id', required=True, help='Requesting user id')
@click.option('--conversation-id', required=True, help='Conversation UUID')
@run_async
async def chat_end(backend, user_id, conversation_id):
    """Delete the uploaded document and unbind the conversation."""
    await _sessions(backend).delete_cache(user_id, conversation_id)
    console.print("[green]✓ Conversation cache cleared[/green]")


@cli.command()
@click.option('--user-id', required=True, help='User id')
@run_async
async def conversations(backend, user_id):
    """List a user's conversations."""
    rows = await _sessions(backend).list_conversations(user_id)
    if not rows:
        console.print("[yellow]No conversations yet[/yellow]")
        return

    table = Table(title="Conversations")
    table.add_column("ID", style="cyan")
    table.add_column("Book")
    table.add_column("Title")
    table.add_column("Expires")
    table.add_column("Updated")
    for row in rows:
        table.add_row(
            row.id,
            row.book_title or "",
            row.title,
            row.cache_expires_at.isoformat() if row.cache_expires_at else "-",
            row.updated_at.isoformat(),
        )
    console.print(table)


if __name__ == '__main__':
    cli()
