"""Shared fixtures: temporary store, blob root and an in-memory backend."""
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import pytest

from generation.backend import GenerationBackend, GroundedAnswer, SynthesizedAudio, UploadedDocument
from storage.blob_store import LocalBlobStore
from storage.database import Database
from storage.models import TokenUsage


class FakeBackend(GenerationBackend):
    """Records calls and returns canned results."""

    def __init__(self):
        self.calls: Dict[str, List[Any]] = {
            "extract_text": [], "synthesize": [], "upload_document": [],
            "get_document": [], "generate_grounded": [], "delete_document": [],
        }
        self.extraction: Any = {"header": "Chapter 1", "body": "It was a dark night.", "footer": "1"}
        self.audio = SynthesizedAudio(data=b"\x00\x01" * 24000, mime_type="audio/L16;codec=pcm;rate=24000")
        self.document_states = ["ACTIVE"]
        self.answer = GroundedAnswer(
            text="The book is about a journey.",
            tokens_used=TokenUsage(cached=0, prompt=120, candidates=30, total=150),
        )
        self.fail_with: Dict[str, Exception] = {}
        self._uploads = 0

    def _record(self, name: str, *args):
        self.calls[name].append(args)
        if name in self.fail_with:
            raise self.fail_with[name]

    async def extract_text(self, image_bytes, mime_type):
        self._record("extract_text", image_bytes, mime_type)
        return self.extraction

    async def synthesize(self, text, voice_name, style_prompt=None):
        self._record("synthesize", text, voice_name, style_prompt)
        return self.audio

    async def upload_document(self, url, display_name):
        self._record("upload_document", url, display_name)
        self._uploads += 1
        return UploadedDocument(
            uri=f"https://files.example/files/doc-{self._uploads}",
            name=f"files/doc-{self._uploads}",
            mime_type="application/pdf",
        )

    async def get_document(self, name):
        self._record("get_document", name)
        state = self.document_states.pop(0) if len(self.document_states) > 1 else self.document_states[0]
        return UploadedDocument(uri=f"https://files.example/{name}", name=name, state=state)

    async def generate_grounded(self, file_uri, user_message, history, system_instruction=None):
        self._record("generate_grounded", file_uri, user_message, history, system_instruction)
        return self.answer

    async def delete_document(self, name):
        self._record("delete_document", name)

    async def aclose(self):
        pass


class FakeClock:
    """Controllable UTC clock."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def db(tmp_path):
    return Database(tmp_path / "reader.db")


@pytest.fixture
def blob_store(tmp_path):
    return LocalBlobStore(root=tmp_path / "blobs", public_base_url="http://media.test")


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def book(db):
    return db.create_book("owner-1", "The Long Road", author="A. Writer", pdf_url="https://books.test/road.pdf")
