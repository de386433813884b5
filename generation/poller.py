import asyncio
import time
from pydantic import BaseModel

from generation.backend import GenerationBackend, UploadedDocument
from utils.logger import setup_logger
import config

logger = setup_logger(__name__)


class PollResult(BaseModel):
    name: str
    status: str                      # "ready" | "failed" | "timeout"
    document: UploadedDocument | None
    error: str | None


class DocumentPoller:
    """Waits for an uploaded document to leave the PROCESSING state."""

    def __init__(
        self,
        client: GenerationBackend,
        max_wait_seconds: float = config.FILE_UPLOAD_TIMEOUT_SECONDS,
        poll_interval_seconds: float = config.FILE_POLL_INTERVAL_SECONDS
    ):
        self.client = client
        self.max_wait_seconds = max_wait_seconds
        self.poll_interval_seconds = poll_interval_seconds

    async def poll_until_ready(
        self,
        name: str,
        max_wait_seconds: float | None = None,
        poll_interval_seconds: float | None = None
    ) -> PollResult:
        max_wait_seconds = max_wait_seconds if max_wait_seconds is not None else self.max_wait_seconds
        poll_interval_seconds = poll_interval_seconds if poll_interval_seconds is not None else self.poll_interval_seconds
        start_time = time.monotonic()
        logger.info(f"Waiting for file processing - File: {name}")

        while (time.monotonic() - start_time) < max_wait_seconds:
            try:
                document = await self.client.get_document(name)
            except Exception as e:
                # Transient status errors should not abort the wait
                logger.warning(f"File status check failed for {name}: {e}")
                await asyncio.sleep(poll_interval_seconds)
                continue

            logger.debug(f"File status: {document.state} - File: {name}")

            if document.state == "ACTIVE":
                logger.info(f"File processing completed - File: {name}")
                return PollResult(name=name, status="ready", document=document, error=None)

            if document.state == "FAILED":
                return PollResult(
                    name=name,
                    status="failed",
                    document=document,
                    error=f"File processing failed - File: {name}"
                )

            # Still processing
            await asyncio.sleep(poll_interval_seconds)

        return PollResult(
            name=name,
            status="timeout",
            document=None,
            error=f"File processing timeout after {max_wait_seconds}s - File: {name}"
        )
