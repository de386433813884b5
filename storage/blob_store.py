"""Blob storage for generated media."""
import aiofiles
from pathlib import Path

from utils.logger import setup_logger
import config

logger = setup_logger(__name__)


class LocalBlobStore:
    """Filesystem-backed blob store that serves files under a public base URL.

    Writes are idempotent by path: putting the same path twice overwrites.
    """

    def __init__(self, root: Path = config.BLOB_ROOT, public_base_url: str = config.BLOB_PUBLIC_BASE_URL):
        self.root = Path(root)
        self.public_base_url = public_base_url.rstrip("/")

    def _resolve(self, bucket: str, path: str) -> Path:
        target = (self.root / bucket / path).resolve()
        bucket_root = (self.root / bucket).resolve()
        if bucket_root not in target.parents:
            raise ValueError(f"Blob path escapes bucket: {path}")
        return target

    def public_url(self, bucket: str, path: str) -> str:
        return f"{self.public_base_url}/{bucket}/{path}"

    async def put(self, bucket: str, path: str, data: bytes, content_type: str) -> str:
        """Store bytes at bucket/path and return the public URL."""
        file_path = self._resolve(bucket, path)
        file_path.parent.mkdir(parents=True, exist_ok=True)

        async with aiofiles.open(file_path, 'wb') as f:
            await f.write(data)

        logger.info(f"Stored {len(data)} bytes ({content_type}) at {bucket}/{path}")
        return self.public_url(bucket, path)

    async def delete(self, bucket: str, path: str) -> None:
        file_path = self._resolve(bucket, path)
        if file_path.exists():
            file_path.unlink()
            logger.info(f"Deleted blob {bucket}/{path}")
