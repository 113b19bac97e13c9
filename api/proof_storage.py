"""
Proof (screenshot) storage.

``upload(data, content_type, name) -> public URL``. Local storage writes
under PROOF_DIR; HTTP storage uploads to a Supabase-storage compatible
object endpoint. Callers treat uploads as fire-and-forget.
"""

import asyncio
from pathlib import Path
from typing import Optional
import aiohttp

from api.config import config
from api.logging_config import logger


class ProofStorageError(Exception):
    """Upload failed."""


class LocalProofStorage:
    """Writes proofs to the local filesystem."""

    def __init__(self, base_dir: Optional[str] = None, public_base_url: Optional[str] = None):
        self.base_dir = Path(base_dir or config.PROOF_DIR)
        self.public_base_url = public_base_url if public_base_url is not None else config.PROOF_PUBLIC_BASE_URL

    async def upload(self, data: bytes, content_type: str, name: str) -> str:
        path = self.base_dir / name
        await asyncio.to_thread(self._write, path, data)
        if self.public_base_url:
            return f"{self.public_base_url.rstrip('/')}/{name}"
        return path.resolve().as_uri()

    @staticmethod
    def _write(path: Path, data: bytes):
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)

    async def close(self):
        pass


class HttpProofStorage:
    """Uploads proofs to an object storage bucket over HTTP."""

    def __init__(
        self,
        storage_url: Optional[str] = None,
        api_key: Optional[str] = None,
        bucket: Optional[str] = None,
        timeout_seconds: float = 30.0,
    ):
        self.storage_url = (storage_url or config.STORAGE_URL or "").rstrip("/")
        self.api_key = api_key or config.STORAGE_API_KEY
        self.bucket = bucket or config.STORAGE_BUCKET
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self.session: Optional[aiohttp.ClientSession] = None

    async def __aenter__(self):
        self._ensure_session()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    def _ensure_session(self) -> aiohttp.ClientSession:
        if self.session is None or self.session.closed:
            self.session = aiohttp.ClientSession(timeout=self.timeout)
        return self.session

    async def close(self):
        if self.session and not self.session.closed:
            await self.session.close()
        self.session = None

    def public_url(self, name: str) -> str:
        return f"{self.storage_url}/storage/v1/object/public/{self.bucket}/{name}"

    async def upload(self, data: bytes, content_type: str, name: str) -> str:
        if not self.storage_url or not self.api_key:
            raise ProofStorageError("Object storage is not configured")

        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "apikey": self.api_key,
            "Content-Type": content_type,
            "x-upsert": "true",
        }
        url = f"{self.storage_url}/storage/v1/object/{self.bucket}/{name}"

        session = self._ensure_session()
        async with session.post(url, data=data, headers=headers) as resp:
            if resp.status >= 300:
                body = await resp.text()
                raise ProofStorageError(f"Upload failed ({resp.status}): {body[:200]}")

        logger.debug(f"Uploaded proof {name} to bucket {self.bucket}")
        return self.public_url(name)


def get_proof_storage():
    """Storage backend selected by configuration."""
    if config.PROOF_STORAGE == "http":
        return HttpProofStorage()
    return LocalProofStorage()
