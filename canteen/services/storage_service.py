"""
Storage Service - uploads kept on the local filesystem and served under /uploads

A store with a base URL renders absolute URLs
({base_url}/uploads/{logical-path}/{filename}); the local fallback store has
no base URL and renders relative /uploads/... URLs.
"""
import logging
import mimetypes
import os
import re
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, Optional
from urllib.parse import urlparse, unquote

import httpx
from starlette.concurrency import run_in_threadpool

from canteen.core.errors import (
    InvalidStorageURLError,
    StorageError,
    StorageUnavailableError,
)

logger = logging.getLogger(__name__)

UPLOADS_PREFIX = "/uploads/"

DEFAULT_SUBDIRECTORIES = (
    "general/images",
    "products",
    "theater-documents",
    "settings/audio",
    "printer-setup/files",
    "qr-codes/single",
    "qr-codes/screen",
)

CONTENT_TYPES = {
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".gif": "image/gif",
    ".webp": "image/webp",
    ".svg": "image/svg+xml",
    ".pdf": "application/pdf",
    ".mp3": "audio/mpeg",
    ".wav": "audio/wav",
}

EXTENSIONS = {
    "image/jpeg": ".jpg",
    "image/png": ".png",
    "image/gif": ".gif",
    "image/webp": ".webp",
    "application/pdf": ".pdf",
    "audio/mpeg": ".mp3",
    "audio/wav": ".wav",
}


@dataclass
class StoredBlob:
    data: bytes
    mime: str


def content_type_for(path: str) -> str:
    ext = os.path.splitext(path)[1].lower()
    if ext in CONTENT_TYPES:
        return CONTENT_TYPES[ext]
    guessed, _ = mimetypes.guess_type(path)
    return guessed or "application/octet-stream"


def gcs_to_https(url: str) -> str:
    """gs://bucket/key -> https://storage.googleapis.com/bucket/key"""
    return "https://storage.googleapis.com/" + url[len("gs://"):]


class LocalStorage:
    """Blob store rooted at a directory"""

    def __init__(
        self,
        root: str,
        base_url: Optional[str] = None,
        subdirectories: Iterable[str] = DEFAULT_SUBDIRECTORIES,
        http_timeout: float = 10.0,
    ):
        self.root = Path(root).resolve()
        self.base_url = base_url.rstrip("/") if base_url else None
        self.subdirectories = tuple(subdirectories)
        self.http_timeout = http_timeout
        self._initialised: Optional[bool] = None

    def __repr__(self):
        return f"<LocalStorage {self.root} base={self.base_url or '(relative)'}>"

    # ========== Lifecycle ==========

    def _initialise_sync(self):
        self.root.mkdir(parents=True, exist_ok=True)
        for sub in self.subdirectories:
            (self.root / sub).mkdir(parents=True, exist_ok=True)

    async def initialise(self) -> bool:
        """Create the root and the standard subdirectories"""
        try:
            await run_in_threadpool(self._initialise_sync)
        except OSError as e:
            logger.error(f"Storage initialisation failed for {self.root}: {e}")
            self._initialised = False
            return False
        self._initialised = True
        logger.info(f"Storage ready at {self.root}")
        return True

    async def is_ready(self) -> bool:
        if self._initialised is False:
            return False
        return await run_in_threadpool(
            lambda: self.root.is_dir() and os.access(self.root, os.W_OK)
        )

    # ========== Paths & URLs ==========

    @staticmethod
    def _normalise_logical(logical_path: str) -> str:
        parts = [p for p in logical_path.replace("\\", "/").split("/") if p not in ("", ".")]
        if any(p == ".." for p in parts):
            raise StorageError(f"Illegal logical path: {logical_path}")
        return "/".join(parts)

    @staticmethod
    def _unique_filename(filename: str) -> str:
        stem, ext = os.path.splitext(filename)
        stem = re.sub(r"[^A-Za-z0-9._\-]", "_", stem).strip("_") or "file"
        return f"{stem}-{int(time.time() * 1000)}{ext.lower()}"

    def _public_url(self, relative: str) -> str:
        path = UPLOADS_PREFIX + relative
        if self.base_url:
            return self.base_url + path
        return path

    def _is_inside_root(self, path: Path) -> bool:
        try:
            path.relative_to(self.root)
        except ValueError:
            return False
        return True

    def _local_path_for(self, url: str) -> Optional[Path]:
        """Map a URL served by this store to a path under the root"""
        path = url
        if url.startswith(("http://", "https://")):
            parsed = urlparse(url)
            if not self.base_url or not url.startswith(self.base_url + "/"):
                return None
            path = parsed.path
        if not path.startswith(UPLOADS_PREFIX):
            return None
        relative = unquote(path[len(UPLOADS_PREFIX):])
        return (self.root / relative).resolve()

    # ========== Writes ==========

    def _write_sync(self, data: bytes, logical_path: str, mime: Optional[str]) -> str:
        logical = self._normalise_logical(logical_path)
        folder, filename = os.path.split(logical)
        if not os.path.splitext(filename)[1] and mime in EXTENSIONS:
            filename += EXTENSIONS[mime]
        filename = self._unique_filename(filename)

        target_dir = self.root / folder if folder else self.root
        target_dir.mkdir(parents=True, exist_ok=True)
        target = target_dir / filename
        counter = 1
        while target.exists():
            stem, ext = os.path.splitext(filename)
            target = target_dir / f"{stem}_{counter}{ext}"
            counter += 1
        filename = target.name
        tmp = target.with_name(target.name + ".part")
        with open(tmp, "wb") as f:
            f.write(data)
        os.replace(tmp, target)

        relative = f"{folder}/{filename}" if folder else filename
        return self._public_url(relative)

    async def put(self, data: bytes, logical_path: str, mime: Optional[str] = None) -> str:
        """Write bytes under logical_path; returns the external URL"""
        if self._initialised is False:
            raise StorageUnavailableError(f"Storage root {self.root} failed to initialise")
        try:
            url = await run_in_threadpool(self._write_sync, data, logical_path, mime)
        except OSError as e:
            logger.error(f"Storage write failed for {logical_path}: {e}")
            raise StorageError(f"Failed to store {logical_path}: {e}") from e
        logger.debug(f"Stored {len(data)} bytes -> {url}")
        return url

    async def put_from_file(
        self,
        local_path: str,
        logical_path: Optional[str] = None,
        mime: Optional[str] = None,
    ) -> str:
        data = await run_in_threadpool(Path(local_path).read_bytes)
        logical_path = logical_path or f"general/{os.path.basename(local_path)}"
        return await self.put(data, logical_path, mime or content_type_for(local_path))

    async def put_many(self, files: Dict[str, tuple], folder: str) -> Dict[str, str]:
        """
        Store several uploads into one folder.

        files maps a field name to (filename, data[, mime]); returns
        {field: url}.
        """
        urls = {}
        for field, spec in files.items():
            filename, data = spec[0], spec[1]
            mime = spec[2] if len(spec) > 2 else content_type_for(filename)
            urls[field] = await self.put(data, f"{folder}/{filename}", mime)
        return urls

    # ========== Reads ==========

    async def get(self, url: str) -> StoredBlob:
        if not url:
            raise InvalidStorageURLError("Empty storage URL")

        if url.startswith("gs://"):
            url = gcs_to_https(url)

        if url.startswith(("http://", "https://", UPLOADS_PREFIX)):
            local = self._local_path_for(url)
            if local is not None:
                if not self._is_inside_root(local):
                    raise InvalidStorageURLError(f"Path escapes storage root: {url}")
                try:
                    data = await run_in_threadpool(local.read_bytes)
                except FileNotFoundError as e:
                    raise StorageError(f"File not found: {url}", code="NOT_FOUND") from e
                return StoredBlob(data=data, mime=content_type_for(str(local)))

            if url.startswith(UPLOADS_PREFIX):
                raise InvalidStorageURLError(f"Unsupported storage URL: {url}")
            return await self._fetch_remote(url)

        raise InvalidStorageURLError(f"Unsupported storage URL: {url}")

    async def _fetch_remote(self, url: str) -> StoredBlob:
        try:
            async with httpx.AsyncClient(timeout=self.http_timeout, follow_redirects=True) as client:
                response = await client.get(url)
                response.raise_for_status()
        except httpx.HTTPError as e:
            raise StorageError(f"Failed to fetch {url}: {e}") from e
        mime = response.headers.get("content-type", "").split(";")[0].strip()
        return StoredBlob(data=response.content, mime=mime or content_type_for(urlparse(url).path))

    # ========== Deletes ==========

    def _delete_sync(self, local: Path) -> bool:
        try:
            local.unlink()
        except FileNotFoundError:
            logger.debug(f"Delete: {local} already gone")
        return True

    async def delete(self, url: str) -> bool:
        """
        Remove a stored file. data: URLs and missing files count as success;
        anything resolving outside the root is refused.
        """
        if not url or url.startswith("data:"):
            return True

        local = self._local_path_for(url)
        if local is None:
            logger.warning(f"Delete refused, not a URL of this store: {url}")
            return False
        if not self._is_inside_root(local) or local == self.root:
            logger.warning(f"Delete refused, path escapes storage root: {url}")
            return False

        try:
            return await run_in_threadpool(self._delete_sync, local)
        except OSError as e:
            logger.error(f"Delete failed for {url}: {e}")
            return False

    async def delete_many(self, urls: Iterable[str]) -> int:
        deleted = 0
        for url in urls:
            if await self.delete(url):
                deleted += 1
        return deleted
