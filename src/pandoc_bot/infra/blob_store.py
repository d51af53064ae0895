"""
Blob store for inbound uploads (local staging of Twilio media).

Responsibilities:
- Download a WhatsApp attachment from Twilio into media_root_dir/uploads/<file_id>
- Hand back a blob reference (the file id) usable by read()
- Read staged bytes back when a conversion job is built
- Discard staged files once their bytes are on the queue (or the upload was rejected)

Twilio media URLs require HTTP basic auth with the account SID/token. We use
certifi's CA bundle when available (some local Python installs cannot verify
Twilio's certificate chain otherwise).
"""

from __future__ import annotations

import asyncio
import base64
import re
import ssl
from pathlib import Path
from typing import Optional
from urllib.error import URLError
from urllib.request import Request, urlopen

from src.pandoc_bot.config.settings import settings
from src.pandoc_bot.errors import FileTooLarge, StorageFailure, TransportFailure
from src.pandoc_bot.logging.logger import setup_logger

logger = setup_logger(__name__)

_SAFE_ID = re.compile(r"[^A-Za-z0-9._-]")


def create_ssl_context() -> Optional[ssl.SSLContext]:
    """
    Returns an SSLContext configured with certifi CA bundle if available.

    If certifi is not installed, returns None (urllib will use default context).
    """
    try:
        import certifi  # type: ignore
    except ImportError:
        return None

    return ssl.create_default_context(cafile=certifi.where())


def _basic_auth_header(username: str, password: str) -> str:
    token = base64.b64encode(f"{username}:{password}".encode("utf-8")).decode("ascii")
    return f"Basic {token}"


def safe_blob_ref(file_id: str) -> str:
    ref = _SAFE_ID.sub("_", (file_id or "").strip())
    if not ref or ref in {".", ".."}:
        raise ValueError(f"Invalid file id {file_id!r}")
    return ref


class TwilioBlobStore:
    def __init__(
        self,
        *,
        root_dir: Optional[str] = None,
        account_sid: Optional[str] = None,
        auth_token: Optional[str] = None,
        max_bytes: Optional[int] = None,
    ) -> None:
        self.root = Path(root_dir or settings.media_root_dir) / "uploads"
        self.account_sid = account_sid or settings.twilio_account_sid or ""
        self.auth_token = auth_token or settings.twilio_auth_token or ""
        self.max_bytes = settings.max_file_bytes if max_bytes is None else max_bytes

    def path_for(self, blob_ref: str) -> Path:
        return self.root / safe_blob_ref(blob_ref)

    async def stage(self, file_id: str, *, url: str) -> str:
        """
        Download `url` to local storage under `file_id`.

        Returns:
            blob_ref (str): reference accepted by read()
        """
        blob_ref = safe_blob_ref(file_id)
        dst = self.path_for(blob_ref)
        logger.info("Staging document | file_id=%s | url=%s", file_id, url)

        try:
            await asyncio.to_thread(self._download_blocking, url, dst)
        except (URLError, OSError) as exc:
            logger.error("Document download failed | file_id=%s", file_id, exc_info=exc)
            raise TransportFailure(f"Could not download file {file_id}") from exc

        logger.info("Staged document | file_id=%s | path=%s", file_id, str(dst))
        return blob_ref

    async def read(self, blob_ref: str) -> bytes:
        path = self.path_for(blob_ref)
        try:
            return await asyncio.to_thread(path.read_bytes)
        except OSError as exc:
            raise StorageFailure(f"Staged blob {blob_ref!r} is not readable") from exc

    async def discard(self, blob_ref: str) -> None:
        """
        Remove a staged upload. Missing files are fine (already discarded).
        """
        path = self.path_for(blob_ref)
        try:
            await asyncio.to_thread(path.unlink, missing_ok=True)
        except OSError as exc:
            raise StorageFailure(f"Staged blob {blob_ref!r} could not be removed") from exc
        logger.debug("Discarded staged document | blob_ref=%s", blob_ref)

    def _download_blocking(self, url: str, dst: Path) -> None:
        headers = {}
        if self.account_sid and self.auth_token:
            headers["Authorization"] = _basic_auth_header(self.account_sid, self.auth_token)
        req = Request(url, method="GET", headers=headers)

        with urlopen(req, timeout=120, context=create_ssl_context()) as resp:
            # Read one byte past the cap so oversize uploads are detected without buffering them.
            data = resp.read(self.max_bytes + 1)
        if len(data) > self.max_bytes:
            raise FileTooLarge(self.max_bytes)

        dst.parent.mkdir(parents=True, exist_ok=True)
        tmp = dst.with_suffix(dst.suffix + ".part")
        tmp.write_bytes(data)
        tmp.replace(dst)
