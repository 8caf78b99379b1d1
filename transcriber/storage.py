"""Transcription Pipeline - Audio download.

Fetches audio bytes for a job's audio_reference:
- http(s) URLs (e.g. signed storage URLs) via urllib
- file:// URLs and plain local paths

The download has a hard deadline covering the whole transfer, not only the
socket timeout; any timeout or transport error raises DownloadError.
"""

from __future__ import annotations

import logging
import time
import urllib.error
import urllib.request
from pathlib import Path
from typing import Protocol
from urllib.parse import unquote, urlparse

from transcriber.config import DOWNLOAD_TIMEOUT_SECONDS
from transcriber.errors import DownloadError

logger = logging.getLogger(__name__)

# Read size for streamed downloads
CHUNK_BYTES = 1024 * 1024


class AudioFetcher(Protocol):
    """Storage collaborator that resolves an audio reference to bytes."""

    def fetch(self, reference: str, timeout: float = DOWNLOAD_TIMEOUT_SECONDS) -> bytes:
        """Download audio.

        Raises:
            DownloadError: On timeout or any transport failure.
        """
        ...


class UrlAudioFetcher:
    """Fetches http(s) URLs, file:// URLs and local paths."""

    def __init__(self, user_agent: str = "transcriber-worker/0.1"):
        self.user_agent = user_agent

    def fetch(self, reference: str, timeout: float = DOWNLOAD_TIMEOUT_SECONDS) -> bytes:
        parsed = urlparse(reference)
        if parsed.scheme in ("http", "https"):
            return self._fetch_http(reference, timeout)
        if parsed.scheme == "file":
            return self._fetch_local(Path(unquote(parsed.path)), reference)
        if parsed.scheme == "" or len(parsed.scheme) == 1:
            # Plain path (a one-letter scheme is a Windows drive letter)
            return self._fetch_local(Path(reference), reference)
        raise DownloadError(reference, f"unsupported scheme '{parsed.scheme}'")

    def _fetch_local(self, path: Path, reference: str) -> bytes:
        try:
            return path.read_bytes()
        except OSError as e:
            raise DownloadError(reference, str(e)) from e

    def _fetch_http(self, url: str, timeout: float) -> bytes:
        deadline = time.monotonic() + timeout
        request = urllib.request.Request(url, headers={"User-Agent": self.user_agent})
        chunks: list[bytes] = []

        try:
            with urllib.request.urlopen(request, timeout=timeout) as response:
                status = getattr(response, "status", 200)
                if status != 200:
                    raise DownloadError(url, f"HTTP {status}")
                while True:
                    if time.monotonic() > deadline:
                        raise DownloadError(url, f"timed out after {timeout:.0f}s")
                    chunk = response.read(CHUNK_BYTES)
                    if not chunk:
                        break
                    chunks.append(chunk)
        except DownloadError:
            raise
        except urllib.error.HTTPError as e:
            raise DownloadError(url, f"HTTP {e.code}") from e
        except TimeoutError as e:
            raise DownloadError(url, f"timed out after {timeout:.0f}s") from e
        except urllib.error.URLError as e:
            raise DownloadError(url, str(e.reason)) from e
        except OSError as e:
            raise DownloadError(url, str(e)) from e

        data = b"".join(chunks)
        logger.debug("Downloaded %d bytes from %s", len(data), url)
        return data
