"""Fetch resolved files to disk.

Each file is streamed in 1 MB chunks to a ``.part`` file next to its final
path, optionally checked against a SHA-256 digest, then renamed into place.
A cancelled or failed transfer never leaves a partial file behind.

Blocking; progress is reported through ``progress_cb(done_bytes, total_bytes)``
where ``total_bytes`` is 0 when the server sends no ``Content-Length``.
"""

from __future__ import annotations

import hashlib
import logging
import re
import threading
from pathlib import Path
from typing import Callable

from storelistings.backend.errors import Cancelled, DownloadError
from storelistings.backend.http import HttpClient

log = logging.getLogger(__name__)

CHUNK_SIZE = 1 * 1024 * 1024

ProgressCallback = Callable[[int, int], None]

_UNSAFE_CHARS = re.compile(r'[\\/:*?"<>|\x00-\x1f]')


def safe_file_name(name: str) -> str:
    """Strip path separators and characters Windows refuses in file names."""
    cleaned = _UNSAFE_CHARS.sub("_", name).strip(" .")
    return cleaned or "download"


def download_file(
    http: HttpClient,
    url: str,
    dest_dir: Path,
    file_name: str,
    *,
    expected_sha256: str = "",
    progress_cb: ProgressCallback | None = None,
    cancel_event: threading.Event | None = None,
) -> Path:
    """Download *url* into *dest_dir* as *file_name* and return the final path."""
    dest_dir.mkdir(parents=True, exist_ok=True)
    dest = dest_dir / safe_file_name(file_name)
    part = dest.with_name(dest.name + ".part")
    digest = hashlib.sha256()
    done = 0

    try:
        with http.stream(url, cancel_event=cancel_event) as resp:
            total = int(resp.headers.get("Content-Length") or 0)
            with open(part, "wb") as fh:
                while True:
                    if cancel_event and cancel_event.is_set():
                        raise Cancelled("Download cancelled")
                    buf = resp.read(CHUNK_SIZE)
                    if not buf:
                        break
                    fh.write(buf)
                    digest.update(buf)
                    done += len(buf)
                    if progress_cb:
                        progress_cb(done, total)
    except OSError as exc:
        part.unlink(missing_ok=True)
        raise DownloadError(f"Could not write {dest.name} to disk: {exc}") from exc
    except Exception:
        part.unlink(missing_ok=True)
        raise

    if expected_sha256:
        _verify_sha256(digest.hexdigest(), expected_sha256, part)

    part.replace(dest)
    log.info("Downloaded %s (%d bytes)", dest, done)
    return dest


def _verify_sha256(actual: str, expected: str, path: Path) -> None:
    """Delete *path* and raise ``DownloadError`` when the digests differ."""
    if actual.lower() != expected.strip().lower():
        path.unlink(missing_ok=True)
        raise DownloadError(
            f"SHA256 mismatch for {path.name.removesuffix('.part')}; file may be corrupt or tampered.\n"
            f"  expected: {expected}\n"
            f"  actual:   {actual}"
        )
