"""Shared HTTP(S) client for the store services.

One ``HttpClient`` is built by the caller (see ``store_client()`` and
``update_client()``) and passed into every backend component; nothing in
this package keeps a global client.  The client is read-only after
construction so it can be shared across the resolver's worker threads.

Non-success statuses are *returned*, not raised, so callers can read the
upstream error body before turning it into ``UpstreamError``.  Transport
failures raise ``NetworkError``.
"""

from __future__ import annotations

import logging
import ssl
import threading
import urllib.error
import urllib.request
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from http.client import HTTPException
from typing import Any, Iterator

from storelistings.backend.errors import (
    NetworkError,
    SchemaError,
    UpstreamError,
    raise_if_cancelled,
)
from storelistings.utils.payload import Payload

log = logging.getLogger(__name__)

# Sent by the Store app itself; the catalog endpoints reject generic agents.
STORE_USER_AGENT = "WindowsStore/22512.1401.1101.0"
UPDATE_USER_AGENT = "Windows-Update-Agent/10.0.10011.16384 Client-Protocol/2.1"

_DEFAULT_TIMEOUT = 30


@dataclass(frozen=True, slots=True)
class HttpResponse:
    status: int
    body: bytes
    headers: dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    def text(self) -> str:
        return self.body.decode("utf-8", errors="replace")

    def json(self) -> Payload:
        """Decode the body as JSON; raises ``SchemaError`` when it is not JSON."""
        try:
            return Payload.loads(self.body)
        except ValueError as exc:
            raise SchemaError("<body>", f"Response is not valid JSON: {exc}") from exc

    def error_detail(self) -> str:
        """Best-effort error text: the JSON ``message`` field, else the raw body."""
        try:
            message = Payload.loads(self.body).string("message")
        except ValueError:
            message = ""
        return message or self.text().strip()

    def raise_for_status(self) -> None:
        if not self.ok:
            raise UpstreamError(self.status, self.error_detail())


class HttpClient:
    """Thin ``urllib`` wrapper with fixed default headers and TLS policy."""

    def __init__(
        self,
        headers: dict[str, str] | None = None,
        *,
        timeout: float = _DEFAULT_TIMEOUT,
        ssl_verify: bool = True,
        ca_cert: str | None = None,
    ) -> None:
        self._headers = dict(headers or {})
        self._timeout = timeout
        self._ssl_ctx: ssl.SSLContext | None = None
        if ca_cert:
            ctx = ssl.create_default_context(cafile=ca_cert)
            # OpenSSL 3 strict mode requires an Authority Key Identifier on
            # every certificate; private CAs often omit it.
            ctx.verify_flags &= ~ssl.VERIFY_X509_STRICT
            self._ssl_ctx = ctx
        elif not ssl_verify:
            ctx = ssl.create_default_context()
            ctx.check_hostname = False
            ctx.verify_mode = ssl.CERT_NONE
            self._ssl_ctx = ctx

    @property
    def headers(self) -> dict[str, str]:
        return dict(self._headers)

    def request(
        self,
        method: str,
        url: str,
        *,
        data: bytes | None = None,
        headers: dict[str, str] | None = None,
        cancel_event: threading.Event | None = None,
    ) -> HttpResponse:
        raise_if_cancelled(cancel_event)
        req = urllib.request.Request(  # noqa: S310
            url, data=data, method=method, headers={**self._headers, **(headers or {})}
        )
        log.debug("%s %s", method, url)
        try:
            with urllib.request.urlopen(req, timeout=self._timeout, context=self._ssl_ctx) as resp:
                response = HttpResponse(resp.status, resp.read(), dict(resp.headers.items()))
        except urllib.error.HTTPError as exc:
            body = exc.read() if exc.fp is not None else b""
            response = HttpResponse(exc.code, body, dict(exc.headers.items()) if exc.headers else {})
        except urllib.error.URLError as exc:
            raise NetworkError(f"Network error fetching {url}: {exc.reason}") from exc
        except (OSError, HTTPException) as exc:
            raise NetworkError(f"Network error fetching {url}: {exc}") from exc
        # The transfer cannot be interrupted mid-flight; discard its result instead.
        raise_if_cancelled(cancel_event)
        return response

    def get(self, url: str, *, cancel_event: threading.Event | None = None) -> HttpResponse:
        return self.request("GET", url, cancel_event=cancel_event)

    @contextmanager
    def stream(
        self, url: str, *, cancel_event: threading.Event | None = None
    ) -> Iterator[Any]:
        """Open *url* for incremental reading; non-2xx raises ``UpstreamError``.

        Yields the raw response object (``read(n)``, ``headers``).
        """
        raise_if_cancelled(cancel_event)
        req = urllib.request.Request(url, headers=self._headers)  # noqa: S310
        log.debug("GET %s (stream)", url)
        try:
            resp = urllib.request.urlopen(req, timeout=self._timeout, context=self._ssl_ctx)
        except urllib.error.HTTPError as exc:
            body = exc.read() if exc.fp is not None else b""
            raise UpstreamError(exc.code, HttpResponse(exc.code, body).error_detail()) from exc
        except urllib.error.URLError as exc:
            raise NetworkError(f"Network error fetching {url}: {exc.reason}") from exc
        except (OSError, HTTPException) as exc:
            raise NetworkError(f"Network error fetching {url}: {exc}") from exc
        with resp:
            try:
                yield resp
            except HTTPException as exc:
                raise NetworkError(f"Connection dropped while reading {url}: {exc}") from exc

    def get_json(self, url: str, *, cancel_event: threading.Event | None = None) -> Payload:
        """GET *url* and decode it; non-2xx raises ``UpstreamError``."""
        response = self.get(url, cancel_event=cancel_event)
        response.raise_for_status()
        return response.json()


# ---------------------------------------------------------------------------
# Presets
# ---------------------------------------------------------------------------

def store_client(*, language: str = "en-US", **kwargs) -> HttpClient:
    """Client configured like the Store app for the catalog endpoints."""
    return HttpClient(
        {
            "Accept": "*/*",
            "Accept-Language": language,
            "User-Agent": STORE_USER_AGENT,
            "MS-CV": _correlation_vector(),
            "OSIsGenuine": "True",
            "OSIsSMode": "False",
        },
        **kwargs,
    )


def update_client(**kwargs) -> HttpClient:
    """Client configured like the Windows Update agent for the sync service."""
    return HttpClient(
        {"User-Agent": UPDATE_USER_AGENT, "Connection": "keep-alive"},
        **kwargs,
    )


def _correlation_vector() -> str:
    # Base vector of 16 random characters plus the ".0" extension.
    return uuid.uuid4().hex[:16] + ".0"
