"""Test utilities: a scripted gateway and mock HTTP client installation."""

from __future__ import annotations

import hashlib
import re
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Mapping, Optional

import httpx

from .checksums import DIGEST_PREFIX_BYTES, DIGEST_SIZE
from .net import configure_http_client, reset_http_client

_RANGE_PATTERN = re.compile(r"bytes=(\d+)-$")


def digest_of(payload: bytes) -> str:
    """Return the manifest digest string for ``payload``."""

    return hashlib.blake2b(payload, digest_size=DIGEST_SIZE).digest()[:DIGEST_PREFIX_BYTES].hex()


@contextmanager
def use_mock_http_client(transport: httpx.BaseTransport, **client_kwargs) -> Iterator[httpx.Client]:
    """Temporarily install an HTTPX client backed by ``transport``."""

    client = httpx.Client(transport=transport, **client_kwargs)
    configure_http_client(client=client)
    try:
        yield client
    finally:
        reset_http_client()
        client.close()


@dataclass
class RequestRecord:
    """Captured gateway request."""

    path: str
    range: Optional[str]
    accept_encoding: Optional[str] = None


@dataclass
class FakeGateway:
    """In-memory gateway serving ``contents`` keyed by CID with Range support.

    ``statuses`` forces a status code for a CID.  Requests are recorded, and
    ``max_concurrent`` tracks how many requests were in flight at once.
    """

    contents: Mapping[str, bytes] = field(default_factory=dict)
    statuses: Dict[str, int] = field(default_factory=dict)
    delay: Optional[threading.Event] = None
    requests: List[RequestRecord] = field(default_factory=list)
    max_concurrent: int = 0
    _active: int = 0
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def handler(self, request: httpx.Request) -> httpx.Response:
        cid = request.url.path.rsplit("/", 1)[-1]
        range_header = request.headers.get("Range")
        with self._lock:
            self.requests.append(
                RequestRecord(
                    path=request.url.path,
                    range=range_header,
                    accept_encoding=request.headers.get("Accept-Encoding"),
                )
            )
            self._active += 1
            self.max_concurrent = max(self.max_concurrent, self._active)
        try:
            if self.delay is not None:
                self.delay.wait(timeout=5)
            return self._respond(cid, range_header)
        finally:
            with self._lock:
                self._active -= 1

    def _respond(self, cid: str, range_header: Optional[str]) -> httpx.Response:
        if cid in self.statuses:
            return httpx.Response(self.statuses[cid], content=b"")
        if cid not in self.contents:
            return httpx.Response(404, content=b"not found")
        payload = self.contents[cid]
        match = _RANGE_PATTERN.match(range_header or "")
        start = int(match.group(1)) if match else 0
        if start == 0:
            return httpx.Response(200, content=payload)
        if start >= len(payload):
            return httpx.Response(416, headers={"Content-Range": f"bytes */{len(payload)}"})
        body = payload[start:]
        return httpx.Response(
            206,
            headers={"Content-Range": f"bytes {start}-{len(payload) - 1}/{len(payload)}"},
            content=body,
        )

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


__all__ = ["FakeGateway", "RequestRecord", "digest_of", "use_mock_http_client"]
