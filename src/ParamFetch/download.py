"""
Resumable Parameter Downloads

This module retrieves one parameter file from the gateway with a single
``Range`` request, appending to whatever partial content is already on disk.
An interrupted transfer therefore resumes where it stopped on the next
reconciliation call.  Nothing is retried here: a failed
attempt is reported to the caller, which records it and moves on.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Callable, ContextManager, Optional, Protocol, Union

import httpx
from tqdm import tqdm

from .cancellation import CancellationToken
from .errors import DownloadFailure
from .manifest import ParamFile

LOGGER = logging.getLogger(__name__)

_STREAM_CHUNK_SIZE = 1 << 20


class ProgressSink(Protocol):
    """Byte counter fed while the response body is written."""

    def update(self, n: int) -> object: ...


ProgressFactory = Callable[..., ContextManager[ProgressSink]]


def tqdm_progress(*, total: Optional[int], initial: int, desc: str, disable: bool = False) -> tqdm:
    """Default progress observer: a byte-scaled tqdm bar."""

    return tqdm(
        total=total,
        initial=initial,
        desc=desc,
        unit="B",
        unit_scale=True,
        unit_divisor=1024,
        leave=False,
        disable=disable,
    )


def _remaining_length(response: httpx.Response) -> Optional[int]:
    header = response.headers.get("Content-Length")
    if not header:
        return None
    try:
        return int(header)
    except ValueError:
        return None


def fetch_param(
    path: Union[str, Path],
    entry: ParamFile,
    *,
    gateway: str,
    client: httpx.Client,
    cancellation_token: Optional[CancellationToken] = None,
    progress_factory: Optional[ProgressFactory] = None,
    logger: Optional[logging.Logger] = None,
) -> int:
    """Append the remote content of ``entry`` onto ``path``.

    Args:
        path: Local destination; created when absent, appended to otherwise.
        entry: Manifest entry naming the remote content.
        gateway: URL prefix; the request target is ``gateway + entry.cid``.
        client: HTTPX client performing the request.
        cancellation_token: Checked between body chunks.
        progress_factory: Builds the progress observer; defaults to tqdm.
        logger: Logger for download telemetry.

    Returns:
        Number of bytes appended by this call.

    Raises:
        DownloadFailure: On transport errors, non-success statuses, content-coded
            bodies, or cancellation.
        OSError: If the local file cannot be opened or written.
    """

    log = logger or LOGGER
    destination = Path(path)
    url = f"{gateway}{entry.cid}"
    progress = progress_factory or tqdm_progress
    log.info(
        "Fetching %s from %s",
        destination,
        gateway,
        extra={"stage": "download", "path": str(destination), "cid": entry.cid},
    )

    with destination.open("ab") as output:
        offset = os.fstat(output.fileno()).st_size
        # Range offsets count bytes of the transferred representation; only an
        # unencoded body lines up with the bytes already on disk.
        headers = {"Range": f"bytes={offset}-", "Accept-Encoding": "identity"}
        log.info("GET %s", url, extra={"stage": "download", "offset": offset})

        written = 0
        try:
            with client.stream("GET", url, headers=headers) as response:
                if response.status_code == 416 and offset > 0:
                    # Nothing past our end: the local file already spans the
                    # remote content and only re-verification can judge it.
                    log.info(
                        "range not satisfiable, local file already complete",
                        extra={"stage": "download", "path": str(destination), "offset": offset},
                    )
                    return 0
                if not response.is_success:
                    raise DownloadFailure(
                        f"GET {url} returned HTTP {response.status_code}",
                        status_code=response.status_code,
                    )
                encoding = response.headers.get("Content-Encoding", "identity").strip().lower()
                if encoding != "identity":
                    raise DownloadFailure(
                        f"GET {url} returned a {encoding}-encoded body, not appending to {destination}",
                        status_code=response.status_code,
                    )
                if offset > 0 and response.status_code != 206:
                    log.warning(
                        "gateway ignored range request",
                        extra={
                            "stage": "download",
                            "path": str(destination),
                            "status": response.status_code,
                            "offset": offset,
                        },
                    )

                remaining = _remaining_length(response)
                total = offset + remaining if remaining is not None else None
                with progress(total=total, initial=offset, desc=destination.name) as bar:
                    for chunk in response.iter_bytes(_STREAM_CHUNK_SIZE):
                        if cancellation_token is not None and cancellation_token.is_cancelled():
                            raise DownloadFailure("download cancelled")
                        output.write(chunk)
                        written += len(chunk)
                        bar.update(len(chunk))
        except (httpx.HTTPError, httpx.InvalidURL, httpx.StreamError) as exc:
            raise DownloadFailure(f"GET {url} failed: {exc}") from exc

    log.info(
        "download finished",
        extra={
            "stage": "download",
            "path": str(destination),
            "bytes_written": written,
            "resumed_from": offset,
        },
    )
    return written


__all__ = ["ProgressFactory", "ProgressSink", "fetch_param", "tqdm_progress"]
