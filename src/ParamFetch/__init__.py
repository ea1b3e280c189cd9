"""Public API for the proof parameter fetcher.

This facade exposes the entry points used by callers that need the parameter
directory populated and verified before proving: :func:`get_params` for the
common case and :class:`ParamFetcher` when cache, gate, or client injection
is required.
"""

from __future__ import annotations

__version__ = "0.1.0"

from .cancellation import CancellationToken
from .checksums import ParamVerifier, VerificationCache, digest_prefix
from .download import fetch_param
from .errors import (
    ChecksumMismatch,
    CombinedFetchError,
    DownloadFailure,
    ManifestError,
    ParamFetchError,
    ParamFileError,
)
from .fetch import FetchOutcome, ParamFetcher, default_verification_cache, get_params
from .manifest import ParamFile, parse_manifest
from .settings import FetchSettings, get_settings

__all__ = [
    "CancellationToken",
    "ChecksumMismatch",
    "CombinedFetchError",
    "DownloadFailure",
    "FetchOutcome",
    "FetchSettings",
    "ManifestError",
    "ParamFetchError",
    "ParamFetcher",
    "ParamFile",
    "ParamFileError",
    "ParamVerifier",
    "VerificationCache",
    "__version__",
    "default_verification_cache",
    "digest_prefix",
    "fetch_param",
    "get_params",
    "get_settings",
    "parse_manifest",
]
