"""Exception hierarchy shared across manifest parsing, download, and verification.

Reconciling a parameter directory touches three failure domains: the manifest
handed over by the caller, the HTTP transfer from the gateway, and the
integrity check of the bytes on disk.  Fatal problems (a malformed manifest)
are raised directly.  Per-file problems are wrapped in :class:`ParamFileError`
records and collected into a single :class:`CombinedFetchError` so one bad
file never hides the others.
"""

from __future__ import annotations

from pathlib import Path
from typing import Iterable, Optional, Union

__all__ = [
    "ParamFetchError",
    "ManifestError",
    "ChecksumMismatch",
    "DownloadFailure",
    "ParamFileError",
    "CombinedFetchError",
]


# Message verb per stage; removal reads "remove file ... failed".
_STAGE_VERBS = {"removing": "remove"}


class ParamFetchError(RuntimeError):
    """Base exception for parameter fetching and verification failures."""


class ManifestError(ParamFetchError):
    """Raised when the parameter manifest cannot be decoded or is malformed."""


class ChecksumMismatch(ParamFetchError):
    """Raised when a file's digest prefix differs from the manifest value."""

    def __init__(self, path: Union[str, Path], expected: str, actual: str) -> None:
        super().__init__(f"checksum mismatch in param file {path}, {actual} != {expected}")
        self.path = Path(path)
        self.expected = expected
        self.actual = actual


class DownloadFailure(ParamFetchError):
    """Raised when an HTTP download attempt fails."""

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code


class ParamFileError(ParamFetchError):
    """Failure of one manifest entry during a reconciliation call.

    ``stage`` is ``fetching``, ``checking`` or ``removing``, or
    ``reconciling`` for an unexpected error inside the entry task.  The
    underlying exception is attached as ``__cause__`` by the raiser or via
    :meth:`wrap`.
    """

    def __init__(self, path: Union[str, Path], stage: str, cause: BaseException) -> None:
        verb = _STAGE_VERBS.get(stage, stage)
        super().__init__(f"{verb} file {path} failed: {cause}")
        self.path = Path(path)
        self.stage = stage
        self.cause = cause

    @classmethod
    def wrap(cls, path: Union[str, Path], stage: str, cause: BaseException) -> "ParamFileError":
        error = cls(path, stage, cause)
        error.__cause__ = cause
        return error


class CombinedFetchError(ParamFetchError):
    """Aggregate of every per-entry failure from one reconciliation call."""

    def __init__(self, errors: Iterable[BaseException]) -> None:
        self.errors = tuple(errors)
        super().__init__("; ".join(str(error) for error in self.errors))

    def __len__(self) -> int:
        return len(self.errors)

    def __iter__(self):
        return iter(self.errors)
# === NAVMAP v1 ===
# {
#   "module": "ParamFetch.errors",
#   "purpose": "Define the exception hierarchy used across manifest parsing, download, and verification",
#   "sections": [
#     {"id": "base", "name": "Base Exceptions", "anchor": "BAS", "kind": "api"},
#     {"id": "entry", "name": "Per-entry Errors", "anchor": "ENT", "kind": "api"},
#     {"id": "aggregate", "name": "Aggregated Errors", "anchor": "AGG", "kind": "api"}
#   ]
# }
# === /NAVMAP ===
