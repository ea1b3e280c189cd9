"""Digest computation, verification, and the verified-path cache.

Parameter files run to tens of gigabytes, so hashing one is expensive.  A
file that verified once is remembered in a :class:`VerificationCache` for the
lifetime of the owning fetcher and never hashed again, even if the file is
modified on disk afterwards.  That staleness is accepted: repeated
reconciliation calls in one process would otherwise re-hash every file.
Callers that need a fresh check construct a new cache (or call
:meth:`VerificationCache.clear`).
"""

from __future__ import annotations

import hashlib
import logging
import threading
from pathlib import Path
from typing import Iterator, Optional, Set, Union

from .errors import ChecksumMismatch
from .manifest import ParamFile
from .settings import FetchSettings

LOGGER = logging.getLogger(__name__)

DIGEST_SIZE = 64
DIGEST_PREFIX_BYTES = 16
_HASH_CHUNK_SIZE = 1 << 20

PathLike = Union[str, Path]


def _cache_key(path: PathLike) -> str:
    return str(Path(path).absolute())


class VerificationCache:
    """Thread-safe set of file paths that already passed verification.

    Examples:
        >>> cache = VerificationCache()
        >>> cache.add("/tmp/a.vk")
        >>> "/tmp/a.vk" in cache
        True
    """

    def __init__(self) -> None:
        self._paths: Set[str] = set()
        self._lock = threading.Lock()

    def __contains__(self, path: object) -> bool:
        if not isinstance(path, (str, Path)):
            return False
        key = _cache_key(path)
        with self._lock:
            return key in self._paths

    def add(self, path: PathLike) -> None:
        """Record ``path`` as verified."""
        key = _cache_key(path)
        with self._lock:
            self._paths.add(key)

    def clear(self) -> None:
        """Forget every recorded path."""
        with self._lock:
            self._paths.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._paths)

    def __iter__(self) -> Iterator[str]:
        with self._lock:
            return iter(sorted(self._paths))


def digest_prefix(path: PathLike) -> str:
    """Return the hex-encoded 16-byte prefix of the BLAKE2b-512 digest of ``path``.

    Raises:
        OSError: If the file cannot be opened or read.
    """

    hasher = hashlib.blake2b(digest_size=DIGEST_SIZE)
    with Path(path).open("rb") as stream:
        for chunk in iter(lambda: stream.read(_HASH_CHUNK_SIZE), b""):
            hasher.update(chunk)
    return hasher.digest()[:DIGEST_PREFIX_BYTES].hex()


class ParamVerifier:
    """Check parameter files against their manifest digest.

    Attributes:
        cache: Verified-path memo consulted before hashing.
        trust_params: When ``True`` every file is accepted unread.
    """

    def __init__(
        self,
        *,
        cache: Optional[VerificationCache] = None,
        settings: Optional[FetchSettings] = None,
        trust_params: Optional[bool] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.cache = cache if cache is not None else VerificationCache()
        if trust_params is None:
            trust_params = settings.trust_params if settings is not None else False
        self.trust_params = trust_params
        self.logger = logger or LOGGER

    def verify(self, path: PathLike, entry: ParamFile) -> None:
        """Verify ``path`` against ``entry.digest``.

        Returns normally when the file is correct (or trusted, or cached).

        Raises:
            ChecksumMismatch: If the digest prefix differs.
            OSError: If the file cannot be opened or read.
                ``FileNotFoundError`` signals an absent file.
        """

        if self.trust_params:
            self.logger.warning(
                "Assuming parameter files are ok. DO NOT USE IN PRODUCTION",
                extra={"stage": "verify", "path": str(path)},
            )
            return

        if path in self.cache:
            return

        actual = digest_prefix(path)
        if actual != entry.digest:
            raise ChecksumMismatch(path, entry.digest, actual)

        self.logger.info(
            "Parameter file %s is ok",
            path,
            extra={"stage": "verify", "path": str(path)},
        )
        self.cache.add(path)


__all__ = [
    "DIGEST_PREFIX_BYTES",
    "ParamVerifier",
    "VerificationCache",
    "digest_prefix",
]
