# === NAVMAP v1 ===
# {
#   "module": "ParamFetch.fetch",
#   "purpose": "Reconcile the local parameter directory against a manifest",
#   "sections": [
#     {"id": "outcome", "name": "FetchOutcome", "anchor": "OUT", "kind": "api"},
#     {"id": "fetcher", "name": "ParamFetcher", "anchor": "FET", "kind": "api"},
#     {"id": "entrypoint", "name": "get_params", "anchor": "GET", "kind": "api"}
#   ]
# }
# === /NAVMAP ===

"""Fetch orchestration for proof parameter files.

:class:`ParamFetcher` parses a manifest, drops bulk ``.params`` entries that
belong to other sector sizes, and reconciles every remaining entry on its own
worker thread:

1. verify the file already on disk (cache hit or digest match ends the task);
2. otherwise take the fetcher's download gate, so only one transfer runs at
   a time, and resume the download from the gateway;
3. verify again, deleting the file when it is still wrong.

Failures of individual entries never stop the others.  They are collected
while the gate is held and returned together in a :class:`FetchOutcome`.
Cancellation only stops the orchestrator from waiting: tasks that are
already running keep going and whatever they report afterwards is not part
of the returned outcome.
"""

from __future__ import annotations

import functools
import logging
import threading
from concurrent.futures import FIRST_COMPLETED, ThreadPoolExecutor, wait
from dataclasses import dataclass
from pathlib import Path
from typing import ContextManager, List, Optional

import httpx

from .cancellation import CancellationToken
from .checksums import ParamVerifier, VerificationCache
from .download import ProgressFactory, fetch_param, tqdm_progress
from .errors import ChecksumMismatch, CombinedFetchError, DownloadFailure, ParamFileError
from .manifest import ManifestSource, ParamFile, parse_manifest
from .net import get_http_client
from .settings import FetchSettings, get_settings

LOGGER = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL_SEC = 0.05

_DEFAULT_CACHE = VerificationCache()


def default_verification_cache() -> VerificationCache:
    """Return the process-wide cache used by :func:`get_params`."""

    return _DEFAULT_CACHE


@dataclass(slots=True, frozen=True)
class FetchOutcome:
    """Result of one reconciliation call.

    Attributes:
        errors: Per-entry failures recorded before the call returned.
        cancelled: ``True`` when the call stopped waiting because of cancellation;
            ``errors`` may then be incomplete.
        scheduled: Entry names that were reconciled.
        skipped: Bulk entry names excluded by sector size.

    Examples:
        >>> FetchOutcome().ok
        True
        >>> FetchOutcome(cancelled=True).ok
        False
    """

    errors: tuple = ()
    cancelled: bool = False
    scheduled: tuple = ()
    skipped: tuple = ()

    @property
    def ok(self) -> bool:
        return not self.errors and not self.cancelled

    def raise_for_errors(self) -> None:
        """Raise :class:`CombinedFetchError` if any entry failed."""

        if self.errors:
            raise CombinedFetchError(self.errors)


class ParamFetcher:
    """Ensure manifest entries exist in the parameter directory and verify.

    Each fetcher owns its verification cache and download gate, so separate
    instances never contaminate each other.  Pass the same
    :class:`VerificationCache` to several fetchers to share verified paths.

    Args:
        settings: Configuration; read from the environment when omitted.
        client: HTTPX client for gateway requests; the shared client otherwise.
        cache: Verified-path memo.
        download_gate: Lock-like object allowing one transfer at a time.
        progress_factory: Progress observer factory for downloads.
        max_workers: Upper bound on concurrent entry tasks; one thread per
            entry when ``None``.
        poll_interval: Seconds between cancellation checks while waiting.
        logger: Logger for orchestration events.
    """

    def __init__(
        self,
        *,
        settings: Optional[FetchSettings] = None,
        client: Optional[httpx.Client] = None,
        cache: Optional[VerificationCache] = None,
        download_gate: Optional[ContextManager] = None,
        progress_factory: Optional[ProgressFactory] = None,
        max_workers: Optional[int] = None,
        poll_interval: float = DEFAULT_POLL_INTERVAL_SEC,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        if max_workers is not None and max_workers < 1:
            raise ValueError("max_workers must be at least 1")
        self.settings = settings or get_settings()
        self.logger = logger or LOGGER
        self.cache = cache if cache is not None else VerificationCache()
        self.verifier = ParamVerifier(cache=self.cache, settings=self.settings, logger=self.logger)
        self.progress_factory = progress_factory or functools.partial(
            tqdm_progress, disable=not self.settings.show_progress
        )
        self.max_workers = max_workers
        self.poll_interval = poll_interval
        self._client = client
        self._download_gate = download_gate if download_gate is not None else threading.Semaphore(1)

    def _http_client(self) -> httpx.Client:
        return self._client if self._client is not None else get_http_client(self.settings)

    def reconcile(
        self,
        param_bytes: ManifestSource,
        storage_size: int,
        *,
        cancellation_token: Optional[CancellationToken] = None,
    ) -> FetchOutcome:
        """Bring the parameter directory in line with ``param_bytes``.

        Args:
            param_bytes: Manifest JSON or decoded mapping.
            storage_size: Sector size selecting which bulk ``.params`` files are needed.
            cancellation_token: Stops the wait early when cancelled.

        Returns:
            FetchOutcome describing recorded failures and cancellation.

        Raises:
            ManifestError: If the manifest is invalid. No task is started.
            OSError: If the parameter directory cannot be created.
        """

        self.settings.param_dir.mkdir(parents=True, exist_ok=True)
        manifest = parse_manifest(param_bytes)

        scheduled: List[str] = []
        skipped: List[str] = []
        for name, entry in manifest.items():
            (scheduled if entry.in_scope(storage_size) else skipped).append(name)

        self.logger.info(
            "reconciling parameter files",
            extra={
                "stage": "fetch",
                "param_dir": str(self.settings.param_dir),
                "storage_size": storage_size,
                "scheduled": len(scheduled),
                "skipped": len(skipped),
            },
        )

        errors: List[BaseException] = []
        cancelled = False
        if scheduled:
            cancelled = self._run_tasks(manifest, scheduled, errors, cancellation_token)

        # Snapshot without taking the gate; a transfer may still hold it.
        recorded = tuple(errors)
        if cancelled:
            self.logger.info(
                "context closed... shutting down",
                extra={"stage": "fetch", "errors": len(recorded)},
            )
        else:
            self.logger.info(
                "parameter and key-fetching complete",
                extra={"stage": "fetch", "errors": len(recorded)},
            )
        return FetchOutcome(
            errors=recorded,
            cancelled=cancelled,
            scheduled=tuple(scheduled),
            skipped=tuple(skipped),
        )

    def _run_tasks(
        self,
        manifest: dict,
        names: List[str],
        errors: List[BaseException],
        token: Optional[CancellationToken],
    ) -> bool:
        executor = ThreadPoolExecutor(
            max_workers=self.max_workers or len(names),
            thread_name_prefix="paramfetch",
        )
        cancelled = False
        try:
            pending = {
                executor.submit(
                    self._run_entry,
                    self.settings.param_path(name),
                    manifest[name],
                    errors,
                    token,
                )
                for name in names
            }
            while pending:
                if token is not None and token.is_cancelled():
                    cancelled = True
                    break
                _, pending = wait(pending, timeout=self.poll_interval, return_when=FIRST_COMPLETED)
        except BaseException:
            executor.shutdown(wait=False)
            raise
        executor.shutdown(wait=not cancelled)
        return cancelled

    def _record(self, errors: List[BaseException], error: ParamFileError) -> None:
        # Callers hold the download gate.
        self.logger.error(
            str(error),
            extra={"stage": "fetch", "path": str(error.path), "failed_stage": error.stage},
        )
        errors.append(error)

    def _run_entry(
        self,
        path: Path,
        entry: ParamFile,
        errors: List[BaseException],
        token: Optional[CancellationToken],
    ) -> None:
        try:
            self._reconcile_entry(path, entry, errors, token)
        except Exception as exc:  # pylint: disable=broad-except
            with self._download_gate:
                self._record(errors, ParamFileError.wrap(path, "reconciling", exc))

    def _reconcile_entry(
        self,
        path: Path,
        entry: ParamFile,
        errors: List[BaseException],
        token: Optional[CancellationToken],
    ) -> None:
        try:
            self.verifier.verify(path, entry)
            return
        except FileNotFoundError:
            pass
        except (ChecksumMismatch, OSError) as exc:
            self.logger.warning(
                "parameter file check failed, fetching",
                extra={
                    "stage": "verify",
                    "event": "refetch",
                    "path": str(path),
                    "error": str(exc),
                },
            )

        with self._download_gate:
            try:
                fetch_param(
                    path,
                    entry,
                    gateway=self.settings.gateway,
                    client=self._http_client(),
                    cancellation_token=token,
                    progress_factory=self.progress_factory,
                )
            except (DownloadFailure, OSError) as exc:
                self._record(errors, ParamFileError.wrap(path, "fetching", exc))
                return

            try:
                self.verifier.verify(path, entry)
            except (ChecksumMismatch, OSError) as exc:
                self._record(errors, ParamFileError.wrap(path, "checking", exc))
                try:
                    path.unlink()
                except OSError as remove_exc:
                    self._record(errors, ParamFileError.wrap(path, "removing", remove_exc))


def get_params(
    param_bytes: ManifestSource,
    storage_size: int,
    *,
    cancellation_token: Optional[CancellationToken] = None,
    settings: Optional[FetchSettings] = None,
    fetcher: Optional[ParamFetcher] = None,
) -> FetchOutcome:
    """Reconcile the parameter directory and raise if any entry failed.

    Without an explicit ``fetcher`` the process-wide verification cache is
    used, so files verified by an earlier call are not hashed again.

    Raises:
        ManifestError: If the manifest is invalid.
        CombinedFetchError: If one or more entries failed.
    """

    active = fetcher or ParamFetcher(settings=settings, cache=default_verification_cache())
    outcome = active.reconcile(param_bytes, storage_size, cancellation_token=cancellation_token)
    outcome.raise_for_errors()
    return outcome


__all__ = [
    "FetchOutcome",
    "ParamFetcher",
    "default_verification_cache",
    "get_params",
]
