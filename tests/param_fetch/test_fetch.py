"""End-to-end reconciliation through ``ParamFetcher`` against a fake gateway."""

from __future__ import annotations

import logging
import threading
import time
from pathlib import Path

import pytest

from ParamFetch.cancellation import CancellationToken
from ParamFetch.checksums import VerificationCache
from ParamFetch.errors import (
    ChecksumMismatch,
    CombinedFetchError,
    DownloadFailure,
    ManifestError,
    ParamFileError,
)
from ParamFetch.fetch import FetchOutcome, ParamFetcher, get_params

SECTOR_2K = 2048


def _requested_cids(gateway):
    return sorted(record.path.rsplit("/", 1)[-1] for record in gateway.requests)


def test_reconcile_downloads_in_scope_entries(settings, client, gateway, payloads, manifest_bytes):
    """Auxiliary files and matching bulk files are fetched; other sizes are skipped."""

    cache = VerificationCache()
    fetcher = ParamFetcher(settings=settings, client=client, cache=cache)

    outcome = fetcher.reconcile(manifest_bytes, SECTOR_2K)

    assert outcome.ok
    assert sorted(outcome.scheduled) == ["a.params", "a.vk"]
    assert outcome.skipped == ("b.params",)
    assert _requested_cids(gateway) == ["QmSmallParams", "QmVerifyingKey"]
    assert (settings.param_dir / "a.vk").read_bytes() == payloads["QmVerifyingKey"]
    assert (settings.param_dir / "a.params").read_bytes() == payloads["QmSmallParams"]
    assert not (settings.param_dir / "b.params").exists()
    assert settings.param_dir / "a.vk" in cache
    assert settings.param_dir / "a.params" in cache


def test_reconcile_creates_missing_parameter_directory(settings, client, manifest_bytes):
    """The parameter directory and its parents are created on demand."""

    nested = settings.model_copy(update={"param_dir": settings.param_dir / "deep" / "dir"})
    ParamFetcher(settings=nested, client=client).reconcile(manifest_bytes, SECTOR_2K)

    assert (nested.param_dir / "a.vk").is_file()


def test_corrupt_download_is_deleted_and_reported(settings, client, gateway, manifest_bytes):
    """A file that fails re-verification is removed and named in the error."""

    gateway.contents = {**gateway.contents, "QmVerifyingKey": b"tampered"}
    fetcher = ParamFetcher(settings=settings, client=client)

    outcome = fetcher.reconcile(manifest_bytes, SECTOR_2K)

    assert not outcome.ok
    (error,) = outcome.errors
    assert isinstance(error, ParamFileError)
    assert error.stage == "checking"
    assert isinstance(error.__cause__, ChecksumMismatch)
    assert "a.vk" in str(error)
    assert not (settings.param_dir / "a.vk").exists()
    assert (settings.param_dir / "a.params").is_file()

    with pytest.raises(CombinedFetchError) as excinfo:
        outcome.raise_for_errors()
    assert len(excinfo.value) == 1
    assert "a.vk" in str(excinfo.value)


def test_verified_files_cause_no_network_traffic(settings, client, gateway, payloads, manifest_bytes):
    """Correct files on disk are accepted without contacting the gateway."""

    settings.param_dir.mkdir(parents=True)
    (settings.param_dir / "a.vk").write_bytes(payloads["QmVerifyingKey"])
    (settings.param_dir / "a.params").write_bytes(payloads["QmSmallParams"])
    fetcher = ParamFetcher(settings=settings, client=client)

    first = fetcher.reconcile(manifest_bytes, SECTOR_2K)
    second = fetcher.reconcile(manifest_bytes, SECTOR_2K)

    assert first.ok and second.ok
    assert gateway.requests == []
    assert len(fetcher.cache) == 2


def test_separate_fetchers_keep_separate_caches(settings, client, manifest_bytes):
    """A path verified by one fetcher is not trusted by another instance."""

    first = ParamFetcher(settings=settings, client=client)
    second = ParamFetcher(settings=settings, client=client)

    first.reconcile(manifest_bytes, SECTOR_2K)

    assert len(first.cache) == 2
    assert len(second.cache) == 0


def test_partial_file_is_resumed(settings, client, gateway, payloads, manifest_bytes, caplog):
    """A truncated file fails the first check and is completed by a ranged request."""

    settings.param_dir.mkdir(parents=True)
    partial = payloads["QmVerifyingKey"][:100]
    (settings.param_dir / "a.vk").write_bytes(partial)

    with caplog.at_level(logging.WARNING):
        outcome = ParamFetcher(settings=settings, client=client).reconcile(
            manifest_bytes, SECTOR_2K
        )

    assert outcome.ok
    ranges = {r.path.rsplit("/", 1)[-1]: r.range for r in gateway.requests}
    assert ranges["QmVerifyingKey"] == "bytes=100-"
    assert ranges["QmSmallParams"] == "bytes=0-"
    assert (settings.param_dir / "a.vk").read_bytes() == payloads["QmVerifyingKey"]
    assert any(getattr(r, "event", None) == "refetch" for r in caplog.records)


def test_full_length_corrupt_file_is_removed_then_refetched(
    settings, client, gateway, payloads, manifest_bytes
):
    """A wrong file of full length is deleted so the following run starts over."""

    settings.param_dir.mkdir(parents=True)
    wrong = b"X" * len(payloads["QmVerifyingKey"])
    (settings.param_dir / "a.vk").write_bytes(wrong)
    fetcher = ParamFetcher(settings=settings, client=client)

    first = fetcher.reconcile(manifest_bytes, SECTOR_2K)

    assert [e.stage for e in first.errors] == ["checking"]
    assert not (settings.param_dir / "a.vk").exists()

    second = fetcher.reconcile(manifest_bytes, SECTOR_2K)

    assert second.ok
    assert (settings.param_dir / "a.vk").read_bytes() == payloads["QmVerifyingKey"]


def test_gateway_failure_is_recorded_and_others_continue(settings, client, gateway, manifest_bytes):
    """One failing download does not prevent the remaining entries."""

    gateway.statuses["QmVerifyingKey"] = 503
    outcome = ParamFetcher(settings=settings, client=client).reconcile(manifest_bytes, SECTOR_2K)

    (error,) = outcome.errors
    assert error.stage == "fetching"
    assert isinstance(error.__cause__, DownloadFailure)
    assert error.__cause__.status_code == 503
    assert (settings.param_dir / "a.params").is_file()


def test_removal_failure_is_reported_alongside_check_failure(
    settings, client, gateway, manifest_bytes, monkeypatch
):
    """When a bad file cannot be deleted both problems are recorded."""

    gateway.contents = {**gateway.contents, "QmVerifyingKey": b"tampered"}

    def _refuse(self, missing_ok=False):
        raise PermissionError(f"cannot remove {self}")

    monkeypatch.setattr(Path, "unlink", _refuse)
    outcome = ParamFetcher(settings=settings, client=client).reconcile(manifest_bytes, SECTOR_2K)

    assert [e.stage for e in outcome.errors] == ["checking", "removing"]
    assert all("a.vk" in str(e) for e in outcome.errors)
    assert str(outcome.errors[1]).startswith("remove file ")
    assert str(outcome.errors[0]).startswith("checking file ")


def test_unexpected_task_error_is_recorded(settings, client, manifest_bytes, monkeypatch):
    """Exceptions outside the expected taxonomy still end up in the outcome."""

    fetcher = ParamFetcher(settings=settings, client=client)

    def _explode(path, entry):
        raise ValueError("boom")

    monkeypatch.setattr(fetcher.verifier, "verify", _explode)
    outcome = fetcher.reconcile(manifest_bytes, SECTOR_2K)

    assert sorted(e.stage for e in outcome.errors) == ["reconciling", "reconciling"]
    assert all(isinstance(e.__cause__, ValueError) for e in outcome.errors)


def test_downloads_are_serialized(settings, client, gateway, manifest_bytes):
    """At most one transfer is in flight even with one worker per entry."""

    gateway.delay = threading.Event()
    timer = threading.Timer(0.1, gateway.delay.set)
    timer.start()
    try:
        outcome = ParamFetcher(settings=settings, client=client).reconcile(
            manifest_bytes, SECTOR_2K
        )
    finally:
        timer.cancel()

    assert outcome.ok
    assert len(gateway.requests) == 2
    assert gateway.max_concurrent == 1


def test_trust_params_skips_verification_and_downloads(settings, client, gateway, manifest_bytes, caplog):
    """With trust enabled nothing is hashed or fetched, even for absent files."""

    trusted = settings.model_copy(update={"trust_params_flag": "1"})

    with caplog.at_level(logging.WARNING):
        outcome = ParamFetcher(settings=trusted, client=client).reconcile(manifest_bytes, SECTOR_2K)

    assert outcome.ok
    assert gateway.requests == []
    assert any("DO NOT USE IN PRODUCTION" in r.getMessage() for r in caplog.records)


def test_invalid_manifest_starts_no_work(settings, client, gateway):
    """A malformed manifest is fatal before any task is scheduled."""

    with pytest.raises(ManifestError):
        ParamFetcher(settings=settings, client=client).reconcile(b"{not json", SECTOR_2K)

    assert gateway.requests == []


def test_empty_manifest_completes_immediately(settings, client, gateway):
    """Nothing to schedule yields a successful, empty outcome."""

    outcome = ParamFetcher(settings=settings, client=client).reconcile(b"{}", SECTOR_2K)

    assert outcome == FetchOutcome()
    assert settings.param_dir.is_dir()


def test_cancellation_returns_without_waiting_for_transfers(settings, client, gateway, manifest_bytes):
    """Cancelling the token makes ``reconcile`` return while a transfer is still blocked."""

    release = threading.Event()
    gateway.delay = release
    token = CancellationToken()
    timer = threading.Timer(0.1, token.cancel)
    timer.start()

    started = time.monotonic()
    try:
        outcome = ParamFetcher(settings=settings, client=client).reconcile(
            manifest_bytes, SECTOR_2K, cancellation_token=token
        )
        elapsed = time.monotonic() - started
    finally:
        release.set()
        timer.cancel()

    assert outcome.cancelled
    assert not outcome.ok
    assert elapsed < 2.0


def test_max_workers_must_be_positive(settings):
    """A zero-sized worker pool is rejected up front."""

    with pytest.raises(ValueError):
        ParamFetcher(settings=settings, max_workers=0)


def test_get_params_raises_combined_error(settings, client, gateway, manifest_bytes):
    """``get_params`` turns recorded failures into one exception."""

    gateway.statuses["QmSmallParams"] = 404
    fetcher = ParamFetcher(settings=settings, client=client)

    with pytest.raises(CombinedFetchError) as excinfo:
        get_params(manifest_bytes, SECTOR_2K, fetcher=fetcher)

    assert "a.params" in str(excinfo.value)


def test_get_params_returns_outcome_on_success(settings, client, manifest_bytes):
    """A clean run returns the outcome for inspection."""

    fetcher = ParamFetcher(settings=settings, client=client, max_workers=1)

    outcome = get_params(manifest_bytes, SECTOR_2K, fetcher=fetcher)

    assert outcome.ok
    assert outcome.skipped == ("b.params",)


def test_cancelled_outcome_excludes_failures_recorded_later(
    settings, client, gateway, manifest_bytes, caplog
):
    """Transfers that fail after cancellation never show up in the returned outcome."""

    release = threading.Event()
    gateway.delay = release
    gateway.statuses.update({"QmVerifyingKey": 503, "QmSmallParams": 503})
    token = CancellationToken()
    timer = threading.Timer(0.1, token.cancel)
    timer.start()
    caplog.set_level(logging.ERROR, logger="ParamFetch")

    try:
        outcome = ParamFetcher(settings=settings, client=client).reconcile(
            manifest_bytes, SECTOR_2K, cancellation_token=token
        )
    finally:
        timer.cancel()

    assert outcome.cancelled
    assert outcome.errors == ()

    release.set()
    deadline = time.monotonic() + 5
    late = []
    while time.monotonic() < deadline:
        late = [r for r in caplog.records if getattr(r, "failed_stage", None) == "fetching"]
        if len(late) == 2:
            break
        time.sleep(0.01)

    assert len(late) == 2
    assert outcome.errors == ()
