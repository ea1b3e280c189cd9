"""Tests for the cancellation token shared by the fetcher and downloader."""

import threading

from ParamFetch.cancellation import CancellationToken


def test_token_starts_uncancelled_and_latches() -> None:
    """A fresh token is not cancelled; ``cancel`` is sticky and idempotent."""

    token = CancellationToken()
    assert not token.is_cancelled()

    token.cancel()
    token.cancel()

    assert token.is_cancelled()
    assert token.wait(timeout=0) is True


def test_wait_times_out_when_not_cancelled() -> None:
    """``wait`` returns ``False`` when nothing cancels the token in time."""

    token = CancellationToken()
    assert token.wait(timeout=0.01) is False


def test_cancel_from_another_thread_wakes_waiter() -> None:
    """Cancelling from a different thread releases a blocked ``wait``."""

    token = CancellationToken()
    timer = threading.Timer(0.05, token.cancel)
    timer.start()
    try:
        assert token.wait(timeout=5) is True
    finally:
        timer.cancel()


def test_tokens_are_single_use() -> None:
    """Once cancelled a token stays cancelled; callers create a new one per run."""

    token = CancellationToken()
    token.cancel()

    assert not hasattr(token, "reset")
    assert token.wait(timeout=0) is True
