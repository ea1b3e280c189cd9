"""Shared fixtures for the parameter fetcher tests."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Dict

import httpx
import pytest

from ParamFetch.logging_utils import LOGGER_NAME
from ParamFetch.settings import FetchSettings
from ParamFetch.testing import FakeGateway, digest_of

GATEWAY_URL = "https://gateway.test/ipfs/"
SECTOR_2K = 2048
SECTOR_32G = 34359738368

_ENV_VARS = (
    "IPFS_GATEWAY",
    "FIL_PROOFS_PARAMETER_CACHE",
    "TRUST_PARAMS",
    "PARAMFETCH_LOG_LEVEL",
    "PARAMFETCH_LOG_DIR",
    "PARAMFETCH_CONNECT_TIMEOUT",
    "PARAMFETCH_READ_TIMEOUT",
    "PARAMFETCH_SHOW_PROGRESS",
)


@pytest.fixture(autouse=True)
def _clean_environment(monkeypatch):
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture(autouse=True)
def _restore_package_logger():
    """Undo handlers and propagation changes made by ``setup_logging``."""

    logger = logging.getLogger(LOGGER_NAME)
    handlers = list(logger.handlers)
    level, propagate = logger.level, logger.propagate
    yield
    for handler in list(logger.handlers):
        if handler not in handlers:
            logger.removeHandler(handler)
            handler.close()
    logger.setLevel(level)
    logger.propagate = propagate


@pytest.fixture
def param_dir(tmp_path) -> Path:
    return tmp_path / "params"


@pytest.fixture
def settings(param_dir) -> FetchSettings:
    return FetchSettings(param_dir=param_dir, gateway=GATEWAY_URL, show_progress=False)


@pytest.fixture
def payloads() -> Dict[str, bytes]:
    """Content served by the fake gateway, keyed by CID."""

    return {
        "QmVerifyingKey": b"verifying-key-bytes" * 32,
        "QmSmallParams": b"small-sector-params" * 64,
        "QmLargeParams": b"large-sector-params" * 64,
    }


@pytest.fixture
def manifest(payloads) -> Dict[str, Dict[str, object]]:
    return {
        "a.vk": {
            "cid": "QmVerifyingKey",
            "digest": digest_of(payloads["QmVerifyingKey"]),
            "sector_size": SECTOR_2K,
        },
        "a.params": {
            "cid": "QmSmallParams",
            "digest": digest_of(payloads["QmSmallParams"]),
            "sector_size": SECTOR_2K,
        },
        "b.params": {
            "cid": "QmLargeParams",
            "digest": digest_of(payloads["QmLargeParams"]),
            "sector_size": SECTOR_32G,
        },
    }


@pytest.fixture
def manifest_bytes(manifest) -> bytes:
    return json.dumps(manifest).encode("utf-8")


@pytest.fixture
def gateway(payloads) -> FakeGateway:
    return FakeGateway(contents=dict(payloads))


@pytest.fixture
def client(gateway):
    http_client = httpx.Client(transport=gateway.transport())
    yield http_client
    http_client.close()
