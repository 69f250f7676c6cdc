# csp-ledger/tests/conftest.py
from __future__ import annotations

from pathlib import Path

import pytest

from ledger import AggregationStore


_ENV_KEYS = (
    "MODE",
    "CSP_LOG_DIR",
    "CSP_RAW_LOG",
    "CSP_SUMMARY_PATH",
    "CSP_RECOMMEND_THRESHOLD",
    "CSP_PATCH_THRESHOLD",
    "CSP_MAX_BODY_BYTES",
    "CSP_LOG_SAMPLE_SECONDS",
    "CSP_REPLAY_ON_START",
    "CSP_REPORT_URI",
    "CSP_ENV",
    "CSP_CONFIG_PATH",
    "CSP_HTACCESS_PATH",
)


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch, tmp_path):
    """
    全テストで環境変数を隔離（本物の logs/ や .htaccess には絶対に触らない）
    """
    for key in _ENV_KEYS:
        monkeypatch.delenv(key, raising=False)

    monkeypatch.setenv("MODE", "local")
    monkeypatch.setenv("CSP_LOG_DIR", str(tmp_path / "logs"))
    monkeypatch.setenv("CSP_CONFIG_PATH", str(tmp_path / "csp-config.json"))
    monkeypatch.setenv("CSP_HTACCESS_PATH", str(tmp_path / ".htaccess"))
    yield


@pytest.fixture
def log_dir(tmp_path) -> Path:
    return tmp_path / "logs"


@pytest.fixture
def store(log_dir) -> AggregationStore:
    return AggregationStore(log_dir / "csp-reports.log", log_dir / "csp-summary.json")
