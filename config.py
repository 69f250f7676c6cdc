# csp-ledger/config.py
from __future__ import annotations

# pyright: reportMissingImports=false
from dotenv import load_dotenv

load_dotenv()

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Literal


APP_DIR = Path(__file__).resolve().parent

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"


# ============================================================
# Settings
# ============================================================

@dataclass(frozen=True)
class Settings:
    mode: Literal["local", "prod"]
    raw_log_path: Path
    summary_path: Path
    recommend_threshold: int
    patch_threshold: int
    max_body_bytes: int
    log_sample_seconds: float
    replay_on_start: bool
    # policy builder (offline tooling)
    report_uri: str
    policy_env: str
    policy_config_path: Path
    htaccess_path: Path


def _env_flag(name: str, default: str) -> bool:
    return (os.getenv(name) or default).strip().lower() not in {"0", "false", "no", "off"}


def _env_int(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        raise RuntimeError(f"{name} must be an integer (got {raw!r})") from None
    if value < 0:
        raise RuntimeError(f"{name} must be >= 0 (got {value})")
    return value


def _env_path(name: str, default: Path) -> Path:
    raw = (os.getenv(name) or "").strip()
    return Path(raw) if raw else default


def load_settings() -> Settings:
    """Load and validate settings from environment."""
    mode = (os.getenv("MODE") or "local").strip().lower()
    if mode not in {"local", "prod"}:
        raise RuntimeError(f"MODE must be 'local' or 'prod' (got {mode!r})")

    log_dir = _env_path("CSP_LOG_DIR", APP_DIR / "logs")

    report_uri = (os.getenv("CSP_REPORT_URI") or "/__csp_report").strip()
    # report-uri は同一オリジンの相対パスのみ
    if not report_uri.startswith("/"):
        raise RuntimeError(
            f"CSP_REPORT_URI must be a relative path starting with '/'. Got: {report_uri}"
        )

    sample_seconds = _env_int("CSP_LOG_SAMPLE_SECONDS", 60)

    return Settings(
        mode=mode,  # type: ignore[arg-type]
        raw_log_path=_env_path("CSP_RAW_LOG", log_dir / "csp-reports.log"),
        summary_path=_env_path("CSP_SUMMARY_PATH", log_dir / "csp-summary.json"),
        recommend_threshold=_env_int("CSP_RECOMMEND_THRESHOLD", 10),
        patch_threshold=_env_int("CSP_PATCH_THRESHOLD", 5),
        max_body_bytes=_env_int("CSP_MAX_BODY_BYTES", 32_768),
        log_sample_seconds=float(sample_seconds),
        replay_on_start=_env_flag("CSP_REPLAY_ON_START", "1"),
        report_uri=report_uri,
        policy_env=(os.getenv("CSP_ENV") or "production").strip().lower(),
        policy_config_path=_env_path("CSP_CONFIG_PATH", APP_DIR / "csp-config.json"),
        htaccess_path=_env_path("CSP_HTACCESS_PATH", APP_DIR / ".htaccess"),
    )


def configure_logging() -> None:
    logging.basicConfig(level=logging.INFO, format=LOG_FORMAT)
