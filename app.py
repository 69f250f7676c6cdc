# csp-ledger/app.py
from __future__ import annotations

import json
import logging
import time
from contextlib import asynccontextmanager
from typing import Any, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, Response

from config import Settings, configure_logging, load_settings
from ledger import AggregationStore
from violations import Fingerprint, fingerprint_of, from_reporting_api, normalize_report


# ============================================================
# Logging
# ============================================================

configure_logging()
logger = logging.getLogger(__name__)

CSP_CONTENT_TYPES = ("application/json", "application/csp-report", "application/reports+json")


# ============================================================
# Log sampling
# ============================================================

class ViolationLogSampler:
    """
    Log each fingerprint at most once per ``window`` seconds (ログ燃え防止).

    Sampling only affects log output; every report is still recorded in the ledger.
    The map is capped at ``max_keys``; when full, the oldest half is dropped.
    """

    def __init__(self, window: float = 60.0, max_keys: int = 1000):
        self.window = window
        self.max_keys = max_keys
        self._last_logged: dict[Fingerprint, float] = {}

    def __len__(self) -> int:
        return len(self._last_logged)

    def should_log(self, fingerprint: Fingerprint, now: Optional[float] = None) -> bool:
        now = time.time() if now is None else now

        if len(self._last_logged) >= self.max_keys and fingerprint not in self._last_logged:
            sorted_items = sorted(self._last_logged.items(), key=lambda x: x[1])
            self._last_logged = dict(sorted_items[len(sorted_items) // 2:])

        last = self._last_logged.get(fingerprint)
        if last is not None and now - last < self.window:
            return False
        self._last_logged[fingerprint] = now
        return True


def _clean(value: str, limit: int) -> str:
    # ログ注入防止: 改行除去 + 長さ制限
    return value.replace("\n", "").replace("\r", "")[:limit]


# ============================================================
# FastAPI App
# ============================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Startup:
    1. Load settings (fail fast on invalid env)
    2. Build the AggregationStore (one per process, owned by app.state)
    3. Optionally replay the raw log so counts survive restarts
    """
    settings = load_settings()
    store = AggregationStore(
        settings.raw_log_path,
        settings.summary_path,
        recommend_threshold=settings.recommend_threshold,
    )
    if settings.replay_on_start and store.replay_raw_log():
        store.persist_summary()

    app.state.settings = settings
    app.state.store = store
    app.state.sampler = ViolationLogSampler(window=settings.log_sample_seconds)

    logger.info(
        f"CSP ledger ready (mode={settings.mode}, raw_log={settings.raw_log_path}, "
        f"summary={settings.summary_path})"
    )
    yield


app = FastAPI(lifespan=lifespan)


@app.middleware("http")
async def add_security_headers(request: Request, call_next):
    response = await call_next(request)
    return _apply_security_headers_to_response(response)


def _apply_security_headers_to_response(response: Response) -> Response:
    """middleware と exception handler で共通化"""
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
    response.headers["X-Frame-Options"] = "DENY"
    return response


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    response = JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})
    return _apply_security_headers_to_response(response)


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    response = JSONResponse(status_code=500, content={"detail": "Internal server error"})
    return _apply_security_headers_to_response(response)


# ============================================================
# Health
# ============================================================

@app.get("/healthz")
async def healthz(request: Request):
    store: AggregationStore = request.app.state.store
    return {
        "status": "ok",
        "aggregates": len(store),
        "totalViolations": store.total_violations,
    }


# ============================================================
# CSP Report Endpoint
# ============================================================

def extract_reports(body: Any) -> list[dict[str, Any]]:
    """
    Pull csp-report mappings out of a request body.

    - legacy report-uri: {"csp-report": {...}}
    - Reporting API: [{"type": "csp-violation", "body": {...}}, ...]
      (some senders wrap the list as {"reports": [...]})

    Anything else yields [] (MalformedInput: dropped, still 204).
    """
    if isinstance(body, dict):
        if "csp-report" in body:
            report = body["csp-report"]
            return [report] if isinstance(report, dict) else []
        if isinstance(body.get("reports"), list):
            body = body["reports"]

    if not isinstance(body, list):
        return []

    out = []
    for item in body:
        if not isinstance(item, dict) or not isinstance(item.get("body"), dict):
            continue
        if item.get("type", "csp-violation") != "csp-violation":
            continue
        out.append(from_reporting_api(item["body"]))
    return out


def _log_violation(settings: Settings, sampler: ViolationLogSampler, fields: dict[str, Any], fp: Fingerprint) -> None:
    if not sampler.should_log(fp):
        return

    log_parts = [
        f"blocked-uri={_clean(fp.blocked_uri, 200)}",
        f"violated-directive={_clean(fp.directive, 100)}",
    ]
    effective_directive = fields.get("effective-directive")
    if isinstance(effective_directive, str) and effective_directive:
        log_parts.append(f"effective-directive={_clean(effective_directive, 100)}")
    source_file = fields.get("source-file")
    if isinstance(source_file, str) and source_file:
        log_parts.append(f"source-file={_clean(source_file, 200)}")

    # prodはINFO、localはWARNING
    level = logging.INFO if settings.mode == "prod" else logging.WARNING
    logger.log(level, f"CSP violation: {', '.join(log_parts)}")


@app.post("/__csp_report")
@app.post("/csp-violation-endpoint")
async def csp_report(request: Request):
    """
    CSP violation report endpoint (no-auth, always 204).

    Reports are best-effort: malformed input, oversize bodies, disk errors and
    unexpected exceptions are logged and swallowed so the reporting browser
    never sees an error.
    """
    try:
        settings: Settings = request.app.state.settings
        store: AggregationStore = request.app.state.store
        sampler: ViolationLogSampler = request.app.state.sampler

        # CSP報告っぽくないContent-Typeは即204で捨てる
        content_type = request.headers.get("content-type", "").lower()
        if content_type and not any(ct in content_type for ct in CSP_CONTENT_TYPES):
            return Response(status_code=204)

        body_bytes = await request.body()
        if not body_bytes:
            return Response(status_code=204)

        if len(body_bytes) > settings.max_body_bytes:
            logger.warning(
                f"CSP report: oversized payload ({len(body_bytes)} bytes, limit {settings.max_body_bytes})"
            )
            return Response(status_code=204)

        try:
            body = json.loads(body_bytes.decode("utf-8"))
        except (json.JSONDecodeError, UnicodeDecodeError):
            logger.warning("CSP report: malformed payload (non-JSON or invalid encoding)")
            return Response(status_code=204)

        reports = extract_reports(body)
        if not reports:
            logger.debug("CSP report: no csp-report found in payload")
            return Response(status_code=204)

        for report in reports:
            record = normalize_report(report)
            if store.record_violation(record) is None:
                continue
            _log_violation(settings, sampler, record.fields, fingerprint_of(record))
    except Exception as e:
        # 予期しない例外: ログに残して204（レポート受信は止めない）
        logger.error(f"CSP report handler error: {e}")

    return Response(status_code=204)
