# csp-ledger/violations.py
"""
Violation records: normalization, fingerprinting and the raw JSON-lines log format.

A normalized record keeps every field the browser sent, exactly as sent.
Only two things are added:
- ``timestamp``: generated at normalization time (ISO-8601, UTC)
- ``blocked-uri`` / ``violated-directive``: the sentinel ``"N/A"`` when the
  browser left them out (these two form the fingerprint and are never dropped)
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator, Mapping, NamedTuple, Optional


logger = logging.getLogger(__name__)

SENTINEL = "N/A"

BLOCKED_URI = "blocked-uri"
VIOLATED_DIRECTIVE = "violated-directive"

# Reporting API (camelCase) -> legacy report-uri (hyphenated)
REPORTING_API_FIELDS = {
    "blockedURL": "blocked-uri",
    "blockedURI": "blocked-uri",
    "documentURL": "document-uri",
    "documentURI": "document-uri",
    "effectiveDirective": "effective-directive",
    "violatedDirective": "violated-directive",
    "originalPolicy": "original-policy",
    "referrer": "referrer",
    "sourceFile": "source-file",
    "lineNumber": "line-number",
    "columnNumber": "column-number",
    "statusCode": "status-code",
    "disposition": "disposition",
    "sample": "script-sample",
}


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


# ============================================================
# Normalizer
# ============================================================

@dataclass(frozen=True)
class ViolationRecord:
    timestamp: str
    fields: dict[str, Any] = field(default_factory=dict)

    @property
    def blocked_uri(self) -> str:
        return _as_key_part(self.fields.get(BLOCKED_URI))

    @property
    def violated_directive(self) -> str:
        return _as_key_part(self.fields.get(VIOLATED_DIRECTIVE))

    @property
    def script_sample(self) -> Optional[str]:
        sample = self.fields.get("script-sample") or self.fields.get("sample")
        return str(sample) if sample else None

    def get(self, key: str, default: Any = None) -> Any:
        return self.fields.get(key, default)

    def to_json_line(self) -> str:
        # timestamp を先頭に（元ログの形を維持）
        entry = {"timestamp": self.timestamp}
        entry.update({k: v for k, v in self.fields.items() if k != "timestamp"})
        return json.dumps(entry, ensure_ascii=False, separators=(",", ":"))

    @classmethod
    def from_json_line(cls, line: str) -> "ViolationRecord":
        entry = json.loads(line)
        if not isinstance(entry, dict):
            raise ValueError("raw log line is not a JSON object")
        timestamp = entry.pop("timestamp", None)
        if not isinstance(timestamp, str):
            raise ValueError("raw log line has no timestamp")
        return cls(timestamp=timestamp, fields=entry)


def _as_key_part(value: Any) -> str:
    if value is None or value == "":
        return SENTINEL
    if isinstance(value, str):
        return value
    # non-string values share a bucket with their JSON text (0 and "0" are one fingerprint)
    return json.dumps(value, sort_keys=True, ensure_ascii=False, separators=(",", ":"))


def normalize_report(payload: Mapping[str, Any], *, now: Optional[str] = None) -> ViolationRecord:
    """
    Turn a raw csp-report mapping into a ViolationRecord.

    The payload is assumed to already be a mapping (the ingestion endpoint
    rejects anything else). A ``timestamp`` sent by the client is replaced by
    the generated one.
    """
    fields = {k: v for k, v in payload.items() if k != "timestamp"}
    if fields.get(BLOCKED_URI) in (None, ""):
        fields[BLOCKED_URI] = SENTINEL
    if fields.get(VIOLATED_DIRECTIVE) in (None, ""):
        fields[VIOLATED_DIRECTIVE] = SENTINEL
    return ViolationRecord(timestamp=now or utc_now_iso(), fields=fields)


def from_reporting_api(body: Mapping[str, Any]) -> dict[str, Any]:
    """Map a Reporting API csp-violation body onto the legacy field names."""
    out: dict[str, Any] = {}
    for key, value in body.items():
        out[REPORTING_API_FIELDS.get(key, key)] = value
    return out


# ============================================================
# Fingerprint
# ============================================================

class Fingerprint(NamedTuple):
    blocked_uri: str
    directive: str

    def key(self) -> str:
        """
        Length-prefixed string form used as the summary-file key.

        ``"<len(blocked_uri)>:<blocked_uri>:<directive>"``. The prefix makes the
        split point explicit, so a ':' inside either field cannot collide.
        """
        return f"{len(self.blocked_uri)}:{self.blocked_uri}:{self.directive}"

    @classmethod
    def from_key(cls, key: str) -> "Fingerprint":
        size, sep, rest = key.partition(":")
        if not sep or not size.isdigit():
            raise ValueError(f"invalid fingerprint key: {key!r}")
        n = int(size)
        if len(rest) < n + 1 or rest[n] != ":":
            raise ValueError(f"invalid fingerprint key: {key!r}")
        return cls(rest[:n], rest[n + 1:])


def fingerprint_of(record: ViolationRecord) -> Fingerprint:
    return Fingerprint(record.blocked_uri, record.violated_directive)


# ============================================================
# Raw log
# ============================================================

def iter_raw_log(path: Path) -> Iterator[ViolationRecord]:
    """Yield records from a JSON-lines raw log; corrupt lines are skipped with a warning."""
    if not path.exists():
        return
    with path.open("r", encoding="utf-8", errors="replace") as f:
        for line_no, line in enumerate(f, start=1):
            if not line.strip():
                continue
            try:
                yield ViolationRecord.from_json_line(line)
            except ValueError as e:
                # json.JSONDecodeError is a ValueError
                logger.warning(f"CSP raw log: skipping corrupt line {path}:{line_no} ({e})")
