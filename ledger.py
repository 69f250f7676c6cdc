# csp-ledger/ledger.py
"""
Aggregation store for CSP violations.

Durable state is two files:
- raw log (append-only, one JSON object per line): the audit trail
- summary (single JSON document, fully rewritten after every update)

The in-memory map is owned by one AggregationStore and mutated only through
record_violation() / replay_raw_log(). Readers (render.py, the CLI) read the
summary file, never the live map.

Not thread-safe: the read-increment-write on an aggregate is unsynchronized.
Drive a store from a single thread (the ingestion app's event loop) only.
"""
from __future__ import annotations

import json
import logging
import os
from collections import Counter, deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from recommend import DEFAULT_RECOMMEND_THRESHOLD, recommend
from violations import Fingerprint, ViolationRecord, fingerprint_of, iter_raw_log, utc_now_iso


logger = logging.getLogger(__name__)

MAX_EXAMPLES = 5


# ============================================================
# Errors
# ============================================================

class LedgerError(Exception):
    pass


class SummaryNotFound(LedgerError):
    pass


class SummaryParseError(LedgerError):
    pass


# ============================================================
# Summary file schema (public view)
# ============================================================

class ExampleView(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    timestamp: str
    document_uri: Optional[str] = Field(default=None, alias="documentUri")
    line_number: Optional[int] = Field(default=None, alias="lineNumber")
    source_file: Optional[str] = Field(default=None, alias="sourceFile")


class AggregateView(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    blocked_uri: str = Field(alias="blockedUri")
    directive: str
    count: int = Field(ge=0)
    last_seen: Optional[str] = Field(default=None, alias="lastSeen")
    examples: list[ExampleView] = Field(default_factory=list)
    recommendations: list[str] = Field(default_factory=list)


class Summary(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    last_updated: Optional[str] = Field(default=None, alias="lastUpdated")
    total_violations: int = Field(default=0, ge=0, alias="totalViolations")
    violations: dict[str, AggregateView] = Field(default_factory=dict)

    def to_json(self) -> str:
        data = self.model_dump(mode="json", by_alias=True, exclude_none=True)
        return json.dumps(data, indent=2, ensure_ascii=False) + "\n"


def load_summary(path: Path) -> Summary:
    """Read and validate a summary file. Raises SummaryNotFound / SummaryParseError."""
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        raise SummaryNotFound(f"summary file not found: {path}") from None
    except (OSError, UnicodeDecodeError) as e:
        raise SummaryParseError(f"cannot read summary file {path}: {e}") from e

    try:
        return Summary.model_validate_json(text)
    except ValidationError as e:
        raise SummaryParseError(f"corrupt summary file {path}: {e.error_count()} error(s)") from e


# ============================================================
# Aggregate
# ============================================================

def _as_line_number(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().isdecimal():
        try:
            return int(value.strip())
        except ValueError:
            return None
    return None


def _as_text(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    return value if isinstance(value, str) else str(value)


@dataclass
class Aggregate:
    fingerprint: Fingerprint
    count: int = 0
    last_seen: Optional[str] = None
    examples: list[ExampleView] = field(default_factory=list)
    recommendations: list[str] = field(default_factory=list)

    def update(self, record: ViolationRecord, *, recommend_threshold: int) -> None:
        self.count += 1
        self.last_seen = record.timestamp

        # FIFO: keep the first MAX_EXAMPLES, drop later ones
        if len(self.examples) < MAX_EXAMPLES:
            self.examples.append(
                ExampleView(
                    timestamp=record.timestamp,
                    document_uri=_as_text(record.get("document-uri")),
                    line_number=_as_line_number(record.get("line-number")),
                    source_file=_as_text(record.get("source-file")),
                )
            )

        self.recommendations = recommend(
            self.fingerprint, self.count, record, threshold=recommend_threshold
        )

    def view(self) -> AggregateView:
        return AggregateView(
            blocked_uri=self.fingerprint.blocked_uri,
            directive=self.fingerprint.directive,
            count=self.count,
            last_seen=self.last_seen,
            examples=[e.model_copy() for e in self.examples],
            recommendations=list(self.recommendations),
        )


# ============================================================
# Store
# ============================================================

class AggregationStore:
    def __init__(
        self,
        raw_log_path: Path,
        summary_path: Path,
        *,
        recommend_threshold: int = DEFAULT_RECOMMEND_THRESHOLD,
    ) -> None:
        self.raw_log_path = Path(raw_log_path)
        self.summary_path = Path(summary_path)
        self.recommend_threshold = recommend_threshold
        self._aggregates: dict[Fingerprint, Aggregate] = {}

    def __len__(self) -> int:
        return len(self._aggregates)

    def get(self, fingerprint: Fingerprint) -> Optional[Aggregate]:
        return self._aggregates.get(fingerprint)

    @property
    def total_violations(self) -> int:
        return sum(a.count for a in self._aggregates.values())

    def record_violation(self, record: ViolationRecord) -> Optional[Aggregate]:
        """
        Append to the raw log, update the aggregate, rewrite the summary.

        If the raw log append fails the record is dropped (logged, returns None)
        and no aggregate is touched, so counts always match logged lines.
        A failed summary write is logged; the next update rewrites it in full.
        """
        try:
            self._append_raw(record)
        except OSError as e:
            logger.error(f"CSP raw log append failed ({self.raw_log_path}): {e}")
            return None

        agg = self._apply(record)
        self.persist_summary()
        return agg

    def replay_raw_log(self) -> int:
        """Rebuild aggregates from the raw log (no re-append). Returns records applied."""
        applied = 0
        try:
            for record in iter_raw_log(self.raw_log_path):
                try:
                    self._apply(record)
                except (ValueError, TypeError) as e:
                    logger.warning(f"CSP raw log replay: skipping unusable record {record.timestamp} ({e})")
                    continue
                applied += 1
        except OSError as e:
            logger.error(f"CSP raw log replay stopped ({self.raw_log_path}): {e}")
        if applied:
            logger.info(f"CSP ledger: replayed {applied} record(s) into {len(self)} aggregate(s)")
        return applied

    def snapshot(self) -> Summary:
        violations = {fp.key(): agg.view() for fp, agg in self._aggregates.items()}
        return Summary(
            last_updated=utc_now_iso(),
            total_violations=sum(v.count for v in violations.values()),
            violations=violations,
        )

    def persist_summary(self) -> bool:
        """Overwrite the summary file with the full in-memory state (write tmp + os.replace)."""
        text = self.snapshot().to_json()
        tmp = self.summary_path.with_name(self.summary_path.name + ".tmp")
        try:
            self.summary_path.parent.mkdir(parents=True, exist_ok=True)
            tmp.write_text(text, encoding="utf-8")
            os.replace(tmp, self.summary_path)
        except OSError as e:
            logger.error(f"CSP summary write failed ({self.summary_path}): {e}")
            return False
        return True

    def load_summary(self) -> Summary:
        return load_summary(self.summary_path)

    def _append_raw(self, record: ViolationRecord) -> None:
        self.raw_log_path.parent.mkdir(parents=True, exist_ok=True)
        with self.raw_log_path.open("a", encoding="utf-8") as f:
            f.write(record.to_json_line() + "\n")

    def _apply(self, record: ViolationRecord) -> Aggregate:
        fp = fingerprint_of(record)
        agg = self._aggregates.get(fp)
        if agg is None:
            agg = Aggregate(fingerprint=fp)
            self._aggregates[fp] = agg
        agg.update(record, recommend_threshold=self.recommend_threshold)
        return agg


# ============================================================
# Raw log scan (maintenance)
# ============================================================

def frequent_violations(
    raw_log_path: Path, *, tail: int = 100, threshold: int = 5
) -> list[tuple[Fingerprint, int]]:
    """Fingerprints seen more than ``threshold`` times within the last ``tail`` raw log entries."""
    recent: deque[ViolationRecord] = deque(iter_raw_log(raw_log_path), maxlen=tail)
    counts = Counter(fingerprint_of(r) for r in recent)
    hits = [(fp, n) for fp, n in counts.items() if n > threshold]
    hits.sort(key=lambda item: (-item[1], item[0]))
    return hits
