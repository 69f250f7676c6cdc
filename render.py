# render.py
import logging
from pathlib import Path
from typing import Iterable

from ledger import AggregateView, Summary, SummaryNotFound, SummaryParseError, load_summary
from policy import PolicyPatch, AuditFinding
from recommend import is_https_url
from violations import Fingerprint


logger = logging.getLogger(__name__)

DEFAULT_PATCH_THRESHOLD = 5
RECENT_EXAMPLES = 3


def read_summary(path: Path) -> Summary:
    """
    Load the summary for reporting. Missing / corrupt file → empty summary + warning.
    (The report command must still print something useful.)
    """
    try:
        return load_summary(path)
    except SummaryNotFound:
        logger.warning(f"CSP summary not found: {path} (treating as empty)")
    except SummaryParseError as e:
        logger.warning(f"{e} (treating as empty)")
    return Summary()


def group_by_directive(summary: Summary) -> list[tuple[str, list[AggregateView]]]:
    """
    Directive groups, highest total count first; entries by count desc,
    ties by blocked URI asc.
    """
    groups: dict[str, list[AggregateView]] = {}
    for v in summary.violations.values():
        groups.setdefault(v.directive, []).append(v)

    for entries in groups.values():
        entries.sort(key=lambda v: (-v.count, v.blocked_uri))

    return sorted(
        groups.items(),
        key=lambda item: (-sum(v.count for v in item[1]), item[0]),
    )


def generate_report(summary: Summary) -> str:
    lines = [
        "CSP Violation Analysis Report",
        "=============================",
        "",
        f"Total Violations: {summary.total_violations}",
        f"Last Updated: {summary.last_updated or '-'}",
    ]

    groups = group_by_directive(summary)
    if not groups:
        lines += ["", "No violations recorded."]
        return "\n".join(lines) + "\n"

    for directive, entries in groups:
        header = f"{directive} ({sum(v.count for v in entries)}):"
        lines += ["", header, "-" * len(header)]

        for v in entries:
            lines += [
                "",
                f"  {v.blocked_uri}",
                f"  Count: {v.count}",
                f"  Last seen: {v.last_seen or '-'}",
            ]

            if v.recommendations:
                lines += ["", "  Recommendations:"]
                lines += [f"  - {rec}" for rec in v.recommendations]

            # examples are kept oldest-first; show the newest retained ones
            recent = list(reversed(v.examples[-RECENT_EXAMPLES:]))
            if recent:
                lines += ["", "  Recent Examples:"]
                for ex in recent:
                    where = ex.document_uri or "-"
                    if ex.source_file:
                        where += f" ({ex.source_file}"
                        where += f":{ex.line_number})" if ex.line_number is not None else ")"
                    lines.append(f"  - {ex.timestamp}: {where}")

    return "\n".join(lines) + "\n"


def suggest_policy_patch(summary: Summary, threshold: int = DEFAULT_PATCH_THRESHOLD) -> PolicyPatch:
    """HTTPS blocked URIs seen more than ``threshold`` times, sorted and unique."""
    origins = {
        v.blocked_uri
        for v in summary.violations.values()
        if v.count > threshold and is_https_url(v.blocked_uri)
    }
    return PolicyPatch(origins=tuple(sorted(origins)))


def render_policy_patch(patch: PolicyPatch, report_uri: str, threshold: int = DEFAULT_PATCH_THRESHOLD) -> str:
    lines = ["Suggested .htaccess Updates", "===========================", ""]
    if not patch:
        lines.append(f"No policy changes suggested (no HTTPS origin above {threshold} violations).")
        return "\n".join(lines) + "\n"

    lines += ["Suggested CSP header update:", "```apache", 'Header set Content-Security-Policy "\\']
    for directive in patch.directives:
        lines.append(f"    {directive} 'self' \\")
        lines += [f"        {origin} \\" for origin in patch.origins]
        lines.append("    ; \\")
    lines += [f'    report-uri {report_uri}"', "```"]
    return "\n".join(lines) + "\n"


def render_frequent(hits: Iterable[tuple[Fingerprint, int]], tail: int) -> str:
    hits = list(hits)
    lines = [f"Frequent CSP violations (last {tail} raw log entries)", ""]
    if not hits:
        lines.append("None.")
    for fp, n in hits:
        lines.append(f"  {fp.directive}: {fp.blocked_uri} ({n} times)")
    return "\n".join(lines) + "\n"


def render_audit(findings: Iterable[AuditFinding]) -> str:
    findings = list(findings)
    lines = ["CSP configuration audit", ""]
    if not findings:
        lines.append("No issues found.")
    for f in findings:
        lines.append(f"  [{f.kind}] {f.message}")
    return "\n".join(lines) + "\n"
