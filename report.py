# csp-ledger/report.py
"""
Operator CLI. Reads the persisted summary / raw log only (never a live store).

    csp-ledger [report]     grouped violation report + suggested policy patch
    csp-ledger maintenance  frequent violations in the raw log tail + .htaccess CSP audit
    csp-ledger policy       build a CSP header (optionally write it into .htaccess)
"""
from __future__ import annotations

import argparse
import logging
import sys
from typing import Optional

from config import Settings, configure_logging, load_settings
from ledger import frequent_violations
from policy import (
    PolicyValidationError,
    audit_policy,
    build_policy,
    extract_htaccess_policy,
    load_policy_config,
    render_htaccess_header,
    update_htaccess,
)
from render import (
    generate_report,
    read_summary,
    render_audit,
    render_frequent,
    render_policy_patch,
    suggest_policy_patch,
)


logger = logging.getLogger(__name__)

MAINTENANCE_TAIL = 100


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="csp-ledger", description="CSP violation ledger tools.")
    sub = parser.add_subparsers(dest="command")

    sub.add_parser("report", help="grouped violation report and policy patch suggestion")
    sub.add_parser("maintenance", help="frequent violations and .htaccess CSP audit")

    p = sub.add_parser("policy", help="build a CSP header from the directive table")
    p.add_argument("--env", default=None, help="development / production (default: CSP_ENV)")
    p.add_argument("--add-domain", action="append", default=[], dest="add_domains")
    p.add_argument("--remove-directive", action="append", default=[], dest="remove_directives")
    p.add_argument("--write", action="store_true", help="write the header into the .htaccess file")

    return parser.parse_args(argv)


def cmd_report(settings: Settings) -> int:
    summary = read_summary(settings.summary_path)
    patch = suggest_policy_patch(summary, threshold=settings.patch_threshold)
    print(generate_report(summary))
    print(render_policy_patch(patch, settings.report_uri, threshold=settings.patch_threshold), end="")
    return 0


def cmd_maintenance(settings: Settings) -> int:
    hits = frequent_violations(
        settings.raw_log_path, tail=MAINTENANCE_TAIL, threshold=settings.patch_threshold
    )
    print(render_frequent(hits, MAINTENANCE_TAIL))

    if not settings.htaccess_path.exists():
        print(f"No .htaccess found at {settings.htaccess_path}", file=sys.stderr)
        return 1

    policy = extract_htaccess_policy(settings.htaccess_path.read_text(encoding="utf-8"))
    if policy is None:
        print("No CSP configuration found", file=sys.stderr)
        return 1

    config = load_policy_config(settings.policy_config_path)
    required = config.environments.get(settings.policy_env, [])
    print(render_audit(audit_policy(policy, required)), end="")
    return 0


def cmd_policy(settings: Settings, args: argparse.Namespace) -> int:
    env = (args.env or settings.policy_env).strip().lower()
    config = load_policy_config(settings.policy_config_path)
    policy = build_policy(
        env,
        config=config,
        add_domains=args.add_domains,
        remove_directives=args.remove_directives,
        report_uri=settings.report_uri,
    )
    header = render_htaccess_header(policy)
    print(header)

    if args.write:
        backup = update_htaccess(settings.htaccess_path, header)
        print(f"Updated {settings.htaccess_path} (backup: {backup})")
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    configure_logging()
    args = parse_args(argv)

    try:
        settings = load_settings()
        if args.command == "policy":
            return cmd_policy(settings, args)
        if args.command == "maintenance":
            return cmd_maintenance(settings)
        return cmd_report(settings)
    except PolicyValidationError as e:
        print("Validation errors found:", file=sys.stderr)
        for error in e.errors:
            print(f"  - {error}", file=sys.stderr)
        return 1
    except (RuntimeError, OSError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
