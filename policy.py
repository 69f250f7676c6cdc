# csp-ledger/policy.py
"""
Offline CSP policy tooling: build a policy header, validate it, write it into
an .htaccess file, and audit an existing one.

Validation failures here are blocking (PolicyValidationError). This module is
never used on the ingestion path.
"""
from __future__ import annotations

import copy
import json
import logging
import re
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable, Mapping, Optional


logger = logging.getLogger(__name__)

SCRIPT_DIRECTIVES = ("script-src", "script-src-elem")

# environment domains are added to these directives
DOMAIN_DIRECTIVES = ("script-src", "script-src-elem", "connect-src")

BASE_DIRECTIVES: dict[str, list[str]] = {
    "default-src": ["'self'", "blob:"],
    "script-src": ["'self'", "'unsafe-eval'", "'unsafe-inline'", "blob:"],
    "script-src-elem": ["'self'", "'unsafe-inline'", "blob:"],
    "style-src": ["'self'", "'unsafe-inline'"],
    "img-src": ["'self'", "data:", "blob:"],
    "font-src": ["'self'"],
    "connect-src": ["'self'", "blob:"],
    "worker-src": ["'self'", "blob:"],
    "child-src": ["blob:", "'self'"],
    "frame-src": ["'self'"],
    "object-src": ["'none'"],
    "manifest-src": ["'self'"],
}

ENVIRONMENT_DOMAINS: dict[str, list[str]] = {
    "development": [
        "https://unpkg.com",
        "https://ga.jspm.io",
        "https://cdnjs.cloudflare.com",
        "https://*.gstatic.com",
        "http://localhost:*",
    ],
    "production": [
        "https://unpkg.com",
        "https://ga.jspm.io",
        "https://cdnjs.cloudflare.com",
        "https://*.gstatic.com",
    ],
}

_SYNTAX_CHECKS = [
    (re.compile(r"''"), "Empty quotes found in CSP"),
    (re.compile(r"\s{2,}"), "Multiple spaces found in CSP"),
    (re.compile(r";\s*;"), "Empty directive found in CSP"),
    (re.compile(r"[<>]"), "Invalid characters found in CSP"),
]

# scheme optional, wildcard labels allowed, port may be a number or '*'
_DOMAIN_RE = re.compile(
    r"^(https?://)?([*\w-]+\.)*[\w-]+(\.[a-z]{2,})?(:(\d{1,5}|\*))?(/.*)?$",
    re.IGNORECASE,
)

_HTACCESS_CSP_LINE = re.compile(r"^Header always set Content-Security-Policy.*\n?", re.MULTILINE)
_HTACCESS_CSP_VALUE = re.compile(r'Content-Security-Policy[^"]*"([^"]+)"')

DEFAULT_HTACCESS = """# Set proper MIME types for JavaScript modules
<FilesMatch "\\.js$">
    Header set Content-Type "application/javascript"
</FilesMatch>

# Security headers
Header set X-Content-Type-Options "nosniff"
Header set X-Frame-Options "SAMEORIGIN"

# Basic configuration
Options +FollowSymLinks
DirectoryIndex index.html

# Enable compression
<IfModule mod_deflate.c>
    AddOutputFilterByType DEFLATE text/html text/plain text/css application/javascript application/json
</IfModule>
"""


class PolicyValidationError(ValueError):
    def __init__(self, errors: list[str]):
        super().__init__("CSP validation failed: " + "; ".join(errors))
        self.errors = errors


@dataclass(frozen=True)
class PolicyPatch:
    """Proposed allow-list additions (origins sorted, unique)."""
    origins: tuple[str, ...] = ()
    directives: tuple[str, ...] = SCRIPT_DIRECTIVES

    def __bool__(self) -> bool:
        return bool(self.origins)


@dataclass(frozen=True)
class AuditFinding:
    kind: str
    message: str


# ============================================================
# Config
# ============================================================

@dataclass
class PolicyConfig:
    directives: dict[str, list[str]]
    environments: dict[str, list[str]]


def _is_str_list(value: Any) -> bool:
    return isinstance(value, list) and all(isinstance(v, str) for v in value)


def load_policy_config(path: Optional[Path] = None) -> PolicyConfig:
    """
    Defaults, optionally overridden by a JSON file:
    {"development": {"domains": [...]}, "production": {...}, "directives": {...}}
    """
    directives = copy.deepcopy(BASE_DIRECTIVES)
    environments = copy.deepcopy(ENVIRONMENT_DOMAINS)

    if path is not None and path.exists():
        try:
            custom = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            raise PolicyValidationError([f"cannot read policy config {path}: {e}"]) from e
        if not isinstance(custom, dict):
            raise PolicyValidationError([f"policy config {path} must be a JSON object"])

        errors: list[str] = []
        for env in ("development", "production"):
            env_cfg = custom.get(env) or {}
            if not isinstance(env_cfg, dict):
                errors.append(f"policy config: {env!r} must be an object")
                continue
            if "domains" in env_cfg:
                domains = env_cfg["domains"]
                if not _is_str_list(domains):
                    errors.append(f"policy config: {env}.domains must be a list of strings")
                    continue
                environments[env] = list(domains)

        custom_directives = custom.get("directives") or {}
        if not isinstance(custom_directives, dict):
            errors.append("policy config: 'directives' must be an object")
        else:
            for name, sources in custom_directives.items():
                if not _is_str_list(sources):
                    errors.append(f"policy config: directives.{name} must be a list of strings")
                    continue
                directives[name] = list(sources)

        if errors:
            raise PolicyValidationError(errors)

    return PolicyConfig(directives=directives, environments=environments)


# ============================================================
# Validation
# ============================================================

def validate_policy_syntax(policy: str) -> list[str]:
    return [message for pattern, message in _SYNTAX_CHECKS if pattern.search(policy)]


def validate_domains(domains: Iterable[str]) -> list[str]:
    return [f"Invalid domain format: {d}" for d in domains if not _DOMAIN_RE.match(d)]


# ============================================================
# Build
# ============================================================

def _dedupe(sources: Iterable[str]) -> list[str]:
    return list(dict.fromkeys(sources))


def render_policy(directives: Mapping[str, Iterable[str]]) -> str:
    return "; ".join(f"{name} {' '.join(_dedupe(sources))}" for name, sources in directives.items())


def build_policy(
    env: str,
    *,
    config: Optional[PolicyConfig] = None,
    add_domains: Iterable[str] = (),
    remove_directives: Iterable[str] = (),
    report_uri: Optional[str] = None,
) -> str:
    config = config or load_policy_config()
    if env not in config.environments:
        raise PolicyValidationError([f"Unknown environment: {env}"])

    directives = copy.deepcopy(config.directives)
    for name in remove_directives:
        directives.pop(name, None)

    domains = _dedupe([*config.environments[env], *add_domains])
    for domain in domains:
        for name in DOMAIN_DIRECTIVES:
            if name in directives:
                directives[name].append(domain)

    if report_uri:
        directives["report-uri"] = [report_uri]

    policy = render_policy(directives)

    errors = validate_policy_syntax(policy) + validate_domains(domains)
    if errors:
        raise PolicyValidationError(errors)
    return policy


def apply_patch(policy: str, patch: PolicyPatch) -> str:
    """Merge suggested origins into the patch's directives of an existing policy string."""
    directives: dict[str, list[str]] = {}
    for part in policy.split(";"):
        tokens = part.split()
        if tokens:
            directives[tokens[0]] = tokens[1:]

    for name in patch.directives:
        directives.setdefault(name, ["'self'"]).extend(patch.origins)
    return render_policy(directives)


def render_htaccess_header(policy: str) -> str:
    return f'Header always set Content-Security-Policy "{policy}"'


def update_htaccess(path: Path, header: str) -> Path:
    """
    Replace the CSP header line in an .htaccess file (created with defaults if
    missing). The previous content is written to ``<path>.backup-<ms>`` first.
    Returns the backup path.
    """
    if not path.exists():
        logger.info(f"No .htaccess at {path}; creating one with default configuration")
        path.write_text(DEFAULT_HTACCESS, encoding="utf-8")

    original = path.read_text(encoding="utf-8")
    content = _HTACCESS_CSP_LINE.sub("", original)

    lines = content.split("\n")
    last = lines.pop()
    content = "\n".join([*lines, header, "", last])

    backup = path.with_name(f"{path.name}.backup-{int(time.time() * 1000)}")
    backup.write_text(original, encoding="utf-8")
    path.write_text(content, encoding="utf-8")
    logger.info(f"Updated {path} (backup: {backup})")
    return backup


# ============================================================
# Audit
# ============================================================

def extract_htaccess_policy(text: str) -> Optional[str]:
    m = _HTACCESS_CSP_VALUE.search(text)
    return m.group(1) if m else None


def audit_policy(policy: str, required_domains: Iterable[str] = ()) -> list[AuditFinding]:
    findings = []
    for keyword in ("'unsafe-inline'", "'unsafe-eval'", "'strict-dynamic'"):
        if keyword in policy:
            findings.append(AuditFinding("keyword", f"CSP uses {keyword}"))
    for directive in ("report-uri", "report-to"):
        if directive in policy:
            findings.append(AuditFinding("reporting", f"CSP uses {directive}"))
    for domain in required_domains:
        if domain not in policy:
            findings.append(AuditFinding("missing-domain", f"Required domain missing from CSP: {domain}"))
    return findings
