# tests/test_policy.py
from __future__ import annotations

import json

import pytest

from policy import (
    ENVIRONMENT_DOMAINS,
    PolicyPatch,
    PolicyValidationError,
    apply_patch,
    audit_policy,
    build_policy,
    extract_htaccess_policy,
    load_policy_config,
    render_htaccess_header,
    update_htaccess,
    validate_domains,
    validate_policy_syntax,
)


def test_build_production_policy():
    policy = build_policy("production", report_uri="/__csp_report")

    directives = dict(part.split(" ", 1) for part in policy.split("; "))
    for domain in ENVIRONMENT_DOMAINS["production"]:
        assert domain in directives["script-src"]
        assert domain in directives["script-src-elem"]
        assert domain in directives["connect-src"]
        assert domain not in directives["style-src"]
    assert directives["object-src"] == "'none'"
    assert directives["report-uri"] == "/__csp_report"
    assert "localhost" not in policy


def test_build_development_policy_allows_localhost_wildcard_port():
    assert "http://localhost:*" in build_policy("development")


def test_build_policy_add_and_remove():
    policy = build_policy(
        "production",
        add_domains=["https://cdn.example.com", "https://unpkg.com"],
        remove_directives=["worker-src"],
    )

    assert "https://cdn.example.com" in policy
    assert "worker-src" not in policy
    # 重複なし
    script_src = next(p for p in policy.split("; ") if p.startswith("script-src "))
    assert script_src.count("https://unpkg.com") == 1


def test_build_policy_unknown_env():
    with pytest.raises(PolicyValidationError, match="Unknown environment"):
        build_policy("staging")


def test_build_policy_rejects_bad_domain():
    with pytest.raises(PolicyValidationError) as exc:
        build_policy("production", add_domains=["not a domain"])
    assert exc.value.errors == ["Invalid domain format: not a domain"]


def test_validate_policy_syntax():
    assert validate_policy_syntax("script-src 'self'; img-src data:") == []
    errors = validate_policy_syntax("script-src ''  <x>;;")
    assert "Empty quotes found in CSP" in errors
    assert "Multiple spaces found in CSP" in errors
    assert "Empty directive found in CSP" in errors
    assert "Invalid characters found in CSP" in errors


def test_validate_domains():
    assert validate_domains(["https://*.gstatic.com", "cdn.example.com", "https://a.example.com:8443/js/"]) == []
    assert validate_domains(["javascript:alert(1)"]) == ["Invalid domain format: javascript:alert(1)"]


def test_policy_config_override(tmp_path):
    path = tmp_path / "csp-config.json"
    path.write_text(
        json.dumps(
            {
                "production": {"domains": ["https://only.example.com"]},
                "directives": {"img-src": ["'self'"]},
            }
        ),
        encoding="utf-8",
    )

    config = load_policy_config(path)
    policy = build_policy("production", config=config)

    assert "https://only.example.com" in policy
    assert "https://unpkg.com" not in policy
    assert "img-src 'self';" in policy
    # 既定値は汚染されない
    assert "https://unpkg.com" in build_policy("production")


def test_policy_config_unreadable(tmp_path):
    path = tmp_path / "csp-config.json"
    path.write_text("{", encoding="utf-8")
    with pytest.raises(PolicyValidationError):
        load_policy_config(path)


def test_apply_patch():
    patch = PolicyPatch(origins=("https://a.example",))
    policy = apply_patch("default-src 'self'; script-src 'self' https://a.example", patch)

    assert policy == (
        "default-src 'self'; script-src 'self' https://a.example; script-src-elem 'self' https://a.example"
    )


def test_update_htaccess_creates_default_and_backup(tmp_path):
    path = tmp_path / ".htaccess"
    header = render_htaccess_header("script-src 'self'")

    backup = update_htaccess(path, header)

    content = path.read_text(encoding="utf-8")
    assert header in content
    assert "DirectoryIndex index.html" in content
    assert backup.exists()
    assert header not in backup.read_text(encoding="utf-8")


def test_update_htaccess_replaces_existing_header(tmp_path):
    path = tmp_path / ".htaccess"
    path.write_text(
        "Options +FollowSymLinks\n"
        + render_htaccess_header("script-src 'self' https://old.example") + "\n"
        + "DirectoryIndex index.html\n",
        encoding="utf-8",
    )

    update_htaccess(path, render_htaccess_header("script-src 'self' https://new.example"))

    content = path.read_text(encoding="utf-8")
    assert "https://old.example" not in content
    assert content.count("Content-Security-Policy") == 1
    assert extract_htaccess_policy(content) == "script-src 'self' https://new.example"


def test_extract_htaccess_policy_missing():
    assert extract_htaccess_policy("Options +FollowSymLinks\n") is None


def test_audit_policy():
    findings = audit_policy(
        "script-src 'self' 'unsafe-inline' https://unpkg.com; report-uri /__csp_report",
        ["https://unpkg.com", "https://ga.jspm.io"],
    )

    messages = [f.message for f in findings]
    assert "CSP uses 'unsafe-inline'" in messages
    assert "CSP uses report-uri" in messages
    assert "Required domain missing from CSP: https://ga.jspm.io" in messages
    assert not any("unpkg" in m for m in messages)
    assert not any("unsafe-eval" in m for m in messages)


@pytest.mark.parametrize(
    "config,message",
    [
        ({"directives": ["script-src"]}, "'directives' must be an object"),
        ({"directives": {"img-src": "'self'"}}, "directives.img-src must be a list of strings"),
        ({"development": "domains"}, "'development' must be an object"),
        ({"production": {"domains": "https://a.example.com"}}, "production.domains must be a list of strings"),
        ({"production": {"domains": [1, 2]}}, "production.domains must be a list of strings"),
    ],
)
def test_policy_config_wrong_shape(tmp_path, config, message):
    path = tmp_path / "csp-config.json"
    path.write_text(json.dumps(config), encoding="utf-8")

    with pytest.raises(PolicyValidationError) as exc:
        load_policy_config(path)
    assert any(message in e for e in exc.value.errors)
