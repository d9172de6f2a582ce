# backend/policy.py
from __future__ import annotations

from typing import Any, Dict, Iterable, List, Mapping, Optional

# -------------------------
# Helpers
# -------------------------

SEVERITY_ORDER = {"critical": 4, "high": 3, "medium": 2, "low": 1, "info": 0}


def _supports(f: Mapping[str, bool], version: str) -> bool:
    return bool(f.get(version, False))


def make_finding(
    rule_id: str,
    title: str,
    severity: str,
    remediation: str,
    evidence: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    return {
        "rule_id": rule_id,
        "severity": (severity or "low").lower(),
        "title": title,
        "fix": remediation,
        "evidence": evidence or {},
    }


# -------------------------
# Rules
# -------------------------
# Each rule looks only at the version support table; order here is report order.

RULES: List[Dict[str, Any]] = [
    {
        "id": "DEPRECATED_TLS10",
        "title": "Server supports deprecated TLS 1.0",
        "severity": "high",
        "when": lambda f: _supports(f, "TLS 1.0"),
        "remediation": "Disable TLS 1.0 on the termination layer (RFC 8996).",
    },
    {
        "id": "DEPRECATED_TLS11",
        "title": "Server supports deprecated TLS 1.1",
        "severity": "high",
        "when": lambda f: _supports(f, "TLS 1.1"),
        "remediation": "Disable TLS 1.1 on the termination layer (RFC 8996).",
    },
    {
        "id": "NO_MODERN_TLS",
        "title": "Server does not support modern TLS (1.2+)",
        "severity": "critical",
        "when": lambda f: not _supports(f, "TLS 1.2") and not _supports(f, "TLS 1.3"),
        "remediation": "Enable TLS 1.2 and TLS 1.3 and upgrade the TLS library if it cannot offer them.",
    },
]


def evaluate_findings(supported_versions: Mapping[str, bool]) -> List[Dict[str, Any]]:
    findings: List[Dict[str, Any]] = []
    for rule in RULES:
        if rule["when"](supported_versions):
            findings.append(
                make_finding(
                    rule_id=rule["id"],
                    title=rule["title"],
                    severity=rule["severity"],
                    remediation=rule["remediation"],
                    evidence={"supported_versions": dict(supported_versions)},
                )
            )
    return findings


def detect_vulnerabilities(
    supported_versions: Mapping[str, bool],
    existing: Optional[Iterable[str]] = None,
) -> List[str]:
    """
    Return the warning messages for a version support table.

    Messages already present in `existing` keep their position and are never
    repeated, so feeding the result back in yields the same list.
    """
    out: List[str] = []
    for msg in list(existing or []) + [f["title"] for f in evaluate_findings(supported_versions)]:
        if msg not in out:
            out.append(msg)
    return out


def highest_severity(findings: Iterable[Dict[str, Any]]) -> str:
    best = "info"
    for f in findings:
        sev = str(f.get("severity") or "info").lower()
        if SEVERITY_ORDER.get(sev, 0) > SEVERITY_ORDER.get(best, 0):
            best = sev
    return best
