import pytest

from policy import RULES, detect_vulnerabilities, evaluate_findings, highest_severity

TLS10 = "Server supports deprecated TLS 1.0"
TLS11 = "Server supports deprecated TLS 1.1"
NO_MODERN = "Server does not support modern TLS (1.2+)"


def table(v10=False, v11=False, v12=False, v13=False):
    return {"TLS 1.0": v10, "TLS 1.1": v11, "TLS 1.2": v12, "TLS 1.3": v13}


@pytest.mark.parametrize(
    "supported,expected",
    [
        (table(v12=True, v13=True), []),
        (table(v10=True), [TLS10, NO_MODERN]),
        (table(v10=True, v11=True, v12=True), [TLS10, TLS11]),
        (table(v11=True, v13=True), [TLS11]),
        (table(), [NO_MODERN]),
    ],
)
def test_detect_vulnerabilities(supported, expected):
    assert detect_vulnerabilities(supported) == expected


def test_detect_vulnerabilities_is_pure_and_idempotent():
    supported = table(v10=True, v11=True)
    first = detect_vulnerabilities(supported)
    second = detect_vulnerabilities(supported)

    assert first == second
    assert detect_vulnerabilities(supported, existing=first) == first
    assert len(set(first)) == len(first)
    assert supported == table(v10=True, v11=True)


def test_existing_messages_keep_their_position():
    out = detect_vulnerabilities(table(v10=True, v12=True), existing=["Custom warning", TLS10])
    assert out == ["Custom warning", TLS10]


def test_findings_carry_rule_metadata():
    findings = evaluate_findings(table(v10=True))
    assert [f["rule_id"] for f in findings] == ["DEPRECATED_TLS10", "NO_MODERN_TLS"]
    assert all(f["fix"] for f in findings)
    assert findings[0]["evidence"]["supported_versions"]["TLS 1.0"] is True
    assert highest_severity(findings) == "critical"


def test_highest_severity_without_findings():
    assert highest_severity([]) == "info"


def test_rule_titles_are_unique():
    titles = [r["title"] for r in RULES]
    assert len(titles) == len(set(titles))
