from __future__ import annotations

import socket
from datetime import datetime, timedelta, timezone

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

import backend
from backend import CertificateInfo, TlsDetails, check_tls, inspect_certificate, tls_penalties

NOW = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)


def _make_der(not_after: datetime, names: tuple[str, ...] = ("example.com", "www.example.com")) -> bytes:
    key = ec.generate_private_key(ec.SECP256R1())
    subject = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "example.com")])
    issuer = x509.Name([
        x509.NameAttribute(NameOID.ORGANIZATION_NAME, "Test Trust"),
        x509.NameAttribute(NameOID.COMMON_NAME, "Test Trust R1"),
    ])
    builder = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(issuer)
        .public_key(key.public_key())
        .serial_number(0x1234ABCD)
        .not_valid_before(not_after - timedelta(days=365))
        .not_valid_after(not_after)
        .add_extension(
            x509.SubjectAlternativeName([x509.DNSName(n) for n in names]), critical=False
        )
    )
    return builder.sign(key, hashes.SHA256()).public_bytes(serialization.Encoding.DER)


def _fake_session(protocol: str, der: bytes | None):
    def fake_open(host: str, port: int, timeout: float):
        return protocol, "TLS_AES_128_GCM_SHA256", der

    return fake_open


def test_plain_http_short_circuits_without_network(monkeypatch: pytest.MonkeyPatch) -> None:
    def forbidden(*args, **kwargs):
        raise AssertionError("no TLS connection expected")

    monkeypatch.setattr(backend, "open_tls_session", forbidden)
    result = check_tls("http://example.com/")
    assert result.score == 0
    assert result.warnings == ["Site does not use HTTPS; TLS certificate was not evaluated."]
    assert result.details.to_dict() == {"protocol": "http"}


def test_inspect_certificate_reads_leaf_fields() -> None:
    info = inspect_certificate(_make_der(NOW + timedelta(days=200)))
    assert info is not None
    assert info.issuer == "Test Trust R1, Test Trust"
    assert info.subject == "example.com"
    assert info.serial_number == "1234ABCD"
    assert info.not_after == NOW + timedelta(days=200)
    assert info.dns_names == ["example.com", "www.example.com"]


def test_inspect_certificate_handles_missing_payload() -> None:
    assert inspect_certificate(None) is None
    assert inspect_certificate(b"") is None
    assert inspect_certificate(b"not a certificate") is None


def test_healthy_certificate_scores_full(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(backend, "open_tls_session",
                        _fake_session("TLSv1.3", _make_der(NOW + timedelta(days=200))))
    result = check_tls("https://example.com/", now=NOW)

    assert result.score == 25
    assert result.passed is True
    assert result.warnings == []
    details = result.details.to_dict()
    assert details["host"] == "example.com"
    assert details["port"] == 443
    assert details["protocol"] == "TLSv1.3"
    assert details["daysUntilExpiry"] == 200
    assert details["validTo"] == "2027-05-07T12:00:00.000Z"


def test_expired_certificate_forces_zero(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(backend, "open_tls_session",
                        _fake_session("TLSv1.3", _make_der(NOW - timedelta(days=1))))
    result = check_tls("https://example.com/", now=NOW)
    assert result.score == 0
    assert "Certificate is expired." in result.warnings


def test_custom_port_is_used(monkeypatch: pytest.MonkeyPatch) -> None:
    seen: dict[str, object] = {}

    def fake_open(host: str, port: int, timeout: float):
        seen.update(host=host, port=port)
        return "TLSv1.2", None, _make_der(NOW + timedelta(days=200))

    monkeypatch.setattr(backend, "open_tls_session", fake_open)
    check_tls("https://example.com:8443/", now=NOW)
    assert seen == {"host": "example.com", "port": 8443}


@pytest.mark.parametrize(
    ("days", "points", "warning"),
    [
        (5, 12, "Certificate expires within 7 days."),
        (7, 12, "Certificate expires within 7 days."),
        (20, 8, "Certificate expires within 30 days."),
        (60, 3, "Certificate expires within 90 days."),
        (91, 0, None),
    ],
)
def test_expiry_brackets_are_exclusive(days: int, points: int, warning: str | None) -> None:
    info = CertificateInfo(issuer="CA", not_after=NOW + timedelta(days=days), dns_names=["example.com"])
    penalties = tls_penalties("TLSv1.3", info, "example.com", TlsDetails(), NOW)
    assert sum(p.points for p in penalties) == points
    assert [p.warning for p in penalties] == ([warning] if warning else [])


def test_legacy_protocol_and_missing_issuer() -> None:
    info = CertificateInfo(not_after=NOW + timedelta(days=365))
    details = TlsDetails()
    penalties = tls_penalties("SSLv3", info, "example.com", details, NOW)
    assert [p.points for p in penalties] == [10, 3]
    assert details.protocol == "SSLv3"
    assert backend.fold_penalties(penalties) == 12


def test_missing_certificate_caps_score() -> None:
    penalties = tls_penalties("TLSv1.3", None, "example.com", TlsDetails(), NOW)
    assert backend.fold_penalties(penalties) == 5
    assert penalties[-1].warning == "Unable to read TLS certificate details."


def test_unparsable_and_missing_expiry() -> None:
    unparsable = tls_penalties("TLSv1.3", CertificateInfo(issuer="CA", not_after_invalid=True),
                               "example.com", TlsDetails(), NOW)
    missing = tls_penalties("TLSv1.3", CertificateInfo(issuer="CA"), "example.com", TlsDetails(), NOW)
    assert [p.points for p in unparsable] == [4]
    assert [p.points for p in missing] == [6]


def test_hostname_outside_san_is_penalized() -> None:
    info = CertificateInfo(issuer="CA", not_after=NOW + timedelta(days=365), dns_names=["other.org"])
    details = TlsDetails()
    penalties = tls_penalties("TLSv1.3", info, "example.com", details, NOW)
    assert [p.points for p in penalties] == [5]
    assert details.subject_alt_names == ["other.org"]


def test_wildcard_san_entry_is_not_an_exact_match() -> None:
    info = CertificateInfo(issuer="CA", not_after=NOW + timedelta(days=365),
                           dns_names=["*.example.com", "example.com"])
    penalties = tls_penalties("TLSv1.3", info, "www.example.com", TlsDetails(), NOW)
    assert [p.points for p in penalties] == [5]
    assert backend.fold_penalties(penalties) == 20


def test_san_membership_ignores_case() -> None:
    assert backend.hostname_in_san("WWW.Example.com", ["www.example.com"])
    assert not backend.hostname_in_san("www.example.com", ["*.example.com"])


def test_handshake_timeout(monkeypatch: pytest.MonkeyPatch) -> None:
    def slow(host: str, port: int, timeout: float):
        raise socket.timeout("timed out")

    monkeypatch.setattr(backend, "open_tls_session", slow)
    result = check_tls("https://example.com/")
    assert result.score == 0
    assert result.warnings == ["TLS handshake timed out."]


def test_connection_failure(monkeypatch: pytest.MonkeyPatch) -> None:
    def refused(host: str, port: int, timeout: float):
        raise ConnectionRefusedError("Connection refused")

    monkeypatch.setattr(backend, "open_tls_session", refused)
    result = check_tls("https://example.com/")
    assert result.score == 0
    assert result.warnings == ["Could not establish a TLS connection.", "Connection refused"]
    assert result.details.to_dict() == {"error": "Connection refused"}


def test_inspection_error_caps_at_ten(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(backend, "open_tls_session", _fake_session("TLSv1.3", b"der"))

    def broken(der: bytes):
        raise RuntimeError("decoder crashed")

    monkeypatch.setattr(backend, "inspect_certificate", broken)
    result = check_tls("https://example.com/", now=NOW)
    assert result.score == 10
    assert "TLS inspection failed." in result.warnings
    assert result.details.error == "decoder crashed"
