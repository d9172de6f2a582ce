# backend/inspector.py
from __future__ import annotations

import logging
import ssl
from datetime import datetime, timezone
from typing import List, Optional, Tuple, Union

from cryptography import x509
from cryptography.hazmat.primitives.asymmetric import dsa, ec, ed448, ed25519, rsa
from cryptography.hazmat.primitives.serialization import Encoding
from cryptography.x509.oid import NameOID, SignatureAlgorithmOID

from errors import ProtocolMismatch
from models import Certificate, CertificateChain, DistinguishedName
from scanner import CancelToken, HardFailure, ProbeConfig, SoftFailure, normalize_target, probe_handshake
from settings import settings

logger = logging.getLogger(__name__)


def _utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _cert_time(cert: x509.Certificate, name: str) -> datetime:
    # cryptography >= 42 exposes tz-aware *_utc properties; older versions only naive ones.
    aware = getattr(cert, name + "_utc", None)
    if aware is not None:
        return aware
    return _utc(getattr(cert, name))


def _attr_values(name: x509.Name, oid: x509.ObjectIdentifier) -> List[str]:
    return [str(a.value) for a in name.get_attributes_for_oid(oid)]


def parse_name(name: x509.Name) -> DistinguishedName:
    cn = _attr_values(name, NameOID.COMMON_NAME)
    return DistinguishedName(
        common_name=cn[0] if cn else "",
        organization=_attr_values(name, NameOID.ORGANIZATION_NAME),
        organizational_unit=_attr_values(name, NameOID.ORGANIZATIONAL_UNIT_NAME),
        country=_attr_values(name, NameOID.COUNTRY_NAME),
        province=_attr_values(name, NameOID.STATE_OR_PROVINCE_NAME),
        locality=_attr_values(name, NameOID.LOCALITY_NAME),
    )


def _pk_info(cert: x509.Certificate) -> Tuple[str, int]:
    pk = cert.public_key()

    if isinstance(pk, rsa.RSAPublicKey):
        return ("RSA", pk.key_size)
    if isinstance(pk, ec.EllipticCurvePublicKey):
        return ("ECDSA", pk.curve.key_size)
    if isinstance(pk, ed25519.Ed25519PublicKey):
        return ("Ed25519", 256)
    if isinstance(pk, ed448.Ed448PublicKey):
        return ("Ed448", 448)
    if isinstance(pk, dsa.DSAPublicKey):
        return ("DSA", pk.key_size)

    return (pk.__class__.__name__, 0)


_SIGNATURE_ALGORITHM_NAMES = {
    SignatureAlgorithmOID.RSA_WITH_MD5: "md5WithRSAEncryption",
    SignatureAlgorithmOID.RSA_WITH_SHA1: "sha1WithRSAEncryption",
    SignatureAlgorithmOID.RSA_WITH_SHA224: "sha224WithRSAEncryption",
    SignatureAlgorithmOID.RSA_WITH_SHA256: "sha256WithRSAEncryption",
    SignatureAlgorithmOID.RSA_WITH_SHA384: "sha384WithRSAEncryption",
    SignatureAlgorithmOID.RSA_WITH_SHA512: "sha512WithRSAEncryption",
    SignatureAlgorithmOID.RSASSA_PSS: "RSASSA-PSS",
    SignatureAlgorithmOID.ECDSA_WITH_SHA1: "ecdsa-with-SHA1",
    SignatureAlgorithmOID.ECDSA_WITH_SHA224: "ecdsa-with-SHA224",
    SignatureAlgorithmOID.ECDSA_WITH_SHA256: "ecdsa-with-SHA256",
    SignatureAlgorithmOID.ECDSA_WITH_SHA384: "ecdsa-with-SHA384",
    SignatureAlgorithmOID.ECDSA_WITH_SHA512: "ecdsa-with-SHA512",
    SignatureAlgorithmOID.DSA_WITH_SHA1: "dsa-with-sha1",
    SignatureAlgorithmOID.DSA_WITH_SHA224: "dsa-with-sha224",
    SignatureAlgorithmOID.DSA_WITH_SHA256: "dsa-with-sha256",
    SignatureAlgorithmOID.ED25519: "ed25519",
    SignatureAlgorithmOID.ED448: "ed448",
}


def _signature_algorithm(cert: x509.Certificate) -> str:
    oid = cert.signature_algorithm_oid
    return _SIGNATURE_ALGORITHM_NAMES.get(oid, oid.dotted_string)


def _serial_hex(cert: x509.Certificate) -> str:
    sn = getattr(cert, "serial_number", None)
    if sn is None:
        return ""
    return format(sn, "X")


def _san_dns(cert: x509.Certificate) -> List[str]:
    try:
        san = cert.extensions.get_extension_for_class(x509.SubjectAlternativeName).value
    except x509.ExtensionNotFound:
        return []
    return [str(n) for n in san.get_values_for_type(x509.DNSName)]


def _is_ca(cert: x509.Certificate) -> bool:
    try:
        bc = cert.extensions.get_extension_for_class(x509.BasicConstraints).value
    except x509.ExtensionNotFound:
        return False
    return bool(bc.ca)


def _warn_on_validity(parsed: Certificate, now: Optional[datetime] = None) -> None:
    now = now or datetime.now(timezone.utc)
    cn = parsed.subject.common_name
    status = parsed.status(now=now, warning_days=settings.expiry_warning_days)

    if status == "not_yet_valid":
        logger.warning("certificate is not yet valid subject=%s not_before=%s", cn, parsed.not_before.isoformat())
    elif status == "expired":
        logger.warning("certificate has expired subject=%s not_after=%s", cn, parsed.not_after.isoformat())
    elif status == "expiring_soon":
        logger.warning(
            "certificate expiring soon subject=%s not_after=%s days_remaining=%d",
            cn, parsed.not_after.isoformat(), parsed.days_until_expiry(now),
        )


def parse_certificate(cert: Union[x509.Certificate, bytes], now: Optional[datetime] = None) -> Certificate:
    """Snapshot one X.509 certificate. Validity problems are logged, never raised."""
    if isinstance(cert, (bytes, bytearray)):
        cert = x509.load_der_x509_certificate(bytes(cert))

    key_alg, key_size = _pk_info(cert)
    parsed = Certificate(
        subject=parse_name(cert.subject),
        issuer=parse_name(cert.issuer),
        serial_number=_serial_hex(cert),
        not_before=_cert_time(cert, "not_valid_before"),
        not_after=_cert_time(cert, "not_valid_after"),
        signature_algorithm=_signature_algorithm(cert),
        public_key_algorithm=key_alg,
        public_key_size=key_size,
        dns_names=_san_dns(cert),
        is_ca=_is_ca(cert),
    )
    _warn_on_validity(parsed, now=now)
    return parsed


def _to_der(item) -> bytes:
    if isinstance(item, (bytes, bytearray)):
        return bytes(item)
    # ssl certificate objects default to PEM output
    data = item.public_bytes()
    if isinstance(data, str):
        data = data.encode("ascii")
    if data.lstrip().startswith(b"-----BEGIN"):
        return x509.load_pem_x509_certificate(data).public_bytes(Encoding.DER)
    return data


def peer_chain_der(ssock: ssl.SSLSocket) -> List[bytes]:
    """
    DER certificates as sent by the peer, leaf first.

    Python 3.13+ exposes the whole unverified chain; older runtimes only give
    us the leaf.
    """
    fn = getattr(ssock, "get_unverified_chain", None)
    if callable(fn):
        chain = fn()
        if chain:
            return [_to_der(item) for item in chain]

    leaf = ssock.getpeercert(binary_form=True)
    return [leaf] if leaf else []


def fetch_certificates(
    host: str,
    port: Union[str, int, None] = None,
    timeout: Optional[float] = None,
    cancel: Optional[CancelToken] = None,
) -> CertificateChain:
    host, port = normalize_target(host, port)
    timeout = settings.timeout if timeout is None else float(timeout)
    logger.info("retrieving TLS certificate host=%s port=%s timeout=%s", host, port, timeout)

    outcome = probe_handshake(ProbeConfig(host=host, port=port, timeout=timeout), cancel=cancel, inspect=peer_chain_der)
    if isinstance(outcome, HardFailure):
        raise outcome.error
    if isinstance(outcome, SoftFailure):
        raise ProtocolMismatch(f"handshake failed: {outcome.reason}", host, port)

    return CertificateChain(
        host=host,
        port=port,
        tls_version=outcome.version,
        cipher_suite=outcome.cipher,
        certificates=[parse_certificate(der) for der in (outcome.details or [])],
    )
