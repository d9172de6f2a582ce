import socket
import ssl
import threading
from datetime import datetime, timedelta, timezone

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, ed25519
from cryptography.x509.oid import NameOID

from scanner import HardFailure, SoftFailure, Success


def make_certificate(key=None, common_name="localhost", days_valid=365, not_before_days=1, serial=0x1A2B3C, ca=False):
    key = key or ec.generate_private_key(ec.SECP256R1())
    name = x509.Name([
        x509.NameAttribute(NameOID.COUNTRY_NAME, "NL"),
        x509.NameAttribute(NameOID.ORGANIZATION_NAME, "TLS Cap Test"),
        x509.NameAttribute(NameOID.COMMON_NAME, common_name),
    ])
    now = datetime.now(timezone.utc)
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(serial)
        .not_valid_before(now - timedelta(days=not_before_days))
        .not_valid_after(now + timedelta(days=days_valid))
        .add_extension(x509.SubjectAlternativeName([x509.DNSName(common_name)]), critical=False)
        .add_extension(x509.BasicConstraints(ca=ca, path_length=None), critical=True)
        .sign(key, None if isinstance(key, ed25519.Ed25519PrivateKey) else hashes.SHA256())
    )
    return key, cert


@pytest.fixture
def cert_factory():
    return make_certificate


@pytest.fixture(scope="session")
def cert_files(tmp_path_factory):
    key, cert = make_certificate()
    d = tmp_path_factory.mktemp("tls")
    cert_path = d / "cert.pem"
    key_path = d / "key.pem"
    cert_path.write_bytes(cert.public_bytes(serialization.Encoding.PEM))
    key_path.write_bytes(
        key.private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.PKCS8,
            serialization.NoEncryption(),
        )
    )
    return str(cert_path), str(key_path)


class LocalTLSServer(threading.Thread):
    """Accepts connections one at a time, completes (or fails) a handshake, hangs up."""

    def __init__(self, context: ssl.SSLContext):
        super().__init__(daemon=True)
        self.context = context
        self.sock = socket.create_server(("127.0.0.1", 0))
        self.sock.settimeout(0.2)
        self.port = str(self.sock.getsockname()[1])
        self._stop_event = threading.Event()

    def run(self):
        while not self._stop_event.is_set():
            try:
                conn, _ = self.sock.accept()
            except socket.timeout:
                continue
            except OSError:
                break
            conn.settimeout(5)
            try:
                with self.context.wrap_socket(conn, server_side=True):
                    pass
            except OSError:
                conn.close()

    def stop(self):
        self._stop_event.set()
        self.join(timeout=2)
        self.sock.close()


@pytest.fixture
def tls12_13_server(cert_files):
    ctx = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
    ctx.minimum_version = ssl.TLSVersion.TLSv1_2
    ctx.load_cert_chain(*cert_files)
    server = LocalTLSServer(ctx)
    server.start()
    yield server
    server.stop()


@pytest.fixture
def closed_port():
    s = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    s.bind(("127.0.0.1", 0))
    port = str(s.getsockname()[1])
    s.close()
    return port


@pytest.fixture
def silent_port():
    # The kernel completes TCP connects into the listen backlog; nothing ever answers the ClientHello.
    s = socket.create_server(("127.0.0.1", 0))
    yield str(s.getsockname()[1])
    s.close()


class FakeProbe:
    """
    Scripted stand-in for probe_handshake.

    `versions` maps version name -> True (accept), False (reject) or an exception
    (hard failure). `ciphers` maps version name -> accepted IANA names; when a
    version has no entry every candidate is accepted.
    """

    def __init__(self, versions, ciphers=None, tls13_cipher="TLS_AES_128_GCM_SHA256"):
        self.versions = versions
        self.ciphers = ciphers or {}
        self.tls13_cipher = tls13_cipher
        self.calls = []

    def __call__(self, config, cancel=None):
        self.calls.append((config.max_version, config.cipher.iana if config.cipher else None))
        verdict = self.versions.get(config.max_version, False)
        if isinstance(verdict, Exception):
            return HardFailure(verdict)
        if not verdict:
            return SoftFailure("protocol version")
        if config.cipher is not None:
            accepted = self.ciphers.get(config.max_version)
            if accepted is not None and config.cipher.iana not in accepted:
                return SoftFailure("no shared cipher")
            return Success(config.max_version, config.cipher.iana)
        if config.max_version == "TLS 1.3":
            return Success("TLS 1.3", self.tls13_cipher)
        return Success(config.max_version, "")


@pytest.fixture
def fake_probe():
    return FakeProbe
