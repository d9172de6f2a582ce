# backend/scanner.py
from __future__ import annotations

import logging
import socket
import ssl
import threading
import time
import warnings
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Callable, Dict, List, Mapping, NamedTuple, Optional, Tuple, Union

from errors import (
    ConfigurationError,
    EnumerationInconsistency,
    HandshakeTimeout,
    NetworkError,
    ScanCancelled,
    ScanError,
)
from models import TLS_VERSION_NAMES, ScanMode, ScanReport
from policy import detect_vulnerabilities
from settings import settings

logger = logging.getLogger(__name__)


class CipherSuite(NamedTuple):
    iana: str
    openssl: str


_ECDHE_RSA_CBC = (
    CipherSuite("TLS_ECDHE_RSA_WITH_AES_128_CBC_SHA", "ECDHE-RSA-AES128-SHA"),
    CipherSuite("TLS_ECDHE_RSA_WITH_AES_256_CBC_SHA", "ECDHE-RSA-AES256-SHA"),
)

# Probed one at a time, in this order. TLS 1.3 has no entry: the server picks.
CIPHER_CANDIDATES: Mapping[str, Tuple[CipherSuite, ...]] = MappingProxyType({
    "TLS 1.0": _ECDHE_RSA_CBC,
    "TLS 1.1": _ECDHE_RSA_CBC,
    "TLS 1.2": (
        CipherSuite("TLS_ECDHE_RSA_WITH_AES_128_GCM_SHA256", "ECDHE-RSA-AES128-GCM-SHA256"),
        CipherSuite("TLS_ECDHE_RSA_WITH_AES_256_GCM_SHA384", "ECDHE-RSA-AES256-GCM-SHA384"),
        CipherSuite("TLS_ECDHE_RSA_WITH_CHACHA20_POLY1305_SHA256", "ECDHE-RSA-CHACHA20-POLY1305"),
        CipherSuite("TLS_ECDHE_ECDSA_WITH_AES_128_GCM_SHA256", "ECDHE-ECDSA-AES128-GCM-SHA256"),
        CipherSuite("TLS_ECDHE_ECDSA_WITH_AES_256_GCM_SHA384", "ECDHE-ECDSA-AES256-GCM-SHA384"),
        CipherSuite("TLS_ECDHE_ECDSA_WITH_CHACHA20_POLY1305_SHA256", "ECDHE-ECDSA-CHACHA20-POLY1305"),
    ),
})

PREFERRED_VERSION_ORDER = ("TLS 1.3", "TLS 1.2", "TLS 1.1", "TLS 1.0")

_TLS_VERSIONS = {
    "TLS 1.0": ssl.TLSVersion.TLSv1,
    "TLS 1.1": ssl.TLSVersion.TLSv1_1,
    "TLS 1.2": ssl.TLSVersion.TLSv1_2,
    "TLS 1.3": ssl.TLSVersion.TLSv1_3,
}

_LOCALLY_AVAILABLE = {
    "TLS 1.0": ssl.HAS_TLSv1,
    "TLS 1.1": ssl.HAS_TLSv1_1,
    "TLS 1.2": ssl.HAS_TLSv1_2,
    "TLS 1.3": ssl.HAS_TLSv1_3,
}

_OPENSSL_VERSION_NAMES = {
    "TLSv1": "TLS 1.0",
    "TLSv1.1": "TLS 1.1",
    "TLSv1.2": "TLS 1.2",
    "TLSv1.3": "TLS 1.3",
}

_IANA_BY_OPENSSL = {c.openssl: c.iana for suites in CIPHER_CANDIDATES.values() for c in suites}


def version_name(openssl_version: Optional[str]) -> str:
    v = openssl_version or ""
    return _OPENSSL_VERSION_NAMES.get(v, f"Unknown ({v})" if v else "")


def cipher_suite_name(openssl_name: Optional[str]) -> str:
    # TLS 1.3 suites are already reported under their IANA names.
    n = openssl_name or ""
    return _IANA_BY_OPENSSL.get(n, n)


# -----------------------------
# Targets
# -----------------------------

def normalize_target(host: Optional[str], port: Union[str, int, None] = None) -> Tuple[str, str]:
    h = (host or "").strip()
    if not h:
        raise ConfigurationError("host is required")

    p = str(port).strip() if port is not None else ""
    if not p:
        p = settings.default_port
    if not p.isdigit() or not (0 < int(p) < 65536):
        raise ConfigurationError(f"invalid port {p!r}", h)
    return (h, str(int(p)))


def parse_target(target: str) -> Tuple[str, str]:
    """
    Accepts:
      - example.com
      - example.com:8443
      - https://example.com:8443/path
      - [2001:db8::1]:443
    Returns (host, port) with the configured default port when none is given.
    """
    t = (target or "").strip()

    # strip scheme
    if "://" in t:
        t = t.split("://", 1)[1]

    # strip path
    if "/" in t:
        t = t.split("/", 1)[0]

    if t.startswith("["):
        host, _, rest = t[1:].partition("]")
        port = rest[1:] if rest.startswith(":") else ""
        return normalize_target(host, port)

    if t.count(":") == 1:
        host, port = t.rsplit(":", 1)
        return normalize_target(host, port)

    # more than one colon without brackets: bare IPv6 address
    return normalize_target(t, None)


# -----------------------------
# Cancellation
# -----------------------------

class CancelToken:
    """Cooperative cancellation: checked before every probe, never mid-handshake.

    An optional overall budget turns into a deadline; each probe's socket
    timeout is capped by what is left of it.
    """

    def __init__(self, timeout: Optional[float] = None):
        self._event = threading.Event()
        self.deadline = (time.monotonic() + timeout) if timeout is not None else None

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        return self.deadline is not None and time.monotonic() >= self.deadline

    def remaining(self) -> Optional[float]:
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.monotonic())


# -----------------------------
# Handshake probe
# -----------------------------

@dataclass(frozen=True)
class ProbeConfig:
    host: str
    port: str
    min_version: Optional[str] = None
    max_version: Optional[str] = None
    cipher: Optional[CipherSuite] = None
    timeout: Optional[float] = None

    @classmethod
    def pinned(cls, host: str, port: str, version: str, cipher: Optional[CipherSuite] = None, timeout: Optional[float] = None) -> "ProbeConfig":
        return cls(host=host, port=port, min_version=version, max_version=version, cipher=cipher, timeout=timeout)


@dataclass(frozen=True)
class Success:
    version: str
    cipher: str
    details: Any = None


@dataclass(frozen=True)
class SoftFailure:
    reason: str


@dataclass(frozen=True)
class HardFailure:
    error: ScanError


HandshakeOutcome = Union[Success, SoftFailure, HardFailure]
ProbeFn = Callable[..., HandshakeOutcome]


def _effective_timeout(timeout: Optional[float], cancel: Optional[CancelToken]) -> Optional[float]:
    limits: List[float] = []
    if timeout is not None and timeout > 0:
        limits.append(float(timeout))
    if cancel is not None:
        r = cancel.remaining()
        if r is not None:
            limits.append(r)
    return min(limits) if limits else None


def _set_ciphers(ctx: ssl.SSLContext, cipher_string: str) -> None:
    # OpenSSL 3 refuses TLS 1.0/1.1 and SHA-1 suites above security level 0.
    try:
        ctx.set_ciphers(cipher_string + ":@SECLEVEL=0")
    except ssl.SSLError:
        ctx.set_ciphers(cipher_string)


def _make_context(config: ProbeConfig) -> ssl.SSLContext:
    ctx = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
    ctx.check_hostname = False
    ctx.verify_mode = ssl.CERT_NONE

    with warnings.catch_warnings():
        # ssl.TLSVersion.TLSv1 / TLSv1_1 are deprecated but must still be offered.
        warnings.simplefilter("ignore", DeprecationWarning)
        if config.min_version:
            ctx.minimum_version = _TLS_VERSIONS[config.min_version]
        if config.max_version:
            ctx.maximum_version = _TLS_VERSIONS[config.max_version]

    if config.cipher is not None:
        _set_ciphers(ctx, config.cipher.openssl)
    elif config.min_version or config.max_version:
        _set_ciphers(ctx, "ALL")
    return ctx


def probe_handshake(
    config: ProbeConfig,
    cancel: Optional[CancelToken] = None,
    inspect: Optional[Callable[[ssl.SSLSocket], Any]] = None,
) -> HandshakeOutcome:
    """
    One TCP connect + one TLS handshake under `config`. Never raises for
    network conditions; the outcome says what happened:

      Success      handshake completed; `inspect(ssock)` ran before close
      SoftFailure  remote rejected the offered version/cipher
      HardFailure  dial failed or the handshake deadline elapsed

    The socket is closed before returning on every path.
    """
    target = f"{config.host}:{config.port}"

    for v in {config.min_version, config.max_version}:
        if v and not _LOCALLY_AVAILABLE.get(v, False):
            reason = f"{v} is not available in the local TLS library"
            logger.debug("probe %s: %s", target, reason)
            return SoftFailure(reason)

    if cancel is not None and cancel.cancelled:
        return HardFailure(ScanCancelled("scan cancelled", config.host, config.port))

    timeout = _effective_timeout(config.timeout, cancel)
    if timeout is not None and timeout <= 0:
        # deadline ran out after the check above; a zero socket timeout means non-blocking
        return HardFailure(ScanCancelled("scan deadline exceeded", config.host, config.port))

    try:
        ctx = _make_context(config)
    except ssl.SSLError as e:
        name = config.cipher.iana if config.cipher else "cipher list"
        reason = f"{name} unavailable in the local TLS library: {e}"
        logger.debug("probe %s: %s", target, reason)
        return SoftFailure(reason)

    try:
        sock = socket.create_connection((config.host, int(config.port)), timeout=timeout)
    except OSError as e:
        err = NetworkError(f"dial failed: {e}", config.host, config.port)
        err.__cause__ = e
        logger.debug("probe %s: %s", target, err)
        return HardFailure(err)

    with sock:
        try:
            ssock = ctx.wrap_socket(sock, server_hostname=config.host)
        except socket.timeout as e:
            err = HandshakeTimeout(f"handshake timed out after {timeout or 0:.1f}s", config.host, config.port)
            err.__cause__ = e
            logger.debug("probe %s: %s", target, err)
            return HardFailure(err)
        except OSError as e:
            # Alerts, resets and early EOFs after connect all mean the offer was refused.
            reason = str(e) or e.__class__.__name__
            logger.debug("probe %s (%s..%s %s) rejected: %s", target, config.min_version, config.max_version,
                         config.cipher.iana if config.cipher else "*", reason)
            return SoftFailure(reason)

        with ssock:
            negotiated = version_name(ssock.version())
            c = ssock.cipher()
            cipher = cipher_suite_name(c[0]) if c else ""
            details = inspect(ssock) if inspect is not None else None

    logger.debug("probe %s negotiated %s %s", target, negotiated, cipher)
    return Success(version=negotiated, cipher=cipher, details=details)


# -----------------------------
# Scanner
# -----------------------------

def preferred_version(supported: Mapping[str, bool]) -> str:
    for v in PREFERRED_VERSION_ORDER:
        if supported.get(v):
            return v
    return ""


class TLSScanner:
    """Sequential TLS capability scanner.

    `timeout` is per probe (None -> configured default, <= 0 -> no timeout).
    `probe` replaces the real handshake, mainly for tests.
    """

    def __init__(
        self,
        timeout: Optional[float] = None,
        cancel: Optional[CancelToken] = None,
        probe: Optional[ProbeFn] = None,
    ):
        self.timeout = settings.timeout if timeout is None else float(timeout)
        self.cancel = cancel
        self._probe = probe or probe_handshake

    def _run_probe(self, host: str, port: str, version: str, cipher: Optional[CipherSuite] = None) -> HandshakeOutcome:
        if self.cancel is not None and self.cancel.cancelled:
            raise ScanCancelled("scan cancelled", host, port)

        config = ProbeConfig.pinned(host, port, version, cipher=cipher, timeout=self.timeout)
        outcome = self._probe(config, cancel=self.cancel)
        if isinstance(outcome, HardFailure):
            raise outcome.error
        return outcome

    def _sweep(self, host: str, port: str) -> Dict[str, bool]:
        supported: Dict[str, bool] = {}
        for version in TLS_VERSION_NAMES:
            outcome = self._run_probe(host, port, version)
            supported[version] = isinstance(outcome, Success)
        logger.debug("version sweep %s:%s -> %s", host, port, supported)
        return supported

    def test_versions(self, host: str, port: Union[str, int, None] = None) -> ScanReport:
        host, port = normalize_target(host, port)
        logger.info("scanning TLS protocol versions host=%s port=%s timeout=%s", host, port, self.timeout)
        supported = self._sweep(host, port)
        return ScanReport(
            host=host,
            port=port,
            supported_versions=supported,
            preferred_version=preferred_version(supported),
        )

    def enumerate_ciphers(self, host: str, port: Union[str, int, None], version: str) -> List[str]:
        host, port = normalize_target(host, port)
        if version not in _TLS_VERSIONS:
            raise ConfigurationError(f"unsupported TLS version {version}", host, port)

        if version == "TLS 1.3":
            return self._enumerate_tls13(host, port)

        candidates = CIPHER_CANDIDATES.get(version)
        if not candidates:
            raise ConfigurationError(f"no cipher suites configured for {version}", host, port)

        accepted: List[str] = []
        for suite in candidates:
            outcome = self._run_probe(host, port, version, suite)
            if isinstance(outcome, Success):
                accepted.append(suite.iana)

        if not accepted:
            raise EnumerationInconsistency(f"no cipher suites detected for {version}", host, port)
        return accepted

    def _enumerate_tls13(self, host: str, port: str) -> List[str]:
        outcome = self._run_probe(host, port, "TLS 1.3")
        if isinstance(outcome, SoftFailure):
            raise EnumerationInconsistency("TLS 1.3 not supported", host, port)
        if not outcome.cipher:
            raise EnumerationInconsistency("unable to determine TLS 1.3 cipher suite", host, port)
        return [outcome.cipher]

    def _scan_with_ciphers(self, host: str, port: str, include_tls13: bool, detect: bool) -> ScanReport:
        supported = self._sweep(host, port)

        cipher_suites: Dict[str, List[str]] = {}
        for version in TLS_VERSION_NAMES:
            if not supported[version]:
                continue
            if version == "TLS 1.3" and not include_tls13:
                continue
            cipher_suites[version] = self.enumerate_ciphers(host, port, version)

        preferred = preferred_version(supported)
        suites = cipher_suites.get(preferred) or []

        return ScanReport(
            host=host,
            port=port,
            supported_versions=supported,
            cipher_suites=cipher_suites,
            preferred_version=preferred,
            preferred_cipher=suites[0] if suites else "",
            vulnerabilities=detect_vulnerabilities(supported) if detect else [],
        )

    def cipher_scan(self, host: str, port: Union[str, int, None] = None, include_tls13: bool = True) -> ScanReport:
        host, port = normalize_target(host, port)
        logger.info("scanning TLS cipher suites host=%s port=%s timeout=%s", host, port, self.timeout)
        return self._scan_with_ciphers(host, port, include_tls13=include_tls13, detect=False)

    def full_test(self, host: str, port: Union[str, int, None] = None) -> ScanReport:
        host, port = normalize_target(host, port)
        logger.info("performing full TLS scan host=%s port=%s timeout=%s", host, port, self.timeout)
        report = self._scan_with_ciphers(host, port, include_tls13=True, detect=True)
        if report.vulnerabilities:
            logger.info("%s:%s: %d weakness(es) found", host, port, len(report.vulnerabilities))
        return report

    def scan(self, host: str, port: Union[str, int, None] = None, mode: Union[ScanMode, str] = ScanMode.FULL) -> ScanReport:
        try:
            mode = ScanMode(mode)
        except ValueError:
            raise ConfigurationError(f"unknown scan mode {mode!r}", host or "", str(port or ""))

        if mode is ScanMode.VERSIONS:
            return self.test_versions(host, port)
        if mode is ScanMode.CIPHERS:
            return self.cipher_scan(host, port)
        return self.full_test(host, port)


def scan_host(
    host: str,
    port: Union[str, int, None] = None,
    mode: Union[ScanMode, str] = ScanMode.FULL,
    timeout: Optional[float] = None,
    cancel: Optional[CancelToken] = None,
) -> ScanReport:
    return TLSScanner(timeout=timeout, cancel=cancel).scan(host, port, mode)


def run_scan(
    targets: List[str],
    mode: Union[ScanMode, str] = ScanMode.FULL,
    timeout: Optional[float] = None,
    cancel: Optional[CancelToken] = None,
    scanner: Optional[TLSScanner] = None,
) -> List[Dict[str, Any]]:
    """Scan targets one after another; a failing target does not stop the batch."""
    scanner = scanner or TLSScanner(timeout=timeout, cancel=cancel)
    results: List[Dict[str, Any]] = []
    for t in targets:
        entry: Dict[str, Any] = {"target": t, "report": None, "error": "", "error_type": ""}
        try:
            host, port = parse_target(t)
            entry["report"] = scanner.scan(host, port, mode)
        except ScanCancelled:
            raise
        except ScanError as e:
            logger.warning("scan of %s failed: %s", t, e)
            entry["error"] = str(e)
            entry["error_type"] = e.__class__.__name__
        results.append(entry)
    return results
