# backend/models.py
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from enum import Enum
from types import MappingProxyType
from typing import Annotated, Dict, List, Optional, Tuple

from pydantic import AfterValidator, BaseModel, ConfigDict, Field, PlainSerializer

from settings import settings

TLS_VERSION_NAMES = ("TLS 1.0", "TLS 1.1", "TLS 1.2", "TLS 1.3")


class ScanMode(str, Enum):
    VERSIONS = "versions"
    CIPHERS = "ciphers"
    FULL = "full"


# -----------------------------
# Scan results
# -----------------------------

def _read_only(table):
    return MappingProxyType(dict(table))


def _plain(table):
    return dict(table)


# Copied into a read-only view on validation, serialized back as a plain object.
VersionTable = Annotated[Dict[str, bool], AfterValidator(_read_only), PlainSerializer(_plain)]
CipherTable = Annotated[Dict[str, Tuple[str, ...]], AfterValidator(_read_only), PlainSerializer(_plain)]


class ScanReport(BaseModel):
    """Outcome of one scan against host:port. Built once, never mutated."""

    model_config = ConfigDict(frozen=True)

    host: str
    port: str
    supported_versions: VersionTable
    cipher_suites: Optional[CipherTable] = None
    preferred_version: str = ""
    preferred_cipher: str = ""
    vulnerabilities: Tuple[str, ...] = ()

    def supported(self) -> List[str]:
        return [v for v in TLS_VERSION_NAMES if self.supported_versions.get(v)]


# -----------------------------
# Certificates
# -----------------------------

class DistinguishedName(BaseModel):
    model_config = ConfigDict(frozen=True)

    common_name: str = ""
    organization: List[str] = Field(default_factory=list)
    organizational_unit: List[str] = Field(default_factory=list)
    country: List[str] = Field(default_factory=list)
    province: List[str] = Field(default_factory=list)
    locality: List[str] = Field(default_factory=list)


class Certificate(BaseModel):
    model_config = ConfigDict(frozen=True)

    subject: DistinguishedName
    issuer: DistinguishedName
    serial_number: str
    not_before: datetime
    not_after: datetime
    signature_algorithm: str
    public_key_algorithm: str
    public_key_size: int
    dns_names: List[str] = Field(default_factory=list)
    is_ca: bool = False

    def days_until_expiry(self, now: Optional[datetime] = None) -> int:
        now = now or datetime.now(timezone.utc)
        return (self.not_after - now).days

    def status(self, now: Optional[datetime] = None, warning_days: Optional[int] = None) -> str:
        now = now or datetime.now(timezone.utc)
        if warning_days is None:
            warning_days = settings.expiry_warning_days
        if now < self.not_before:
            return "not_yet_valid"
        if now > self.not_after:
            return "expired"
        if now + timedelta(days=warning_days) > self.not_after:
            return "expiring_soon"
        return "valid"


class CertificateChain(BaseModel):
    model_config = ConfigDict(frozen=True)

    host: str
    port: str
    tls_version: str
    cipher_suite: str
    certificates: List[Certificate] = Field(default_factory=list)
