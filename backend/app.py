from __future__ import annotations

import logging
import time
from collections import defaultdict, deque
from typing import Any, Dict, List, Optional, Union

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from errors import (
    ConfigurationError,
    EnumerationInconsistency,
    HandshakeTimeout,
    NetworkError,
    ProtocolMismatch,
    ScanCancelled,
    ScanError,
)
from inspector import fetch_certificates
from models import CertificateChain, ScanMode, ScanReport
from policy import evaluate_findings, highest_severity
from scanner import run_scan, scan_host
from settings import settings

logging.basicConfig(
    level=getattr(logging, settings.log_level, logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


# -----------------------------
# Pydantic models
# -----------------------------

class ScanRequest(BaseModel):
    host: str
    port: Optional[Union[int, str]] = None
    mode: ScanMode = ScanMode.FULL
    timeout: Optional[float] = None


class BatchScanRequest(BaseModel):
    targets: List[str]
    mode: ScanMode = ScanMode.FULL
    timeout: Optional[float] = None


class Finding(BaseModel):
    rule_id: str
    severity: str
    title: str
    fix: str
    evidence: Dict[str, Any] = {}


class ScanResponse(BaseModel):
    report: ScanReport
    findings: List[Finding]
    risk_level: str
    elapsed_ms: int


class BatchScanItem(BaseModel):
    target: str
    report: Optional[ScanReport] = None
    error: str = ""
    error_type: str = ""


class BatchScanResponse(BaseModel):
    count: int
    failed: int
    results: List[BatchScanItem]


# -----------------------------
# App
# -----------------------------

app = FastAPI(
    title="TLS Capability Scanner API",
    description="Sequential TLS protocol/cipher capability scans and certificate chain inspection.",
    version="1.0.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["GET", "POST"],
    allow_headers=["*"],
)

PROTECTED_PREFIXES = ("/tls",)

RATE_LIMIT_WINDOW_SECONDS = 60
RATE_LIMIT_MAX_REQUESTS = 30
_requests_by_ip = defaultdict(deque)

# Status codes for errors that escape a scan.
_ERROR_STATUS = {
    ConfigurationError: 400,
    ScanCancelled: 408,
    ProtocolMismatch: 502,
    NetworkError: 502,
    EnumerationInconsistency: 502,
    HandshakeTimeout: 504,
}


@app.exception_handler(ScanError)
async def scan_error_handler(request: Request, exc: ScanError):
    status = _ERROR_STATUS.get(type(exc), 500)
    logger.info("%s %s -> %d %s: %s", request.method, request.url.path, status, exc.__class__.__name__, exc)
    return JSONResponse(status_code=status, content={"detail": str(exc), "error": exc.__class__.__name__})


@app.middleware("http")
async def rate_limit(request: Request, call_next):
    # Every scan opens many sequential connections; keep callers from stacking them.
    ip = request.client.host if request.client else "unknown"
    now = time.time()
    q = _requests_by_ip[ip]
    while q and (now - q[0]) > RATE_LIMIT_WINDOW_SECONDS:
        q.popleft()
    if len(q) >= RATE_LIMIT_MAX_REQUESTS:
        return JSONResponse(status_code=429, content={"detail": "Rate limit exceeded. Please slow down."})
    q.append(now)
    return await call_next(request)


@app.middleware("http")
async def require_api_key(request: Request, call_next):
    if not settings.api_key:
        return await call_next(request)

    path = request.url.path
    if any(path == p or path.startswith(p + "/") for p in PROTECTED_PREFIXES):
        provided = request.headers.get("x-api-key", "")
        if provided != settings.api_key:
            return JSONResponse(status_code=401, content={"detail": "Invalid or missing API key"})

    return await call_next(request)


@app.get("/health")
def health():
    return {"status": "ok"}


# -----------------------------
# Scans
# -----------------------------

@app.post("/tls/scan", response_model=ScanResponse)
def scan(request: ScanRequest):
    start = time.time()
    report = scan_host(request.host, request.port, request.mode, timeout=request.timeout)

    findings = evaluate_findings(report.supported_versions) if request.mode is ScanMode.FULL else []
    return ScanResponse(
        report=report,
        findings=[Finding(**f) for f in findings],
        risk_level=highest_severity(findings),
        elapsed_ms=int((time.time() - start) * 1000),
    )


@app.post("/tls/scans", response_model=BatchScanResponse)
def scan_batch(request: BatchScanRequest):
    if not request.targets:
        raise HTTPException(status_code=400, detail="No targets given.")
    if len(request.targets) > settings.max_targets:
        raise HTTPException(status_code=400, detail=f"Too many targets. Max is {settings.max_targets}.")

    results = run_scan(request.targets, mode=request.mode, timeout=request.timeout)
    items = [BatchScanItem(**r) for r in results]
    return BatchScanResponse(count=len(items), failed=sum(1 for i in items if i.error), results=items)


@app.get("/tls/certificates", response_model=CertificateChain)
def certificates(host: str, port: Optional[str] = None, timeout: Optional[float] = None):
    return fetch_certificates(host, port, timeout=timeout)
