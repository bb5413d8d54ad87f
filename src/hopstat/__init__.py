"""hopstat - per-hop timing breakdown for HTTP requests and their redirects."""

from hopstat._version import __version__
from hopstat.config import DEFAULT_CONFIG, ClientConfig, RedirectPolicy
from hopstat.errors import (
    CertificateError,
    ConnectionFailed,
    ConnectionReset,
    HopstatError,
    HostNotFound,
    MalformedResponse,
    MaxRedirectsExceeded,
    RequestFailed,
    TimeoutExceeded,
    TLSError,
    normalize_error,
)
from hopstat.request import build_client, request
from hopstat.response import Response
from hopstat.stats import Stats, format_ms
from hopstat.trace import HopKind, Trace, Tracer, now

__all__ = [
    "__version__",
    # Client
    "DEFAULT_CONFIG",
    "ClientConfig",
    "RedirectPolicy",
    "build_client",
    "request",
    # Results
    "HopKind",
    "Response",
    "Stats",
    "Trace",
    "Tracer",
    "format_ms",
    "now",
    # Errors
    "CertificateError",
    "ConnectionFailed",
    "ConnectionReset",
    "HopstatError",
    "HostNotFound",
    "MalformedResponse",
    "MaxRedirectsExceeded",
    "RequestFailed",
    "TLSError",
    "TimeoutExceeded",
    "normalize_error",
]
