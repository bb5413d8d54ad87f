"""Error hierarchy and normalization of transport failures.

``normalize_error`` turns whatever httpx, httpcore, ``socket`` or ``ssl``
raised during a traced request into one of a handful of exceptions whose
messages are short enough to print as-is.
"""

from __future__ import annotations

import errno
import os
import re
import socket
import ssl
from collections.abc import Iterator

import httpcore
import httpx

__all__ = [
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


class HopstatError(Exception):
    """Base exception for all hopstat errors."""


class TimeoutExceeded(HopstatError):
    """The logical request did not finish within the configured timeout."""

    def __init__(self, message: str = "timeout exceeded") -> None:
        super().__init__(message)


class MaxRedirectsExceeded(HopstatError):
    """The redirect policy refused to follow another hop."""

    def __init__(self, message: str = "max redirects exceeded") -> None:
        super().__init__(message)


class ConnectionFailed(HopstatError):
    """Socket-level failure, worded the way the operating system reports it."""

    def __init__(self, code: int, message: str | None = None) -> None:
        super().__init__(message or os.strerror(code).lower())
        self.errno = code


class ConnectionReset(ConnectionFailed):
    """The peer closed or reset the connection before answering."""

    def __init__(self) -> None:
        super().__init__(errno.ECONNRESET, "connection reset by peer")


class HostNotFound(HopstatError):
    """Name resolution failed."""

    def __init__(self, message: str = "no such host") -> None:
        super().__init__(message)


class MalformedResponse(HopstatError):
    """The peer answered with bytes that are not an HTTP response."""

    def __init__(self, message: str = "malformed HTTP response") -> None:
        super().__init__(message)


class TLSError(HopstatError):
    """TLS framing failure, typically TLS spoken to a plain-text port."""

    def __init__(self, message: str = "invalid TLS record header") -> None:
        super().__init__(message)


class CertificateError(TLSError):
    """Certificate validation failed.

    Attributes:
        reason: OpenSSL ``X509_V_ERR_*`` verify code, when known.
    """

    def __init__(self, message: str, reason: int | None = None) -> None:
        super().__init__(message)
        self.reason = reason


class RequestFailed(HopstatError):
    """Any failure without a dedicated type; carries the underlying message."""


# OpenSSL X509_V_ERR_* verify codes.
_HOSTNAME_MISMATCH = 62
_UNKNOWN_AUTHORITY = frozenset({2, 18, 19, 20, 21})
_CERT_MESSAGES = {
    24: "SSL cert is not authorized to sign others",
    10: "SSL cert has expired",
    47: "SSL a root or intermediate cert is not authorized to sign in this domain",
    48: "SSL a root or intermediate cert is not authorized to sign in this domain",
    25: "SSL too many intermediates for path length constraint",
    26: "SSL certificate specifies an incompatible key usage",
    29: "SSL issuer name does not match subject from issuing certificate",
}

_RECORD_REASONS = frozenset(
    {
        "WRONG_VERSION_NUMBER",
        "RECORD_LAYER_FAILURE",
        "HTTP_REQUEST",
        "HTTPS_PROXY_REQUEST",
        "PACKET_LENGTH_TOO_LONG",
        "RECORD_LENGTH_MISMATCH",
    }
)

_NO_SUCH_HOST = frozenset(
    code
    for code in (
        getattr(socket, "EAI_NONAME", None),
        getattr(socket, "EAI_NODATA", None),
        getattr(socket, "EAI_FAIL", None),
    )
    if code is not None
)

_TIMEOUTS = (httpx.TimeoutException, httpcore.TimeoutException, TimeoutError)
_EOF_MARKERS = ("Server disconnected", "peer closed connection")
_MALFORMED_MARKERS = ("malformed HTTP", "illegal status line", "illegal header line")

_PREFIX = re.compile(r"^(?:\[(?:Errno -?\d+|SSL(?:: [A-Z0-9_]+)?)\]\s*|(?:httpx|httpcore|h11): )")
_SSL_SUFFIX = re.compile(r"\s*\(_ssl\.c:\d+\)$")


def normalize_error(raw: BaseException) -> HopstatError:
    """Reclassify a failure raised while issuing a request.

    The exception and its ``__cause__``/``__context__`` chain are examined in
    a fixed order and the first matching rule wins. Anything unrecognised
    becomes a ``RequestFailed`` carrying the original message.
    """
    chain = list(_walk(raw))

    for exc in chain:
        if isinstance(exc, HopstatError):
            return exc

    if any(isinstance(exc, _TIMEOUTS) for exc in chain):
        return TimeoutExceeded()

    if any(_is_eof(exc) for exc in chain):
        return ConnectionReset()

    if any(isinstance(exc, httpx.TooManyRedirects) for exc in chain):
        return MaxRedirectsExceeded()

    for exc in chain:
        if isinstance(exc, socket.gaierror):
            return _dns_error(exc)

    for exc in chain:
        if isinstance(exc, OSError) and not isinstance(exc, ssl.SSLError) and exc.errno:
            return ConnectionFailed(exc.errno)

    for exc in chain:
        if isinstance(exc, ssl.SSLError) and getattr(exc, "reason", None) in _RECORD_REASONS:
            return TLSError()

    for exc in chain:
        if isinstance(exc, ssl.SSLCertVerificationError):
            return _cert_error(exc)

    for exc in chain:
        text = str(exc)
        if any(marker in text for marker in _MALFORMED_MARKERS):
            return MalformedResponse()

    return RequestFailed(_strip_prefix(_first_message(chain)))


def _walk(exc: BaseException | None) -> Iterator[BaseException]:
    seen: set[int] = set()
    while exc is not None and id(exc) not in seen:
        seen.add(id(exc))
        yield exc
        exc = exc.__cause__ or exc.__context__


def _is_eof(exc: BaseException) -> bool:
    if isinstance(exc, ConnectionResetError):
        return True
    if isinstance(exc, (httpx.RemoteProtocolError, httpcore.RemoteProtocolError)):
        text = str(exc)
        return any(marker in text for marker in _EOF_MARKERS)
    return False


def _dns_error(exc: socket.gaierror) -> HostNotFound:
    if exc.errno in _NO_SUCH_HOST:
        return HostNotFound()
    reason = exc.strerror or str(exc)
    return HostNotFound(reason.lower())


def _cert_error(exc: ssl.SSLCertVerificationError) -> CertificateError:
    code = getattr(exc, "verify_code", None)
    if code == _HOSTNAME_MISMATCH:
        return CertificateError("SSL cert is not valid for this domain", code)
    if code in _UNKNOWN_AUTHORITY:
        return CertificateError("SSL cert signed by unknown authority", code)
    if code in _CERT_MESSAGES:
        return CertificateError(_CERT_MESSAGES[code], code)
    detail = getattr(exc, "verify_message", None) or _strip_prefix(str(exc))
    return CertificateError(f"SSL {detail}", code)


def _first_message(chain: list[BaseException]) -> str:
    for exc in chain:
        text = str(exc)
        if text:
            return text
    return type(chain[0]).__name__


def _strip_prefix(text: str) -> str:
    previous = None
    while previous != text:
        previous = text
        text = _PREFIX.sub("", text, count=1)
    return _SSL_SUFFIX.sub("", text)
