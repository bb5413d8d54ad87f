"""Client configuration and redirect policy."""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any
from urllib.parse import urlparse

import httpx
from pydantic import BaseModel, ConfigDict, Field, field_validator

from hopstat._version import __version__
from hopstat.errors import MaxRedirectsExceeded

__all__ = ["DEFAULT_CONFIG", "DEFAULT_MAX_REDIRECTS", "ClientConfig", "RedirectPolicy"]

DEFAULT_MAX_REDIRECTS = 5


class RedirectPolicy:
    """Refuses to follow more than *max_redirects* redirects.

    Called before every hop with the requests already sent for the same
    logical request.
    """

    def __init__(self, max_redirects: int = DEFAULT_MAX_REDIRECTS) -> None:
        self.max_redirects = max_redirects

    def __call__(self, request: httpx.Request, via: Sequence[httpx.Request]) -> None:
        if len(via) > self.max_redirects:
            raise MaxRedirectsExceeded()

    def __repr__(self) -> str:
        return f"RedirectPolicy(max_redirects={self.max_redirects})"


class ClientConfig(BaseModel):
    """Settings for the client behind a traced request.

    Attributes:
        timeout: Budget in seconds for the whole logical request, redirects
            and body included.
        dial_timeout: Upper bound for one TCP connect.
        tls_handshake_timeout: Upper bound for one TLS handshake.
        max_redirects: Redirects followed before ``MaxRedirectsExceeded``.
        compression: Advertise ``Accept-Encoding``. Off by default so the
            measured body size is what travelled over the wire.
        keep_alive: Keep connections open between hops. When off every hop
            dials afresh and requests carry ``Connection: close``.
        proxy: Proxy URL (``http`` or ``https``) for every request.
        proxy_from_env: Use ``HTTP_PROXY``/``HTTPS_PROXY``/``NO_PROXY`` when
            ``proxy`` is unset. Loopback hosts are never proxied.
        verify: Verify TLS certificates.
        user_agent: ``User-Agent`` sent unless the caller overrides it.
    """

    model_config = ConfigDict(frozen=True)

    timeout: float = Field(default=10.0, gt=0.0)
    dial_timeout: float = Field(default=5.0, gt=0.0)
    tls_handshake_timeout: float = Field(default=5.0, gt=0.0)
    max_redirects: int = Field(default=DEFAULT_MAX_REDIRECTS, ge=0)
    compression: bool = False
    keep_alive: bool = False
    proxy: str | None = None
    proxy_from_env: bool = True
    verify: bool = True
    user_agent: str = f"hopstat/{__version__}"

    @field_validator("proxy")
    @classmethod
    def validate_proxy(cls, v: str | None) -> str | None:
        if v is None:
            return v
        parsed = urlparse(v)
        if parsed.scheme not in ("http", "https") or not parsed.hostname:
            raise ValueError(f"proxy must be an http or https URL, got {v!r}")
        return v

    @property
    def redirect_policy(self) -> RedirectPolicy:
        return RedirectPolicy(self.max_redirects)

    def with_overrides(self, **changes: Any) -> ClientConfig:
        """Return a validated copy with *changes* applied."""
        return type(self).model_validate({**self.model_dump(), **changes})


DEFAULT_CONFIG = ClientConfig()
