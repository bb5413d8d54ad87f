"""Issue a traced request and aggregate its hops into a Response."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping, Sequence

import httpcore
import httpx

from hopstat.config import DEFAULT_CONFIG, ClientConfig, RedirectPolicy
from hopstat.errors import TimeoutExceeded, normalize_error
from hopstat.response import ByteCounter, Response, header_size
from hopstat.trace import Tracer
from hopstat.transport import Deadline, TracingTransport, proxy_mounts

logger = logging.getLogger("hopstat.request")

__all__ = ["build_client", "request"]

RequestBody = bytes | str | Iterable[bytes]

_DEFAULT_PORTS = {"http": 80, "https": 443}

# Set on the first hop; httpx carries request extensions over to redirects.
_LOGICAL_REQUEST = "hopstat.logical_request"


class _HopHook:
    """httpx request hook run before every hop.

    Consults the redirect policy, spends the remaining time budget on the
    hop's timeouts, and opens the hop on the tracer. Redirect history and
    the budget start over with each logical request.
    """

    def __init__(self, tracer: Tracer, policy: RedirectPolicy, deadline: Deadline) -> None:
        self._tracer = tracer
        self._policy = policy
        self._deadline = deadline
        self._via: list[httpx.Request] = []

    def remaining(self) -> float:
        """Seconds left in the budget, raising once it is spent."""
        left = self._deadline.remaining()
        if left <= 0:
            raise TimeoutExceeded()
        return left

    def __call__(self, request: httpx.Request) -> None:
        if _LOGICAL_REQUEST not in request.extensions:
            request.extensions[_LOGICAL_REQUEST] = True
            self._via = []
            self._deadline.restart()
        self._policy(request, self._via)
        left = self.remaining()
        request.extensions["timeout"] = {
            "connect": left,
            "read": left,
            "write": left,
            "pool": left,
        }
        request.extensions["trace"] = self._tracer
        self._via.append(request)
        self._tracer.begin(_address(request.url))
        logger.debug("hop %d: %s %s", len(self._via), request.method, request.url)


def _address(url: httpx.URL) -> str:
    port = url.port or _DEFAULT_PORTS.get(url.scheme, 0)
    host = f"[{url.host}]" if ":" in url.host else url.host
    return f"{host}:{port}"


def build_client(
    config: ClientConfig | None = None,
    tracer: Tracer | None = None,
    *,
    network_backend: httpcore.NetworkBackend | None = None,
) -> httpx.Client:
    """Create an ``httpx.Client`` whose every hop is recorded on *tracer*.

    The client follows redirects under ``config.max_redirects`` and bounds
    each exchange by ``config.timeout``, counted from its first hop.
    *network_backend* replaces the socket layer httpcore dials through.
    """
    client, _ = _build(config, tracer, network_backend)
    return client


def _build(
    config: ClientConfig | None,
    tracer: Tracer | None,
    network_backend: httpcore.NetworkBackend | None,
) -> tuple[httpx.Client, _HopHook]:
    config = config if config is not None else DEFAULT_CONFIG
    tracer = tracer if tracer is not None else Tracer()
    deadline = Deadline(config.timeout)
    hook = _HopHook(tracer, config.redirect_policy, deadline)

    def make_transport(proxy: str | None = None) -> httpx.BaseTransport:
        return TracingTransport(
            tracer,
            verify=config.verify,
            proxy=proxy,
            keep_alive=config.keep_alive,
            deadline=deadline,
            dial_timeout=config.dial_timeout,
            tls_handshake_timeout=config.tls_handshake_timeout,
            network_backend=network_backend,
        )

    client = httpx.Client(
        transport=make_transport(),
        mounts=proxy_mounts(config, make_transport),
        follow_redirects=True,
        # The redirect policy decides; httpx's own cap sits one hop beyond it.
        max_redirects=config.max_redirects + 1,
        timeout=config.timeout,
        event_hooks={"request": [hook]},
        headers={"User-Agent": config.user_agent},
    )
    if not config.compression:
        del client.headers["Accept-Encoding"]
    if not config.keep_alive:
        client.headers["Connection"] = "close"
    return client, hook


def request(
    method: str,
    url: str,
    headers: Mapping[str, Sequence[str]] | None = None,
    body: RequestBody | None = None,
    *,
    config: ClientConfig | None = None,
    tracer: Tracer | None = None,
    network_backend: httpcore.NetworkBackend | None = None,
) -> Response:
    """Perform a traced request, following redirects.

    Args:
        method: HTTP method.
        url: Target URL.
        headers: Header overrides, name to values. The last value replaces
            the client default for that name; an empty list removes the
            header. ``None`` leaves the defaults alone.
        body: Request body; an iterable of ``bytes`` is streamed.
        config: Client settings, ``DEFAULT_CONFIG`` when omitted.
        tracer: Pass one in to inspect the hops of a request that fails.
        network_backend: Socket layer to dial through.

    Raises:
        HopstatError: A normalized error; ``__cause__`` holds the original.
    """
    tracer = tracer if tracer is not None else Tracer()
    try:
        client, hook = _build(config, tracer, network_backend)
        with client:
            req = client.build_request(method, url, content=body)
            if headers is not None:
                req.headers = _override_headers(req.headers, headers)
            res = client.send(req, stream=True)
            try:
                return _collect(res, tracer, hook)
            finally:
                res.close()
    except Exception as exc:
        error = normalize_error(exc)
        logger.debug("%s %s failed: %s", method, url, error)
        if error is exc:
            raise
        raise error from exc


def _override_headers(
    base: httpx.Headers, overrides: Mapping[str, Sequence[str]]
) -> httpx.Headers:
    names = {name.lower() for name in overrides}
    items = [
        (name.decode("latin-1"), value.decode("latin-1"))
        for name, value in base.raw
        if name.decode("latin-1").lower() not in names
    ]
    # Names match case-insensitively; a later spelling of the same name wins.
    chosen: dict[str, tuple[str, str]] = {}
    for name, values in overrides.items():
        if values:
            chosen[name.lower()] = (name, values[-1])
        else:
            chosen.pop(name.lower(), None)
    items.extend(chosen.values())
    return httpx.Headers(items)


def _collect(res: httpx.Response, tracer: Tracer, hook: _HopHook) -> Response:
    body = ByteCounter()
    for chunk in res.iter_raw():
        body.write(chunk)
        hook.remaining()

    traces = tracer.traces
    for index, trace in enumerate(traces, start=1):
        logger.debug("hop %d %s [%s]: %s", index, trace.address, trace.kind, trace.summary())

    return Response(
        res.status_code,
        traces,
        header=res.headers,
        header_size=header_size(res.headers.raw),
        body_size=body.size,
    )
